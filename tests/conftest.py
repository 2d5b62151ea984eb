"""
Test configuration and fixtures
"""

import itertools
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from servoley import bcrypt, create_app, db
from servoley.config import TestingConfig
from servoley.models import Order, ProviderProfile, Service, User
from servoley.rate_limiter import RateLimiter, escrow_limiter
from servoley.tokens import create_access_token
from servoley.wallet_service import credit, get_or_create_wallet

PASSWORD = 'Str0ng!Pass'


@pytest.fixture(scope="function")
def app():
    """Fresh application with an empty in-memory database for each test"""
    RateLimiter.reset_all()
    escrow_limiter.reset()
    app = create_app(TestingConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def auth_headers(user):
    return {'Authorization': f'Bearer {create_access_token(user)}'}


@pytest.fixture
def make_user(app):
    """Factory for verified accounts; providers get a business profile."""
    counter = itertools.count(1)

    def _make(user_type='CUSTOMER', balance=0, provider_verified=True, **fields):
        n = next(counter)
        with app.app_context():
            user = User(
                email=f'{user_type.lower()}{n}@example.com',
                password_hash=bcrypt.generate_password_hash(PASSWORD).decode('utf-8'),
                user_type=user_type,
                first_name=fields.pop('first_name', user_type.title()),
                last_name=fields.pop('last_name', f'Tester{n}'),
                is_verified=True,
                **fields
            )
            db.session.add(user)
            db.session.flush()
            get_or_create_wallet(user.id)
            if user_type == 'PROVIDER':
                db.session.add(ProviderProfile(
                    user_id=user.id,
                    business_name=f'Fixit {n}',
                    category='Plumbing',
                    area='Indiranagar',
                    address='12 MG Road, Bengaluru',
                    is_verified=provider_verified,
                ))
            if balance:
                credit(user.id, balance, 'CREDIT', 'Test funds')
            db.session.commit()
            return SimpleNamespace(id=user.id, email=user.email, headers=auth_headers(user))

    return _make


@pytest.fixture
def customer(make_user):
    return make_user('CUSTOMER')


@pytest.fixture
def provider(make_user):
    return make_user('PROVIDER')


@pytest.fixture
def admin(make_user):
    return make_user('ADMIN')


@pytest.fixture
def make_service(app):
    def _make(provider, name='Tap repair', category='Plumbing', price=500.0, duration=60):
        with app.app_context():
            service = Service(provider_id=provider.id, name=name, description=f'{name} at your home',
                              category=category, price=price, duration=duration)
            db.session.add(service)
            db.session.commit()
            return service.id

    return _make


@pytest.fixture
def make_order(app):
    slots = itertools.count(1)

    def _make(customer, provider, service_id, status='PENDING', amount=500.0):
        with app.app_context():
            order = Order(
                customer_id=customer.id,
                provider_id=provider.id,
                service_id=service_id,
                status=status,
                total_amount=amount,
                service_date=datetime(2030, 1, 1, 9, 0) + timedelta(hours=next(slots)),
                address='221B Residency Road',
            )
            db.session.add(order)
            db.session.commit()
            return order.id

    return _make
