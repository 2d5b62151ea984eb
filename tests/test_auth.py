"""
Tests for registration, OTP verification, login lockout and token rotation
"""

import time
from datetime import datetime, timedelta

import pytest

from servoley import create_app, db
from servoley.config import TestingConfig
from servoley.crypto_utils import decrypt_field
from servoley.models import OTPCode, ProviderProfile, RefreshSession, User, Wallet
from servoley.rate_limiter import RateLimiter

PASSWORD = 'Str0ng!Pass'


def register(client, **overrides):
    payload = {
        'email': 'asha@example.com',
        'firstName': 'Asha',
        'lastName': 'Rao',
        'password': PASSWORD,
        'userType': 'CUSTOMER',
    }
    payload.update(overrides)
    return client.post('/api/auth/register', json=payload)


@pytest.fixture
def verified_tokens(client):
    """Register and verify a customer, returning (user_id, tokens)."""
    user_id = register(client).get_json()['data']['userId']
    response = client.post('/api/auth/verify-otp', json={'userId': user_id, 'code': '123456'})
    assert response.status_code == 200
    return user_id, response.get_json()['data']


class TestRegister:
    def test_register_customer(self, app, client):
        response = register(client)
        assert response.status_code == 201
        body = response.get_json()
        assert body['success'] is True
        assert body['data']['userType'] == 'CUSTOMER'
        assert body['data']['isVerified'] is False

        with app.app_context():
            user = db.session.get(User, body['data']['userId'])
            assert user.email == 'asha@example.com'
            assert user.password_hash != PASSWORD
            assert Wallet.query.filter_by(user_id=user.id).count() == 1

    def test_weak_password_rejected(self, client):
        response = register(client, password='password123')
        assert response.status_code == 400
        body = response.get_json()
        assert body['message'] == 'Validation failed'
        assert any('too common' in error for error in body['errors'])

    def test_admin_cannot_self_register(self, client):
        response = register(client, userType='ADMIN')
        assert response.status_code == 400
        assert 'User type must be CUSTOMER or PROVIDER.' in response.get_json()['errors']

    def test_duplicate_email(self, client):
        register(client)
        response = register(client, email='ASHA@example.com')
        assert response.status_code == 400
        assert 'Email already registered.' in response.get_json()['errors']

    def test_email_or_phone_required(self, client):
        response = register(client, email=None)
        assert response.status_code == 400
        assert 'Either email or phone is required.' in response.get_json()['errors']

    def test_phone_is_normalized(self, app, client):
        response = register(client, email=None, phone='+91 98765-43210')
        assert response.status_code == 201
        with app.app_context():
            user = db.session.get(User, response.get_json()['data']['userId'])
            assert user.phone == '9876543210'

    def test_provider_identity_is_encrypted(self, app, client):
        response = register(
            client,
            email='ravi@example.com',
            userType='PROVIDER',
            businessName='Ravi Electricals',
            businessAddress='4 Brigade Road',
            panNumber='abcde1234f',
            aadhaarNumber='123412341234',
        )
        assert response.status_code == 201

        with app.app_context():
            profile = ProviderProfile.query.filter_by(user_id=response.get_json()['data']['userId']).one()
            assert b'ABCDE1234F' not in profile.pan_number_encrypted
            assert decrypt_field(profile.pan_number_encrypted) == 'ABCDE1234F'
            assert profile.to_dict()['panNumber'] == '******234F'
            assert profile.is_verified is False

    def test_provider_invalid_pan(self, client):
        response = register(client, userType='PROVIDER', businessName='X', businessAddress='Y',
                            panNumber='1234')
        assert response.status_code == 400
        assert 'Invalid PAN number format.' in response.get_json()['errors']

    def test_non_string_email(self, client):
        response = register(client, email=12345)
        assert response.status_code == 400
        assert 'email must be a string.' in response.get_json()['errors']

    def test_non_string_password(self, client):
        response = register(client, password=12345678)
        assert response.status_code == 400
        assert 'password must be a string.' in response.get_json()['errors']

    def test_provider_non_string_business_name(self, client):
        response = register(client, userType='PROVIDER', businessName=42, businessAddress='4 Brigade Road')
        assert response.status_code == 400
        assert 'businessName must be a string.' in response.get_json()['errors']


class TestOTP:
    def test_verify_issues_tokens(self, client, verified_tokens):
        _, data = verified_tokens
        assert data['accessToken']
        assert data['refreshToken']
        assert data['user']['isVerified'] is True

    def test_wrong_code_counts_attempts(self, client):
        user_id = register(client).get_json()['data']['userId']
        response = client.post('/api/auth/verify-otp', json={'userId': user_id, 'code': '000000'})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'Invalid OTP. 4 attempts remaining.'

    def test_code_is_single_use(self, client):
        user_id = register(client).get_json()['data']['userId']
        first = client.post('/api/auth/verify-otp', json={'userId': user_id, 'code': '123456'})
        second = client.post('/api/auth/verify-otp', json={'userId': user_id, 'code': '123456'})
        assert first.status_code == 200
        assert second.status_code == 400

    def test_malformed_code(self, client):
        user_id = register(client).get_json()['data']['userId']
        response = client.post('/api/auth/verify-otp', json={'userId': user_id, 'code': '12ab'})
        assert response.status_code == 400

    def test_resend_respects_cooldown(self, client):
        user_id = register(client).get_json()['data']['userId']
        response = client.post('/api/auth/resend-otp', json={'userId': user_id})
        assert response.status_code == 429
        body = response.get_json()
        assert body['code'] == 'RATE_LIMITED'
        assert body['retryAfterSeconds'] > 0

    def test_otp_status(self, client):
        user_id = register(client).get_json()['data']['userId']
        data = client.get(f'/api/auth/otp-status/{user_id}').get_json()['data']
        assert data['hasActiveOTP'] is True
        assert data['purpose'] == 'REGISTRATION'
        assert data['channel'] == 'EMAIL'

    def test_otp_status_unknown_user(self, client):
        assert client.get('/api/auth/otp-status/999').status_code == 404

    def test_code_burned_after_max_attempts(self, client):
        user_id = register(client).get_json()['data']['userId']
        for _ in range(4):
            client.post('/api/auth/verify-otp', json={'userId': user_id, 'code': '000000'})
        response = client.post('/api/auth/verify-otp', json={'userId': user_id, 'code': '000000'})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'Too many invalid attempts. Please request a new OTP.'

        # The right code no longer works once the OTP is burned
        response = client.post('/api/auth/verify-otp', json={'userId': user_id, 'code': '123456'})
        assert response.status_code == 400

    def test_expired_code(self, app, client):
        user_id = register(client).get_json()['data']['userId']
        with app.app_context():
            OTPCode.query.filter_by(user_id=user_id).update(
                {'expires_at': datetime.utcnow() - timedelta(seconds=1)})
            db.session.commit()
        response = client.post('/api/auth/verify-otp', json={'userId': user_id, 'code': '123456'})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'OTP has expired. Please request a new one.'


class TestLogin:
    def test_login_sends_otp(self, client, verified_tokens):
        response = client.post('/api/auth/login', json={'identifier': 'asha@example.com', 'password': PASSWORD})
        assert response.status_code == 200
        user_id = response.get_json()['data']['userId']

        response = client.post('/api/auth/verify-otp', json={'userId': user_id, 'code': '123456'})
        assert response.status_code == 200
        assert response.get_json()['data']['accessToken']

    def test_wrong_password_reports_attempts(self, client, verified_tokens):
        response = client.post('/api/auth/login', json={'email': 'asha@example.com', 'password': 'Wrong!Pass1'})
        assert response.status_code == 401
        assert response.get_json()['attemptsRemaining'] == 4

    def test_lockout_after_repeated_failures(self, client, verified_tokens):
        for _ in range(4):
            response = client.post('/api/auth/login', json={'identifier': 'asha@example.com',
                                                            'password': 'Wrong!Pass1'})
            assert response.status_code == 401

        response = client.post('/api/auth/login', json={'identifier': 'asha@example.com', 'password': 'Wrong!Pass1'})
        assert response.status_code == 429
        assert 'locked for 5 minutes' in response.get_json()['message']

        # Even the right password is refused while locked
        response = client.post('/api/auth/login', json={'identifier': 'asha@example.com', 'password': PASSWORD})
        assert response.status_code == 429

    def test_blocked_account(self, app, client, verified_tokens):
        user_id, _ = verified_tokens
        with app.app_context():
            db.session.get(User, user_id).is_blocked = True
            db.session.commit()
        response = client.post('/api/auth/login', json={'identifier': 'asha@example.com', 'password': PASSWORD})
        assert response.status_code == 403

    def test_non_string_password(self, client, verified_tokens):
        response = client.post('/api/auth/login', json={'identifier': 'asha@example.com', 'password': 12345678})
        assert response.status_code == 400
        assert 'password must be a string.' in response.get_json()['errors']

    def test_lockout_doubles(self, client, verified_tokens):
        def fail_five_times():
            for _ in range(5):
                response = client.post('/api/auth/login', json={'identifier': 'asha@example.com',
                                                                'password': 'Wrong!Pass1'})
            return response

        response = fail_five_times()
        assert response.status_code == 429
        assert 'locked for 5 minutes' in response.get_json()['message']

        # Let the first lockout run out
        RateLimiter._failed_attempts['asha@example.com']['lockout_until'] = time.time() - 1

        response = fail_five_times()
        assert response.status_code == 429
        assert 'locked for 10 minutes' in response.get_json()['message']


class TestTokens:
    def test_me_requires_token(self, client):
        response = client.get('/api/auth/me')
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Access token required'

    def test_me_rejects_garbage_token(self, client):
        response = client.get('/api/auth/me', headers={'Authorization': 'Bearer not-a-jwt'})
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Invalid token'

    def test_refresh_token_is_not_an_access_token(self, client, verified_tokens):
        _, data = verified_tokens
        response = client.get('/api/auth/me', headers={'Authorization': f"Bearer {data['refreshToken']}"})
        assert response.status_code == 401

    def test_me(self, client, verified_tokens):
        _, data = verified_tokens
        response = client.get('/api/auth/me', headers={'Authorization': f"Bearer {data['accessToken']}"})
        assert response.status_code == 200
        assert response.get_json()['data']['email'] == 'asha@example.com'

    def test_refresh_rotates(self, client, verified_tokens):
        _, data = verified_tokens
        response = client.post('/api/auth/refresh', json={'refreshToken': data['refreshToken']})
        assert response.status_code == 200
        assert response.get_json()['data']['refreshToken'] != data['refreshToken']

    def test_refresh_reuse_revokes_everything(self, app, client, verified_tokens):
        user_id, data = verified_tokens
        rotated = client.post('/api/auth/refresh', json={'refreshToken': data['refreshToken']}).get_json()['data']

        reuse = client.post('/api/auth/refresh', json={'refreshToken': data['refreshToken']})
        assert reuse.status_code == 401
        assert reuse.get_json()['message'] == 'Refresh token has been revoked'

        # The newer token died with the rest of the family
        response = client.post('/api/auth/refresh', json={'refreshToken': rotated['refreshToken']})
        assert response.status_code == 401
        with app.app_context():
            assert RefreshSession.query.filter_by(user_id=user_id, revoked_at=None).count() == 0

    @pytest.mark.parametrize('field, value', [('is_blocked', True), ('is_active', False)])
    def test_refresh_for_inactive_account(self, app, client, verified_tokens, field, value):
        user_id, data = verified_tokens
        with app.app_context():
            setattr(db.session.get(User, user_id), field, value)
            db.session.commit()

        response = client.post('/api/auth/refresh', json={'refreshToken': data['refreshToken']})
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Account is not active'
        with app.app_context():
            assert RefreshSession.query.filter_by(user_id=user_id, revoked_at=None).count() == 0

    def test_logout_revokes_refresh(self, client, verified_tokens):
        _, data = verified_tokens
        headers = {'Authorization': f"Bearer {data['accessToken']}"}
        assert client.post('/api/auth/logout', headers=headers).status_code == 200
        response = client.post('/api/auth/refresh', json={'refreshToken': data['refreshToken']})
        assert response.status_code == 401


class TestProfile:
    def test_update_profile(self, client, customer):
        response = client.put('/api/users/profile', headers=customer.headers,
                              json={'city': 'Bengaluru', 'pincode': '560001'})
        assert response.status_code == 200
        assert response.get_json()['data']['profile']['pincode'] == '560001'

    def test_invalid_pincode(self, client, customer):
        response = client.put('/api/users/profile', headers=customer.headers, json={'pincode': '12'})
        assert response.status_code == 400

    def test_deactivate_ends_access(self, client, customer):
        assert client.post('/api/users/deactivate', headers=customer.headers).status_code == 200
        response = client.get('/api/users/profile', headers=customer.headers)
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Account is deactivated'


class RateLimitedConfig(TestingConfig):
    RATELIMIT_ENABLED = True
    LOGIN_RATE_LIMIT = '2 per minute'


@pytest.fixture
def limited_client():
    RateLimiter.reset_all()
    app = create_app(RateLimitedConfig)
    yield app.test_client()
    with app.app_context():
        db.session.remove()
        db.drop_all()


class TestRequestRateLimit:
    def test_retry_after_is_time_left_in_window(self, limited_client):
        for _ in range(2):
            response = limited_client.post('/api/auth/login', json={'identifier': 'nobody@example.com',
                                                                    'password': 'Wrong!Pass1'})
            assert response.status_code == 401

        response = limited_client.post('/api/auth/login', json={'identifier': 'nobody@example.com',
                                                                'password': 'Wrong!Pass1'})
        assert response.status_code == 429
        body = response.get_json()
        assert body['code'] == 'RATE_LIMITED'
        assert 1 <= body['retryAfterSeconds'] <= 60
