"""
Tests for escrow creation guards and the hold/release/refund/dispute lifecycle
"""

import pytest

from servoley import db
from servoley.escrow_service import fraud_assessment
from servoley.models import EscrowTransaction
from servoley.rate_limiter import SlidingWindowLimiter
from servoley.wallet_service import credit, get_balance


@pytest.fixture
def funded_customer(make_user):
    return make_user('CUSTOMER', balance=1000)


@pytest.fixture
def service_id(provider, make_service):
    return make_service(provider, price=1000)


def create(client, customer, provider, service_id, amount=1000, **extra):
    payload = {'providerId': provider.id, 'serviceId': service_id, 'amount': amount}
    payload.update(extra)
    return client.post('/api/escrow/transactions', headers=customer.headers, json=payload)


def action(client, user, transaction_id, name, **payload):
    return client.post(f'/api/escrow/transactions/{transaction_id}/{name}', headers=user.headers, json=payload)


def balances(app, *users):
    with app.app_context():
        return [get_balance(user.id) for user in users]


@pytest.fixture
def held(client, funded_customer, provider, service_id):
    """A 1000 escrow held from the funded customer's wallet."""
    transaction_id = create(client, funded_customer, provider, service_id).get_json()['data']['id']
    assert action(client, funded_customer, transaction_id, 'hold').status_code == 200
    return transaction_id


class TestFraudAssessment:
    def test_clean_transaction(self):
        assert fraud_assessment(500, 0, 100000, 50) == {'riskScore': 0, 'reasons': [], 'isSafe': True}

    def test_single_flag_is_still_safe(self):
        result = fraud_assessment(150000, 0, 100000, 50)
        assert result['riskScore'] == 30
        assert result['isSafe'] is True

    def test_both_flags_block(self):
        result = fraud_assessment(150000, 50, 100000, 50)
        assert result['riskScore'] == 55
        assert result['isSafe'] is False
        assert result['reasons'] == ['High amount transaction', 'Excessive daily transactions']


class TestSlidingWindow:
    def test_window(self):
        limiter = SlidingWindowLimiter()
        assert limiter.hit('k', 2, 60, now=0) == (True, 0)
        assert limiter.hit('k', 2, 60, now=1) == (True, 0)
        assert limiter.hit('k', 2, 60, now=2) == (False, 59)
        assert limiter.hit('other', 2, 60, now=2) == (True, 0)
        assert limiter.hit('k', 2, 60, now=61) == (True, 0)


class TestCreate:
    def test_create(self, client, funded_customer, provider, service_id):
        response = create(client, funded_customer, provider, service_id)
        assert response.status_code == 201
        data = response.get_json()['data']
        assert data['status'] == 'pending'
        assert data['platformFeePercent'] == 5
        assert data['platformFee'] == 50
        assert data['isFunded'] is False

    def test_custom_fee(self, client, funded_customer, provider, service_id):
        data = create(client, funded_customer, provider, service_id, platformFeePercent=10).get_json()['data']
        assert data['platformFee'] == 100

    def test_missing_ids(self, client, funded_customer):
        response = client.post('/api/escrow/transactions', headers=funded_customer.headers, json={'amount': 10})
        assert response.status_code == 400
        assert response.get_json()['errors'] == ['Provider ID is required', 'Service ID is required']

    def test_non_positive_amount(self, client, funded_customer, provider, service_id):
        assert create(client, funded_customer, provider, service_id, amount=0).status_code == 400

    def test_amount_ceiling(self, client, funded_customer, provider, service_id):
        response = create(client, funded_customer, provider, service_id, amount=100001)
        assert response.status_code == 400
        assert 'exceeds maximum limit' in response.get_json()['message']

    def test_rate_window(self, app, client, funded_customer, provider, service_id):
        app.config['ESCROW_RATE_LIMIT_REQUESTS'] = 2
        assert create(client, funded_customer, provider, service_id).status_code == 201
        assert create(client, funded_customer, provider, service_id).status_code == 201
        response = create(client, funded_customer, provider, service_id)
        assert response.status_code == 429
        assert response.get_json()['code'] == 'RATE_LIMITED'

    def test_service_must_belong_to_provider(self, client, make_user, make_service, funded_customer, provider):
        other = make_user('PROVIDER')
        foreign_service = make_service(other)
        response = create(client, funded_customer, provider, foreign_service)
        assert response.status_code == 400

    def test_unknown_provider(self, client, funded_customer, service_id):
        response = client.post('/api/escrow/transactions', headers=funded_customer.headers,
                               json={'providerId': 999, 'serviceId': service_id, 'amount': 10})
        assert response.status_code == 404


class TestLifecycle:
    def test_hold_debits_customer(self, app, client, held, funded_customer):
        assert balances(app, funded_customer) == [0]
        with app.app_context():
            transaction = db.session.get(EscrowTransaction, held)
            assert transaction.status == 'held'
            assert transaction.is_funded is True

    def test_hold_needs_funds(self, app, client, customer, provider, service_id):
        transaction_id = create(client, customer, provider, service_id).get_json()['data']['id']
        response = action(client, customer, transaction_id, 'hold')
        assert response.status_code == 400
        assert response.get_json()['code'] == 'INSUFFICIENT_BALANCE'
        with app.app_context():
            assert db.session.get(EscrowTransaction, transaction_id).status == 'pending'

    def test_provider_cannot_hold(self, client, funded_customer, provider, service_id):
        transaction_id = create(client, funded_customer, provider, service_id).get_json()['data']['id']
        assert action(client, provider, transaction_id, 'hold').status_code == 403

    def test_full_release(self, app, client, held, funded_customer, provider):
        response = action(client, funded_customer, held, 'release')
        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['status'] == 'released'
        assert data['releasedAmount'] == 1000
        assert balances(app, funded_customer, provider) == [0, 950]

    def test_partial_release_refunds_rest(self, app, client, held, funded_customer, provider):
        response = action(client, funded_customer, held, 'release', releaseAmount=600)
        assert response.get_json()['data']['platformFee'] == 30
        assert balances(app, funded_customer, provider) == [400, 570]

    def test_release_twice_conflicts(self, client, held, funded_customer):
        action(client, funded_customer, held, 'release')
        assert action(client, funded_customer, held, 'release').status_code == 409

    def test_release_more_than_amount(self, client, held, funded_customer):
        response = action(client, funded_customer, held, 'release', releaseAmount=1500)
        assert response.status_code == 400

    def test_unfunded_release_conflicts(self, client, funded_customer, provider, service_id):
        transaction_id = create(client, funded_customer, provider, service_id).get_json()['data']['id']
        assert action(client, funded_customer, transaction_id, 'release').status_code == 409

    def test_provider_refund(self, app, client, held, funded_customer, provider):
        response = action(client, provider, held, 'refund')
        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['status'] == 'refunded'
        assert data['refundReason'] == 'Refund processed'
        assert balances(app, funded_customer, provider) == [1000, 0]

    def test_partial_refund_pays_provider_rest(self, app, client, held, funded_customer, provider):
        response = action(client, provider, held, 'refund', refundAmount=400, reason='Half the job done')
        assert response.get_json()['data']['refundReason'] == 'Half the job done'
        assert balances(app, funded_customer, provider) == [400, 570]

    def test_customer_cannot_refund(self, client, held, funded_customer):
        assert action(client, funded_customer, held, 'refund').status_code == 403

    def test_refund_pending_moves_no_money(self, app, client, funded_customer, provider, service_id):
        transaction_id = create(client, funded_customer, provider, service_id).get_json()['data']['id']
        assert action(client, provider, transaction_id, 'refund').status_code == 200
        assert balances(app, funded_customer, provider) == [1000, 0]

    def test_dispute_then_release(self, app, client, held, funded_customer, provider):
        response = action(client, funded_customer, held, 'dispute', disputeReason='Work incomplete',
                          initiatedBy='customer')
        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['status'] == 'disputed'
        assert data['disputedBy'] == 'customer'

        assert action(client, funded_customer, held, 'release').status_code == 200
        assert balances(app, provider) == [950]

    def test_dispute_initiator_must_match(self, client, held, funded_customer):
        response = action(client, funded_customer, held, 'dispute', disputeReason='x', initiatedBy='provider')
        assert response.status_code == 400

    def test_dispute_needs_reason(self, client, held, provider):
        assert action(client, provider, held, 'dispute').status_code == 400

    def test_outsider_is_denied(self, client, make_user, held):
        stranger = make_user('CUSTOMER')
        assert action(client, stranger, held, 'release').status_code == 403
        assert action(client, stranger, 999, 'release').status_code == 404

    def test_admin_can_release(self, client, held, admin):
        assert action(client, admin, held, 'release').status_code == 200


class TestQueries:
    def test_list_and_filter(self, client, held, funded_customer, provider, service_id, make_user):
        create(client, funded_customer, provider, service_id, amount=200)

        rows = client.get('/api/escrow/transactions', headers=provider.headers).get_json()['data']['transactions']
        assert len(rows) == 2

        rows = client.get('/api/escrow/transactions?status=held', headers=funded_customer.headers)
        assert [row['id'] for row in rows.get_json()['data']['transactions']] == [held]

        stranger = make_user('CUSTOMER')
        rows = client.get('/api/escrow/transactions', headers=stranger.headers).get_json()['data']['transactions']
        assert rows == []

    def test_invalid_status_filter(self, client, funded_customer):
        response = client.get('/api/escrow/transactions?status=lost', headers=funded_customer.headers)
        assert response.status_code == 400

    def test_account_balance(self, client, held, funded_customer):
        data = client.get('/api/escrow/account/balance', headers=funded_customer.headers).get_json()['data']
        assert data['accountId'] == f'escrow_{funded_customer.id}'
        assert data['heldAmount'] == 1000
        assert data['availableAmount'] == 0

    def test_auto_release(self, app, client, held, funded_customer, provider, service_id):
        response = client.post(f'/api/escrow/services/{service_id}/auto-release', headers=funded_customer.headers)
        assert response.status_code == 200
        assert response.get_json()['data']['id'] == held
        assert balances(app, provider) == [950]

    def test_auto_release_without_hold(self, client, funded_customer, service_id):
        response = client.post(f'/api/escrow/services/{service_id}/auto-release', headers=funded_customer.headers)
        assert response.status_code == 404


class TestCreatorRole:
    @pytest.mark.parametrize('role', ['PROVIDER', 'ADMIN'])
    def test_only_customers_open_escrow(self, client, make_user, provider, service_id, role):
        caller = make_user(role)
        response = create(client, caller, provider, service_id)
        assert response.status_code == 403
        assert response.get_json()['message'] == 'Access denied. Required role: CUSTOMER'


class TestExactAmounts:
    def test_hold_exact_total_of_credits(self, app, client, make_user, provider, service_id):
        customer = make_user('CUSTOMER', balance=1.00)
        with app.app_context():
            credit(customer.id, 1.14, 'CREDIT', 'Second top-up')
            db.session.commit()

        transaction_id = create(client, customer, provider, service_id, amount=2.14).get_json()['data']['id']
        response = action(client, customer, transaction_id, 'hold')
        assert response.status_code == 200
        assert response.get_json()['data']['amount'] == 2.14
        assert balances(app, customer) == [0]

    def test_fee_rounds_to_paise(self, app, client, funded_customer, provider, service_id):
        data = create(client, funded_customer, provider, service_id, amount=33.33).get_json()['data']
        assert data['platformFee'] == 1.67
