"""
Tests for provider self-service routes
"""

import pytest


@pytest.fixture
def service_id(provider, make_service):
    return make_service(provider, price=1000)


class TestProfile:
    def test_me(self, client, provider):
        data = client.get('/api/provider/me', headers=provider.headers).get_json()['data']
        assert data['userType'] == 'PROVIDER'
        assert data['provider']['businessName'].startswith('Fixit')

    def test_customer_denied(self, client, customer):
        assert client.get('/api/provider/me', headers=customer.headers).status_code == 403

    def test_update_masks_identity(self, client, provider):
        response = client.patch('/api/provider/profile', headers=provider.headers, json={
            'area': 'Koramangala', 'bankAccount': '123456789012', 'gstNumber': '29abcde1234f1z5'})
        assert response.status_code == 200
        data = response.get_json()['data']
        assert data['area'] == 'Koramangala'
        assert data['bankAccount'] == '********9012'
        assert data['gstNumber'] == '29ABCDE1234F1Z5'

    def test_update_validation(self, client, provider):
        response = client.patch('/api/provider/profile', headers=provider.headers,
                                json={'businessName': '', 'experience': 'ten'})
        assert response.status_code == 400
        assert len(response.get_json()['errors']) == 2

    def test_non_string_business_name(self, client, provider):
        response = client.patch('/api/provider/profile', headers=provider.headers, json={'businessName': 42})
        assert response.status_code == 400
        assert 'businessName must be a string.' in response.get_json()['errors']

    def test_toggle_availability(self, client, provider):
        first = client.post('/api/provider/toggle-availability', headers=provider.headers)
        second = client.post('/api/provider/toggle-availability', headers=provider.headers)
        assert first.get_json()['data']['isOnline'] is True
        assert second.get_json()['data']['isOnline'] is False


class TestOrdersAndEarnings:
    def test_orders_filter(self, client, customer, provider, service_id, make_order):
        make_order(customer, provider, service_id)
        make_order(customer, provider, service_id, status='COMPLETED')
        data = client.get('/api/provider/orders?status=completed', headers=provider.headers).get_json()['data']
        assert [order['status'] for order in data['orders']] == ['COMPLETED']

    def test_stats(self, client, customer, provider, service_id, make_order):
        make_order(customer, provider, service_id, status='COMPLETED', amount=1000)
        make_order(customer, provider, service_id)
        data = client.get('/api/provider/stats', headers=provider.headers).get_json()['data']
        assert data['totalOrders'] == 2
        assert data['ordersByStatus']['PENDING'] == 1
        assert data['completedRevenue'] == 1000
        assert data['totalServices'] == 1

    def test_earnings_from_released_escrow(self, client, make_user, provider, service_id):
        customer = make_user('CUSTOMER', balance=1000)
        created = client.post('/api/escrow/transactions', headers=customer.headers,
                              json={'providerId': provider.id, 'serviceId': service_id, 'amount': 1000})
        transaction_id = created.get_json()['data']['id']
        client.post(f'/api/escrow/transactions/{transaction_id}/hold', headers=customer.headers, json={})
        client.post(f'/api/escrow/transactions/{transaction_id}/release', headers=customer.headers, json={})

        data = client.get('/api/provider/earnings', headers=provider.headers).get_json()['data']
        assert data['grossEarnings'] == 1000
        assert data['platformFees'] == 50
        assert data['netEarnings'] == 950
        assert data['transactionCount'] == 1
