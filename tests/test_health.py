"""
Tests for the health check and the JSON error envelope
"""


class TestHealth:
    def test_health_reports_ok(self, client):
        response = client.get('/api/health')
        assert response.status_code == 200
        body = response.get_json()
        assert body['status'] == 'OK'
        assert body['version'] == '1.0.0'
        assert body['timestamp'].endswith('Z')

    def test_unknown_route_returns_json_404(self, client):
        response = client.get('/api/does-not-exist')
        assert response.status_code == 404
        assert response.get_json() == {'success': False, 'message': 'Route not found'}

    def test_wrong_method_returns_json_error(self, client):
        response = client.delete('/api/health')
        assert response.status_code == 405
        assert response.get_json()['success'] is False
