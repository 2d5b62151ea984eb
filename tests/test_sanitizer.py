"""
Unit and request-level tests for the input sanitizer
"""

import pytest

from servoley.sanitizer import InputRejected, Sanitizer


@pytest.fixture
def sanitizer():
    return Sanitizer(max_length=20, max_depth=3, max_items=3, max_keys=3)


class TestSanitizer:
    def test_strings_are_trimmed_and_null_bytes_dropped(self, sanitizer):
        assert sanitizer.clean({'name': '  Asha\x00 '}) == {'name': 'Asha'}

    def test_scalars_pass_through(self, sanitizer):
        assert sanitizer.clean([1, 2.5, None]) == [1, 2.5, None]
        assert sanitizer.clean(True) is True

    def test_prototype_keys_rejected(self, sanitizer):
        with pytest.raises(InputRejected):
            sanitizer.clean({'__proto__': {'isAdmin': True}})
        with pytest.raises(InputRejected):
            sanitizer.clean({'profile': {'constructor': 'x'}})

    def test_long_string_rejected(self, sanitizer):
        with pytest.raises(InputRejected) as excinfo:
            sanitizer.clean({'bio': 'x' * 21})
        assert excinfo.value.message == 'body.bio exceeds maximum allowed length'

    def test_depth_limit(self, sanitizer):
        with pytest.raises(InputRejected):
            sanitizer.clean({'a': {'b': {'c': {'d': 1}}}})

    def test_array_and_key_limits(self, sanitizer):
        with pytest.raises(InputRejected):
            sanitizer.clean([1, 2, 3, 4])
        with pytest.raises(InputRejected):
            sanitizer.clean({'a': 1, 'b': 2, 'c': 3, 'd': 4})

    def test_non_finite_number(self, sanitizer):
        with pytest.raises(InputRejected):
            sanitizer.clean({'amount': float('inf')})

    def test_long_key(self, sanitizer):
        with pytest.raises(InputRejected):
            sanitizer.clean({'k' * 65: 1})


class TestRequests:
    def test_prototype_pollution_attempt(self, client):
        response = client.post('/api/auth/login', json={'__proto__': {'isAdmin': True}, 'identifier': 'a'})
        assert response.status_code == 400
        assert response.get_json()['message'] == 'body.__proto__ is not allowed'

    def test_invalid_json(self, client):
        response = client.post('/api/auth/login', data='{"identifier": ', content_type='application/json')
        assert response.status_code == 400
        assert response.get_json()['message'] == 'Invalid JSON payload'

    def test_body_is_trimmed_before_validation(self, client):
        response = client.post('/api/auth/register', json={
            'email': '   ', 'firstName': 'Asha', 'lastName': 'Rao', 'password': 'Str0ng!Pass'})
        assert response.status_code == 400
        assert 'Either email or phone is required.' in response.get_json()['errors']

    def test_oversized_query_value(self, app, client):
        app.config['MAX_INPUT_LENGTH'] = 256
        response = client.get('/api/services?search=' + 'x' * 300)
        assert response.status_code == 400
