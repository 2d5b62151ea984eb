"""
Unit tests for validators, crypto helpers, the state machines and the CLI commands
"""

from datetime import datetime
from decimal import Decimal

import pytest

from servoley.crypto_utils import mask_value, payment_signature, verify_payment_signature
from servoley.errors import APIError, ValidationError, redact_secrets
from servoley.models import User
from servoley.state_machine import (can_transition_escrow, check_order_transition,
                                    normalize_order_status)
from servoley.validators import (normalize_phone, parse_amount, parse_datetime, parse_int,
                                 validate_password_strength)


class TestPasswordStrength:
    def test_strong_password(self):
        assert validate_password_strength('Str0ng!Pass') == (True, [])

    def test_weak_password_lists_every_problem(self):
        is_valid, errors = validate_password_strength('abc')
        assert is_valid is False
        assert len(errors) == 4


class TestParsing:
    def test_phone(self):
        assert normalize_phone('+919876543210') == '9876543210'
        assert normalize_phone('98765 43210') == '9876543210'
        assert normalize_phone('1234567890') is None
        assert normalize_phone(None) is None

    def test_amount(self):
        assert parse_amount('10.456') == Decimal('10.46')
        assert parse_amount(0.1) == Decimal('0.10')
        with pytest.raises(ValidationError):
            parse_amount('ten')
        with pytest.raises(ValidationError):
            parse_amount('1e40')
        with pytest.raises(ValidationError):
            parse_amount(True)
        with pytest.raises(ValidationError):
            parse_amount('NaN')
        with pytest.raises(ValidationError):
            parse_amount(0, exclusive_minimum=0)

    def test_int(self):
        assert parse_int('7', 'n') == 7
        assert parse_int(None, 'n', default=3) == 3
        with pytest.raises(ValidationError):
            parse_int('7.5', 'n')

    def test_datetime_is_naive_utc(self):
        assert parse_datetime('2030-01-01T15:30:00+05:30') == datetime(2030, 1, 1, 10, 0)
        assert parse_datetime('2030-01-01T10:00:00Z') == datetime(2030, 1, 1, 10, 0)
        with pytest.raises(ValidationError):
            parse_datetime('tomorrow')


class TestCrypto:
    def test_mask(self):
        assert mask_value('123456789012') == '********9012'
        assert mask_value('123') == '***'
        assert mask_value(None) is None

    def test_payment_signature(self):
        signature = payment_signature('order_1', 'pay_1', 'secret')
        assert verify_payment_signature('order_1', 'pay_1', signature, 'secret') is True
        assert verify_payment_signature('order_1', 'pay_2', signature, 'secret') is False
        assert verify_payment_signature('order_1', 'pay_1', signature, '') is False

    def test_redact_secrets(self):
        text = redact_secrets('Authorization: Bearer abc.def.ghi password=hunter2')
        assert 'abc.def.ghi' not in text
        assert 'hunter2' not in text


class TestStateMachines:
    def test_status_aliases(self):
        assert normalize_order_status('confirmed') == 'ACCEPTED'
        assert normalize_order_status('Processing') == 'IN_PROGRESS'
        with pytest.raises(ValidationError):
            normalize_order_status('lost')

    def test_order_transitions(self):
        check_order_transition('PENDING', 'ACCEPTED')
        with pytest.raises(APIError):
            check_order_transition('COMPLETED', 'CANCELLED')

    def test_escrow_transitions(self):
        assert can_transition_escrow('held', 'released') is True
        assert can_transition_escrow('pending', 'released') is False
        assert can_transition_escrow('refunded', 'held') is False


class TestCommands:
    def test_create_admin(self, app):
        runner = app.test_cli_runner()
        result = runner.invoke(args=['create-admin', '--email', 'Root@Example.com', '--password', 'Adm1n!Secure'])
        assert result.exit_code == 0, result.output

        with app.app_context():
            user = User.query.filter_by(email='root@example.com').one()
            assert user.user_type == 'ADMIN'
            assert user.is_verified is True

    def test_create_admin_rejects_weak_password(self, app):
        result = app.test_cli_runner().invoke(args=['create-admin', '--email', 'a@example.com',
                                                    '--password', 'weak'])
        assert result.exit_code != 0

    def test_purge_expired(self, app):
        result = app.test_cli_runner().invoke(args=['purge-expired'])
        assert result.exit_code == 0
        assert 'Purged 0 OTPs' in result.output
