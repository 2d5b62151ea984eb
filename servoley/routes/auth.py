"""
Authentication routes for ServoLeY.
Handles registration, OTP verification, login with lockout, token refresh and logout.
"""

from datetime import datetime

from flask import Blueprint, request
from flask_login import current_user, login_required

from ..models import User, ProviderProfile, AuditLog
from .. import db, bcrypt, limiter
from ..crypto_utils import encrypt_field
from ..errors import APIError, AuthError, NotFound, PermissionDenied, TooManyRequests, ValidationError
from ..otp_manager import OTPManager
from ..rate_limiter import RateLimiter, configured_limit, only_failures
from ..sanitizer import get_json_body
from ..tokens import issue_token_pair, revoke_user_sessions, rotate_refresh_token
from ..utils import client_ip, success
from ..validators import (is_valid_email, is_valid_otp, normalize_phone, parse_int,
                          validate_password_strength, validate_provider_identity)
from ..wallet_service import get_or_create_wallet

auth_bp = Blueprint('auth', __name__)

# Roles open to self-registration; admins are created with `flask create-admin`.
REGISTRABLE_TYPES = ['CUSTOMER', 'PROVIDER']
PROVIDER_TYPES = ['FREELANCER', 'BUSINESS']


def _text(data, key, errors):
    """Stripped string value of key; non-string JSON values are reported in errors."""
    value = data.get(key)
    if value is None:
        return ''
    if not isinstance(value, str):
        errors.append(f'{key} must be a string.')
        return ''
    return value.strip()


def find_user_by_identifier(identifier):
    """Look a user up by e-mail or phone number."""
    identifier = (identifier or '').strip()
    if '@' in identifier:
        return User.query.filter_by(email=identifier.lower()).first()
    phone = normalize_phone(identifier)
    if phone:
        return User.query.filter_by(phone=phone).first()
    return None


@auth_bp.route('/register', methods=['POST'])
@limiter.limit(configured_limit('REGISTER_RATE_LIMIT'))
def register():
    """
    Register a customer or provider.
    The account stays unverified until the registration OTP is confirmed.
    """
    data = get_json_body()

    # Validation
    errors = []
    email = _text(data, 'email', errors).lower() or None
    raw_phone = data.get('phone')
    first_name = _text(data, 'firstName', errors)
    last_name = _text(data, 'lastName', errors)
    password = data.get('password') or ''
    if not isinstance(password, str):
        errors.append('password must be a string.')
        password = ''
    user_type = str(data.get('userType') or 'CUSTOMER').upper()

    if user_type not in REGISTRABLE_TYPES:
        errors.append('User type must be CUSTOMER or PROVIDER.')

    if not email and not raw_phone:
        errors.append('Either email or phone is required.')
    if email and not is_valid_email(email):
        errors.append('Please provide a valid email address.')
    phone = normalize_phone(raw_phone)
    if raw_phone and not phone:
        errors.append('Please provide a valid Indian mobile number.')

    if not first_name:
        errors.append('First name is required.')
    if not last_name:
        errors.append('Last name is required.')

    is_valid_password, password_errors = validate_password_strength(password)
    if not is_valid_password:
        errors.extend(password_errors)

    business_name = business_address = ''
    if user_type == 'PROVIDER':
        business_name = _text(data, 'businessName', errors)
        business_address = _text(data, 'businessAddress', errors)
        category = _text(data, 'category', errors)
        area = _text(data, 'area', errors)
        upi_id = _text(data, 'upiId', errors)
        if not business_name:
            errors.append('Business name is required for providers.')
        if not business_address:
            errors.append('Business address is required for providers.')
        if data.get('providerType') and str(data['providerType']).upper() not in PROVIDER_TYPES:
            errors.append('Provider type must be FREELANCER or BUSINESS.')
        validate_provider_identity(data, errors)

    # Uniqueness checks
    if email and User.query.filter_by(email=email).first():
        errors.append('Email already registered.')
    if phone and User.query.filter_by(phone=phone).first():
        errors.append('Phone number already registered.')

    if errors:
        raise ValidationError(errors)

    user = User(
        email=email,
        phone=phone,
        password_hash=bcrypt.generate_password_hash(password).decode('utf-8'),
        user_type=user_type,
        first_name=first_name,
        last_name=last_name,
        is_verified=False,
    )
    db.session.add(user)
    db.session.flush()
    get_or_create_wallet(user.id)

    if user_type == 'PROVIDER':
        experience = data.get('experience')
        db.session.add(ProviderProfile(
            user_id=user.id,
            business_name=business_name,
            provider_type=str(data.get('providerType') or 'FREELANCER').upper(),
            category=category or 'General',
            area=area or 'Not specified',
            address=business_address,
            experience=int(experience) if experience not in (None, '') else None,
            pan_number_encrypted=encrypt_field(str(data.get('panNumber') or '').upper()),
            aadhaar_number_encrypted=encrypt_field(data.get('aadhaarNumber')),
            bank_account_encrypted=encrypt_field(data.get('bankAccount')),
            gst_number=str(data.get('gstNumber') or '').upper() or None,
            upi_id=upi_id or None,
        ))
    db.session.commit()

    OTPManager.create_and_send(user, 'REGISTRATION')

    AuditLog.log(
        action='USER_REGISTERED',
        user_id=user.id,
        ip_address=client_ip(),
        details={'user_type': user_type, 'channel': 'EMAIL' if email else 'SMS'}
    )

    return success(
        {'userId': user.id, 'userType': user.user_type, 'isVerified': False},
        'Registration successful. Please verify the OTP sent to you.',
        201,
    )


@auth_bp.route('/verify-otp', methods=['POST'])
@limiter.limit(configured_limit('OTP_VERIFY_RATE_LIMIT'), deduct_when=only_failures)
def verify_otp():
    """Confirm an OTP and issue the token pair."""
    data = get_json_body()
    user_id = parse_int(data.get('userId'), 'userId', minimum=1)
    code = str(data.get('code') or data.get('otp') or '').strip()
    if not is_valid_otp(code):
        raise ValidationError(['OTP must be 6 digits.'])

    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound('User not found')
    if user.is_blocked or not user.is_active:
        raise PermissionDenied('Account is blocked or deactivated')

    is_valid, message = OTPManager.verify_otp(user.id, code)
    if not is_valid:
        AuditLog.log(action='OTP_FAILED', user_id=user.id, ip_address=client_ip())
        raise APIError(message, 400)

    first_verification = not user.is_verified
    user.is_verified = True
    user.last_login_at = datetime.utcnow()
    db.session.commit()

    tokens = issue_token_pair(user)

    AuditLog.log(
        action='USER_VERIFIED' if first_verification else 'LOGIN_SUCCESS',
        user_id=user.id,
        ip_address=client_ip()
    )

    return success(dict(tokens, user=user.to_dict()), message)


@auth_bp.route('/resend-otp', methods=['POST'])
@limiter.limit(configured_limit('AUTH_RATE_LIMIT'))
def resend_otp():
    data = get_json_body()
    user_id = parse_int(data.get('userId'), 'userId', minimum=1)
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound('User not found')
    if user.is_blocked or not user.is_active:
        raise PermissionDenied('Account is blocked or deactivated')

    can_resend, wait = OTPManager.can_resend_otp(user.id)
    if not can_resend:
        raise TooManyRequests(f'Please wait {wait} seconds before requesting a new OTP.', retry_after=wait)

    OTPManager.create_and_send(user, 'LOGIN' if user.is_verified else 'REGISTRATION')
    return success({'userId': user.id}, 'A new OTP has been sent.')


@auth_bp.route('/login', methods=['POST'])
@limiter.limit(configured_limit('LOGIN_RATE_LIMIT'), deduct_when=only_failures)
def login():
    """
    Password check with lockout, followed by a LOGIN OTP.
    Brute force protection uses exponential backoff per identifier.
    """
    data = get_json_body()
    identifier = str(data.get('identifier') or data.get('email') or data.get('phone') or '').strip()
    password = data.get('password') or ''
    if not isinstance(password, str):
        raise ValidationError(['password must be a string.'])
    if not identifier or not password:
        raise ValidationError(['Identifier and password are required.'])

    # Check rate limiting first
    is_allowed, lockout_message, remaining_seconds = RateLimiter.check_rate_limit(identifier)
    if not is_allowed:
        AuditLog.log(
            action='LOGIN_BLOCKED_RATE_LIMIT',
            ip_address=client_ip(),
            details={'identifier': identifier, 'lockout_seconds': remaining_seconds}
        )
        raise TooManyRequests(lockout_message, retry_after=remaining_seconds)

    user = find_user_by_identifier(identifier)

    if user is None or not bcrypt.check_password_hash(user.password_hash, password):
        is_locked, message, lockout_seconds = RateLimiter.record_failed_attempt(identifier)
        AuditLog.log(
            action='LOGIN_FAILED',
            user_id=user.id if user else None,
            ip_address=client_ip(),
            details={'identifier': identifier}
        )
        if is_locked:
            raise TooManyRequests(message, retry_after=lockout_seconds)
        raise AuthError(message, extra={'attemptsRemaining': RateLimiter.get_attempts_remaining(identifier)})

    if user.is_blocked:
        raise PermissionDenied('Your account has been blocked.')
    if not user.is_active:
        raise PermissionDenied('Your account has been deactivated.')

    # Record successful login attempt (resets counter)
    RateLimiter.record_successful_login(identifier)

    OTPManager.create_and_send(user, 'LOGIN')

    AuditLog.log(
        action='LOGIN_OTP_SENT',
        user_id=user.id,
        ip_address=client_ip()
    )

    return success({'userId': user.id, 'isVerified': bool(user.is_verified)},
                   'OTP sent. Please verify to complete login.')


@auth_bp.route('/refresh', methods=['POST'])
@limiter.limit(configured_limit('AUTH_RATE_LIMIT'))
def refresh():
    data = get_json_body()
    token = data.get('refreshToken')
    if not token or not isinstance(token, str):
        raise ValidationError(['refreshToken is required.'])
    user, tokens = rotate_refresh_token(token)
    return success(dict(tokens, user=user.to_dict()), 'Token refreshed')


@auth_bp.route('/me')
@login_required
def me():
    return success(current_user.to_dict())


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    """Revoke every refresh session of the current user."""
    revoked = revoke_user_sessions(current_user.id)

    AuditLog.log(
        action='LOGOUT',
        user_id=current_user.id,
        ip_address=client_ip(),
        details={'sessions_revoked': revoked}
    )

    return success(message='Logged out successfully.')


@auth_bp.route('/otp-status/<int:user_id>')
@limiter.limit(configured_limit('AUTH_RATE_LIMIT'))
def otp_status(user_id):
    if db.session.get(User, user_id) is None:
        raise NotFound('User not found')
    return success(OTPManager.status(user_id))
