"""
Access control decorators. Use them under flask_login.login_required.
"""

from functools import wraps

from flask_login import current_user

from .errors import AuthError, PermissionDenied


def roles_required(*roles):
    """Decorator to require one of the given user types."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                raise AuthError('Authentication required')
            if current_user.user_type not in roles:
                raise PermissionDenied(f"Access denied. Required role: {' or '.join(roles)}")
            return f(*args, **kwargs)
        return decorated_function
    return decorator


admin_required = roles_required('ADMIN')


def verified_provider_required(f):
    """Decorator to require a provider whose business profile is verified."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            raise AuthError('Authentication required')
        if not current_user.is_provider():
            raise PermissionDenied('Access denied. Required role: PROVIDER')
        if current_user.provider is None or not current_user.provider.is_verified:
            raise PermissionDenied('Provider account not verified')
        return f(*args, **kwargs)
    return decorated_function


def verified_account_required(f):
    """Decorator to require an OTP-verified account."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            raise AuthError('Authentication required')
        if not current_user.is_verified:
            raise PermissionDenied('Account not verified')
        return f(*args, **kwargs)
    return decorated_function
