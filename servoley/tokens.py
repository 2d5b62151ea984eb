"""
JWT access and refresh tokens.
Refresh tokens rotate on every use; their jti is stored hashed as a RefreshSession.
"""

import logging
import uuid
from datetime import datetime

import jwt
from flask import current_app, g, has_request_context, request

from . import db
from .crypto_utils import sha256_hex
from .errors import AuthError
from .models import RefreshSession, User

logger = logging.getLogger(__name__)


def _encode(payload):
    config = current_app.config
    return jwt.encode(payload, config['JWT_SECRET'], algorithm=config['JWT_ALGORITHM'])


def create_access_token(user):
    now = datetime.utcnow()
    payload = {
        'sub': str(user.id),
        'userType': user.user_type,
        'type': 'access',
        'iat': now,
        'exp': now + current_app.config['ACCESS_TOKEN_LIFETIME'],
    }
    return _encode(payload)


def decode_access_token(token):
    """Decode an access token. Raises jwt.PyJWTError when it is not usable."""
    config = current_app.config
    payload = jwt.decode(token, config['JWT_SECRET'], algorithms=[config['JWT_ALGORITHM']])
    if payload.get('type') != 'access':
        raise jwt.InvalidTokenError('Not an access token')
    return payload


def user_from_authorization(auth_header):
    """Return the active user behind an Authorization header, or None with g.auth_error set."""
    if not auth_header or not auth_header.startswith('Bearer '):
        g.auth_error = 'Access token required'
        return None

    try:
        payload = decode_access_token(auth_header[7:].strip())
    except jwt.ExpiredSignatureError:
        g.auth_error = 'Token expired'
        return None
    except jwt.PyJWTError:
        g.auth_error = 'Invalid token'
        return None

    user = db.session.get(User, int(payload['sub']))
    if user is None:
        g.auth_error = 'Invalid token. User not found.'
        return None
    if user.is_blocked:
        g.auth_error = 'Account is blocked'
        return None
    if not user.is_active:
        g.auth_error = 'Account is deactivated'
        return None
    return user


def issue_token_pair(user):
    """Create an access token and a new refresh session for user."""
    jti = uuid.uuid4().hex
    now = datetime.utcnow()
    expires_at = now + current_app.config['REFRESH_TOKEN_LIFETIME']
    refresh_token = _encode({
        'sub': str(user.id),
        'jti': jti,
        'type': 'refresh',
        'iat': now,
        'exp': expires_at,
    })

    session = RefreshSession(
        user_id=user.id,
        token_hash=sha256_hex(jti),
        user_agent=(request.headers.get('User-Agent') or '')[:255] if has_request_context() else None,
        ip_address=request.remote_addr if has_request_context() else None,
        expires_at=expires_at,
    )
    db.session.add(session)
    db.session.commit()

    return {'accessToken': create_access_token(user), 'refreshToken': refresh_token}


def revoke_user_sessions(user_id, commit=True):
    """Revoke every live refresh session of a user. Returns the number revoked."""
    count = RefreshSession.query.filter(
        RefreshSession.user_id == user_id,
        RefreshSession.revoked_at.is_(None)
    ).update({'revoked_at': datetime.utcnow()}, synchronize_session=False)
    if commit:
        db.session.commit()
    return count


def rotate_refresh_token(refresh_token):
    """Exchange a refresh token for a new pair, revoking the old session."""
    config = current_app.config
    try:
        payload = jwt.decode(refresh_token, config['JWT_SECRET'], algorithms=[config['JWT_ALGORITHM']])
    except jwt.ExpiredSignatureError:
        raise AuthError('Refresh token expired')
    except jwt.PyJWTError:
        raise AuthError('Invalid refresh token')

    if payload.get('type') != 'refresh' or not payload.get('jti'):
        raise AuthError('Invalid refresh token')

    session = RefreshSession.query.filter_by(token_hash=sha256_hex(payload['jti'])).first()
    if session is None or str(session.user_id) != payload.get('sub'):
        raise AuthError('Invalid refresh token')

    if session.revoked_at is not None:
        # A revoked token coming back means it leaked; end every session.
        revoked = revoke_user_sessions(session.user_id)
        logger.warning('Refresh token reuse for user %s, revoked %s sessions', session.user_id, revoked)
        raise AuthError('Refresh token has been revoked')

    if session.expires_at <= datetime.utcnow():
        raise AuthError('Refresh token expired')

    user = db.session.get(User, session.user_id)
    if user is None or user.is_blocked or not user.is_active:
        revoke_user_sessions(session.user_id)
        raise AuthError('Account is not active')

    claimed = RefreshSession.query.filter(
        RefreshSession.id == session.id,
        RefreshSession.revoked_at.is_(None)
    ).update({'revoked_at': datetime.utcnow()}, synchronize_session=False)
    db.session.commit()
    if not claimed:
        raise AuthError('Refresh token has been revoked')

    return user, issue_token_pair(user)
