"""
Idempotency-Key support for money-moving POST endpoints.
"""

import json
import logging
from datetime import datetime, timedelta
from functools import wraps

from flask import current_app, request
from flask_login import current_user
from sqlalchemy.exc import IntegrityError

from . import db
from .crypto_utils import sha256_hex
from .errors import APIError, AuthError, Conflict
from .models import IdempotencyKey
from .sanitizer import get_json_body

logger = logging.getLogger(__name__)

HEADER = 'Idempotency-Key'


def build_request_hash():
    payload = {
        'method': request.method,
        'path': request.path,
        'params': request.view_args or {},
        'query': request.args.to_dict(flat=True),
        'body': get_json_body(),
    }
    return sha256_hex(json.dumps(payload, sort_keys=True, separators=(',', ':'), default=str))


def _claim(scope, user_id, key, request_hash):
    """Insert or re-claim the key row. Returns (row, replay_response_or_None)."""
    now = datetime.utcnow()
    expires_at = now + timedelta(hours=current_app.config['IDEMPOTENCY_TTL_HOURS'])

    row = IdempotencyKey(scope=scope, user_id=user_id, key=key, request_hash=request_hash,
                         status='IN_PROGRESS', expires_at=expires_at)
    db.session.add(row)
    try:
        db.session.commit()
        return row, None
    except IntegrityError:
        db.session.rollback()

    existing = IdempotencyKey.query.filter_by(scope=scope, user_id=user_id, key=key).first()
    if existing is None:
        raise Conflict('Idempotency conflict')

    expired = existing.expires_at <= now
    if not expired and existing.request_hash != request_hash:
        raise Conflict('Idempotency-Key reuse with different request payload is not allowed')

    if not expired and existing.status == 'COMPLETED':
        replay = current_app.response_class(
            existing.response_body or json.dumps({'success': True, 'message': 'Request already processed'}),
            status=existing.response_code or 200,
            mimetype='application/json',
        )
        replay.headers['Idempotent-Replayed'] = 'true'
        return existing, replay

    if not expired and existing.status != 'FAILED':
        raise Conflict('Duplicate request is already in progress')

    # FAILED or expired rows can be taken over, but only by one request.
    claimed = IdempotencyKey.query.filter_by(
        id=existing.id, status=existing.status, request_hash=existing.request_hash
    ).update({
        'status': 'IN_PROGRESS',
        'request_hash': request_hash,
        'response_code': None,
        'response_body': None,
        'created_at': now,
        'expires_at': expires_at,
    }, synchronize_session=False)
    db.session.commit()
    if not claimed:
        raise Conflict('Duplicate request is already in progress')
    return db.session.get(IdempotencyKey, existing.id), None


def _finish(row_id, status, code=None, body=None):
    IdempotencyKey.query.filter_by(id=row_id).update({
        'status': status,
        'response_code': code,
        'response_body': body,
    }, synchronize_session=False)
    db.session.commit()


def require_idempotency(scope):
    """
    Decorator for authenticated POST views. Place it under login_required.

    The first request with a key runs the view and stores its response; a
    replay with the same payload gets the stored response back.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            key = (request.headers.get(HEADER) or '').strip()
            if not key:
                raise APIError(f'{HEADER} header is required', 400)
            if len(key) < 8 or len(key) > 128:
                raise APIError(f'Invalid {HEADER} format', 400)
            if not current_user.is_authenticated:
                raise AuthError('Authentication required for idempotent endpoint')

            row, replay = _claim(scope, current_user.id, key, build_request_hash())
            if replay is not None:
                return replay
            row_id = row.id

            try:
                rv = f(*args, **kwargs)
            except APIError as error:
                db.session.rollback()
                _finish(row_id, 'FAILED', error.status_code, json.dumps(error.to_dict()))
                raise
            except Exception:
                db.session.rollback()
                _finish(row_id, 'FAILED', 500)
                logger.exception('Idempotent %s request failed', scope)
                raise

            response = current_app.make_response(rv)
            status = 'COMPLETED' if 200 <= response.status_code < 400 else 'FAILED'
            _finish(row_id, status, response.status_code, response.get_data(as_text=True))
            return response
        return decorated_function
    return decorator


def purge_expired(before=None) -> int:
    before = before or datetime.utcnow()
    count = IdempotencyKey.query.filter(IdempotencyKey.expires_at < before).delete(synchronize_session=False)
    db.session.commit()
    return count
