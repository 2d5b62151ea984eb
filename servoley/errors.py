"""
API error types and the JSON error handlers.
Every failure leaves the API as {"success": false, "message": ...}.
"""

import math
import re
import time

from flask import current_app, jsonify, request
from flask_limiter.errors import RateLimitExceeded
from werkzeug.exceptions import HTTPException


class APIError(Exception):
    """Operational error carrying its HTTP status."""

    status_code = 400

    def __init__(self, message, status_code=None, errors=None, code=None, extra=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors
        self.code = code
        self.extra = extra or {}

    def to_dict(self):
        body = {'success': False, 'message': self.message}
        if self.code:
            body['code'] = self.code
        if self.errors:
            body['errors'] = self.errors
        body.update(self.extra)
        return body


class ValidationError(APIError):
    status_code = 400

    def __init__(self, errors, message='Validation failed'):
        if isinstance(errors, str):
            errors = [errors]
        super().__init__(message, errors=list(errors))


class AuthError(APIError):
    status_code = 401


class PermissionDenied(APIError):
    status_code = 403


class NotFound(APIError):
    status_code = 404


class Conflict(APIError):
    status_code = 409


class TooManyRequests(APIError):
    status_code = 429

    def __init__(self, message, retry_after=None):
        extra = {'retryAfterSeconds': retry_after} if retry_after else None
        super().__init__(message, code='RATE_LIMITED', extra=extra)


_BEARER_RE = re.compile(r'(Bearer\s+)[A-Za-z0-9._-]+', re.IGNORECASE)
_SECRET_RE = re.compile(r'(api[_-]?key|secret|token|password)\s*[:=]\s*[\'"]?[^\'",\s]+', re.IGNORECASE)


def redact_secrets(text):
    """Mask bearer tokens and key=value secrets before they reach the logs."""
    text = _BEARER_RE.sub(r'\1[REDACTED]', str(text or ''))
    return _SECRET_RE.sub(r'\1=[REDACTED]', text)


def register_error_handlers(app):
    from . import db, limiter

    @app.errorhandler(APIError)
    def handle_api_error(error):
        db.session.rollback()
        if error.status_code >= 500:
            current_app.logger.error('%s %s failed: %s', request.method, request.path,
                                     redact_secrets(error.message))
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(RateLimitExceeded)
    def handle_rate_limit(error):
        body = {
            'success': False,
            'code': 'RATE_LIMITED',
            'message': 'Too many requests. Please try again later.',
        }
        current = limiter.current_limit
        if current is not None:
            body['retryAfterSeconds'] = max(1, math.ceil(current.reset_at - time.time()))
        return jsonify(body), 429

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        message = error.description or error.name
        if error.code == 404:
            message = 'Route not found'
        return jsonify({'success': False, 'message': message}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        db.session.rollback()
        current_app.logger.error('Request failed: %s %s: %s', request.method, request.path,
                                 redact_secrets(repr(error)))
        message = 'Internal server error'
        if current_app.debug:
            message = redact_secrets(str(error)) or message
        return jsonify({'success': False, 'message': message}), 500
