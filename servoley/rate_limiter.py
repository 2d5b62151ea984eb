"""
Rate limiting helpers.
Login brute force protection with exponential backoff: 5 failed attempts = 5 min lockout x 2^n,
a sliding window for escrow creation, and the Flask-Limiter key function.
"""

import logging
import threading
import time
from collections import defaultdict, deque

import jwt
from flask import current_app, request
from flask_limiter.util import get_remote_address

logger = logging.getLogger(__name__)


def rate_limit_key():
    """Client IP, plus the user id when a valid access token is presented."""
    ip = get_remote_address() or 'unknown'
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        from .tokens import decode_access_token
        try:
            payload = decode_access_token(auth_header[7:].strip())
        except jwt.PyJWTError:
            payload = None
        if payload and payload.get('sub'):
            return f"{ip}:user:{payload['sub']}"
    return ip


def only_failures(response):
    """deduct_when hook: only count requests that did not succeed."""
    return response.status_code >= 400


class RateLimiter:
    """Manages login rate limiting with exponential backoff."""

    # In-memory storage for failed attempts (would use Redis in production)
    _failed_attempts = {}  # {identifier: {'count': int, 'lockout_until': float, 'lockout_multiplier': int}}
    _lock = threading.Lock()

    @staticmethod
    def _settings():
        config = current_app.config
        return config['LOGIN_MAX_ATTEMPTS'], config['LOGIN_BASE_LOCKOUT_MINUTES']

    @classmethod
    def check_rate_limit(cls, identifier: str) -> tuple[bool, str, int]:
        """
        Check if an identifier is locked out.

        Returns:
            Tuple of (is_allowed, message, seconds_remaining)
        """
        key = identifier.lower()

        with cls._lock:
            user_data = cls._failed_attempts.get(key)
            if not user_data:
                return True, "", 0

            lockout_until = user_data.get('lockout_until', 0)
            if lockout_until > 0:
                current_time = time.time()

                if current_time < lockout_until:
                    remaining = int(lockout_until - current_time) + 1
                    minutes = remaining // 60
                    seconds = remaining % 60

                    message = f"Account temporarily locked. Try again in {minutes}m {seconds}s."
                    return False, message, remaining

                # Lockout expired, reset count but keep multiplier
                user_data['count'] = 0
                user_data['lockout_until'] = 0

        return True, "", 0

    @classmethod
    def record_failed_attempt(cls, identifier: str) -> tuple[bool, str, int]:
        """
        Record a failed login attempt.

        Returns:
            Tuple of (is_locked, message, lockout_seconds)
        """
        max_attempts, base_minutes = cls._settings()
        key = identifier.lower()

        with cls._lock:
            user_data = cls._failed_attempts.setdefault(key, {
                'count': 0,
                'lockout_until': 0,
                'lockout_multiplier': 1
            })
            user_data['count'] += 1
            attempts_remaining = max_attempts - user_data['count']

            if user_data['count'] >= max_attempts:
                # Calculate lockout duration with exponential backoff
                multiplier = user_data['lockout_multiplier']
                lockout_minutes = base_minutes * multiplier
                lockout_seconds = lockout_minutes * 60

                user_data['lockout_until'] = time.time() + lockout_seconds
                user_data['lockout_multiplier'] = multiplier * 2  # Double for next lockout
                user_data['count'] = 0  # Reset count for next round

                logger.warning('Login lockout for %s: %s minutes (next %s)',
                               identifier, lockout_minutes, lockout_minutes * 2)
                message = f"Too many failed attempts. Account locked for {lockout_minutes} minutes."
                return True, message, lockout_seconds

        message = f"Invalid credentials. {attempts_remaining} attempts remaining."
        return False, message, 0

    @classmethod
    def record_successful_login(cls, identifier: str):
        """Reset the failure count after a successful login."""
        key = identifier.lower()

        with cls._lock:
            if key in cls._failed_attempts:
                # Reset count but keep multiplier to prevent abuse
                cls._failed_attempts[key]['count'] = 0
                cls._failed_attempts[key]['lockout_until'] = 0

    @classmethod
    def get_attempts_remaining(cls, identifier: str) -> int:
        """Get number of login attempts remaining before lockout."""
        max_attempts, _ = cls._settings()
        data = cls._failed_attempts.get(identifier.lower())
        if not data:
            return max_attempts
        return max(0, max_attempts - data.get('count', 0))

    @classmethod
    def reset_user(cls, identifier: str):
        """Completely reset rate limiting for an identifier (admin function)."""
        with cls._lock:
            cls._failed_attempts.pop(identifier.lower(), None)

    @classmethod
    def reset_all(cls):
        with cls._lock:
            cls._failed_attempts.clear()


class SlidingWindowLimiter:
    """Per-key request counter over a sliding time window."""

    def __init__(self):
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key, limit, window_seconds, now=None):
        """
        Record a request for key.

        Returns:
            Tuple of (allowed, retry_after_seconds)
        """
        now = time.time() if now is None else now
        cutoff = now - window_seconds

        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                retry_after = int(hits[0] + window_seconds - now) + 1
                return False, max(retry_after, 1)
            hits.append(now)
        return True, 0

    def reset(self):
        with self._lock:
            self._hits.clear()


escrow_limiter = SlidingWindowLimiter()


def configured_limit(name):
    """Limit string read from app config at request time."""
    return lambda: current_app.config[name]
