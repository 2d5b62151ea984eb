"""
OTP Manager for passcode-based registration and login.
Generates, stores (hashed), and validates OTPs with a limited validity and attempt budget.
"""

import logging
from datetime import datetime, timedelta

from flask import current_app

from . import db
from .crypto_utils import generate_numeric_code, sha256_hex
from .models import OTPCode

logger = logging.getLogger(__name__)


class OTPManager:
    """Manages OTP generation, storage, and validation."""

    @staticmethod
    def _config(name):
        return current_app.config[name]

    @staticmethod
    def generate_otp() -> str:
        """Generate a numeric OTP."""
        if OTPManager._config('OTP_BYPASS'):
            return OTPManager._config('OTP_BYPASS_CODE')
        return generate_numeric_code(OTPManager._config('OTP_LENGTH'))

    @staticmethod
    def latest(user_id, purpose=None):
        query = OTPCode.query.filter_by(user_id=user_id, is_used=False)
        if purpose:
            query = query.filter_by(purpose=purpose)
        return query.order_by(OTPCode.created_at.desc(), OTPCode.id.desc()).first()

    @staticmethod
    def create_and_send(user, purpose: str) -> str:
        """
        Generate an OTP for user, store its hash and deliver it.

        Any earlier unused codes are retired so only the newest one verifies.

        Returns:
            The generated OTP
        """
        otp = OTPManager.generate_otp()
        channel = 'EMAIL' if user.email else 'SMS'
        validity = OTPManager._config('OTP_VALIDITY_SECONDS')

        OTPCode.query.filter_by(user_id=user.id, is_used=False).update(
            {'is_used': True}, synchronize_session=False)
        db.session.add(OTPCode(
            user_id=user.id,
            code_hash=sha256_hex(f'{user.id}:{otp}'),
            purpose=purpose,
            channel=channel,
            expires_at=datetime.utcnow() + timedelta(seconds=validity),
        ))
        db.session.commit()

        # No SMS or mail provider is wired in; the code goes to the log.
        destination = user.email or user.phone
        logger.info('OTP %s for %s via %s: %s (valid %ss)', purpose, destination, channel, otp, validity)
        return otp

    @staticmethod
    def verify_otp(user_id, submitted_otp: str) -> tuple[bool, str]:
        """
        Verify the submitted OTP against the latest stored OTP.

        Returns:
            Tuple of (is_valid, error_message)
        """
        record = OTPManager.latest(user_id)
        if record is None:
            return False, "No OTP found. Please request a new one."

        if record.expires_at <= datetime.utcnow():
            record.is_used = True
            db.session.commit()
            return False, "OTP has expired. Please request a new one."

        max_attempts = OTPManager._config('OTP_MAX_ATTEMPTS')
        if sha256_hex(f'{user_id}:{submitted_otp.strip()}') != record.code_hash:
            record.attempts = (record.attempts or 0) + 1
            if record.attempts >= max_attempts:
                record.is_used = True
                db.session.commit()
                return False, "Too many invalid attempts. Please request a new OTP."
            db.session.commit()
            remaining = max_attempts - record.attempts
            return False, f"Invalid OTP. {remaining} attempts remaining."

        # Single use
        claimed = OTPCode.query.filter_by(id=record.id, is_used=False).update(
            {'is_used': True}, synchronize_session=False)
        db.session.commit()
        if not claimed:
            return False, "OTP already used. Please request a new one."

        return True, "OTP verified successfully."

    @staticmethod
    def can_resend_otp(user_id) -> tuple[bool, int]:
        """
        Check if an OTP can be resent.

        Returns:
            Tuple of (can_resend, seconds_remaining)
        """
        record = OTPManager.latest(user_id)
        if record is None:
            return True, 0

        cooldown = OTPManager._config('OTP_RESEND_COOLDOWN_SECONDS')
        elapsed = (datetime.utcnow() - record.created_at).total_seconds()
        if elapsed >= cooldown:
            return True, 0
        return False, max(1, int(cooldown - elapsed))

    @staticmethod
    def status(user_id) -> dict:
        record = OTPManager.latest(user_id)
        active = record is not None and record.expires_at > datetime.utcnow()
        return {
            'hasActiveOTP': active,
            'expiresAt': record.expires_at.isoformat() + 'Z' if active else None,
            'purpose': record.purpose if active else None,
            'channel': record.channel if active else None,
        }

    @staticmethod
    def purge_expired(before=None) -> int:
        before = before or datetime.utcnow()
        count = OTPCode.query.filter(
            db.or_(OTPCode.expires_at < before, OTPCode.is_used.is_(True))
        ).delete(synchronize_session=False)
        db.session.commit()
        return count
