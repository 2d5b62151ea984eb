"""
Maintenance commands: `flask --app run create-admin` and `flask --app run purge-expired`.
"""

from datetime import datetime

import click

from . import bcrypt, db
from .idempotency import purge_expired as purge_idempotency_keys
from .models import AuditLog, RefreshSession, User
from .otp_manager import OTPManager
from .validators import is_valid_email, validate_password_strength
from .wallet_service import get_or_create_wallet


def register_commands(app):
    @app.cli.command('create-admin')
    @click.option('--email', prompt=True)
    @click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option('--first-name', default='Platform')
    @click.option('--last-name', default='Admin')
    def create_admin(email, password, first_name, last_name):
        """Create a verified admin account."""
        email = email.strip().lower()
        if not is_valid_email(email):
            raise click.BadParameter('Invalid email address.', param_hint='--email')
        ok, errors = validate_password_strength(password)
        if not ok:
            raise click.BadParameter(' '.join(errors), param_hint='--password')
        if User.query.filter_by(email=email).first():
            raise click.ClickException('Email already registered.')

        user = User(
            email=email,
            password_hash=bcrypt.generate_password_hash(password).decode('utf-8'),
            user_type='ADMIN',
            first_name=first_name,
            last_name=last_name,
            is_verified=True,
        )
        db.session.add(user)
        db.session.flush()
        get_or_create_wallet(user.id)
        db.session.commit()

        AuditLog.log(action='ADMIN_CREATED', user_id=user.id, details={'source': 'cli'})
        click.echo(f'Admin {email} created with id {user.id}.')

    @app.cli.command('purge-expired')
    def purge_expired():
        """Delete expired OTPs, idempotency keys and refresh sessions."""
        now = datetime.utcnow()
        otps = OTPManager.purge_expired(now)
        keys = purge_idempotency_keys(now)
        sessions = RefreshSession.query.filter(RefreshSession.expires_at < now).delete(synchronize_session=False)
        db.session.commit()
        click.echo(f'Purged {otps} OTPs, {keys} idempotency keys, {sessions} refresh sessions.')
