"""
Account profile routes.
"""

from flask import Blueprint
from flask_login import current_user, login_required

from ..models import AuditLog
from .. import db
from ..errors import ValidationError
from ..sanitizer import get_json_body
from ..tokens import revoke_user_sessions
from ..utils import client_ip, success

users_bp = Blueprint('users', __name__)

PROFILE_FIELDS = {
    'firstName': ('first_name', 80),
    'lastName': ('last_name', 80),
    'address': ('address', 255),
    'city': ('city', 80),
    'state': ('state', 80),
    'pincode': ('pincode', 10),
}


@users_bp.route('/profile', methods=['GET'])
@login_required
def get_profile():
    return success(current_user.to_dict())


@users_bp.route('/profile', methods=['PUT'])
@login_required
def update_profile():
    data = get_json_body()
    errors = []
    changes = {}

    for key, (attr, max_length) in PROFILE_FIELDS.items():
        if key not in data:
            continue
        value = data[key]
        if value is not None and not isinstance(value, str):
            errors.append(f'{key} must be a string.')
            continue
        value = (value or '').strip()
        if key in ('firstName', 'lastName') and not value:
            errors.append(f'{key} cannot be empty.')
        elif len(value) > max_length:
            errors.append(f'{key} must be at most {max_length} characters.')
        elif key == 'pincode' and value and not (value.isdigit() and len(value) == 6):
            errors.append('pincode must be 6 digits.')
        else:
            changes[attr] = value or None

    if errors:
        raise ValidationError(errors)
    if not changes:
        raise ValidationError(['No profile fields to update.'])

    for attr, value in changes.items():
        setattr(current_user, attr, value)
    db.session.commit()

    return success(current_user.to_dict(), 'Profile updated successfully')


@users_bp.route('/deactivate', methods=['POST'])
@login_required
def deactivate():
    """Deactivate the caller's own account and end all sessions."""
    current_user.is_active = False
    revoke_user_sessions(current_user.id, commit=False)
    db.session.commit()

    AuditLog.log(
        action='USER_DEACTIVATED',
        user_id=current_user.id,
        ip_address=client_ip(),
        resource_type='user',
        resource_id=current_user.id
    )

    return success(message='Account deactivated successfully')
