"""
Notification feed routes.
"""

from datetime import datetime

from flask import Blueprint, request
from flask_login import current_user, login_required

from ..models import Notification
from .. import db
from ..errors import NotFound, ValidationError
from ..sanitizer import get_json_body
from ..utils import success
from ..validators import get_pagination, pagination_meta

notifications_bp = Blueprint('notifications', __name__)

STATUSES = ('UNREAD', 'READ')


@notifications_bp.route('/list')
@login_required
def list_notifications():
    page, limit = get_pagination(request.args, default_limit=20)
    query = Notification.query.filter_by(user_id=current_user.id)

    status = (request.args.get('status') or '').upper()
    if status:
        if status not in STATUSES:
            raise ValidationError(['status must be UNREAD or READ.'])
        query = query.filter_by(status=status)

    results = query.order_by(Notification.created_at.desc(), Notification.id.desc()).paginate(
        page=page, per_page=limit, error_out=False)

    return success({
        'notifications': [notification.to_dict() for notification in results.items],
        'pagination': pagination_meta(results),
    })


@notifications_bp.route('/mark-read', methods=['POST'])
@login_required
def mark_read():
    ids = get_json_body().get('ids')
    if not isinstance(ids, list) or not ids:
        raise ValidationError(['ids must be a non-empty array.'])
    if not all(isinstance(item, int) and not isinstance(item, bool) for item in ids):
        raise ValidationError(['ids must contain notification ids.'])

    count = Notification.query.filter(
        Notification.user_id == current_user.id,
        Notification.id.in_(ids),
        Notification.status == 'UNREAD'
    ).update({'status': 'READ', 'read_at': datetime.utcnow()}, synchronize_session=False)
    db.session.commit()
    return success({'updated': count}, 'Notifications marked as read')


@notifications_bp.route('/read-all', methods=['POST'])
@login_required
def read_all():
    count = Notification.query.filter_by(user_id=current_user.id, status='UNREAD').update(
        {'status': 'READ', 'read_at': datetime.utcnow()}, synchronize_session=False)
    db.session.commit()
    return success({'updated': count}, 'All notifications marked as read')


@notifications_bp.route('/unread-count')
@login_required
def unread_count():
    count = Notification.query.filter_by(user_id=current_user.id, status='UNREAD').count()
    return success({'count': count})


@notifications_bp.route('/<int:notification_id>', methods=['DELETE'])
@login_required
def delete_notification(notification_id):
    notification = Notification.query.filter_by(id=notification_id, user_id=current_user.id).first()
    if notification is None:
        raise NotFound('Notification not found')
    db.session.delete(notification)
    db.session.commit()
    return success(message='Notification deleted')
