"""
In-app notifications. Clients poll /api/notifications; nothing is pushed.
"""

import logging
from datetime import datetime, timedelta

from . import db
from .models import Notification, User

logger = logging.getLogger(__name__)

CHAT_DEDUPE_WINDOW = timedelta(minutes=5)


def notify(user_id, type_, title, body=None, link=None, data=None):
    """Queue a notification in the current session. The caller commits."""
    notification = Notification(user_id=user_id, type=type_, title=title, body=body, link=link)
    notification.data = data
    db.session.add(notification)
    return notification


def notify_admins(type_, title, body=None, link=None, data=None):
    admins = User.query.filter_by(user_type='ADMIN', is_active=True).all()
    return [notify(admin.id, type_, title, body, link, data) for admin in admins]


def has_recent_chat_notification(user_id, order_id, now=None):
    """True when user_id still has an unread chat notification for order_id from the last 5 minutes."""
    since = (now or datetime.utcnow()) - CHAT_DEDUPE_WINDOW
    link = f'/orders/{order_id}/chat'
    return db.session.query(Notification.id).filter(
        Notification.user_id == user_id,
        Notification.type == 'CHAT',
        Notification.status == 'UNREAD',
        Notification.link == link,
        Notification.created_at >= since,
    ).first() is not None


def notify_chat_message(order, message, sender):
    """Tell the receiver about a new message unless they already have an unread one pending."""
    if has_recent_chat_notification(message.receiver_id, order.id):
        logger.debug('Chat notification for order %s suppressed', order.id)
        return None

    preview = message.content if len(message.content) <= 80 else message.content[:77] + '...'
    return notify(
        message.receiver_id,
        'CHAT',
        f'New message from {sender.full_name}',
        preview,
        link=f'/orders/{order.id}/chat',
        data={'orderId': order.id, 'messageId': message.id},
    )
