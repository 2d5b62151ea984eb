"""
Order booking routes and the per-order chat used by polling clients.
"""

from datetime import datetime

from flask import Blueprint, request
from flask_login import current_user, login_required

from ..models import Message, Order, Service
from .. import db, limiter
from ..decorators import roles_required
from ..errors import APIError, Conflict, NotFound, PermissionDenied, ValidationError
from ..notifier import notify, notify_chat_message
from ..rate_limiter import configured_limit
from ..sanitizer import get_json_body
from ..state_machine import ACTIVE_ORDER_STATUSES, normalize_order_status
from ..utils import success
from ..validators import parse_datetime, parse_int

orders_bp = Blueprint('orders', __name__)

MAX_MESSAGE_LENGTH = 2000
CUSTOMER_CANCELLABLE = ('PENDING', 'ACCEPTED')


def _first(data, *keys):
    for key in keys:
        value = data.get(key)
        if value not in (None, ''):
            return value
    return None


def _order_for_party(order_id, allow_admin=True):
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound('Order not found')
    if current_user.id in (order.customer_id, order.provider_id):
        return order
    if allow_admin and current_user.is_admin():
        return order
    raise PermissionDenied('Access denied')


def _provider_available(provider):
    profile = provider.provider if provider else None
    return (provider is not None and provider.is_active and not provider.is_blocked
            and profile is not None and profile.is_active and profile.is_verified)


@orders_bp.route('', methods=['POST'])
@login_required
@roles_required('CUSTOMER')
def create_order():
    """Book a service slot. One active booking per provider per slot."""
    data = get_json_body()
    errors = []

    service_id = _first(data, 'serviceId', 'service_id')
    raw_date = _first(data, 'serviceDate', 'date', 'scheduledAt')
    address = _first(data, 'address', 'location')
    notes = _first(data, 'notes', 'problem', 'description')

    if service_id is None:
        errors.append('serviceId is required.')
    if raw_date is None:
        errors.append('serviceDate is required.')
    if not isinstance(address, str) or not address.strip():
        errors.append('address is required.')
    if notes is not None and not isinstance(notes, str):
        errors.append('notes must be a string.')
    if errors:
        raise ValidationError(errors)

    service_id = parse_int(service_id, 'serviceId', minimum=1)
    service_date = parse_datetime(raw_date, 'serviceDate')

    service = db.session.get(Service, service_id)
    if service is None:
        raise NotFound('Service not found')
    if not service.is_active:
        raise APIError('Service is not available', 400)
    if not _provider_available(service.provider):
        raise APIError('Provider is not available', 400)

    clash = Order.query.filter(
        Order.provider_id == service.provider_id,
        Order.service_date == service_date,
        Order.status.in_(ACTIVE_ORDER_STATUSES)
    ).first()
    if clash is not None:
        raise Conflict('Provider is already booked for this time slot')

    order = Order(
        customer_id=current_user.id,
        provider_id=service.provider_id,
        service_id=service.id,
        status='PENDING',
        total_amount=service.price,
        service_date=service_date,
        address=address.strip(),
        notes=notes.strip() if notes else None,
    )
    db.session.add(order)
    db.session.flush()

    notify(service.provider_id, 'ORDER', 'New order received',
           f'{current_user.full_name} booked {service.name}.', link=f'/orders/{order.id}',
           data={'orderId': order.id})
    db.session.commit()

    return success(order.to_dict(), 'Order created successfully', 201)


@orders_bp.route('', methods=['GET'])
@login_required
def list_orders():
    query = Order.query
    if current_user.is_customer():
        query = query.filter_by(customer_id=current_user.id)
    elif current_user.is_provider():
        query = query.filter_by(provider_id=current_user.id)

    status = request.args.get('status')
    if status:
        query = query.filter_by(status=normalize_order_status(status))

    rows = query.order_by(Order.created_at.desc(), Order.id.desc()).all()
    return success({'orders': [order.to_dict() for order in rows]})


@orders_bp.route('/<int:order_id>', methods=['GET'])
@login_required
def get_order(order_id):
    return success(_order_for_party(order_id).to_dict())


@orders_bp.route('/<int:order_id>/cancel', methods=['POST'])
@login_required
@roles_required('CUSTOMER')
def cancel_order(order_id):
    order = _order_for_party(order_id, allow_admin=False)
    if order.customer_id != current_user.id:
        raise PermissionDenied('Only the customer can cancel this order')
    if order.status not in CUSTOMER_CANCELLABLE:
        raise APIError(f'Order cannot be cancelled in status {order.status}', 400)

    reason = get_json_body().get('reason')
    now = datetime.utcnow()
    updated = Order.query.filter_by(id=order.id, status=order.status).update({
        'status': 'CANCELLED',
        'cancelled_at': now,
        'cancelled_by': current_user.id,
        'cancel_reason': str(reason)[:500] if reason else 'Cancelled by customer',
        'updated_at': now,
    }, synchronize_session=False)
    if not updated:
        raise Conflict('Order status was changed by another request')

    notify(order.provider_id, 'ORDER', 'Order cancelled',
           f'Order #{order.id} was cancelled by the customer.', link=f'/orders/{order.id}',
           data={'orderId': order.id, 'status': 'CANCELLED'})
    db.session.commit()
    db.session.refresh(order)

    return success(order.to_dict(), 'Order cancelled successfully')


@orders_bp.route('/<int:order_id>/messages', methods=['GET'])
@login_required
def list_messages(order_id):
    """Messages in ascending order; afterId returns only newer ones."""
    order = _order_for_party(order_id)
    query = Message.query.filter_by(order_id=order.id)
    after_id = request.args.get('afterId')
    if after_id:
        query = query.filter(Message.id > parse_int(after_id, 'afterId', minimum=0))
    rows = query.order_by(Message.id.asc()).all()
    return success({'messages': [message.to_dict(order) for message in rows]})


@orders_bp.route('/<int:order_id>/messages', methods=['POST'])
@login_required
@limiter.limit(configured_limit('MESSAGING_RATE_LIMIT'))
def send_message(order_id):
    order = _order_for_party(order_id, allow_admin=False)
    content = get_json_body().get('content')
    if not isinstance(content, str) or not content.strip():
        raise ValidationError(['Message content is required.'])
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError([f'Message must be at most {MAX_MESSAGE_LENGTH} characters.'])

    receiver_id = order.provider_id if current_user.id == order.customer_id else order.customer_id
    message = Message(order_id=order.id, sender_id=current_user.id, receiver_id=receiver_id,
                      content=content.strip())
    db.session.add(message)
    db.session.flush()

    notify_chat_message(order, message, current_user)
    db.session.commit()

    return success(message.to_dict(order), 'Message sent', 201)


@orders_bp.route('/<int:order_id>/messages/read', methods=['POST'])
@login_required
def mark_messages_read(order_id):
    order = _order_for_party(order_id, allow_admin=False)
    count = Message.query.filter(
        Message.order_id == order.id,
        Message.receiver_id == current_user.id,
        Message.read_at.is_(None)
    ).update({'read_at': datetime.utcnow()}, synchronize_session=False)
    db.session.commit()
    return success({'updated': count})
