"""
Provider self-service routes: business profile, availability, orders and earnings.
"""

from datetime import datetime
from decimal import Decimal

from flask import Blueprint, request
from flask_login import current_user, login_required

from ..models import EscrowTransaction, Order, ProviderProfile, round2
from .. import db
from ..crypto_utils import encrypt_field
from ..decorators import roles_required
from ..errors import Conflict, NotFound, ValidationError
from ..notifier import notify
from ..sanitizer import get_json_body
from ..state_machine import ORDER_STATUSES, check_order_transition, normalize_order_status
from ..utils import success
from ..validators import parse_date_range, validate_provider_identity

provider_bp = Blueprint('provider', __name__)

TEXT_FIELDS = {
    'businessName': ('business_name', 120),
    'category': ('category', 80),
    'area': ('area', 120),
    'address': ('address', 255),
    'upiId': ('upi_id', 80),
}
ENCRYPTED_FIELDS = {
    'panNumber': 'pan_number_encrypted',
    'aadhaarNumber': 'aadhaar_number_encrypted',
    'bankAccount': 'bank_account_encrypted',
}

STATUS_MESSAGES = {
    'ACCEPTED': 'Your order has been accepted',
    'REJECTED': 'Your order has been rejected',
    'IN_PROGRESS': 'Your order is in progress',
    'COMPLETED': 'Your order has been completed',
    'CANCELLED': 'Your order has been cancelled by the provider',
}


def _profile():
    profile = current_user.provider
    if profile is None:
        raise NotFound('Provider profile not found')
    return profile


@provider_bp.route('/me')
@login_required
@roles_required('PROVIDER')
def me():
    _profile()
    return success(current_user.to_dict())


@provider_bp.route('/profile', methods=['PATCH'])
@login_required
@roles_required('PROVIDER')
def update_profile():
    """Update business fields. Identity numbers are re-encrypted on change."""
    profile = _profile()
    data = get_json_body()
    errors = []

    for key, (_, max_length) in TEXT_FIELDS.items():
        if key in data and data[key] is not None:
            if not isinstance(data[key], str):
                errors.append(f'{key} must be a string.')
            elif len(data[key]) > max_length:
                errors.append(f'{key} must be at most {max_length} characters.')
    if 'businessName' in data and not str(data.get('businessName') or '').strip():
        errors.append('Business name cannot be empty.')
    if data.get('providerType') and str(data['providerType']).upper() not in ('FREELANCER', 'BUSINESS'):
        errors.append('Provider type must be FREELANCER or BUSINESS.')
    validate_provider_identity(data, errors)

    if errors:
        raise ValidationError(errors)

    for key, (attr, _) in TEXT_FIELDS.items():
        if key in data:
            setattr(profile, attr, (data[key] or '').strip() or None)
    for key, attr in ENCRYPTED_FIELDS.items():
        if key in data:
            value = data[key]
            if key == 'panNumber' and value:
                value = str(value).upper()
            setattr(profile, attr, encrypt_field(value))
    if data.get('providerType'):
        profile.provider_type = str(data['providerType']).upper()
    if 'gstNumber' in data:
        profile.gst_number = str(data['gstNumber'] or '').upper() or None
    if 'experience' in data:
        profile.experience = int(data['experience']) if data['experience'] not in (None, '') else None

    db.session.commit()
    return success(profile.to_dict(), 'Provider profile updated')


@provider_bp.route('/toggle-availability', methods=['POST'])
@login_required
@roles_required('PROVIDER')
def toggle_availability():
    profile = _profile()
    profile.is_online = not profile.is_online
    db.session.commit()
    state = 'online' if profile.is_online else 'offline'
    return success({'isOnline': bool(profile.is_online)}, f'You are now {state}')


@provider_bp.route('/orders')
@login_required
@roles_required('PROVIDER')
def orders():
    query = Order.query.filter_by(provider_id=current_user.id)
    status = request.args.get('status')
    if status:
        query = query.filter_by(status=normalize_order_status(status))
    rows = query.order_by(Order.created_at.desc(), Order.id.desc()).all()
    return success({'orders': [order.to_dict() for order in rows]})


@provider_bp.route('/orders/<int:order_id>/status', methods=['PUT'])
@login_required
@roles_required('PROVIDER')
def update_order_status(order_id):
    """Move one of the provider's orders along the order state machine."""
    order = Order.query.filter_by(id=order_id, provider_id=current_user.id).first()
    if order is None:
        raise NotFound('Order not found')

    data = get_json_body()
    target = normalize_order_status(data.get('status'))
    current = order.status
    check_order_transition(current, target)

    now = datetime.utcnow()
    values = {'status': target, 'updated_at': now}
    if target == 'COMPLETED':
        values['completed_at'] = now
    elif target == 'CANCELLED':
        values['cancelled_at'] = now
        values['cancelled_by'] = current_user.id
        values['cancel_reason'] = (data.get('reason') or 'Cancelled by provider')[:500]

    updated = Order.query.filter_by(id=order.id, status=current).update(values, synchronize_session=False)
    if not updated:
        raise Conflict('Order status was changed by another request')

    if target == 'COMPLETED':
        ProviderProfile.query.filter_by(user_id=current_user.id).update(
            {ProviderProfile.total_orders: ProviderProfile.total_orders + 1}, synchronize_session=False)

    notify(order.customer_id, 'ORDER', STATUS_MESSAGES.get(target, 'Order updated'),
           f'Order #{order.id} is now {target}.', link=f'/orders/{order.id}',
           data={'orderId': order.id, 'status': target})
    db.session.commit()
    db.session.refresh(order)

    return success(order.to_dict(), f'Order status updated to {target}')


@provider_bp.route('/stats')
@login_required
@roles_required('PROVIDER')
def stats():
    profile = _profile()
    counts = dict(
        db.session.query(Order.status, db.func.count(Order.id))
        .filter(Order.provider_id == current_user.id)
        .group_by(Order.status)
        .all()
    )
    revenue = db.session.query(db.func.coalesce(db.func.sum(Order.total_amount), 0)).filter(
        Order.provider_id == current_user.id, Order.status == 'COMPLETED').scalar()

    return success({
        'totalOrders': sum(counts.values()),
        'ordersByStatus': {status: counts.get(status, 0) for status in ORDER_STATUSES},
        'completedRevenue': round2(revenue),
        'rating': profile.rating or 0,
        'totalServices': current_user.services.filter_by(is_active=True).count(),
        'isOnline': bool(profile.is_online),
    })


@provider_bp.route('/earnings')
@login_required
@roles_required('PROVIDER')
def earnings():
    """Released escrow net of platform fees, optionally within startDate/endDate."""
    start, end = parse_date_range(request.args)
    query = EscrowTransaction.query.filter(
        EscrowTransaction.provider_id == current_user.id,
        EscrowTransaction.status.in_(('released', 'refunded')),
    )
    if start:
        query = query.filter(EscrowTransaction.created_at >= start)
    if end:
        query = query.filter(EscrowTransaction.created_at <= end)

    gross = Decimal(0)
    fees = Decimal(0)
    rows = []
    for row in query.order_by(EscrowTransaction.created_at.desc()).all():
        if row.status == 'released':
            paid = row.released_amount if row.released_amount is not None else row.amount
        else:
            paid = row.amount - (row.refunded_amount or row.amount) if row.is_funded else 0
        if paid <= 0:
            continue
        gross += paid
        fees += row.platform_fee or 0
        rows.append(row.to_dict())

    return success({
        'grossEarnings': round2(gross),
        'platformFees': round2(fees),
        'netEarnings': round2(gross - fees),
        'transactionCount': len(rows),
        'transactions': rows,
    })
