"""
Admin routes for ServoLeY.
Handles the dashboard, user and provider supervision, order intervention and audit logs.
"""

from datetime import datetime

from flask import Blueprint, request
from flask_login import current_user, login_required

from ..models import (AuditLog, EscrowTransaction, Order, ProviderProfile, Service, SupportTicket,
                      User, Wallet, WalletTransaction, round2)
from .. import db
from ..decorators import admin_required
from ..errors import APIError, Conflict, NotFound, ValidationError
from ..escrow_service import refund_for_order
from ..notifier import notify
from ..sanitizer import get_json_body
from ..tokens import revoke_user_sessions
from ..utils import client_ip, success
from ..validators import get_pagination, pagination_meta, parse_bool, parse_date_range, parse_int
from ..wallet_service import TRANSACTION_TYPES, get_balance

admin_bp = Blueprint('admin', __name__)

USER_TYPES = ('CUSTOMER', 'PROVIDER', 'ADMIN')


def _within(query, column, start, end):
    if start:
        query = query.filter(column >= start)
    if end:
        query = query.filter(column <= end)
    return query


@admin_bp.route('/dashboard')
@login_required
@admin_required
def dashboard():
    """Overview counts, optionally limited to a startDate/endDate window."""
    start, end = parse_date_range(request.args)

    orders = _within(Order.query, Order.created_at, start, end)
    completed = orders.filter(Order.status == 'COMPLETED')
    revenue = completed.with_entities(db.func.coalesce(db.func.sum(Order.total_amount), 0)).scalar()
    commission = _within(
        EscrowTransaction.query.filter(EscrowTransaction.status == 'released'),
        EscrowTransaction.created_at, start, end
    ).with_entities(db.func.coalesce(db.func.sum(EscrowTransaction.platform_fee), 0)).scalar()

    recent = orders.order_by(Order.created_at.desc(), Order.id.desc()).limit(10).all()

    return success({
        'stats': {
            'totalUsers': User.query.filter_by(is_active=True, is_blocked=False).count(),
            'verifiedProviders': ProviderProfile.query.filter_by(is_verified=True).count(),
            'activeServices': Service.query.filter_by(is_active=True).count(),
            'totalOrders': orders.count(),
            'completedOrders': completed.count(),
            'totalRevenue': round2(revenue),
            'escrowCommission': round2(commission),
            'openTickets': SupportTicket.query.filter(
                SupportTicket.status.in_(('OPEN', 'IN_PROGRESS'))).count(),
        },
        'recentOrders': [order.to_dict() for order in recent],
        'period': {
            'startDate': start.isoformat() + 'Z' if start else None,
            'endDate': end.isoformat() + 'Z' if end else None,
        },
    })


@admin_bp.route('/users')
@login_required
@admin_required
def users():
    """List users with type, search and block filters."""
    args = request.args
    page, limit = get_pagination(args, default_limit=20)
    query = User.query

    user_type = (args.get('userType') or '').upper()
    if user_type:
        if user_type not in USER_TYPES:
            raise ValidationError(['userType must be CUSTOMER, PROVIDER or ADMIN.'])
        query = query.filter(User.user_type == user_type)
    if args.get('search'):
        pattern = f"%{args['search'].strip()}%"
        query = query.filter(db.or_(User.email.ilike(pattern), User.phone.ilike(pattern),
                                    User.first_name.ilike(pattern), User.last_name.ilike(pattern)))
    blocked = parse_bool(args.get('isBlocked'))
    if blocked is not None:
        query = query.filter(User.is_blocked.is_(blocked))

    results = query.order_by(User.created_at.desc(), User.id.desc()).paginate(
        page=page, per_page=limit, error_out=False)
    return success({
        'users': [user.to_dict() for user in results.items],
        'pagination': pagination_meta(results),
    })


@admin_bp.route('/users/<int:user_id>')
@login_required
@admin_required
def user_detail(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound('User not found')
    data = user.to_dict()
    data['walletBalance'] = get_balance(user.id)
    data['orderCount'] = Order.query.filter(
        db.or_(Order.customer_id == user.id, Order.provider_id == user.id)).count()
    return success(data)


@admin_bp.route('/users/<int:user_id>/block', methods=['POST'])
@login_required
@admin_required
def block_user(user_id):
    """Block or unblock a user account."""
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound('User not found')

    # Prevent self-lockout
    if user.id == current_user.id:
        raise APIError('You cannot block your own account.', 400)

    data = get_json_body()
    if not isinstance(data.get('isBlocked'), bool):
        raise ValidationError(['isBlocked must be a boolean.'])
    reason = data.get('reason')

    user.is_blocked = data['isBlocked']
    if user.is_blocked:
        revoke_user_sessions(user.id, commit=False)
    db.session.commit()

    status = 'blocked' if user.is_blocked else 'unblocked'

    AuditLog.log(
        action=f'USER_{status.upper()}',
        user_id=current_user.id,
        ip_address=client_ip(),
        resource_type='user',
        resource_id=user.id,
        details={'reason': reason} if reason else None
    )

    return success(user.to_dict(), f'User {status} successfully')


@admin_bp.route('/providers')
@login_required
@admin_required
def providers():
    query = User.query.join(ProviderProfile, ProviderProfile.user_id == User.id)
    verified = parse_bool(request.args.get('verified'))
    if verified is not None:
        query = query.filter(ProviderProfile.is_verified.is_(verified))
    rows = query.order_by(User.created_at.desc(), User.id.desc()).all()
    return success({'providers': [user.to_dict() for user in rows]})


@admin_bp.route('/providers/<int:user_id>/verify', methods=['POST'])
@login_required
@admin_required
def verify_provider(user_id):
    profile = ProviderProfile.query.filter_by(user_id=user_id).first()
    if profile is None:
        raise NotFound('Provider not found')

    data = get_json_body()
    is_verified = data.get('isVerified', True)
    if not isinstance(is_verified, bool):
        raise ValidationError(['isVerified must be a boolean.'])

    profile.is_verified = is_verified
    profile.verified_at = datetime.utcnow() if is_verified else None

    notify(user_id, 'ACCOUNT',
           'Provider account verified' if is_verified else 'Provider verification revoked',
           'You can now list services.' if is_verified else 'Please contact support for details.',
           link='/profile')
    db.session.commit()

    AuditLog.log(
        action='PROVIDER_VERIFIED' if is_verified else 'PROVIDER_UNVERIFIED',
        user_id=current_user.id,
        ip_address=client_ip(),
        resource_type='user',
        resource_id=user_id
    )

    return success(profile.to_dict(), 'Provider verification updated')


@admin_bp.route('/orders/<int:order_id>/cancel', methods=['POST'])
@login_required
@admin_required
def cancel_order(order_id):
    """Cancel an order and refund any escrow still holding its funds."""
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound('Order not found')

    reason = get_json_body().get('reason')
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError(['Cancellation reason is required.'])
    reason = reason.strip()[:500]

    if order.status == 'COMPLETED':
        raise APIError('Completed orders cannot be cancelled', 400)
    if order.status in ('CANCELLED', 'REJECTED'):
        raise APIError(f'Order is already {order.status}', 400)

    now = datetime.utcnow()
    updated = Order.query.filter_by(id=order.id, status=order.status).update({
        'status': 'CANCELLED',
        'cancelled_at': now,
        'cancelled_by': current_user.id,
        'cancel_reason': reason,
        'updated_at': now,
    }, synchronize_session=False)
    if not updated:
        raise Conflict('Order status was changed by another request')

    refunded = refund_for_order(order, current_user, f'Order cancelled by admin: {reason}')
    for party in (order.customer_id, order.provider_id):
        notify(party, 'ORDER', 'Order cancelled by admin', f'Order #{order.id}: {reason}',
               link=f'/orders/{order.id}', data={'orderId': order.id, 'status': 'CANCELLED'})
    db.session.commit()
    db.session.refresh(order)

    AuditLog.log(
        action='ORDER_CANCELLED_BY_ADMIN',
        user_id=current_user.id,
        ip_address=client_ip(),
        resource_type='order',
        resource_id=order.id,
        details={'reason': reason, 'refunded_escrow': refunded}
    )

    data = order.to_dict()
    data['refundedEscrow'] = refunded
    return success(data, 'Order cancelled')


@admin_bp.route('/audit-logs')
@login_required
@admin_required
def audit_logs():
    """Audit log table (read-only)."""
    args = request.args
    page, limit = get_pagination(args, default_limit=50)
    query = AuditLog.query

    if args.get('action'):
        query = query.filter(AuditLog.action.contains(args['action'].strip().upper()))
    if args.get('userId'):
        query = query.filter(AuditLog.user_id == parse_int(args['userId'], 'userId', minimum=1))

    results = query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).paginate(
        page=page, per_page=limit, error_out=False)

    # Unique actions for filter dropdowns
    actions = [row[0] for row in db.session.query(AuditLog.action).distinct().order_by(AuditLog.action).all()]

    return success({
        'logs': [log.to_dict() for log in results.items],
        'actions': actions,
        'pagination': pagination_meta(results),
    })


@admin_bp.route('/wallet/transactions')
@login_required
@admin_required
def wallet_transactions():
    args = request.args
    page, limit = get_pagination(args, default_limit=50)
    query = WalletTransaction.query.join(Wallet, WalletTransaction.wallet_id == Wallet.id)

    type_ = (args.get('type') or '').upper()
    if type_:
        if type_ not in TRANSACTION_TYPES:
            raise ValidationError([f'type must be one of {", ".join(TRANSACTION_TYPES)}.'])
        query = query.filter(WalletTransaction.type == type_)
    if args.get('userId'):
        query = query.filter(Wallet.user_id == parse_int(args['userId'], 'userId', minimum=1))

    results = query.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc()).paginate(
        page=page, per_page=limit, error_out=False)
    return success({
        'transactions': [entry.to_dict() for entry in results.items],
        'pagination': pagination_meta(results),
    })
