"""
Payment order history for users and the admin payment ledger.
"""

from flask import Blueprint, request
from flask_login import current_user, login_required

from ..models import PaymentOrder
from ..decorators import admin_required
from ..errors import ValidationError
from ..utils import success
from ..validators import get_pagination, pagination_meta, parse_int

payments_bp = Blueprint('payments', __name__)

PAYMENT_STATUSES = ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED')
PAYMENT_TYPES = ('WALLET_TOPUP',)


def _newest_first(query, page, limit):
    return query.order_by(PaymentOrder.created_at.desc(), PaymentOrder.id.desc()).paginate(
        page=page, per_page=limit, error_out=False)


@payments_bp.route('/history')
@login_required
def history():
    page, limit = get_pagination(request.args)
    results = _newest_first(PaymentOrder.query.filter_by(user_id=current_user.id), page, limit)
    return success({
        'payments': [payment.to_dict() for payment in results.items],
        'pagination': pagination_meta(results),
    })


@payments_bp.route('/admin/payments')
@login_required
@admin_required
def admin_payments():
    """Every gateway order, filterable by status, type and userId."""
    page, limit = get_pagination(request.args)
    query = PaymentOrder.query

    status = (request.args.get('status') or '').upper()
    if status:
        if status not in PAYMENT_STATUSES:
            raise ValidationError([f"status must be one of {', '.join(PAYMENT_STATUSES)}."])
        query = query.filter_by(status=status)

    payment_type = (request.args.get('type') or '').upper()
    if payment_type:
        if payment_type not in PAYMENT_TYPES:
            raise ValidationError([f"type must be one of {', '.join(PAYMENT_TYPES)}."])
        query = query.filter_by(type=payment_type)

    if request.args.get('userId'):
        query = query.filter_by(user_id=parse_int(request.args['userId'], 'userId', minimum=1))

    results = _newest_first(query, page, limit)
    return success({
        'payments': [payment.to_dict(include_user=True) for payment in results.items],
        'pagination': pagination_meta(results),
    })
