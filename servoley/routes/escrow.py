"""
Escrow routes.
"""

from flask import Blueprint, current_app, request
from flask_login import current_user, login_required

from ..models import EscrowTransaction
from .. import db
from ..decorators import roles_required
from ..errors import NotFound, ValidationError
from ..sanitizer import get_json_body
from ..state_machine import ESCROW_STATUSES
from ..utils import success
from ..validators import parse_amount, parse_int
from .. import escrow_service

escrow_bp = Blueprint('escrow', __name__)


def _optional_amount(data, key):
    if data.get(key) is None:
        return None
    return parse_amount(data[key], key, exclusive_minimum=0)


@escrow_bp.route('/transactions', methods=['POST'])
@login_required
@roles_required('CUSTOMER')
def create_transaction():
    data = get_json_body()
    errors = []
    if data.get('providerId') in (None, ''):
        errors.append('Provider ID is required')
    if data.get('serviceId') in (None, ''):
        errors.append('Service ID is required')
    if errors:
        raise ValidationError(errors)

    provider_id = parse_int(data['providerId'], 'providerId', minimum=1)
    service_id = parse_int(data['serviceId'], 'serviceId', minimum=1)
    amount = parse_amount(data.get('amount'), 'amount', exclusive_minimum=0)

    config = current_app.config
    fee_percent = config['ESCROW_DEFAULT_FEE_PERCENT']
    if data.get('platformFeePercent') is not None:
        fee_percent = parse_amount(data['platformFeePercent'], 'platformFeePercent',
                                   minimum=0, maximum=config['ESCROW_MAX_FEE_PERCENT'])
    order_id = None
    if data.get('orderId') not in (None, ''):
        order_id = parse_int(data['orderId'], 'orderId', minimum=1)

    transaction = escrow_service.create_transaction(
        current_user, provider_id, service_id, amount, fee_percent, order_id)
    return success(transaction.to_dict(), 'Escrow transaction created', 201)


@escrow_bp.route('/transactions/<int:transaction_id>/hold', methods=['POST'])
@login_required
def hold(transaction_id):
    transaction = escrow_service.get_for_user(transaction_id, current_user)
    transaction = escrow_service.hold(transaction, current_user)
    return success(transaction.to_dict(), 'Funds held in escrow')


@escrow_bp.route('/transactions/<int:transaction_id>/release', methods=['POST'])
@login_required
def release(transaction_id):
    release_amount = _optional_amount(get_json_body(), 'releaseAmount')
    transaction = escrow_service.get_for_user(transaction_id, current_user)
    transaction = escrow_service.release(transaction, current_user, release_amount)
    return success(transaction.to_dict(), 'Payment released to provider')


@escrow_bp.route('/transactions/<int:transaction_id>/refund', methods=['POST'])
@login_required
def refund(transaction_id):
    data = get_json_body()
    refund_amount = _optional_amount(data, 'refundAmount')
    reason = data.get('reason')
    if reason is not None and not isinstance(reason, str):
        raise ValidationError(['Reason must be a string'])

    transaction = escrow_service.get_for_user(transaction_id, current_user)
    transaction = escrow_service.refund(transaction, current_user, refund_amount, reason)
    body = transaction.to_dict()
    body['refundReason'] = transaction.refund_reason
    return success(body, 'Refund processed')


@escrow_bp.route('/transactions/<int:transaction_id>/dispute', methods=['POST'])
@login_required
def dispute(transaction_id):
    data = get_json_body()
    reason = data.get('disputeReason')
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError(['Dispute reason is required'])
    initiated_by = data.get('initiatedBy')
    if initiated_by is not None and initiated_by not in ('customer', 'provider'):
        raise ValidationError(['Invalid initiator'])

    transaction = escrow_service.get_for_user(transaction_id, current_user)
    transaction = escrow_service.dispute(transaction, current_user, reason.strip()[:500], initiated_by)
    return success(transaction.to_dict(), 'Dispute raised')


@escrow_bp.route('/transactions', methods=['GET'])
@login_required
def list_transactions():
    args = request.args
    limit = parse_int(args.get('limit'), 'limit', minimum=1, maximum=100, default=50)
    query = EscrowTransaction.query
    if not current_user.is_admin():
        query = query.filter(db.or_(EscrowTransaction.customer_id == current_user.id,
                                    EscrowTransaction.provider_id == current_user.id))

    status = (args.get('status') or '').strip().lower()
    if status:
        if status not in ESCROW_STATUSES:
            raise ValidationError([f'status must be one of {", ".join(ESCROW_STATUSES)}'])
        query = query.filter(EscrowTransaction.status == status)

    if args.get('user_id'):
        user_id = parse_int(args['user_id'], 'user_id', minimum=1)
        query = query.filter(db.or_(EscrowTransaction.customer_id == user_id,
                                    EscrowTransaction.provider_id == user_id))

    rows = query.order_by(EscrowTransaction.created_at.desc(), EscrowTransaction.id.desc()).limit(limit).all()
    return success({'transactions': [row.to_dict() for row in rows]})


@escrow_bp.route('/account/balance')
@login_required
def account_balance():
    return success(escrow_service.account_balance(current_user))


@escrow_bp.route('/services/<int:service_id>/auto-release', methods=['POST'])
@login_required
def auto_release(service_id):
    """Release the caller's most recent held transaction for a service."""
    transaction = EscrowTransaction.query.filter_by(
        service_id=service_id, customer_id=current_user.id, status='held'
    ).order_by(EscrowTransaction.created_at.desc(), EscrowTransaction.id.desc()).first()
    if transaction is None:
        raise NotFound('No held transaction found for this service')
    transaction = escrow_service.release(transaction, current_user)
    return success(transaction.to_dict(), 'Payment released to provider')
