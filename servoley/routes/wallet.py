"""
Wallet routes: balance, history, gateway top-ups and withdrawals.
Money-moving POSTs require an Idempotency-Key header.
"""

import logging
from decimal import Decimal

from flask import Blueprint, current_app, request
from flask_login import current_user, login_required

from ..models import PaymentOrder, WalletTransaction, round2, to_money
from .. import db, limiter
from ..crypto_utils import generate_reference, verify_payment_signature
from ..errors import APIError, Conflict, NotFound, ValidationError
from ..idempotency import require_idempotency
from ..rate_limiter import configured_limit
from ..sanitizer import get_json_body
from ..utils import success
from ..validators import get_pagination, pagination_meta, parse_amount, parse_date_range
from .. import wallet_service

logger = logging.getLogger(__name__)

wallet_bp = Blueprint('wallet', __name__)

PAYMENT_METHODS = ('UPI', 'CARD', 'NET_BANKING')
MIN_AMOUNT = 1
MAX_AMOUNT = 1000000


def _wallet_query():
    wallet = wallet_service.get_or_create_wallet(current_user.id)
    return WalletTransaction.query.filter_by(wallet_id=wallet.id)


def _required_string(data, key, max_length):
    value = data.get(key)
    if not isinstance(value, str) or not value.strip() or len(value.strip()) > max_length:
        raise ValidationError([f'{key} is required.'])
    return value.strip()


@wallet_bp.route('/balance')
@login_required
def balance():
    wallet = wallet_service.get_or_create_wallet(current_user.id)
    db.session.commit()
    return success({
        'balance': round2(wallet.balance),
        'currency': current_app.config['CURRENCY'],
        'updatedAt': wallet.updated_at.isoformat() + 'Z' if wallet.updated_at else None,
    })


@wallet_bp.route('/transactions')
@login_required
def transactions():
    page, limit = get_pagination(request.args, default_limit=20)
    query = _wallet_query()

    type_ = (request.args.get('type') or '').upper()
    if type_:
        if type_ not in wallet_service.TRANSACTION_TYPES:
            raise ValidationError([f'type must be one of {", ".join(wallet_service.TRANSACTION_TYPES)}.'])
        query = query.filter_by(type=type_)

    results = query.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc()).paginate(
        page=page, per_page=limit, error_out=False)
    db.session.commit()

    return success({
        'transactions': [entry.to_dict() for entry in results.items],
        'pagination': pagination_meta(results),
    })


@wallet_bp.route('/topup/create-order', methods=['POST'])
@login_required
@limiter.limit(configured_limit('PAYMENT_RATE_LIMIT'))
@require_idempotency('wallet_topup_create_order')
def create_topup_order():
    """
    Start a wallet top-up.

    In mock mode the wallet is credited at once; otherwise a PENDING payment
    order is stored and the client completes checkout with the gateway.
    """
    data = get_json_body()
    amount = parse_amount(data.get('amount'), 'amount', minimum=MIN_AMOUNT, maximum=MAX_AMOUNT)
    payment_method = str(data.get('paymentMethod') or '').upper()
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(['Invalid payment method'])

    config = current_app.config
    order_id = generate_reference('order')
    currency = config['CURRENCY']

    if config['MOCK_PAYMENT']:
        payment_id = generate_reference('mock_payment')
        db.session.add(PaymentOrder(
            user_id=current_user.id,
            order_id=order_id,
            payment_id=payment_id,
            signature='mock_signature',
            amount=amount,
            currency=currency,
            payment_method=payment_method,
            status='COMPLETED',
        ))
        entry = wallet_service.credit(current_user.id, amount, 'CREDIT',
                                      f'Wallet top-up {order_id}', reference=payment_id)
        db.session.commit()
        return success({
            'orderId': order_id,
            'amount': round2(amount),
            'currency': currency,
            'credited': True,
            'newBalance': round2(entry.balance_after),
            'mock': True,
            'key': None,
        }, 'Wallet top-up completed (mock mode)')

    db.session.add(PaymentOrder(
        user_id=current_user.id,
        order_id=order_id,
        amount=amount,
        currency=currency,
        payment_method=payment_method,
        status='PENDING',
    ))
    db.session.commit()

    return success({
        'orderId': order_id,
        'amount': round2(amount),
        'currency': currency,
        'key': config['PAYMENT_KEY_ID'],
        'credited': False,
        'mock': False,
    }, 'Payment order created successfully')


@wallet_bp.route('/topup/verify', methods=['POST'])
@login_required
@limiter.limit(configured_limit('PAYMENT_RATE_LIMIT'))
@require_idempotency('wallet_topup_verify')
def verify_topup():
    """Check the gateway signature, then credit the wallet exactly once."""
    data = get_json_body()
    order_id = _required_string(data, 'orderId', 128)
    payment_id = _required_string(data, 'paymentId', 128)
    signature = _required_string(data, 'signature', 512)

    if not verify_payment_signature(order_id, payment_id, signature,
                                    current_app.config['PAYMENT_KEY_SECRET']):
        raise APIError('Invalid payment signature', 400)

    payment_order = PaymentOrder.query.filter_by(
        order_id=order_id, user_id=current_user.id, type='WALLET_TOPUP').first()
    if payment_order is None:
        raise NotFound('Payment order not found')

    if payment_order.status == 'COMPLETED':
        return success({
            'idempotent': True,
            'amount': round2(payment_order.amount),
            'newBalance': wallet_service.get_balance(current_user.id),
            'paymentId': payment_order.payment_id or payment_id,
        }, 'Payment already verified')

    claimed = PaymentOrder.query.filter_by(id=payment_order.id, status='PENDING').update(
        {'status': 'PROCESSING'}, synchronize_session=False)
    db.session.commit()
    if not claimed:
        raise Conflict('Payment is being processed already')

    try:
        entry = wallet_service.credit(current_user.id, payment_order.amount, 'CREDIT',
                                      f'Wallet top-up {order_id}', reference=payment_id)
        PaymentOrder.query.filter_by(id=payment_order.id).update({
            'status': 'COMPLETED',
            'payment_id': payment_id,
            'signature': signature,
        }, synchronize_session=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        PaymentOrder.query.filter_by(id=payment_order.id, status='PROCESSING').update(
            {'status': 'FAILED'}, synchronize_session=False)
        db.session.commit()
        logger.exception('Top-up %s failed after claim', order_id)
        raise

    return success({
        'idempotent': False,
        'amount': round2(payment_order.amount),
        'newBalance': round2(entry.balance_after),
        'paymentId': payment_id,
    }, 'Payment verified and money added to wallet')


@wallet_bp.route('/check-balance', methods=['POST'])
@login_required
def check_balance():
    amount = parse_amount(get_json_body().get('amount'), 'amount', minimum=MIN_AMOUNT, maximum=MAX_AMOUNT)
    current = to_money(wallet_service.get_balance(current_user.id))
    return success({
        'hasSufficientBalance': current >= amount,
        'currentBalance': round2(current),
        'required': round2(amount),
        'shortfall': round2(max(Decimal(0), amount - current)),
    })


@wallet_bp.route('/commission/calculate')
@login_required
def calculate_commission():
    amount = parse_amount(request.args.get('amount'), 'amount', minimum=0)
    return success(wallet_service.commission_for(amount))


@wallet_bp.route('/summary')
@login_required
def summary():
    start, end = parse_date_range(request.args)
    query = _wallet_query()
    if start:
        query = query.filter(WalletTransaction.created_at >= start)
    if end:
        query = query.filter(WalletTransaction.created_at <= end)
    rows = query.all()
    db.session.commit()

    data = wallet_service.summarize(rows)
    data['currentBalance'] = wallet_service.get_balance(current_user.id)
    data['period'] = {
        'startDate': start.isoformat() + 'Z' if start else None,
        'endDate': end.isoformat() + 'Z' if end else None,
    }
    return success(data)


@wallet_bp.route('/withdraw', methods=['POST'])
@login_required
@limiter.limit(configured_limit('PAYMENT_RATE_LIMIT'))
@require_idempotency('wallet_withdraw')
def withdraw():
    amount = parse_amount(get_json_body().get('amount'), 'amount', minimum=MIN_AMOUNT, maximum=MAX_AMOUNT)
    entry = wallet_service.debit(current_user.id, amount, 'WITHDRAWAL', 'User withdrawal request')
    db.session.commit()
    return success({'amount': round2(amount), 'newBalance': round2(entry.balance_after)},
                   'Withdrawal requested')
