"""
Escrow transactions: guarded creation, then hold, release, refund and dispute.

Holding debits the customer's wallet. Releasing credits the provider net of the
platform fee; refunding credits the customer. Partial amounts send the
remainder to the other party.
"""

import logging
from datetime import datetime
from decimal import Decimal

from flask import current_app

from . import db
from .errors import APIError, Conflict, NotFound, PermissionDenied, TooManyRequests, ValidationError
from .models import EscrowTransaction, Order, Service, User, round2, to_money
from .rate_limiter import escrow_limiter
from .state_machine import can_transition_escrow
from . import wallet_service

logger = logging.getLogger(__name__)

FRAUD_BLOCK_SCORE = 50


def fraud_assessment(amount, daily_count, max_amount, max_daily):
    """Naive risk score: +30 for an amount over the ceiling, +25 for a busy day."""
    score = 0
    reasons = []
    if amount > max_amount:
        score += 30
        reasons.append('High amount transaction')
    if daily_count >= max_daily:
        score += 25
        reasons.append('Excessive daily transactions')
    return {'riskScore': score, 'reasons': reasons, 'isSafe': score < FRAUD_BLOCK_SCORE}


def transactions_today(customer_id):
    midnight = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    return EscrowTransaction.query.filter(
        EscrowTransaction.customer_id == customer_id,
        EscrowTransaction.created_at >= midnight
    ).count()


def run_guards(customer_id, amount):
    """Rate window, amount ceiling and fraud check, in that order."""
    config = current_app.config

    allowed, retry_after = escrow_limiter.hit(
        f'escrow:{customer_id}',
        config['ESCROW_RATE_LIMIT_REQUESTS'],
        config['ESCROW_RATE_LIMIT_WINDOW_SECONDS'],
    )
    if not allowed:
        raise TooManyRequests('Rate limit exceeded. Please try again later.', retry_after=retry_after)

    max_amount = config['ESCROW_MAX_AMOUNT']
    if amount > max_amount:
        raise APIError(f'Transaction amount exceeds maximum limit of Rs {max_amount:g}', 400)

    assessment = fraud_assessment(amount, transactions_today(customer_id), max_amount,
                                  config['ESCROW_MAX_DAILY_TRANSACTIONS'])
    if not assessment['isSafe']:
        logger.warning('Escrow blocked for customer %s: score %s %s', customer_id,
                       assessment['riskScore'], assessment['reasons'])
        raise PermissionDenied('Transaction blocked due to security concerns')
    return assessment


def fee(amount, percent):
    return to_money(to_money(amount) * Decimal(str(percent)) / 100)


def create_transaction(customer, provider_id, service_id, amount, fee_percent, order_id=None):
    run_guards(customer.id, amount)

    provider = db.session.get(User, provider_id)
    if provider is None or not provider.is_provider():
        raise NotFound('Provider not found')
    service = db.session.get(Service, service_id)
    if service is None:
        raise NotFound('Service not found')
    if service.provider_id != provider.id:
        raise ValidationError(['Service does not belong to this provider'])
    if provider.id == customer.id:
        raise ValidationError(['Cannot create an escrow transaction with yourself'])

    if order_id is not None:
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFound('Order not found')
        if order.customer_id != customer.id or order.provider_id != provider.id:
            raise ValidationError(['Order does not match this customer and provider'])

    transaction = EscrowTransaction(
        customer_id=customer.id,
        provider_id=provider.id,
        service_id=service.id,
        order_id=order_id,
        amount=to_money(amount),
        platform_fee_percent=float(fee_percent),
        platform_fee=fee(amount, fee_percent),
        status='pending',
    )
    db.session.add(transaction)
    db.session.commit()
    logger.info('Escrow %s created: %.2f from %s to %s', transaction.id, transaction.amount,
                customer.id, provider.id)
    return transaction


def get_for_user(transaction_id, user):
    transaction = db.session.get(EscrowTransaction, transaction_id)
    if transaction is None:
        raise NotFound('Transaction not found')
    if not transaction.involves(user):
        raise PermissionDenied('Access denied')
    return transaction


def _move(transaction, allowed_from, target, message, **values):
    """Conditionally move transaction to target; 409 when another request got there first."""
    if transaction.status not in allowed_from or not can_transition_escrow(transaction.status, target):
        raise Conflict(message)
    values['status'] = target
    updated = EscrowTransaction.query.filter(
        EscrowTransaction.id == transaction.id,
        EscrowTransaction.status == transaction.status
    ).update(values, synchronize_session=False)
    if not updated:
        raise Conflict(message)


def _check_amount(value, transaction, label):
    if value is None:
        return transaction.amount
    if value > transaction.amount:
        raise APIError(f'{label} amount cannot exceed transaction amount', 400)
    return value


def _pay_provider(transaction, gross, note):
    net = to_money(gross - fee(gross, transaction.platform_fee_percent))
    if net > 0:
        wallet_service.credit(transaction.provider_id, net, 'ESCROW_RELEASE', note,
                              reference=f'escrow:{transaction.id}')
    return fee(gross, transaction.platform_fee_percent)


def _refund_customer(transaction, amount, note):
    if amount > 0:
        wallet_service.credit(transaction.customer_id, amount, 'REFUND', note,
                              reference=f'escrow:{transaction.id}')


def hold(transaction, actor):
    if not (actor.is_admin() or actor.id == transaction.customer_id):
        raise PermissionDenied('Only the customer can hold funds')
    _move(transaction, ('pending',), 'held', 'Only pending transactions can be held', is_funded=True)
    wallet_service.debit(transaction.customer_id, transaction.amount, 'ESCROW_HOLD',
                         f'Escrow hold for service #{transaction.service_id}',
                         reference=f'escrow:{transaction.id}')
    db.session.commit()
    db.session.refresh(transaction)
    return transaction


def release(transaction, actor, release_amount=None):
    if not (actor.is_admin() or actor.id == transaction.customer_id):
        raise PermissionDenied('Only the customer can release funds')
    release_amount = _check_amount(release_amount, transaction, 'Release')
    if transaction.status in ('held', 'disputed') and not transaction.is_funded:
        raise Conflict('Funds are not held for this transaction')

    _move(transaction, ('held', 'disputed'), 'released',
          'Only held/disputed transactions can be released',
          released_at=datetime.utcnow(), released_amount=release_amount,
          platform_fee=fee(release_amount, transaction.platform_fee_percent))

    _pay_provider(transaction, release_amount, f'Escrow release for service #{transaction.service_id}')
    _refund_customer(transaction, transaction.amount - release_amount,
                     f'Unreleased escrow balance for service #{transaction.service_id}')
    db.session.commit()
    db.session.refresh(transaction)
    return transaction


def refund(transaction, actor, refund_amount=None, reason=None):
    if not (actor.is_admin() or actor.id == transaction.provider_id):
        raise PermissionDenied('Only the provider can issue a refund')
    refund_amount = _check_amount(refund_amount, transaction, 'Refund')
    funded = bool(transaction.is_funded)
    remainder = transaction.amount - refund_amount

    _move(transaction, ('pending', 'held', 'disputed'), 'refunded',
          'Transaction cannot be refunded in current status',
          refunded_at=datetime.utcnow(), refunded_amount=refund_amount,
          refund_reason=reason or 'Refund processed',
          platform_fee=fee(remainder, transaction.platform_fee_percent) if funded else 0)

    if funded:
        _refund_customer(transaction, refund_amount, f'Escrow refund for service #{transaction.service_id}')
        if remainder > 0:
            _pay_provider(transaction, remainder, f'Escrow partial release for service #{transaction.service_id}')
    db.session.commit()
    db.session.refresh(transaction)
    return transaction


def dispute(transaction, actor, reason, initiated_by=None):
    if actor.id == transaction.customer_id:
        side = 'customer'
    elif actor.id == transaction.provider_id:
        side = 'provider'
    else:
        raise PermissionDenied('Only the customer or provider can raise a dispute')
    if initiated_by is not None and initiated_by != side:
        raise ValidationError(['initiatedBy does not match the caller'])

    _move(transaction, ('pending', 'held'), 'disputed', 'Only pending/held transactions can be disputed',
          dispute_reason=reason, disputed_by=side)
    db.session.commit()
    db.session.refresh(transaction)
    return transaction


def refund_for_order(order, actor, reason):
    """Refund every held or disputed escrow of an order. The caller commits."""
    refunded = []
    for transaction in EscrowTransaction.query.filter(
            EscrowTransaction.order_id == order.id,
            EscrowTransaction.status.in_(('held', 'disputed'))).all():
        _move(transaction, ('held', 'disputed'), 'refunded', 'Escrow changed concurrently',
              refunded_at=datetime.utcnow(), refunded_amount=transaction.amount,
              refund_reason=reason, platform_fee=0)
        if transaction.is_funded:
            _refund_customer(transaction, transaction.amount, f'Order #{order.id} cancelled by admin')
        refunded.append(transaction.id)
    if refunded:
        logger.info('Refunded escrow %s for cancelled order %s (by %s)', refunded, order.id, actor.id)
    return refunded


def account_balance(user):
    query = EscrowTransaction.query
    if not user.is_admin():
        query = query.filter(db.or_(EscrowTransaction.customer_id == user.id,
                                    EscrowTransaction.provider_id == user.id))
    rows = query.all()

    def settled(row):
        if row.status == 'released' and row.released_amount is not None:
            return row.released_amount
        return row.amount

    return {
        'accountId': f'escrow_{user.id}',
        'balance': round2(sum((row.amount for row in rows), Decimal(0))),
        'heldAmount': round2(sum((row.amount for row in rows if row.status == 'held'), Decimal(0))),
        'availableAmount': round2(sum((settled(row) for row in rows if row.status == 'released'), Decimal(0))),
        'currency': current_app.config['CURRENCY'],
    }
