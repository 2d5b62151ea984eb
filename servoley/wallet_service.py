"""
Wallet balance movements.
Every change goes through credit() or debit() so it leaves a WalletTransaction row.
"""

import logging
from decimal import Decimal

from flask import current_app

from . import db
from .errors import APIError
from .models import Wallet, WalletTransaction, round2, to_money

logger = logging.getLogger(__name__)

CREDIT_TYPES = ('CREDIT', 'ESCROW_RELEASE', 'REFUND')
DEBIT_TYPES = ('DEBIT', 'ESCROW_HOLD', 'WITHDRAWAL')
TRANSACTION_TYPES = CREDIT_TYPES + DEBIT_TYPES


class InsufficientBalance(APIError):
    status_code = 400

    def __init__(self, message='Insufficient balance'):
        super().__init__(message, code='INSUFFICIENT_BALANCE')


def get_or_create_wallet(user_id):
    wallet = Wallet.query.filter_by(user_id=user_id).first()
    if wallet is None:
        wallet = Wallet(user_id=user_id, balance=0)
        db.session.add(wallet)
        db.session.flush()
    return wallet


def get_balance(user_id):
    wallet = Wallet.query.filter_by(user_id=user_id).first()
    return round2(wallet.balance) if wallet else 0.0


def _record(wallet, amount, type_, description, reference):
    db.session.refresh(wallet)
    entry = WalletTransaction(
        wallet_id=wallet.id,
        amount=amount,
        type=type_,
        description=description,
        reference=reference,
        balance_after=wallet.balance,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def credit(user_id, amount, type_='CREDIT', description=None, reference=None):
    """Add amount to the user's wallet. The caller commits."""
    if type_ not in CREDIT_TYPES:
        raise ValueError(f'{type_} is not a credit type')
    amount = to_money(amount)
    if amount <= 0:
        raise APIError('Amount must be positive', 400)

    wallet = get_or_create_wallet(user_id)
    Wallet.query.filter_by(id=wallet.id).update(
        {Wallet.balance: Wallet.balance + amount}, synchronize_session=False)
    entry = _record(wallet, amount, type_, description, reference)
    logger.info('Wallet %s credited %.2f (%s)', wallet.id, amount, type_)
    return entry


def debit(user_id, amount, type_='DEBIT', description=None, reference=None):
    """
    Take amount from the user's wallet. The caller commits.

    The UPDATE only matches while balance >= amount, so two racing debits
    cannot both succeed against the same funds.
    """
    if type_ not in DEBIT_TYPES:
        raise ValueError(f'{type_} is not a debit type')
    amount = to_money(amount)
    if amount <= 0:
        raise APIError('Amount must be positive', 400)

    wallet = get_or_create_wallet(user_id)
    updated = Wallet.query.filter(Wallet.id == wallet.id, Wallet.balance >= amount).update(
        {Wallet.balance: Wallet.balance - amount}, synchronize_session=False)
    if not updated:
        raise InsufficientBalance()
    entry = _record(wallet, amount, type_, description, reference)
    logger.info('Wallet %s debited %.2f (%s)', wallet.id, amount, type_)
    return entry


def commission_for(amount):
    rate = current_app.config['COMMISSION_RATE']
    amount = to_money(amount)
    commission = to_money(amount * Decimal(str(rate)))
    return {
        'amount': round2(amount),
        'commissionRate': rate,
        'commission': round2(commission),
        'providerEarning': round2(amount - commission),
    }


def summarize(transactions):
    """Credit/debit totals and a per-type breakdown for a list of WalletTransaction rows."""
    total_credits = Decimal(0)
    total_debits = Decimal(0)
    by_type = {}
    for entry in transactions:
        if entry.type in CREDIT_TYPES:
            total_credits += entry.amount
        else:
            total_debits += entry.amount
        bucket = by_type.setdefault(entry.type, {'count': 0, 'amount': Decimal(0)})
        bucket['count'] += 1
        bucket['amount'] += entry.amount
    for bucket in by_type.values():
        bucket['amount'] = round2(bucket['amount'])

    return {
        'totalCredits': round2(total_credits),
        'totalDebits': round2(total_debits),
        'netChange': round2(total_credits - total_debits),
        'transactionCount': len(transactions),
        'byType': by_type,
    }
