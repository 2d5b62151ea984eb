"""
Allowed status transitions for orders and escrow transactions.
"""

from .errors import APIError, ValidationError

ORDER_STATUSES = ('PENDING', 'ACCEPTED', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED', 'REJECTED')
ACTIVE_ORDER_STATUSES = ('PENDING', 'ACCEPTED', 'IN_PROGRESS')

ORDER_TRANSITIONS = {
    'PENDING': ('ACCEPTED', 'REJECTED', 'CANCELLED'),
    'ACCEPTED': ('IN_PROGRESS', 'CANCELLED'),
    'IN_PROGRESS': ('COMPLETED', 'CANCELLED'),
    'COMPLETED': (),
    'CANCELLED': (),
    'REJECTED': (),
}

ORDER_STATUS_ALIASES = {
    'pending': 'PENDING',
    'confirmed': 'ACCEPTED',
    'accepted': 'ACCEPTED',
    'processing': 'IN_PROGRESS',
    'in_progress': 'IN_PROGRESS',
    'in-progress': 'IN_PROGRESS',
    'completed': 'COMPLETED',
    'cancelled': 'CANCELLED',
    'canceled': 'CANCELLED',
    'rejected': 'REJECTED',
}

ESCROW_STATUSES = ('pending', 'held', 'released', 'refunded', 'disputed')

ESCROW_TRANSITIONS = {
    'pending': ('held', 'refunded', 'disputed'),
    'held': ('released', 'refunded', 'disputed'),
    'disputed': ('released', 'refunded'),
    'released': (),
    'refunded': (),
}


def normalize_order_status(value):
    """Map a client status spelling onto an order status, or raise ValidationError."""
    status = ORDER_STATUS_ALIASES.get(str(value or '').strip().lower())
    if status is None:
        raise ValidationError([f'Invalid status: {value}'])
    return status


def can_transition_order(current, target):
    return target in ORDER_TRANSITIONS.get(current, ())


def check_order_transition(current, target):
    if not can_transition_order(current, target):
        raise APIError(f'Cannot change order status from {current} to {target}', 400)


def can_transition_escrow(current, target):
    return target in ESCROW_TRANSITIONS.get(current, ())
