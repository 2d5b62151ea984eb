"""
Role dashboards: booking counts for customers, workload for providers.
"""

from flask import Blueprint
from flask_login import current_user, login_required

from ..models import Order, ProviderProfile, Service, round2
from .. import db
from ..decorators import roles_required
from ..errors import NotFound
from ..utils import success

dashboard_bp = Blueprint('dashboard', __name__)

ACTIVE_STATUSES = ('PENDING', 'ACCEPTED', 'IN_PROGRESS')
RECENT_ORDERS = 5


def _recent(query):
    return [order.to_dict() for order in
            query.order_by(Order.created_at.desc(), Order.id.desc()).limit(RECENT_ORDERS).all()]


@dashboard_bp.route('/customer')
@login_required
@roles_required('CUSTOMER')
def customer_dashboard():
    orders = Order.query.filter_by(customer_id=current_user.id)
    return success({
        'userId': current_user.id,
        'role': 'CUSTOMER',
        'stats': {
            'bookingsCount': orders.count(),
            'activeBookings': orders.filter(Order.status.in_(ACTIVE_STATUSES)).count(),
            'completedBookings': orders.filter(Order.status == 'COMPLETED').count(),
        },
        'recentOrders': _recent(orders),
    })


@dashboard_bp.route('/provider')
@login_required
@roles_required('PROVIDER')
def provider_dashboard():
    profile = ProviderProfile.query.filter_by(user_id=current_user.id).first()
    if profile is None:
        raise NotFound('Provider profile not found')

    orders = Order.query.filter_by(provider_id=current_user.id)
    completed = orders.filter(Order.status == 'COMPLETED')
    revenue = completed.with_entities(db.func.coalesce(db.func.sum(Order.total_amount), 0)).scalar()

    return success({
        'userId': current_user.id,
        'role': 'PROVIDER',
        'providerId': profile.id,
        'stats': {
            'servicesCount': Service.query.filter_by(provider_id=current_user.id, is_active=True).count(),
            'pendingOrders': orders.filter(Order.status.in_(ACTIVE_STATUSES)).count(),
            'completedOrders': completed.count(),
            'totalRevenue': round2(revenue),
        },
        'recentOrders': _recent(orders),
    })
