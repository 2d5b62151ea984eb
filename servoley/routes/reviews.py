"""
Review routes. Customers review completed orders; a provider's rating is the mean of their reviews.
"""

from flask import Blueprint, request
from flask_login import current_user, login_required

from ..models import Order, ProviderProfile, Review, User
from .. import db
from ..decorators import roles_required, verified_account_required
from ..errors import APIError, NotFound, PermissionDenied, ValidationError
from ..notifier import notify
from ..sanitizer import get_json_body
from ..utils import success
from ..validators import get_pagination, pagination_meta, parse_int

reviews_bp = Blueprint('reviews', __name__)

MAX_COMMENT_LENGTH = 1000


def recompute_provider_rating(provider_id):
    average = db.session.query(db.func.avg(Review.rating)).filter(Review.provider_id == provider_id).scalar()
    rating = round(float(average), 1) if average is not None else 0
    ProviderProfile.query.filter_by(user_id=provider_id).update({'rating': rating}, synchronize_session=False)
    return rating


def _page_of(query):
    page, limit = get_pagination(request.args)
    results = query.order_by(Review.created_at.desc(), Review.id.desc()).paginate(
        page=page, per_page=limit, error_out=False)
    return {
        'reviews': [review.to_dict() for review in results.items],
        'pagination': pagination_meta(results),
    }


@reviews_bp.route('', methods=['POST'])
@login_required
@roles_required('CUSTOMER')
@verified_account_required
def create_review():
    data = get_json_body()
    order_id = parse_int(data.get('orderId'), 'orderId', minimum=1)
    rating = data.get('rating')
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError(['Rating must be an integer between 1 and 5.'])
    comment = data.get('comment')
    if comment is not None and (not isinstance(comment, str) or len(comment) > MAX_COMMENT_LENGTH):
        raise ValidationError([f'Comment must be text of at most {MAX_COMMENT_LENGTH} characters.'])

    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound('Order not found')
    if order.customer_id != current_user.id:
        raise PermissionDenied('You can only review your own orders')
    if order.status != 'COMPLETED':
        raise APIError('Only completed orders can be reviewed', 400)
    if Review.query.filter_by(order_id=order.id).first() is not None:
        raise APIError('This order has already been reviewed', 400)

    review = Review(
        order_id=order.id,
        service_id=order.service_id,
        reviewer_id=current_user.id,
        provider_id=order.provider_id,
        rating=rating,
        comment=comment.strip() if comment else None,
    )
    db.session.add(review)
    db.session.flush()
    new_rating = recompute_provider_rating(order.provider_id)

    notify(order.provider_id, 'ORDER', 'New review received',
           f'{current_user.full_name} rated order #{order.id} {rating}/5.',
           link='/reviews', data={'orderId': order.id, 'reviewId': review.id})
    db.session.commit()

    body = review.to_dict()
    body['providerRating'] = new_rating
    return success(body, 'Review submitted successfully', 201)


@reviews_bp.route('/service/<int:service_id>')
def service_reviews(service_id):
    return success(_page_of(Review.query.filter_by(service_id=service_id)))


@reviews_bp.route('/provider/<int:user_id>')
def provider_reviews(user_id):
    return success(_page_of(Review.query.filter_by(provider_id=user_id)))


@reviews_bp.route('/stats/<int:user_id>')
def provider_stats(user_id):
    provider = db.session.get(User, user_id)
    if provider is None or not provider.is_provider():
        raise NotFound('Provider not found')

    breakdown = {str(star): 0 for star in range(1, 6)}
    for star, count in (db.session.query(Review.rating, db.func.count(Review.id))
                        .filter(Review.provider_id == user_id).group_by(Review.rating).all()):
        breakdown[str(star)] = count

    total = sum(breakdown.values())
    average = db.session.query(db.func.avg(Review.rating)).filter(Review.provider_id == user_id).scalar()
    recent = (Review.query.filter_by(provider_id=user_id)
              .order_by(Review.created_at.desc(), Review.id.desc()).limit(5).all())

    return success({
        'totalReviews': total,
        'averageRating': round(float(average), 1) if average is not None else 0,
        'ratingBreakdown': breakdown,
        'recentReviews': [review.to_dict() for review in recent],
    })
