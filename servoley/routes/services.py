"""
Service listing routes.
Browsing is public; providers manage their own listings.
"""

from flask import Blueprint, request
from flask_login import current_user, login_required

from ..models import ProviderProfile, Service, User
from .. import db
from ..decorators import roles_required, verified_provider_required
from ..errors import NotFound, PermissionDenied, ValidationError
from ..sanitizer import get_json_body
from ..utils import success
from ..validators import get_pagination, pagination_meta, parse_amount, parse_int

services_bp = Blueprint('services', __name__)

MIN_PRICE = 1
MIN_DURATION = 15  # minutes


def _public_query():
    """Active services whose provider is active, unblocked and verified."""
    return (Service.query
            .join(User, Service.provider_id == User.id)
            .join(ProviderProfile, ProviderProfile.user_id == User.id)
            .filter(Service.is_active.is_(True),
                    User.is_active.is_(True),
                    User.is_blocked.is_(False),
                    ProviderProfile.is_verified.is_(True),
                    ProviderProfile.is_active.is_(True)))


def _validate(data, partial=False):
    """Return column values for a service payload, raising ValidationError on bad input."""
    errors = []
    values = {}

    for key, max_length in (('name', 120), ('description', 5000), ('category', 80)):
        if key not in data and partial:
            continue
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            errors.append(f'{key} is required.')
        elif len(value.strip()) > max_length:
            errors.append(f'{key} must be at most {max_length} characters.')
        else:
            values[key] = value.strip()

    if 'price' in data or not partial:
        try:
            values['price'] = parse_amount(data.get('price'), 'price', minimum=MIN_PRICE)
        except ValidationError as error:
            errors.extend(error.errors)

    if 'duration' in data or not partial:
        try:
            values['duration'] = parse_int(data.get('duration'), 'duration', minimum=MIN_DURATION)
        except ValidationError as error:
            errors.extend(error.errors)

    if errors:
        raise ValidationError(errors)
    return values


def _owned_service(service_id):
    service = db.session.get(Service, service_id)
    if service is None:
        raise NotFound('Service not found')
    if service.provider_id != current_user.id:
        raise PermissionDenied('You can only manage your own services')
    return service


@services_bp.route('', methods=['GET'])
def list_services():
    """Browse services with filters, newest first."""
    args = request.args
    page, limit = get_pagination(args)
    query = _public_query()

    if args.get('category'):
        query = query.filter(db.func.lower(Service.category) == args['category'].strip().lower())
    if args.get('area'):
        query = query.filter(ProviderProfile.area.ilike(f"%{args['area'].strip()}%"))
    if args.get('minPrice'):
        query = query.filter(Service.price >= parse_amount(args['minPrice'], 'minPrice', minimum=0))
    if args.get('maxPrice'):
        query = query.filter(Service.price <= parse_amount(args['maxPrice'], 'maxPrice', minimum=0))
    if args.get('rating'):
        rating = parse_amount(args['rating'], 'rating', minimum=0, maximum=5)
        query = query.filter(ProviderProfile.rating >= float(rating))
    if args.get('search'):
        pattern = f"%{args['search'].strip()}%"
        query = query.filter(db.or_(Service.name.ilike(pattern),
                                    Service.description.ilike(pattern),
                                    Service.category.ilike(pattern)))

    results = query.order_by(Service.created_at.desc(), Service.id.desc()).paginate(
        page=page, per_page=limit, error_out=False)

    return success({
        'services': [service.to_dict(include_provider=True) for service in results.items],
        'pagination': pagination_meta(results),
    })


@services_bp.route('/<int:service_id>', methods=['GET'])
def get_service(service_id):
    service = _public_query().filter(Service.id == service_id).first()
    if service is None:
        raise NotFound('Service not found')
    return success(service.to_dict(include_provider=True))


@services_bp.route('/categories/list', methods=['GET'])
def categories():
    rows = (_public_query()
            .with_entities(Service.category, db.func.count(Service.id))
            .group_by(Service.category)
            .order_by(Service.category)
            .all())
    return success({'categories': [{'name': name, 'count': count} for name, count in rows]})


@services_bp.route('', methods=['POST'])
@login_required
@verified_provider_required
def create_service():
    values = _validate(get_json_body())
    service = Service(provider_id=current_user.id, **values)
    db.session.add(service)
    db.session.commit()
    return success(service.to_dict(), 'Service created successfully', 201)


@services_bp.route('/<int:service_id>', methods=['PUT'])
@login_required
@roles_required('PROVIDER')
def update_service(service_id):
    service = _owned_service(service_id)
    data = get_json_body()
    values = _validate(data, partial=True)
    if 'isActive' in data:
        if not isinstance(data['isActive'], bool):
            raise ValidationError(['isActive must be a boolean.'])
        values['is_active'] = data['isActive']
    if not values:
        raise ValidationError(['No service fields to update.'])

    for attr, value in values.items():
        setattr(service, attr, value)
    db.session.commit()
    return success(service.to_dict(), 'Service updated successfully')


@services_bp.route('/<int:service_id>', methods=['DELETE'])
@login_required
@roles_required('PROVIDER')
def delete_service(service_id):
    """Soft delete: the listing is deactivated, existing orders keep their reference."""
    service = _owned_service(service_id)
    service.is_active = False
    db.session.commit()
    return success(message='Service deleted successfully')


@services_bp.route('/provider/my-services', methods=['GET'])
@login_required
@roles_required('PROVIDER')
def my_services():
    rows = Service.query.filter_by(provider_id=current_user.id).order_by(
        Service.created_at.desc(), Service.id.desc()).all()
    return success({'services': [service.to_dict() for service in rows]})
