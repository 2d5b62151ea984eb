"""
Support ticket routes for users and the admin desk.
"""

from flask import Blueprint, request
from flask_login import current_user, login_required

from ..models import AuditLog, SupportTicket
from .. import db
from ..decorators import admin_required
from ..errors import NotFound, PermissionDenied, ValidationError
from ..notifier import notify, notify_admins
from ..sanitizer import get_json_body
from ..utils import client_ip, success
from ..validators import get_pagination, pagination_meta

support_bp = Blueprint('support', __name__)

PRIORITIES = ('LOW', 'MEDIUM', 'HIGH', 'URGENT')
STATUSES = ('OPEN', 'IN_PROGRESS', 'RESOLVED', 'CLOSED')


def _choice(value, allowed, field):
    value = str(value or '').strip().upper()
    if value not in allowed:
        raise ValidationError([f'{field} must be one of {", ".join(allowed)}.'])
    return value


def _filtered(query):
    args = request.args
    if args.get('status'):
        query = query.filter_by(status=_choice(args['status'], STATUSES, 'status'))
    if args.get('priority'):
        query = query.filter_by(priority=_choice(args['priority'], PRIORITIES, 'priority'))

    page, limit = get_pagination(args)
    results = query.order_by(SupportTicket.created_at.desc(), SupportTicket.id.desc()).paginate(
        page=page, per_page=limit, error_out=False)
    return {
        'tickets': [ticket.to_dict() for ticket in results.items],
        'pagination': pagination_meta(results),
    }


def _visible_ticket(ticket_id):
    ticket = db.session.get(SupportTicket, ticket_id)
    if ticket is None:
        raise NotFound('Ticket not found')
    if ticket.user_id != current_user.id and not current_user.is_admin():
        raise PermissionDenied('Access denied')
    return ticket


@support_bp.route('/tickets', methods=['POST'])
@login_required
def create_ticket():
    data = get_json_body()
    errors = []
    subject = data.get('subject')
    description = data.get('description')
    if not isinstance(subject, str) or not subject.strip():
        errors.append('Subject is required.')
    elif len(subject.strip()) > 200:
        errors.append('Subject must be at most 200 characters.')
    if not isinstance(description, str) or not description.strip():
        errors.append('Description is required.')
    if errors:
        raise ValidationError(errors)
    priority = _choice(data.get('priority') or 'MEDIUM', PRIORITIES, 'priority')

    ticket = SupportTicket(user_id=current_user.id, subject=subject.strip(),
                           description=description.strip(), priority=priority)
    db.session.add(ticket)
    db.session.flush()

    notify_admins('SUPPORT', 'New support ticket',
                  f'#{ticket.id} [{priority}] {ticket.subject}', link=f'/support/tickets/{ticket.id}',
                  data={'ticketId': ticket.id})
    db.session.commit()

    return success(ticket.to_dict(), 'Support ticket created', 201)


@support_bp.route('/tickets', methods=['GET'])
@login_required
def list_tickets():
    return success(_filtered(SupportTicket.query.filter_by(user_id=current_user.id)))


@support_bp.route('/tickets/<int:ticket_id>', methods=['GET'])
@login_required
def get_ticket(ticket_id):
    return success(_visible_ticket(ticket_id).to_dict())


@support_bp.route('/tickets/<int:ticket_id>/status', methods=['PUT'])
@login_required
def update_ticket_status(ticket_id):
    ticket = db.session.get(SupportTicket, ticket_id)
    if ticket is None:
        raise NotFound('Ticket not found')
    if ticket.user_id != current_user.id:
        raise PermissionDenied('Only the ticket owner can change its status')

    ticket.status = _choice(get_json_body().get('status'), STATUSES, 'status')
    db.session.commit()
    return success(ticket.to_dict(), 'Ticket status updated')


@support_bp.route('/admin/tickets', methods=['GET'])
@login_required
@admin_required
def admin_list_tickets():
    return success(_filtered(SupportTicket.query))


@support_bp.route('/admin/tickets/<int:ticket_id>', methods=['PUT'])
@login_required
@admin_required
def admin_update_ticket(ticket_id):
    ticket = db.session.get(SupportTicket, ticket_id)
    if ticket is None:
        raise NotFound('Ticket not found')

    data = get_json_body()
    changes = {}
    if data.get('status') is not None:
        changes['status'] = _choice(data['status'], STATUSES, 'status')
    if data.get('priority') is not None:
        changes['priority'] = _choice(data['priority'], PRIORITIES, 'priority')
    if data.get('adminResponse') is not None:
        if not isinstance(data['adminResponse'], str) or not data['adminResponse'].strip():
            raise ValidationError(['adminResponse must be non-empty text.'])
        changes['admin_response'] = data['adminResponse'].strip()
    if not changes:
        raise ValidationError(['Nothing to update.'])

    for attr, value in changes.items():
        setattr(ticket, attr, value)

    notify(ticket.user_id, 'SUPPORT', f'Update on ticket #{ticket.id}',
           ticket.admin_response or f'Status: {ticket.status}', link=f'/support/tickets/{ticket.id}',
           data={'ticketId': ticket.id, 'status': ticket.status})
    db.session.commit()

    AuditLog.log(
        action='TICKET_UPDATED',
        user_id=current_user.id,
        ip_address=client_ip(),
        resource_type='support_ticket',
        resource_id=ticket.id,
        details={key: value for key, value in changes.items() if key != 'admin_response'}
    )

    return success(ticket.to_dict(), 'Ticket updated')


@support_bp.route('/admin/statistics', methods=['GET'])
@login_required
@admin_required
def admin_statistics():
    by_status = dict(db.session.query(SupportTicket.status, db.func.count(SupportTicket.id))
                     .group_by(SupportTicket.status).all())
    by_priority = dict(db.session.query(SupportTicket.priority, db.func.count(SupportTicket.id))
                       .group_by(SupportTicket.priority).all())
    return success({
        'total': sum(by_status.values()),
        'byStatus': {status: by_status.get(status, 0) for status in STATUSES},
        'byPriority': {priority: by_priority.get(priority, 0) for priority in PRIORITIES},
    })
