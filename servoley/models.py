"""
Database models for the ServoLeY marketplace.
"""

import json
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from flask_login import UserMixin

from . import db

CENT = Decimal('0.01')


def to_money(value):
    """Rupee amount as a Decimal rounded to paise."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value or 0).quantize(CENT, rounding=ROUND_HALF_UP)


def round2(value):
    return float(to_money(value))


class Money(db.TypeDecorator):
    """Rupees in Python, whole paise in the database, so balance arithmetic stays exact in SQL."""
    impl = db.BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return int(to_money(value) * 100)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return (Decimal(int(value)) / 100).quantize(CENT)


def isoformat(value):
    return value.isoformat() + 'Z' if value else None


class User(db.Model, UserMixin):
    """Account for customers, providers and admins."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=True, index=True)
    phone = db.Column(db.String(15), unique=True, nullable=True, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    user_type = db.Column(db.String(20), nullable=False, default='CUSTOMER')  # CUSTOMER, PROVIDER, ADMIN
    is_verified = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    is_blocked = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_login_at = db.Column(db.DateTime, nullable=True)

    # Profile
    first_name = db.Column(db.String(80), nullable=False)
    last_name = db.Column(db.String(80), nullable=False)
    address = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(80), nullable=True)
    state = db.Column(db.String(80), nullable=True)
    pincode = db.Column(db.String(10), nullable=True)

    provider = db.relationship('ProviderProfile', backref='user', uselist=False, cascade='all, delete-orphan')
    wallet = db.relationship('Wallet', backref='user', uselist=False, cascade='all, delete-orphan')
    notifications = db.relationship('Notification', backref='user', lazy='dynamic', cascade='all, delete-orphan')

    def __repr__(self):
        return f'<User {self.id} {self.user_type}>'

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'.strip()

    def is_admin(self):
        return self.user_type == 'ADMIN'

    def is_provider(self):
        return self.user_type == 'PROVIDER'

    def is_customer(self):
        return self.user_type == 'CUSTOMER'

    def to_dict(self, include_provider=True):
        data = {
            'id': self.id,
            'email': self.email,
            'phone': self.phone,
            'userType': self.user_type,
            'isVerified': bool(self.is_verified),
            'isActive': bool(self.is_active),
            'isBlocked': bool(self.is_blocked),
            'createdAt': isoformat(self.created_at),
            'profile': {
                'firstName': self.first_name,
                'lastName': self.last_name,
                'address': self.address,
                'city': self.city,
                'state': self.state,
                'pincode': self.pincode,
            },
        }
        if include_provider:
            data['provider'] = self.provider.to_dict() if self.provider else None
        return data


class ProviderProfile(db.Model):
    """Business details of a provider. Identity documents are Fernet-encrypted."""
    __tablename__ = 'provider_profiles'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), unique=True, nullable=False)
    business_name = db.Column(db.String(120), nullable=False)
    provider_type = db.Column(db.String(20), default='FREELANCER')  # FREELANCER, BUSINESS
    category = db.Column(db.String(80), default='General')
    area = db.Column(db.String(120), default='Not specified')
    address = db.Column(db.String(255), nullable=True)
    experience = db.Column(db.Integer, nullable=True)
    pan_number_encrypted = db.Column(db.LargeBinary, nullable=True)
    aadhaar_number_encrypted = db.Column(db.LargeBinary, nullable=True)
    bank_account_encrypted = db.Column(db.LargeBinary, nullable=True)
    gst_number = db.Column(db.String(20), nullable=True)
    upi_id = db.Column(db.String(80), nullable=True)
    is_verified = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    is_online = db.Column(db.Boolean, default=False)
    rating = db.Column(db.Float, default=0)
    total_orders = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    verified_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        from .crypto_utils import decrypt_field, mask_value
        return {
            'id': self.id,
            'userId': self.user_id,
            'businessName': self.business_name,
            'providerType': self.provider_type,
            'category': self.category,
            'area': self.area,
            'address': self.address,
            'experience': self.experience,
            'panNumber': mask_value(decrypt_field(self.pan_number_encrypted)),
            'aadhaarNumber': mask_value(decrypt_field(self.aadhaar_number_encrypted)),
            'bankAccount': mask_value(decrypt_field(self.bank_account_encrypted)),
            'gstNumber': self.gst_number,
            'upiId': self.upi_id,
            'isVerified': bool(self.is_verified),
            'isActive': bool(self.is_active),
            'isOnline': bool(self.is_online),
            'rating': self.rating or 0,
            'totalOrders': self.total_orders or 0,
        }


class Service(db.Model):
    __tablename__ = 'services'

    id = db.Column(db.Integer, primary_key=True)
    provider_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(80), nullable=False, index=True)
    price = db.Column(Money, nullable=False)
    duration = db.Column(db.Integer, nullable=False)  # minutes
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    provider = db.relationship('User', backref=db.backref('services', lazy='dynamic'))

    def to_dict(self, include_provider=False):
        data = {
            'id': self.id,
            'providerId': self.provider_id,
            'name': self.name,
            'description': self.description,
            'category': self.category,
            'price': round2(self.price),
            'duration': self.duration,
            'isActive': bool(self.is_active),
            'createdAt': isoformat(self.created_at),
        }
        if include_provider and self.provider is not None:
            profile = self.provider.provider
            data['provider'] = {
                'userId': self.provider.id,
                'name': self.provider.full_name,
                'businessName': profile.business_name if profile else None,
                'area': profile.area if profile else None,
                'rating': profile.rating if profile else 0,
                'isOnline': bool(profile.is_online) if profile else False,
            }
        return data


class Order(db.Model):
    __tablename__ = 'orders'

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    provider_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    service_id = db.Column(db.Integer, db.ForeignKey('services.id'), nullable=False)
    status = db.Column(db.String(20), default='PENDING', index=True)
    total_amount = db.Column(Money, nullable=False, default=0)
    service_date = db.Column(db.DateTime, nullable=False)
    address = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    cancel_reason = db.Column(db.String(500), nullable=True)
    cancelled_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    customer = db.relationship('User', foreign_keys=[customer_id])
    provider = db.relationship('User', foreign_keys=[provider_id])
    service = db.relationship('Service')

    def involves(self, user):
        return user.is_admin() or user.id in (self.customer_id, self.provider_id)

    def to_dict(self):
        return {
            'id': self.id,
            'customerId': self.customer_id,
            'providerId': self.provider_id,
            'serviceId': self.service_id,
            'serviceName': self.service.name if self.service else None,
            'status': self.status,
            'totalAmount': round2(self.total_amount),
            'serviceDate': isoformat(self.service_date),
            'address': self.address,
            'notes': self.notes,
            'cancelReason': self.cancel_reason,
            'createdAt': isoformat(self.created_at),
            'completedAt': isoformat(self.completed_at),
            'cancelledAt': isoformat(self.cancelled_at),
        }


class Message(db.Model):
    __tablename__ = 'messages'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    receiver_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    read_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self, order):
        return {
            'id': self.id,
            'orderId': self.order_id,
            'senderId': self.sender_id,
            'receiverId': self.receiver_id,
            'content': self.content,
            'createdAt': isoformat(self.created_at),
            'readAt': isoformat(self.read_at),
            'isFromCustomer': self.sender_id == order.customer_id,
        }


class Notification(db.Model):
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    type = db.Column(db.String(30), nullable=False)  # ORDER, CHAT, PAYMENT, SUPPORT, ACCOUNT
    title = db.Column(db.String(150), nullable=False)
    body = db.Column(db.Text, nullable=True)
    link = db.Column(db.String(255), nullable=True)
    _data = db.Column('data', db.Text, nullable=True)
    status = db.Column(db.String(10), default='UNREAD', index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    read_at = db.Column(db.DateTime, nullable=True)

    @property
    def data(self):
        return json.loads(self._data) if self._data else {}

    @data.setter
    def data(self, value):
        self._data = json.dumps(value) if value else None

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'title': self.title,
            'body': self.body,
            'link': self.link,
            'data': self.data,
            'status': self.status,
            'createdAt': isoformat(self.created_at),
            'readAt': isoformat(self.read_at),
        }


class Wallet(db.Model):
    __tablename__ = 'wallets'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), unique=True, nullable=False)
    balance = db.Column(Money, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    transactions = db.relationship('WalletTransaction', backref='wallet', lazy='dynamic')


class WalletTransaction(db.Model):
    __tablename__ = 'wallet_transactions'

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey('wallets.id'), nullable=False, index=True)
    amount = db.Column(Money, nullable=False)
    # CREDIT, DEBIT, ESCROW_HOLD, ESCROW_RELEASE, REFUND, WITHDRAWAL
    type = db.Column(db.String(20), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=True)
    reference = db.Column(db.String(128), nullable=True)
    balance_after = db.Column(Money, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    CREDIT_TYPES = ('CREDIT', 'ESCROW_RELEASE', 'REFUND')

    @property
    def is_credit(self):
        return self.type in self.CREDIT_TYPES

    def to_dict(self):
        return {
            'id': self.id,
            'walletId': self.wallet_id,
            'userId': self.wallet.user_id if self.wallet else None,
            'amount': round2(self.amount),
            'type': self.type,
            'direction': 'CREDIT' if self.is_credit else 'DEBIT',
            'description': self.description,
            'reference': self.reference,
            'balanceAfter': round2(self.balance_after) if self.balance_after is not None else None,
            'createdAt': isoformat(self.created_at),
        }


class PaymentOrder(db.Model):
    """Gateway order created for a wallet top-up."""
    __tablename__ = 'payment_orders'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    order_id = db.Column(db.String(64), unique=True, nullable=False)
    payment_id = db.Column(db.String(128), nullable=True)
    signature = db.Column(db.String(512), nullable=True)
    amount = db.Column(Money, nullable=False)
    currency = db.Column(db.String(3), default='INR')
    payment_method = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), default='PENDING')  # PENDING, PROCESSING, COMPLETED, FAILED
    type = db.Column(db.String(20), default='WALLET_TOPUP')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship('User', backref=db.backref('payment_orders', lazy='dynamic'))

    def to_dict(self, include_user=False):
        data = {
            'id': self.id,
            'userId': self.user_id,
            'orderId': self.order_id,
            'paymentId': self.payment_id,
            'amount': round2(self.amount),
            'currency': self.currency,
            'paymentMethod': self.payment_method,
            'status': self.status,
            'type': self.type,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }
        if include_user and self.user:
            data['user'] = {
                'id': self.user.id,
                'email': self.user.email,
                'firstName': self.user.first_name,
                'lastName': self.user.last_name,
            }
        return data


class EscrowTransaction(db.Model):
    __tablename__ = 'escrow_transactions'

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    provider_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    service_id = db.Column(db.Integer, db.ForeignKey('services.id'), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=True, index=True)
    amount = db.Column(Money, nullable=False)
    platform_fee_percent = db.Column(db.Float, nullable=False, default=5)
    platform_fee = db.Column(Money, nullable=False, default=0)
    status = db.Column(db.String(20), default='pending', index=True)
    dispute_reason = db.Column(db.String(500), nullable=True)
    disputed_by = db.Column(db.String(10), nullable=True)
    is_funded = db.Column(db.Boolean, default=False)  # customer wallet debited by hold
    released_amount = db.Column(Money, nullable=True)
    refunded_amount = db.Column(Money, nullable=True)
    refund_reason = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    released_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)

    def involves(self, user):
        return user.is_admin() or user.id in (self.customer_id, self.provider_id)

    def to_dict(self):
        return {
            'id': self.id,
            'customerId': self.customer_id,
            'providerId': self.provider_id,
            'serviceId': self.service_id,
            'orderId': self.order_id,
            'amount': round2(self.amount),
            'platformFeePercent': self.platform_fee_percent,
            'platformFee': round2(self.platform_fee),
            'status': self.status,
            'disputeReason': self.dispute_reason,
            'disputedBy': self.disputed_by,
            'isFunded': bool(self.is_funded),
            'releasedAmount': round2(self.released_amount) if self.released_amount is not None else None,
            'refundedAmount': round2(self.refunded_amount) if self.refunded_amount is not None else None,
            'createdAt': isoformat(self.created_at),
            'releasedAt': isoformat(self.released_at),
            'refundedAt': isoformat(self.refunded_at),
        }


class Review(db.Model):
    __tablename__ = 'reviews'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), unique=True, nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey('services.id'), nullable=False, index=True)
    reviewer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    provider_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    reviewer = db.relationship('User', foreign_keys=[reviewer_id])

    def to_dict(self):
        return {
            'id': self.id,
            'orderId': self.order_id,
            'serviceId': self.service_id,
            'reviewerId': self.reviewer_id,
            'reviewerName': self.reviewer.full_name if self.reviewer else None,
            'providerId': self.provider_id,
            'rating': self.rating,
            'comment': self.comment,
            'createdAt': isoformat(self.created_at),
        }


class SupportTicket(db.Model):
    __tablename__ = 'support_tickets'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    subject = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    priority = db.Column(db.String(10), default='MEDIUM')  # LOW, MEDIUM, HIGH, URGENT
    status = db.Column(db.String(20), default='OPEN')  # OPEN, IN_PROGRESS, RESOLVED, CLOSED
    admin_response = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'subject': self.subject,
            'description': self.description,
            'priority': self.priority,
            'status': self.status,
            'adminResponse': self.admin_response,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }


class OTPCode(db.Model):
    """Hashed one-time passcode for registration and login."""
    __tablename__ = 'otp_codes'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    code_hash = db.Column(db.String(64), nullable=False)
    purpose = db.Column(db.String(20), nullable=False)  # REGISTRATION, LOGIN
    channel = db.Column(db.String(10), nullable=False)  # EMAIL, SMS
    attempts = db.Column(db.Integer, default=0)
    is_used = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)


class RefreshSession(db.Model):
    __tablename__ = 'refresh_sessions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    token_hash = db.Column(db.String(64), unique=True, nullable=False)
    user_agent = db.Column(db.String(255), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    revoked_at = db.Column(db.DateTime, nullable=True)


class IdempotencyKey(db.Model):
    __tablename__ = 'idempotency_keys'

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(64), nullable=False)
    user_id = db.Column(db.Integer, nullable=False)
    key = db.Column(db.String(128), nullable=False)
    request_hash = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='IN_PROGRESS')  # IN_PROGRESS, COMPLETED, FAILED
    response_code = db.Column(db.Integer, nullable=True)
    response_body = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)

    __table_args__ = (db.UniqueConstraint('scope', 'user_id', 'key', name='unique_idempotency_scope_user_key'),)


class AuditLog(db.Model):
    """Append-only log of security and admin actions."""
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    action = db.Column(db.String(100), nullable=False)
    ip_address = db.Column(db.String(45), nullable=True)  # IPv6 compatible
    details = db.Column(db.Text, nullable=True)  # JSON additional data
    resource_type = db.Column(db.String(50), nullable=True)  # e.g., 'order', 'user'
    resource_id = db.Column(db.Integer, nullable=True)

    def __repr__(self):
        return f'<AuditLog {self.action} at {self.timestamp}>'

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': isoformat(self.timestamp),
            'userId': self.user_id,
            'action': self.action,
            'ipAddress': self.ip_address,
            'details': json.loads(self.details) if self.details else None,
            'resourceType': self.resource_type,
            'resourceId': self.resource_id,
        }

    @classmethod
    def log(cls, action, user_id=None, ip_address=None, details=None, resource_type=None,
            resource_id=None, commit=True):
        """Create a new audit log entry."""
        log_entry = cls(
            action=action,
            user_id=user_id,
            ip_address=ip_address,
            details=json.dumps(details) if details else None,
            resource_type=resource_type,
            resource_id=resource_id
        )
        db.session.add(log_entry)
        if commit:
            db.session.commit()
        return log_entry
