# models.py
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from datetime import datetime
from sqlalchemy.orm import declared_attr

db = SQLAlchemy()

ROLES = ('owner', 'admin', 'manager', 'user', 'guest')
MEMBERSHIP_STATUSES = ('pending', 'active', 'suspended')
VISIBILITY_MODES = ('own', 'team', 'all')
ACTIVITY_TYPES = ('note', 'call', 'email', 'status_change', 'file_upload', 'created', 'updated')


class User(UserMixin, db.Model):
    """A principal as known to the identity provider."""
    id = db.Column(db.Integer, primary_key=True)
    external_id = db.Column(db.String(255), unique=True, nullable=True)  # IdP subject
    email = db.Column(db.String(120), unique=True, nullable=False)
    first_name = db.Column(db.String(80), nullable=False, default='')
    last_name = db.Column(db.String(80), nullable=False, default='')
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    last_seen_at = db.Column(db.DateTime)

    memberships = db.relationship('Membership', back_populates='user', lazy='dynamic',
                                  foreign_keys='Membership.user_id')

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self):
        return f'<User {self.email}>'


class Workspace(db.Model):
    __tablename__ = 'workspaces'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    slug = db.Column(db.String(50), unique=True, nullable=False, index=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='RESTRICT'), nullable=False)
    settings = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = db.Column(db.DateTime)

    owner = db.relationship('User', foreign_keys=[owner_id])
    memberships = db.relationship('Membership', back_populates='workspace', lazy='dynamic',
                                  cascade='all, delete-orphan')
    subscription = db.relationship('Subscription', back_populates='workspace', uselist=False,
                                   cascade='all, delete-orphan')
    quota = db.relationship('WorkspaceQuota', back_populates='workspace', uselist=False,
                            cascade='all, delete-orphan')

    @property
    def visibility_mode(self):
        return (self.settings or {}).get('visibility_mode', 'all')

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'owner_id': self.owner_id,
            'settings': dict(self.settings or {}),
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<Workspace {self.slug}>'


class Membership(db.Model):
    __tablename__ = 'memberships'
    __table_args__ = (
        db.UniqueConstraint('workspace_id', 'user_id', name='uq_membership_workspace_user'),
    )

    id = db.Column(db.Integer, primary_key=True)
    workspace_id = db.Column(db.Integer, db.ForeignKey('workspaces.id', ondelete='CASCADE'),
                             nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False, default='user')
    status = db.Column(db.String(20), nullable=False, default='active')
    invited_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='SET NULL'))
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    workspace = db.relationship('Workspace', back_populates='memberships')
    user = db.relationship('User', back_populates='memberships', foreign_keys=[user_id])

    @property
    def is_active(self):
        return self.status == 'active'

    def to_dict(self):
        return {
            'workspace_id': self.workspace_id,
            'user_id': self.user_id,
            'email': self.user.email if self.user else None,
            'role': self.role,
            'status': self.status,
        }

    def __repr__(self):
        return f'<Membership ws={self.workspace_id} user={self.user_id} {self.role}>'


class Subscription(db.Model):
    __tablename__ = 'subscriptions'

    id = db.Column(db.Integer, primary_key=True)
    workspace_id = db.Column(db.Integer, db.ForeignKey('workspaces.id', ondelete='CASCADE'),
                             unique=True, nullable=False)
    tier = db.Column(db.String(20), nullable=False, default='free')
    status = db.Column(db.String(20), nullable=False, default='active')
    billing_period = db.Column(db.String(20), nullable=False, default='monthly')  # monthly, annual
    current_period_start = db.Column(db.DateTime)
    current_period_end = db.Column(db.DateTime)
    trial_ends_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    payment_provider = db.Column(db.String(20))  # paddle, fondy, stripe
    external_subscription_id = db.Column(db.String(255))
    enabled_modules = db.Column(db.JSON, nullable=False, default=list)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    workspace = db.relationship('Workspace', back_populates='subscription')

    # Concurrent transitions on the same row fail with StaleDataError
    __mapper_args__ = {'version_id_col': version}

    def to_dict(self):
        return {
            'workspace_id': self.workspace_id,
            'tier': self.tier,
            'status': self.status,
            'billing_period': self.billing_period,
            'current_period_start': self.current_period_start.isoformat() if self.current_period_start else None,
            'current_period_end': self.current_period_end.isoformat() if self.current_period_end else None,
            'trial_ends_at': self.trial_ends_at.isoformat() if self.trial_ends_at else None,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
            'payment_provider': self.payment_provider,
            'external_subscription_id': self.external_subscription_id,
            'enabled_modules': list(self.enabled_modules or []),
        }

    def __repr__(self):
        return f'<Subscription ws={self.workspace_id} {self.tier}/{self.status}>'


class WorkspaceQuota(db.Model):
    __tablename__ = 'workspace_quotas'

    workspace_id = db.Column(db.Integer, db.ForeignKey('workspaces.id', ondelete='CASCADE'), primary_key=True)
    # NULL ceiling = unlimited
    max_users = db.Column(db.Integer)
    max_contacts = db.Column(db.Integer)
    max_deals = db.Column(db.Integer)
    max_storage_mb = db.Column(db.Integer)
    current_users = db.Column(db.Integer, nullable=False, default=0)
    current_contacts = db.Column(db.Integer, nullable=False, default=0)
    current_deals = db.Column(db.Integer, nullable=False, default=0)
    current_storage_mb = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    workspace = db.relationship('Workspace', back_populates='quota')

    def usage(self, column_suffix):
        """Return (current, max) for a quota column suffix such as 'contacts'."""
        return getattr(self, f'current_{column_suffix}'), getattr(self, f'max_{column_suffix}')

    def to_dict(self):
        return {
            'max_users': self.max_users,
            'max_contacts': self.max_contacts,
            'max_deals': self.max_deals,
            'max_storage_mb': self.max_storage_mb,
            'current_users': self.current_users,
            'current_contacts': self.current_contacts,
            'current_deals': self.current_deals,
            'current_storage_mb': self.current_storage_mb,
        }

    def __repr__(self):
        return f'<WorkspaceQuota ws={self.workspace_id}>'


class ProcessedBillingEvent(db.Model):
    """External billing events already applied, keyed by provider event id."""
    __tablename__ = 'processed_billing_events'
    __table_args__ = (
        db.UniqueConstraint('provider', 'event_id', name='uq_billing_event_provider_id'),
    )

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(20), nullable=False)
    event_id = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(100), nullable=False)
    workspace_id = db.Column(db.Integer, db.ForeignKey('workspaces.id', ondelete='SET NULL'))
    processed_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


# =============================================================================
# OWNED RESOURCES
# =============================================================================

class OwnedResourceMixin:
    """
    Columns shared by every tenant-scoped resource.
    Visibility and mutability are derived from these plus the caller's membership.
    """
    RESOURCE_TYPE = None  # permission token suffix, e.g. 'contact'
    QUOTA_KIND = None     # quota kind consumed on create, if any

    id = db.Column(db.Integer, primary_key=True)

    @declared_attr
    def workspace_id(cls):
        return db.Column(db.Integer, db.ForeignKey('workspaces.id', ondelete='RESTRICT'),
                         nullable=False, index=True)

    @declared_attr
    def created_by_id(cls):
        return db.Column(db.Integer, db.ForeignKey('user.id', ondelete='SET NULL'))

    @declared_attr
    def owner_id(cls):
        return db.Column(db.Integer, db.ForeignKey('user.id', ondelete='SET NULL'))

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = db.Column(db.DateTime)

    # Fields a caller may set through create/update
    EDITABLE_FIELDS = ()

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def base_dict(self):
        return {
            'id': self.id,
            'workspace_id': self.workspace_id,
            'created_by_id': self.created_by_id,
            'owner_id': self.owner_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'deleted_at': self.deleted_at.isoformat() if self.deleted_at else None,
        }

    def to_dict(self):
        data = self.base_dict()
        for field in self.EDITABLE_FIELDS:
            value = getattr(self, field)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif value is not None and field == 'amount':
                value = float(value)
            data[field] = value
        return data


class Company(OwnedResourceMixin, db.Model):
    __tablename__ = 'companies'
    RESOURCE_TYPE = 'company'
    EDITABLE_FIELDS = ('name', 'website', 'status', 'owner_id')

    name = db.Column(db.String(200), nullable=False)
    website = db.Column(db.String(500))
    status = db.Column(db.String(20), nullable=False, default='lead')  # lead, active, inactive


class Contact(OwnedResourceMixin, db.Model):
    __tablename__ = 'contacts'
    RESOURCE_TYPE = 'contact'
    QUOTA_KIND = 'contacts'
    EDITABLE_FIELDS = ('first_name', 'last_name', 'email', 'phone', 'status', 'company_id', 'owner_id')

    first_name = db.Column(db.String(50), nullable=False)
    last_name = db.Column(db.String(50), nullable=False)
    email = db.Column(db.String(255))
    phone = db.Column(db.String(20))
    status = db.Column(db.String(20), nullable=False, default='new')  # new, qualified, customer, lost
    company_id = db.Column(db.Integer, db.ForeignKey('companies.id', ondelete='SET NULL'))

    def __repr__(self):
        return f'<Contact {self.first_name} {self.last_name}>'


class Deal(OwnedResourceMixin, db.Model):
    __tablename__ = 'deals'
    RESOURCE_TYPE = 'deal'
    QUOTA_KIND = 'deals'
    EDITABLE_FIELDS = ('title', 'amount', 'status', 'stage', 'contact_id', 'company_id', 'owner_id')

    title = db.Column(db.String(200), nullable=False)
    amount = db.Column(db.Numeric(12, 2))
    status = db.Column(db.String(20), nullable=False, default='open')  # open, won, lost, cancelled
    stage = db.Column(db.String(50))
    contact_id = db.Column(db.Integer, db.ForeignKey('contacts.id', ondelete='SET NULL'))
    company_id = db.Column(db.Integer, db.ForeignKey('companies.id', ondelete='SET NULL'))


class Task(OwnedResourceMixin, db.Model):
    __tablename__ = 'tasks'
    RESOURCE_TYPE = 'task'
    EDITABLE_FIELDS = ('title', 'description', 'task_type', 'status', 'priority', 'due_date',
                       'contact_id', 'deal_id', 'owner_id')

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    task_type = db.Column(db.String(20), nullable=False, default='todo')  # call, meeting, email, todo
    status = db.Column(db.String(20), nullable=False, default='pending')
    priority = db.Column(db.String(20), nullable=False, default='medium')
    due_date = db.Column(db.DateTime)
    contact_id = db.Column(db.Integer, db.ForeignKey('contacts.id', ondelete='SET NULL'))
    deal_id = db.Column(db.Integer, db.ForeignKey('deals.id', ondelete='SET NULL'))


class Activity(OwnedResourceMixin, db.Model):
    """
    Timeline entries. Only notes are user-authored; every other type is an
    append-only log record.
    """
    __tablename__ = 'activities'
    RESOURCE_TYPE = 'activity'
    EDITABLE_FIELDS = ('activity_type', 'content', 'details', 'contact_id', 'deal_id', 'owner_id')

    activity_type = db.Column(db.String(20), nullable=False, default='note')
    content = db.Column(db.Text)
    details = db.Column(db.JSON, nullable=False, default=dict)
    contact_id = db.Column(db.Integer, db.ForeignKey('contacts.id', ondelete='SET NULL'))
    deal_id = db.Column(db.Integer, db.ForeignKey('deals.id', ondelete='SET NULL'))


OWNED_RESOURCE_MODELS = {
    'companies': Company,
    'contacts': Contact,
    'deals': Deal,
    'tasks': Task,
    'activities': Activity,
}
