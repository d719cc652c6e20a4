"""Add workspaces, memberships, subscriptions, quotas and owned resources

Revision ID: add_workspaces_and_billing
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision = 'add_workspaces_and_billing'
down_revision = None
branch_labels = None
depends_on = None


def _owned_columns():
    """Columns every workspace-owned table carries."""
    return [
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('workspace_id', sa.Integer(), sa.ForeignKey('workspaces.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('user.id', ondelete='SET NULL')),
        sa.Column('owner_id', sa.Integer(), sa.ForeignKey('user.id', ondelete='SET NULL')),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
    ]


def upgrade():
    conn = op.get_bind()
    tables = inspect(conn).get_table_names()

    # =========================================================================
    # STEP 1: Principals and workspaces
    # =========================================================================
    if 'user' not in tables:
        op.create_table(
            'user',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('external_id', sa.String(255), unique=True, nullable=True),
            sa.Column('email', sa.String(120), unique=True, nullable=False),
            sa.Column('first_name', sa.String(80), nullable=False, server_default=''),
            sa.Column('last_name', sa.String(80), nullable=False, server_default=''),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        )

    if 'workspaces' not in tables:
        op.create_table(
            'workspaces',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(100), nullable=False),
            sa.Column('slug', sa.String(50), nullable=False),
            sa.Column('owner_id', sa.Integer(), sa.ForeignKey('user.id', ondelete='RESTRICT'), nullable=False),
            sa.Column('settings', sa.JSON(), nullable=False, server_default='{}'),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column('deleted_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_workspaces_slug', 'workspaces', ['slug'], unique=True)

    if 'memberships' not in tables:
        op.create_table(
            'memberships',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('workspace_id', sa.Integer(), sa.ForeignKey('workspaces.id', ondelete='CASCADE'),
                      nullable=False, index=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id', ondelete='CASCADE'),
                      nullable=False, index=True),
            sa.Column('role', sa.String(20), nullable=False, server_default='user'),
            sa.Column('status', sa.String(20), nullable=False, server_default='active'),
            sa.Column('invited_by_id', sa.Integer(), sa.ForeignKey('user.id', ondelete='SET NULL')),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('workspace_id', 'user_id', name='uq_membership_workspace_user'),
            sa.CheckConstraint("role IN ('owner', 'admin', 'manager', 'user', 'guest')",
                               name='ck_membership_role'),
            sa.CheckConstraint("status IN ('pending', 'active', 'suspended')",
                               name='ck_membership_status'),
        )

    # =========================================================================
    # STEP 2: Billing
    # =========================================================================
    if 'subscriptions' not in tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('workspace_id', sa.Integer(), sa.ForeignKey('workspaces.id', ondelete='CASCADE'),
                      unique=True, nullable=False),
            sa.Column('tier', sa.String(20), nullable=False, server_default='free'),
            sa.Column('status', sa.String(20), nullable=False, server_default='active'),
            sa.Column('billing_period', sa.String(20), nullable=False, server_default='monthly'),
            sa.Column('current_period_start', sa.DateTime(), nullable=True),
            sa.Column('current_period_end', sa.DateTime(), nullable=True),
            sa.Column('trial_ends_at', sa.DateTime(), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(), nullable=True),
            sa.Column('payment_provider', sa.String(20), nullable=True),
            sa.Column('external_subscription_id', sa.String(255), nullable=True),
            sa.Column('enabled_modules', sa.JSON(), nullable=False, server_default='[]'),
            sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint("tier IN ('free', 'starter', 'pro', 'enterprise')", name='ck_subscription_tier'),
            sa.CheckConstraint("status IN ('trialing', 'active', 'past_due', 'cancelled')",
                               name='ck_subscription_status'),
        )

    if 'workspace_quotas' not in tables:
        op.create_table(
            'workspace_quotas',
            sa.Column('workspace_id', sa.Integer(), sa.ForeignKey('workspaces.id', ondelete='CASCADE'),
                      primary_key=True),
            sa.Column('max_users', sa.Integer(), nullable=True),
            sa.Column('max_contacts', sa.Integer(), nullable=True),
            sa.Column('max_deals', sa.Integer(), nullable=True),
            sa.Column('max_storage_mb', sa.Integer(), nullable=True),
            sa.Column('current_users', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('current_contacts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('current_deals', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('current_storage_mb', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint(
                'current_users >= 0 AND current_contacts >= 0 AND current_deals >= 0 '
                'AND current_storage_mb >= 0',
                name='ck_quota_counters_non_negative'
            ),
        )

    if 'processed_billing_events' not in tables:
        op.create_table(
            'processed_billing_events',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('provider', sa.String(20), nullable=False),
            sa.Column('event_id', sa.String(255), nullable=False),
            sa.Column('event_type', sa.String(100), nullable=False),
            sa.Column('workspace_id', sa.Integer(), sa.ForeignKey('workspaces.id', ondelete='SET NULL')),
            sa.Column('processed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('provider', 'event_id', name='uq_billing_event_provider_id'),
        )

    # =========================================================================
    # STEP 3: Owned resources
    # =========================================================================
    if 'companies' not in tables:
        op.create_table(
            'companies',
            *_owned_columns(),
            sa.Column('name', sa.String(200), nullable=False),
            sa.Column('website', sa.String(500)),
            sa.Column('status', sa.String(20), nullable=False, server_default='lead'),
        )

    if 'contacts' not in tables:
        op.create_table(
            'contacts',
            *_owned_columns(),
            sa.Column('first_name', sa.String(50), nullable=False),
            sa.Column('last_name', sa.String(50), nullable=False),
            sa.Column('email', sa.String(255)),
            sa.Column('phone', sa.String(20)),
            sa.Column('status', sa.String(20), nullable=False, server_default='new'),
            sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id', ondelete='SET NULL')),
        )

    if 'deals' not in tables:
        op.create_table(
            'deals',
            *_owned_columns(),
            sa.Column('title', sa.String(200), nullable=False),
            sa.Column('amount', sa.Numeric(12, 2)),
            sa.Column('status', sa.String(20), nullable=False, server_default='open'),
            sa.Column('stage', sa.String(50)),
            sa.Column('contact_id', sa.Integer(), sa.ForeignKey('contacts.id', ondelete='SET NULL')),
            sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id', ondelete='SET NULL')),
        )

    if 'tasks' not in tables:
        op.create_table(
            'tasks',
            *_owned_columns(),
            sa.Column('title', sa.String(200), nullable=False),
            sa.Column('description', sa.Text()),
            sa.Column('task_type', sa.String(20), nullable=False, server_default='todo'),
            sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
            sa.Column('priority', sa.String(20), nullable=False, server_default='medium'),
            sa.Column('due_date', sa.DateTime()),
            sa.Column('contact_id', sa.Integer(), sa.ForeignKey('contacts.id', ondelete='SET NULL')),
            sa.Column('deal_id', sa.Integer(), sa.ForeignKey('deals.id', ondelete='SET NULL')),
        )

    if 'activities' not in tables:
        op.create_table(
            'activities',
            *_owned_columns(),
            sa.Column('activity_type', sa.String(20), nullable=False, server_default='note'),
            sa.Column('content', sa.Text()),
            sa.Column('details', sa.JSON(), nullable=False, server_default='{}'),
            sa.Column('contact_id', sa.Integer(), sa.ForeignKey('contacts.id', ondelete='SET NULL')),
            sa.Column('deal_id', sa.Integer(), sa.ForeignKey('deals.id', ondelete='SET NULL')),
        )


def downgrade():
    for table in ('activities', 'tasks', 'deals', 'contacts', 'companies',
                  'processed_billing_events', 'workspace_quotas', 'subscriptions',
                  'memberships', 'workspaces', 'user'):
        op.drop_table(table)
