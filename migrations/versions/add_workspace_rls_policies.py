"""Add row-level security policies for workspace data

Revision ID: add_workspace_rls_policies
Revises: add_workspaces_and_billing
Create Date: 2026-10-19

Policies are rendered by services/policy_sql.py from the same permission
table and visibility rules the application uses. Re-run this migration
(downgrade + upgrade) after changing either.
"""
from alembic import op
from sqlalchemy import text

from services.policy_sql import generate_policy_sql, drop_policy_sql

revision = 'add_workspace_rls_policies'
down_revision = 'add_workspaces_and_billing'
branch_labels = None
depends_on = None


def upgrade():
    conn = op.get_bind()
    if conn.dialect.name != 'postgresql':
        print('⚠ Skipping RLS policies - not PostgreSQL')
        return

    for statement in generate_policy_sql():
        conn.execute(text(statement))
    print('✓ Enabled workspace RLS policies')


def downgrade():
    conn = op.get_bind()
    if conn.dialect.name != 'postgresql':
        return

    for statement in drop_policy_sql():
        conn.execute(text(statement))
