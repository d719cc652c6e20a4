# services/tenant_service.py
"""
Workspace isolation helpers.
ALWAYS scope tenant models with workspace_query() and check membership
before acting on a workspace. RLS is the safety net, but application
code should be correct too.
"""

from functools import wraps

from flask import g, abort, has_app_context
from flask_login import current_user
from sqlalchemy import event, text
from sqlalchemy.orm import Session

from models import db, Workspace, Membership
from services.exceptions import AuthorizationDenied, NotFound
from services.permissions import get_evaluator


# =============================================================================
# QUERY HELPERS
# =============================================================================

def workspace_query(model, workspace_id: int):
    """
    Return query filtered to one workspace.

    Example:
        contacts = workspace_query(Contact, workspace_id).filter_by(owner_id=user_id).all()
    """
    return model.query.filter_by(workspace_id=workspace_id)


def get_active_workspace(workspace_id: int):
    """Workspace by id, or None if missing or soft-deleted."""
    workspace = db.session.get(Workspace, workspace_id)
    if workspace is None or workspace.is_deleted:
        return None
    return workspace


def get_membership(workspace_id: int, user_id: int):
    """
    The principal's active membership in a workspace, or None.
    Pending and suspended memberships grant nothing.
    """
    if user_id is None:
        return None
    return Membership.query.filter_by(
        workspace_id=workspace_id, user_id=user_id, status='active'
    ).first()


def get_role(workspace_id: int, user_id: int):
    """Role of the principal's active membership, or None."""
    membership = get_membership(workspace_id, user_id)
    return membership.role if membership else None


def get_workspace_or_404(workspace_id: int):
    """
    Get a workspace the current user is an active member of, or abort 404.
    Non-members get the same 404 as a missing workspace.

    Returns:
        Tuple of (Workspace, Membership)
    """
    workspace = get_active_workspace(workspace_id)
    if workspace is None:
        abort(404)
    membership = get_membership(workspace_id, current_user.id)
    if membership is None:
        abort(404)
    return workspace, membership


# =============================================================================
# ROLE MANAGEMENT
# =============================================================================

def can_modify_member(actor, target, evaluator=None) -> bool:
    """
    Check if actor's membership may change target's role or remove them.

    Args:
        actor: Membership of the user attempting the change
        target: Membership being changed
    """
    evaluator = evaluator or get_evaluator()
    if actor.user_id == target.user_id:
        return False  # Cannot modify self
    if actor.workspace_id != target.workspace_id:
        return False  # Must be same workspace
    return evaluator.can_manage_role(actor.role, target.role)


def validate_last_owner(membership):
    """
    Refuse to take away the workspace's only active owner.

    Owners are never re-roled through the member API (roles are assigned
    strictly downward), so leaving or removal is the only way to lose one.

    Raises:
        ValueError: membership is the last active owner
    """
    if membership.role != 'owner':
        return

    owners = Membership.query.filter_by(
        workspace_id=membership.workspace_id, role='owner', status='active'
    ).count()
    if owners <= 1:
        raise ValueError("The last owner cannot leave or be removed from the workspace.")


# =============================================================================
# DECORATORS
# =============================================================================

def permission_required(permission: str):
    """
    Require an active membership in the route's workspace holding permission.
    The route must take a workspace_id argument; the membership is stored
    on g.membership and the workspace on g.workspace.

    Usage:
        @bp.route('/workspaces/<int:workspace_id>/settings', methods=['PATCH'])
        @login_required
        @permission_required('update_workspace_settings')
        def update_settings(workspace_id):
            ...
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            workspace, membership = get_workspace_or_404(kwargs['workspace_id'])
            if not get_evaluator().has_permission(membership.role, permission):
                raise AuthorizationDenied(f"Your role does not allow '{permission}'.")
            g.workspace = workspace
            g.membership = membership
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def require_membership(workspace_id: int, user_id: int):
    """
    Active membership or NotFound. Service-layer counterpart to
    get_workspace_or_404 for callers without a request.
    """
    if get_active_workspace(workspace_id) is None:
        raise NotFound(f"Workspace {workspace_id} not found")
    membership = get_membership(workspace_id, user_id)
    if membership is None:
        raise NotFound(f"Workspace {workspace_id} not found")
    return membership


# =============================================================================
# RLS SESSION CONTEXT
# =============================================================================

def _apply_context(connection, context: dict):
    for name, value in context.items():
        connection.execute(
            text("SELECT set_config(:name, :value, true)"),
            {'name': name, 'value': '' if value is None else str(value)}
        )


def set_workspace_context(workspace_id: int = None, user_id: int = None):
    """
    Set the RLS session variables for the rest of the request or job.

    set_config(..., true) only lasts until commit, so the values are kept
    on g and re-applied at the start of every later transaction.
    No-op on databases without row-level security (SQLite in tests).
    """
    g.rls_context = {
        'app.current_workspace_id': workspace_id,
        'app.current_user_id': user_id,
    }
    if db.session.get_bind().dialect.name == 'postgresql':
        _apply_context(db.session.connection(), g.rls_context)


@event.listens_for(Session, 'after_begin')
def _reapply_workspace_context(session, transaction, connection):
    if not has_app_context() or connection.dialect.name != 'postgresql':
        return
    context = g.get('rls_context')
    if context:
        _apply_context(connection, context)
