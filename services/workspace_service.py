# services/workspace_service.py
"""
Workspace and membership management.

Every write returns a result dict:
    {'success': True, 'workspace': {...}} / {'success': True, 'member': {...}}
    {'success': False, 'error': '...', 'code': '...'}

Membership rules:
- Adding a member needs invite_member, a role the actor may assign, and
  one unit of the 'users' quota.
- Changing a role or removing a member needs the matching permission and
  strict seniority over the target; the new role must be assignable.
- Suspending or removing a member gives the 'users' unit back.
- Assignable roles are strictly junior to the actor, so 'owner' is never
  granted and an owner's role is never changed here. The last owner can
  still not leave or be removed.
"""

import logging
import re
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db, User, Workspace, Membership, VISIBILITY_MODES
from services import billing_service, quota_service
from services.exceptions import WorkspaceError, AuthorizationDenied, NotFound, Conflict
from services.permissions import get_evaluator
from services.tenant_service import (
    get_active_workspace, get_membership, require_membership,
    can_modify_member, validate_last_owner,
)

logger = logging.getLogger(__name__)

# Keys update_settings accepts besides 'name'
SETTINGS_KEYS = ('visibility_mode',)


def slugify(name: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', (name or '').lower()).strip('-')
    return slug[:50] or 'workspace'


def _run(action: str, workspace_id, apply) -> dict:
    """Run apply() in one transaction and turn the outcome into a result dict."""
    try:
        result = apply()
        db.session.commit()
    except WorkspaceError as e:
        db.session.rollback()
        logger.warning(f"{action} rejected for workspace {workspace_id}: {e}")
        return {'success': False, 'error': e.message, 'code': e.code}
    except ValueError as e:
        db.session.rollback()
        logger.warning(f"{action} rejected for workspace {workspace_id}: {e}")
        return {'success': False, 'error': str(e), 'code': 'invalid_input'}
    except IntegrityError as e:
        db.session.rollback()
        logger.warning(f"{action} conflicted for workspace {workspace_id}: {e.orig}")
        return {'success': False, 'error': Conflict().message, 'code': Conflict.code}
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"{action} failed for workspace {workspace_id}: {e}")
        return {'success': False, 'error': f'Could not {action}.', 'code': 'service_unavailable'}
    return {'success': True, **result}


def _require_permission(membership, permission: str):
    if not get_evaluator().has_permission(membership.role, permission):
        raise AuthorizationDenied(f"Your role does not allow '{permission}'.")


# =============================================================================
# WORKSPACES
# =============================================================================

def create_workspace(owner_id: int, name: str, slug: str = None, visibility_mode: str = 'all') -> dict:
    """
    Create a workspace together with its free subscription, its quota row
    and the creator's owner membership, all in one transaction.
    """
    def apply():
        if not (name or '').strip():
            raise ValueError("Workspace name is required.")
        if visibility_mode not in VISIBILITY_MODES:
            raise ValueError(f"Unknown visibility mode: {visibility_mode!r}")
        if db.session.get(User, owner_id) is None:
            raise NotFound(f"User {owner_id} not found")

        workspace = Workspace(
            name=name.strip(),
            slug=slug or slugify(name),
            owner_id=owner_id,
            settings={'visibility_mode': visibility_mode},
        )
        db.session.add(workspace)
        db.session.flush()  # Get workspace.id

        billing_service.initialize_billing(
            workspace.id, tier='free', trial_days=current_app.config.get('TRIAL_DAYS', 0)
        )
        db.session.add(Membership(workspace_id=workspace.id, user_id=owner_id, role='owner', status='active'))
        return {'workspace': workspace}

    result = _run('create workspace', None, apply)
    if result['success']:
        workspace = result['workspace']
        logger.info(f"Created workspace {workspace.id} ({workspace.slug}) for user {owner_id}")
        result['workspace'] = workspace.to_dict()
    return result


def get_workspaces_for_user(user_id: int) -> list:
    """(Workspace, Membership) pairs for every active membership, oldest first."""
    return (
        db.session.query(Workspace, Membership)
        .join(Membership, Membership.workspace_id == Workspace.id)
        .filter(
            Membership.user_id == user_id,
            Membership.status == 'active',
            Workspace.deleted_at.is_(None),
        )
        .order_by(Workspace.created_at, Workspace.id)
        .all()
    )


def update_settings(workspace_id: int, actor_id: int, changes: dict) -> dict:
    """
    Rename the workspace and merge known keys into its settings bag.
    Needs update_workspace_settings; unknown keys are rejected.
    """
    def apply():
        actor = require_membership(workspace_id, actor_id)
        _require_permission(actor, 'update_workspace_settings')

        unknown = set(changes) - set(SETTINGS_KEYS) - {'name'}
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")

        mode = changes.get('visibility_mode')
        if 'visibility_mode' in changes and mode not in VISIBILITY_MODES:
            raise ValueError(f"Unknown visibility mode: {mode!r}")

        workspace = get_active_workspace(workspace_id)
        if 'name' in changes and (changes['name'] or '').strip():
            workspace.name = changes['name'].strip()
        settings = dict(workspace.settings or {})
        settings.update({k: v for k, v in changes.items() if k in SETTINGS_KEYS})
        workspace.settings = settings  # Reassign so the JSON change is tracked
        return {'workspace': workspace.to_dict()}

    return _run('update settings', workspace_id, apply)


def delete_workspace(workspace_id: int, actor_id: int) -> dict:
    """Soft-delete a workspace. Needs delete_workspace (owner only)."""
    def apply():
        actor = require_membership(workspace_id, actor_id)
        _require_permission(actor, 'delete_workspace')
        workspace = get_active_workspace(workspace_id)
        workspace.deleted_at = datetime.utcnow()
        return {'workspace': workspace.to_dict()}

    result = _run('delete workspace', workspace_id, apply)
    if result['success']:
        logger.info(f"Workspace {workspace_id} soft-deleted by user {actor_id}")
    return result


# =============================================================================
# MEMBERS
# =============================================================================

def list_members(workspace_id: int, actor_id: int) -> list:
    """
    Members visible to the actor, most senior first.

    Raises:
        NotFound: Actor is not an active member
        AuthorizationDenied: Actor's role lacks view_members
    """
    actor = require_membership(workspace_id, actor_id)
    _require_permission(actor, 'view_members')
    evaluator = get_evaluator()
    members = Membership.query.filter_by(workspace_id=workspace_id).all()
    return sorted(members, key=lambda m: (-evaluator.weight(m.role), m.user_id))


def _assignable(actor, role: str):
    if role not in get_evaluator().table.hierarchy:
        raise ValueError(f"Unknown role: {role!r}")
    if role not in get_evaluator().get_assignable_roles(actor.role):
        raise AuthorizationDenied(f"You cannot assign the '{role}' role.")


def add_member(workspace_id: int, actor_id: int, role: str = 'user', user_id: int = None,
               email: str = None) -> dict:
    """
    Add an existing user to the workspace, consuming one 'users' unit.
    A suspended membership is reactivated with the new role.
    """
    def apply():
        actor = require_membership(workspace_id, actor_id)
        _require_permission(actor, 'invite_member')
        _assignable(actor, role)

        if user_id is not None:
            user = db.session.get(User, user_id)
        else:
            user = User.query.filter_by(email=(email or '').strip().lower()).first()
        if user is None:
            raise NotFound("User not found.")

        membership = Membership.query.filter_by(workspace_id=workspace_id, user_id=user.id).first()
        if membership is not None and membership.status != 'suspended':
            raise Conflict("User is already a member of this workspace.")

        quota_service.reserve(workspace_id, 'users')

        if membership is None:
            membership = Membership(workspace_id=workspace_id, user_id=user.id)
            db.session.add(membership)
        membership.role = role
        membership.status = 'active'
        membership.invited_by_id = actor.user_id
        db.session.flush()
        return {'member': membership.to_dict()}

    result = _run('add member', workspace_id, apply)
    if result['success']:
        logger.info(f"User {result['member']['user_id']} joined workspace {workspace_id} as {role}")
    return result


def change_member_role(workspace_id: int, actor_id: int, target_user_id: int, new_role: str) -> dict:
    """
    Move a strictly junior member to a role the actor may assign. Neither
    side can be 'owner', so ownership cannot be granted or transferred here.
    """
    def apply():
        actor = require_membership(workspace_id, actor_id)
        _require_permission(actor, 'update_member_role')
        target = get_membership(workspace_id, target_user_id)
        if target is None:
            raise NotFound("Member not found.")
        if not can_modify_member(actor, target):
            raise AuthorizationDenied("You can only change members junior to you.")
        _assignable(actor, new_role)

        target.role = new_role
        db.session.flush()
        return {'member': target.to_dict()}

    return _run('change member role', workspace_id, apply)


def remove_member(workspace_id: int, actor_id: int, target_user_id: int, suspend: bool = False) -> dict:
    """
    Remove (or suspend) a junior member and give their 'users' unit back.
    """
    def apply():
        actor = require_membership(workspace_id, actor_id)
        _require_permission(actor, 'remove_member')
        target = get_membership(workspace_id, target_user_id)
        if target is None:
            raise NotFound("Member not found.")
        if not can_modify_member(actor, target):
            raise AuthorizationDenied("You can only remove members junior to you.")
        validate_last_owner(target)
        return _detach(target, suspend)

    return _run('remove member', workspace_id, apply)


def leave_workspace(workspace_id: int, user_id: int) -> dict:
    """A member removes themselves. The last owner cannot leave."""
    def apply():
        membership = require_membership(workspace_id, user_id)
        validate_last_owner(membership)
        return _detach(membership, suspend=False)

    return _run('leave workspace', workspace_id, apply)


def _detach(membership, suspend: bool) -> dict:
    data = membership.to_dict()
    if suspend:
        membership.status = 'suspended'
        data['status'] = 'suspended'
    else:
        db.session.delete(membership)
    quota_service.release(membership.workspace_id, 'users')
    db.session.flush()
    return {'member': data}
