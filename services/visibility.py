# services/visibility.py
"""
Row visibility and mutability for owned resources.

Read rules, in order:
1. Role holds view_all_<resources> -> every row in the workspace.
2. Workspace visibility_mode is 'all' -> every row in the workspace.
3. Otherwise -> rows the principal created or owns.

Mutation needs update_any_/delete_ for the type, or the *_own_ token on a
row the principal created or owns. Logging-kind activities are never
mutable. services/policy_sql.py renders the same rules as RLS predicates.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import or_, false

from services.permissions import RESOURCE_PLURALS, get_evaluator

# Workspace visibility modes that open all rows to junior roles
UNRESTRICTED_VISIBILITY_MODES = frozenset({'all'})

# Columns that tie a row to a principal
OWNERSHIP_COLUMNS = ('created_by_id', 'owner_id')

# Activity types users may edit or delete; everything else is an audit log entry
MUTABLE_ACTIVITY_TYPES = frozenset({'note'})

SCOPE_ALL = 'all'
SCOPE_OWN = 'own'
SCOPE_NONE = 'none'


def view_all_permission(resource_type: str) -> str:
    return f'view_all_{RESOURCE_PLURALS[resource_type]}'


def view_own_permission(resource_type: str) -> str:
    return f'view_own_{RESOURCE_PLURALS[resource_type]}'


def mutation_permissions(resource_type: str, action: str) -> tuple:
    """(any-row token, own-row token) for 'update' or 'delete'."""
    if action == 'update':
        return f'update_any_{resource_type}', f'update_own_{resource_type}'
    if action == 'delete':
        return f'delete_{resource_type}', f'delete_own_{resource_type}'
    raise ValueError(f"Unknown mutation action: {action}")


@dataclass(frozen=True)
class ReadScope:
    """Which rows of one workspace a principal may read."""
    workspace_id: int
    principal_id: Optional[int]
    kind: str  # SCOPE_ALL, SCOPE_OWN or SCOPE_NONE


class VisibilityResolver:

    def __init__(self, evaluator=None):
        self.evaluator = evaluator or get_evaluator()

    def resolve_read(self, role, visibility_mode, principal_id, workspace_id, resource_type) -> ReadScope:
        if self.evaluator.has_permission(role, view_all_permission(resource_type)):
            kind = SCOPE_ALL
        elif not self.evaluator.has_permission(role, view_own_permission(resource_type)):
            kind = SCOPE_NONE
        elif visibility_mode in UNRESTRICTED_VISIBILITY_MODES:
            kind = SCOPE_ALL
        else:
            kind = SCOPE_OWN
        return ReadScope(workspace_id=workspace_id, principal_id=principal_id, kind=kind)

    def apply_read(self, query, model, scope: ReadScope, include_deleted=False):
        """Narrow a query on model to the rows scope allows."""
        query = query.filter(model.workspace_id == scope.workspace_id)
        if not include_deleted:
            query = query.filter(model.deleted_at.is_(None))
        if scope.kind == SCOPE_NONE:
            return query.filter(false())
        if scope.kind == SCOPE_OWN:
            query = query.filter(or_(
                *(getattr(model, column) == scope.principal_id for column in OWNERSHIP_COLUMNS)
            ))
        return query

    def can_read(self, scope: ReadScope, resource) -> bool:
        if resource.workspace_id != scope.workspace_id:
            return False
        if scope.kind == SCOPE_ALL:
            return True
        if scope.kind == SCOPE_OWN:
            return is_owned_by(resource, scope.principal_id)
        return False

    def can_mutate(self, role, principal_id, resource, action='update') -> bool:
        """
        Stricter than read: view_all never implies edit. Immutable log
        records are not checked here; see is_immutable_record().
        """
        any_token, own_token = mutation_permissions(resource.RESOURCE_TYPE, action)
        if self.evaluator.has_permission(role, any_token):
            return True
        return self.evaluator.has_permission(role, own_token) and is_owned_by(resource, principal_id)


def is_owned_by(resource, principal_id) -> bool:
    if principal_id is None:
        return False
    return any(getattr(resource, column) == principal_id for column in OWNERSHIP_COLUMNS)


def is_immutable_record(resource) -> bool:
    """Logging-kind activities (calls, emails, system entries) are append-only."""
    if resource.RESOURCE_TYPE != 'activity':
        return False
    return resource.activity_type not in MUTABLE_ACTIVITY_TYPES
