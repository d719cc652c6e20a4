# services/permissions.py
"""
Role hierarchy and permission evaluation for workspace members.

The role -> permission table is built once, frozen, and handed to a
PermissionEvaluator. The Flask app keeps its evaluator in
app.extensions['permission_evaluator']; the storage-level policies in
services/policy_sql.py are rendered from the same table.

Roles are cumulative: owner ⊇ admin ⊇ manager ⊇ user ⊇ guest.
A missing or unknown role denies every permission.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping, FrozenSet, Optional

from models import ROLES


# Weight strictly increases with seniority
ROLE_HIERARCHY = {'guest': 1, 'user': 2, 'manager': 3, 'admin': 4, 'owner': 5}

RESOURCE_PLURALS = {
    'contact': 'contacts',
    'company': 'companies',
    'deal': 'deals',
    'task': 'tasks',
    'activity': 'activities',
}


def _tokens(*templates: str) -> FrozenSet[str]:
    """Expand '{r}'/'{rs}' templates over every resource type."""
    return frozenset(
        template.format(r=resource, rs=plural)
        for template in templates
        for resource, plural in RESOURCE_PLURALS.items()
    )


# Permissions each role adds on top of everything the roles below it hold
ROLE_GRANTS = {
    'guest': _tokens('view_own_{rs}'),
    'user': _tokens('create_{r}', 'update_own_{r}', 'delete_own_{r}') | {'view_members'},
    'manager': _tokens('view_all_{rs}', 'update_any_{r}') | {'view_reports'},
    'admin': _tokens('delete_{r}') | {
        'invite_member', 'update_member_role', 'remove_member',
        'update_workspace_settings', 'view_billing',
    },
    'owner': frozenset({'manage_billing', 'delete_workspace'}),
}

PERMISSION_GROUPS = {
    'view': _tokens('view_own_{rs}', 'view_all_{rs}'),
    'create': _tokens('create_{r}'),
    'update': _tokens('update_own_{r}', 'update_any_{r}'),
    'delete': _tokens('delete_own_{r}', 'delete_{r}'),
    'members': frozenset({'view_members', 'invite_member', 'update_member_role', 'remove_member'}),
    'billing': frozenset({'view_billing', 'manage_billing'}),
    'workspace': frozenset({'update_workspace_settings', 'delete_workspace', 'view_reports'}),
}


@dataclass(frozen=True)
class PermissionTable:
    """Immutable role hierarchy, cumulative role grants and permission groups."""
    hierarchy: Mapping[str, int]
    grants: Mapping[str, FrozenSet[str]]
    groups: Mapping[str, FrozenSet[str]]

    @property
    def all_permissions(self) -> FrozenSet[str]:
        return frozenset().union(*self.grants.values())


def build_permission_table(role_grants=None, hierarchy=None, groups=None) -> PermissionTable:
    """
    Build the cumulative role -> permission table.

    Each role receives its own grants plus the grants of every junior role.
    """
    role_grants = role_grants or ROLE_GRANTS
    hierarchy = hierarchy or ROLE_HIERARCHY
    groups = groups or PERMISSION_GROUPS

    missing = set(ROLES) - set(hierarchy)
    if missing:
        raise ValueError(f"Roles without a hierarchy weight: {sorted(missing)}")

    cumulative = {}
    inherited = frozenset()
    for role in sorted(hierarchy, key=hierarchy.get):
        inherited = inherited | frozenset(role_grants.get(role, ()))
        cumulative[role] = inherited

    return PermissionTable(
        hierarchy=MappingProxyType(dict(hierarchy)),
        grants=MappingProxyType(cumulative),
        groups=MappingProxyType({name: frozenset(tokens) for name, tokens in groups.items()}),
    )


class PermissionEvaluator:
    """Pure, total permission checks over a PermissionTable."""

    def __init__(self, table: PermissionTable):
        self.table = table

    # -------------------------------------------------------------------------
    # Hierarchy
    # -------------------------------------------------------------------------

    def weight(self, role: Optional[str]) -> int:
        """Numeric seniority; 0 for a missing or unknown role."""
        return self.table.hierarchy.get(role, 0)

    def is_senior_to(self, role_a: Optional[str], role_b: Optional[str]) -> bool:
        return self.weight(role_a) > self.weight(role_b)

    def can_manage_role(self, acting_role: Optional[str], target_role: Optional[str]) -> bool:
        """
        Only a strictly senior role may change or remove another membership.
        This wins over any permission token the acting role holds.
        """
        if acting_role not in self.table.hierarchy or target_role not in self.table.hierarchy:
            return False
        return self.is_senior_to(acting_role, target_role)

    def get_assignable_roles(self, acting_role: Optional[str]) -> FrozenSet[str]:
        """Roles strictly junior to acting_role."""
        return frozenset(role for role in self.table.hierarchy
                         if self.can_manage_role(acting_role, role))

    # -------------------------------------------------------------------------
    # Permissions
    # -------------------------------------------------------------------------

    def permissions_for(self, role: Optional[str]) -> FrozenSet[str]:
        return self.table.grants.get(role, frozenset())

    def has_permission(self, role: Optional[str], permission: str) -> bool:
        if not role:
            return False
        return permission in self.permissions_for(role)

    def has_all_permissions(self, role: Optional[str], permissions: Iterable[str]) -> bool:
        if not role:
            return False
        return all(self.has_permission(role, p) for p in permissions)

    def has_any_permission(self, role: Optional[str], permissions: Iterable[str]) -> bool:
        if not role:
            return False
        return any(self.has_permission(role, p) for p in permissions)

    def in_group(self, permission: str, group: str) -> bool:
        return permission in self.table.groups.get(group, frozenset())

    def group_permissions(self, role: Optional[str], group: str) -> FrozenSet[str]:
        """The permissions of a group that role holds."""
        return self.permissions_for(role) & self.table.groups.get(group, frozenset())

    def has_group_permission(self, role: Optional[str], group: str) -> bool:
        """True if role holds at least one permission of the group."""
        return bool(self.group_permissions(role, group))

    def roles_with(self, permission: str) -> tuple:
        """Roles holding permission, most senior first."""
        return tuple(sorted(
            (role for role, granted in self.table.grants.items() if permission in granted),
            key=self.weight, reverse=True,
        ))


DEFAULT_PERMISSION_TABLE = build_permission_table()


def get_evaluator() -> PermissionEvaluator:
    """
    The evaluator installed on the current app, or one over the default
    table when called outside an app context (jobs, migrations).
    """
    from flask import current_app, has_app_context

    if has_app_context():
        evaluator = current_app.extensions.get('permission_evaluator')
        if evaluator is not None:
            return evaluator
    return PermissionEvaluator(DEFAULT_PERMISSION_TABLE)
