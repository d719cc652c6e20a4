# services/policy_sql.py
"""
PostgreSQL row-level security rendered from the permission table and the
visibility rules in services/visibility.py.

The storage layer re-checks every statement with the same decisions the
application makes, so a missing filter in application code still cannot
leak or change another workspace's rows.

Session context (set per transaction by services/tenant_service.py and
jobs/base.py):
    app.current_workspace_id
    app.current_user_id

Policies per owned table:
    <table>_select  read predicate
    <table>_insert  create permission, creator is the caller
    <table>_update  update or delete predicate (soft delete is an UPDATE)
    <table>_delete  delete predicate
Activities only match the update/delete policies while they are notes.

Membership rows are visible to members holding view_members (and to the
member themself); changing or removing one needs strict seniority.
"""

from models import OWNED_RESOURCE_MODELS
from services.permissions import get_evaluator
from services.visibility import (
    UNRESTRICTED_VISIBILITY_MODES, OWNERSHIP_COLUMNS, MUTABLE_ACTIVITY_TYPES,
    view_all_permission, view_own_permission, mutation_permissions,
)

# table name -> resource type
OWNED_TABLES = {model.__tablename__: model.RESOURCE_TYPE for model in OWNED_RESOURCE_MODELS.values()}

MEMBERSHIP_TABLE = 'memberships'

CURRENT_USER = 'app_current_user_id()'
CURRENT_WORKSPACE = 'app_current_workspace_id()'


def _literals(values) -> str:
    """SQL list of quoted literals, e.g. ('admin', 'owner'). Empty sets never match."""
    values = sorted(values)
    if not values:
        return "(NULL)"
    return '(' + ', '.join("'" + v.replace("'", "''") + "'" for v in values) + ')'


def _role_in(role_expr: str, roles) -> str:
    return f"{role_expr} IN {_literals(roles)}"


def _owned_by_caller() -> str:
    return '(' + ' OR '.join(f"{column} = {CURRENT_USER}" for column in OWNERSHIP_COLUMNS) + ')'


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def helper_functions_sql(evaluator=None) -> list:
    """
    SQL functions the policies call. The membership and workspace lookups
    are SECURITY DEFINER so policies on memberships do not recurse.
    """
    evaluator = evaluator or get_evaluator()
    weights = '\n'.join(
        f"        WHEN '{role}' THEN {weight}"
        for role, weight in sorted(evaluator.table.hierarchy.items(), key=lambda item: item[1])
    )
    return [
        """
CREATE OR REPLACE FUNCTION app_current_user_id() RETURNS integer
LANGUAGE sql STABLE AS $$
    SELECT NULLIF(current_setting('app.current_user_id', true), '')::integer
$$""",
        """
CREATE OR REPLACE FUNCTION app_current_workspace_id() RETURNS integer
LANGUAGE sql STABLE AS $$
    SELECT NULLIF(current_setting('app.current_workspace_id', true), '')::integer
$$""",
        """
CREATE OR REPLACE FUNCTION app_member_role(ws integer) RETURNS text
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
    SELECT m.role FROM memberships m
    WHERE m.workspace_id = ws
      AND m.user_id = app_current_user_id()
      AND m.status = 'active'
$$""",
        """
CREATE OR REPLACE FUNCTION app_workspace_visibility(ws integer) RETURNS text
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
    SELECT COALESCE(w.settings::jsonb ->> 'visibility_mode', 'all')
    FROM workspaces w
    WHERE w.id = ws AND w.deleted_at IS NULL
$$""",
        f"""
CREATE OR REPLACE FUNCTION app_role_weight(role text) RETURNS integer
LANGUAGE sql IMMUTABLE AS $$
    SELECT CASE role
{weights}
        ELSE 0
    END
$$""",
    ]


def drop_helper_functions_sql() -> list:
    return [
        'DROP FUNCTION IF EXISTS app_role_weight(text)',
        'DROP FUNCTION IF EXISTS app_workspace_visibility(integer)',
        'DROP FUNCTION IF EXISTS app_member_role(integer)',
        'DROP FUNCTION IF EXISTS app_current_workspace_id()',
        'DROP FUNCTION IF EXISTS app_current_user_id()',
    ]


# =============================================================================
# PREDICATES
# =============================================================================

def read_predicate(resource_type: str, evaluator=None) -> str:
    """
    Same order as VisibilityResolver.resolve_read: view_all roles see every
    row, view_own roles see every row in an unrestricted workspace and
    otherwise only rows they created or own.
    """
    evaluator = evaluator or get_evaluator()
    role = 'app_member_role(workspace_id)'
    all_roles = evaluator.roles_with(view_all_permission(resource_type))
    own_roles = evaluator.roles_with(view_own_permission(resource_type))
    return (
        f"workspace_id = {CURRENT_WORKSPACE} AND ("
        f"{_role_in(role, all_roles)} OR ("
        f"{_role_in(role, own_roles)} AND ("
        f"app_workspace_visibility(workspace_id) IN {_literals(UNRESTRICTED_VISIBILITY_MODES)} "
        f"OR {_owned_by_caller()})))"
    )


def mutation_predicate(resource_type: str, action: str, evaluator=None) -> str:
    """Same decision as VisibilityResolver.can_mutate plus the note-only rule."""
    evaluator = evaluator or get_evaluator()
    role = 'app_member_role(workspace_id)'
    any_token, own_token = mutation_permissions(resource_type, action)
    predicate = (
        f"workspace_id = {CURRENT_WORKSPACE} AND ("
        f"{_role_in(role, evaluator.roles_with(any_token))} OR ("
        f"{_role_in(role, evaluator.roles_with(own_token))} AND {_owned_by_caller()}))"
    )
    if resource_type == 'activity':
        predicate += f" AND activity_type IN {_literals(MUTABLE_ACTIVITY_TYPES)}"
    return predicate


def insert_predicate(resource_type: str, evaluator=None) -> str:
    evaluator = evaluator or get_evaluator()
    roles = evaluator.roles_with(f'create_{resource_type}')
    return (
        f"workspace_id = {CURRENT_WORKSPACE} AND "
        f"{_role_in('app_member_role(workspace_id)', roles)} AND "
        f"created_by_id = {CURRENT_USER}"
    )


# =============================================================================
# POLICIES
# =============================================================================

def _enable(table: str) -> list:
    return [
        f'ALTER TABLE "{table}" ENABLE ROW LEVEL SECURITY',
        f'ALTER TABLE "{table}" FORCE ROW LEVEL SECURITY',
    ]


def owned_table_policies(table: str, resource_type: str, evaluator=None) -> list:
    evaluator = evaluator or get_evaluator()
    update_or_delete = (
        f"({mutation_predicate(resource_type, 'update', evaluator)}) OR "
        f"({mutation_predicate(resource_type, 'delete', evaluator)})"
    )
    return _enable(table) + [
        f'CREATE POLICY {table}_select ON "{table}" FOR SELECT\n'
        f'    USING ({read_predicate(resource_type, evaluator)})',
        f'CREATE POLICY {table}_insert ON "{table}" FOR INSERT\n'
        f'    WITH CHECK ({insert_predicate(resource_type, evaluator)})',
        f'CREATE POLICY {table}_update ON "{table}" FOR UPDATE\n'
        f'    USING ({update_or_delete})\n'
        f'    WITH CHECK ({update_or_delete})',
        f'CREATE POLICY {table}_delete ON "{table}" FOR DELETE\n'
        f'    USING ({mutation_predicate(resource_type, "delete", evaluator)})',
    ]


def membership_policies(evaluator=None) -> list:
    evaluator = evaluator or get_evaluator()
    table = MEMBERSHIP_TABLE
    actor = 'app_member_role(workspace_id)'
    senior = f"app_role_weight({actor}) > app_role_weight(role)"
    not_self = f"user_id <> {CURRENT_USER}"

    manage = (
        f"{_role_in(actor, evaluator.roles_with('update_member_role'))} AND {senior} AND {not_self}"
    )
    suspend = f"{_role_in(actor, evaluator.roles_with('remove_member'))} AND {senior} AND {not_self}"
    remove = f"({suspend}) OR user_id = {CURRENT_USER}"
    invite = (
        f"({_role_in(actor, evaluator.roles_with('invite_member'))} AND {senior}) "
        f"OR (user_id = {CURRENT_USER} AND role = 'owner' AND EXISTS ("
        f"SELECT 1 FROM workspaces w WHERE w.id = workspace_id AND w.owner_id = {CURRENT_USER}))"
    )
    return _enable(table) + [
        f'CREATE POLICY {table}_select ON "{table}" FOR SELECT\n'
        f"    USING (user_id = {CURRENT_USER} OR {_role_in(actor, evaluator.roles_with('view_members'))})",
        f'CREATE POLICY {table}_insert ON "{table}" FOR INSERT\n'
        f'    WITH CHECK ({invite})',
        # Suspension is an UPDATE; members cannot update their own row
        f'CREATE POLICY {table}_update ON "{table}" FOR UPDATE\n'
        f'    USING (({manage}) OR ({suspend}))\n'
        f'    WITH CHECK (({manage}) OR ({suspend}))',
        f'CREATE POLICY {table}_delete ON "{table}" FOR DELETE\n'
        f'    USING ({remove})',
    ]


def generate_policy_sql(evaluator=None) -> list:
    """Every statement needed to install the policies, in order."""
    evaluator = evaluator or get_evaluator()
    statements = helper_functions_sql(evaluator)
    for table, resource_type in OWNED_TABLES.items():
        statements.extend(owned_table_policies(table, resource_type, evaluator))
    statements.extend(membership_policies(evaluator))
    return statements


def drop_policy_sql() -> list:
    statements = []
    for table in list(OWNED_TABLES) + [MEMBERSHIP_TABLE]:
        for suffix in ('select', 'insert', 'update', 'delete'):
            statements.append(f'DROP POLICY IF EXISTS {table}_{suffix} ON "{table}"')
        statements.append(f'ALTER TABLE "{table}" NO FORCE ROW LEVEL SECURITY')
        statements.append(f'ALTER TABLE "{table}" DISABLE ROW LEVEL SECURITY')
    return statements + drop_helper_functions_sql()
