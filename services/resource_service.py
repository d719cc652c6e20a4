# services/resource_service.py
"""
Create, read, update, soft-delete and restore for workspace-owned resources
(contacts, companies, deals, tasks, activities).

Every call is made on behalf of a principal in one workspace:
1. The principal must hold an active membership there, otherwise the
   workspace looks empty (reads) or missing (writes).
2. Reads go through the VisibilityResolver.
3. Creation checks the create_<type> permission, then takes quota with
   one conditional UPDATE for kinds that have a ceiling.
4. Update/delete/restore go through the mutation predicate. Logging-kind
   activities are returned unchanged.

Errors are raised as WorkspaceError subclasses; routes translate them.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import DateTime, Numeric
from sqlalchemy.exc import SQLAlchemyError

from models import db, Company, Contact, Deal, OWNED_RESOURCE_MODELS, ACTIVITY_TYPES
from services import quota_service
from services.exceptions import AuthorizationDenied, NotFound, UpstreamFailure
from services.permissions import get_evaluator
from services.tenant_service import (
    get_membership, get_role, get_active_workspace, require_membership, workspace_query,
)
from services.visibility import VisibilityResolver, is_immutable_record

logger = logging.getLogger(__name__)

# Reference columns that must point at a row of the same workspace
REFERENCE_MODELS = {
    'company_id': Company,
    'contact_id': Contact,
    'deal_id': Deal,
}


def get_model(resource: str):
    """Model class for a plural resource name, e.g. 'contacts'."""
    model = OWNED_RESOURCE_MODELS.get(resource)
    if model is None:
        raise NotFound(f"Unknown resource type: {resource}")
    return model


def _commit(action: str, workspace_id: int):
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to {action} in workspace {workspace_id}: {e}")
        raise UpstreamFailure(f"Could not {action}.")


# =============================================================================
# INPUT HANDLING
# =============================================================================

def _coerce(model, field: str, value):
    if value is None or value == '':
        return None
    column_type = model.__table__.columns[field].type
    if isinstance(column_type, DateTime) and isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            raise ValueError(f"{field} must be an ISO-8601 date")
    if isinstance(column_type, Numeric):
        try:
            return Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"{field} must be a number")
    return value


def _clean_fields(model, workspace_id: int, data: dict, creating: bool) -> dict:
    """
    Keep editable fields only, coerce their types and check that every
    reference stays inside the workspace.

    Raises:
        ValueError: Missing required field or bad value
    """
    fields = {}
    for field in model.EDITABLE_FIELDS:
        if field in data:
            fields[field] = _coerce(model, field, data[field])

    if model.RESOURCE_TYPE == 'activity':
        if not creating:
            fields.pop('activity_type', None)  # A note stays a note
        elif fields.get('activity_type', 'note') not in ACTIVITY_TYPES:
            raise ValueError(f"Unknown activity type: {fields['activity_type']!r}")

    if creating:
        # Let column defaults apply instead of explicit nulls
        fields = {k: v for k, v in fields.items()
                  if v is not None or model.__table__.columns[k].default is None}
        for column in model.__table__.columns:
            required = not column.nullable and column.default is None and not column.primary_key
            if column.name in model.EDITABLE_FIELDS and required and fields.get(column.name) is None:
                raise ValueError(f"{column.name} is required")

    for field, ref_model in REFERENCE_MODELS.items():
        ref_id = fields.get(field)
        if ref_id is None:
            continue
        ref = workspace_query(ref_model, workspace_id).filter_by(id=ref_id).first()
        if ref is None or ref.is_deleted:
            raise ValueError(f"{field} does not reference a record in this workspace")

    owner_id = fields.get('owner_id')
    if owner_id is not None and get_membership(workspace_id, owner_id) is None:
        raise ValueError("owner_id must be an active member of this workspace")

    return fields


# =============================================================================
# READ
# =============================================================================

def _read_query(workspace_id: int, principal_id: int, model, include_deleted=False):
    """Visibility-scoped query, or None if the principal is not a member."""
    workspace = get_active_workspace(workspace_id)
    membership = get_membership(workspace_id, principal_id)
    if workspace is None or membership is None:
        return None
    resolver = VisibilityResolver()
    scope = resolver.resolve_read(membership.role, workspace.visibility_mode, principal_id,
                                  workspace_id, model.RESOURCE_TYPE)
    return resolver.apply_read(model.query, model, scope, include_deleted=include_deleted)


def list_resources(workspace_id: int, principal_id: int, resource: str, include_deleted=False) -> list:
    """Rows the principal may see, newest first. Empty for non-members."""
    model = get_model(resource)
    query = _read_query(workspace_id, principal_id, model, include_deleted)
    if query is None:
        return []
    return query.order_by(model.created_at.desc(), model.id.desc()).all()


def get_resource(workspace_id: int, principal_id: int, resource: str, item_id: int,
                 include_deleted=False):
    """One visible row, or None."""
    model = get_model(resource)
    query = _read_query(workspace_id, principal_id, model, include_deleted)
    if query is None:
        return None
    return query.filter(model.id == item_id).first()


def _get_for_write(workspace_id, principal_id, resource, item_id, include_deleted=False):
    item = get_resource(workspace_id, principal_id, resource, item_id, include_deleted)
    if item is None:
        raise NotFound(f"{resource.capitalize()} {item_id} not found")
    return item


# =============================================================================
# CREATE
# =============================================================================

def can_create(workspace_id: int, principal_id: int, resource: str) -> bool:
    """Membership, create permission and quota headroom, without writing."""
    model = get_model(resource)
    membership = get_membership(workspace_id, principal_id)
    if membership is None or get_active_workspace(workspace_id) is None:
        return False
    if not get_evaluator().has_permission(membership.role, f'create_{model.RESOURCE_TYPE}'):
        return False
    if model.QUOTA_KIND:
        return quota_service.can_create(workspace_id, model.QUOTA_KIND)
    return True


def create_resource(workspace_id: int, principal_id: int, resource: str, data: dict):
    """
    Create a row owned by the principal unless data names another member.

    Raises:
        NotFound: Not a member of the workspace
        AuthorizationDenied: Role lacks create_<type>
        QuotaExceeded: Plan ceiling reached
        ValueError: Invalid input
    """
    model = get_model(resource)
    membership = require_membership(workspace_id, principal_id)
    permission = f'create_{model.RESOURCE_TYPE}'
    if not get_evaluator().has_permission(membership.role, permission):
        raise AuthorizationDenied(f"Your role does not allow '{permission}'.")

    fields = _clean_fields(model, workspace_id, data or {}, creating=True)
    if fields.get('owner_id') is None:
        fields['owner_id'] = principal_id

    if model.QUOTA_KIND:
        quota_service.reserve(workspace_id, model.QUOTA_KIND)  # Raises QuotaExceeded

    item = model(workspace_id=workspace_id, created_by_id=principal_id, **fields)
    db.session.add(item)
    _commit(f'create {model.RESOURCE_TYPE}', workspace_id)
    logger.info(f"Created {model.RESOURCE_TYPE} {item.id} in workspace {workspace_id} by user {principal_id}")
    return item


# =============================================================================
# MUTATE
# =============================================================================

def _require_mutation(workspace_id, principal_id, item, action):
    role = get_role(workspace_id, principal_id)
    if not VisibilityResolver().can_mutate(role, principal_id, item, action):
        raise AuthorizationDenied(f"You cannot {action} this {item.RESOURCE_TYPE}.")


def update_resource(workspace_id: int, principal_id: int, resource: str, item_id: int, data: dict):
    """Apply editable fields. Logging-kind activities come back unchanged."""
    item = _get_for_write(workspace_id, principal_id, resource, item_id)
    if is_immutable_record(item):
        logger.info(f"Ignoring update of {item.activity_type} activity {item.id}")
        return item
    _require_mutation(workspace_id, principal_id, item, 'update')

    for field, value in _clean_fields(type(item), workspace_id, data or {}, creating=False).items():
        setattr(item, field, value)
    _commit(f'update {item.RESOURCE_TYPE}', workspace_id)
    return item


def soft_delete_resource(workspace_id: int, principal_id: int, resource: str, item_id: int):
    """Mark deleted and give quota back. Logging-kind activities come back unchanged."""
    item = _get_for_write(workspace_id, principal_id, resource, item_id)
    if is_immutable_record(item):
        logger.info(f"Ignoring delete of {item.activity_type} activity {item.id}")
        return item
    _require_mutation(workspace_id, principal_id, item, 'delete')

    item.deleted_at = datetime.utcnow()
    if item.QUOTA_KIND:
        quota_service.release(workspace_id, item.QUOTA_KIND)
    _commit(f'delete {item.RESOURCE_TYPE}', workspace_id)
    logger.info(f"Soft-deleted {item.RESOURCE_TYPE} {item.id} in workspace {workspace_id}")
    return item


def restore_resource(workspace_id: int, principal_id: int, resource: str, item_id: int):
    """
    Undo a soft delete. Takes quota again, so restoring into a full
    workspace raises QuotaExceeded.
    """
    item = _get_for_write(workspace_id, principal_id, resource, item_id, include_deleted=True)
    if not item.is_deleted:
        return item
    _require_mutation(workspace_id, principal_id, item, 'delete')

    if item.QUOTA_KIND:
        quota_service.reserve(workspace_id, item.QUOTA_KIND)
    item.deleted_at = None
    _commit(f'restore {item.RESOURCE_TYPE}', workspace_id)
    logger.info(f"Restored {item.RESOURCE_TYPE} {item.id} in workspace {workspace_id}")
    return item
