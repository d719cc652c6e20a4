# services/quota_service.py
"""
Per-workspace quota ceilings and usage counters.

Ceilings (max_*) are written only by the subscription lifecycle in
services/billing_service.py. Counters (current_*) move as resources are
created, soft-deleted and restored. A NULL ceiling is unlimited.

current > max is a tolerated state after a downgrade: it blocks further
growth and nothing here ever shrinks data to fit.
"""

import logging

from sqlalchemy import update, or_, case
from sqlalchemy.exc import SQLAlchemyError

from models import db, WorkspaceQuota
from services.exceptions import NotFound, QuotaExceeded
from tier_config import QUOTA_KINDS

logger = logging.getLogger(__name__)

MAX_COLUMNS = tuple(f'max_{suffix}' for suffix in QUOTA_KINDS.values())


def _columns(kind: str):
    """(current column, max column) for a quota kind."""
    suffix = QUOTA_KINDS[kind]
    return getattr(WorkspaceQuota, f'current_{suffix}'), getattr(WorkspaceQuota, f'max_{suffix}')


def has_capacity(current: int, maximum, amount: int = 1) -> bool:
    if maximum is None:
        return True  # Unlimited
    return current + amount <= maximum


def _execute_update(workspace_id: int, stmt) -> int:
    """Run a counter UPDATE and expire any loaded copy of the row."""
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    for obj in list(db.session.identity_map.values()):
        if isinstance(obj, WorkspaceQuota) and obj.workspace_id == workspace_id:
            db.session.expire(obj)
    return result.rowcount


def get_quota(workspace_id: int):
    """Quota row for a workspace, or None. Storage errors propagate."""
    return WorkspaceQuota.query.filter_by(workspace_id=workspace_id).first()


def can_create(workspace_id: int, kind: str) -> bool:
    """
    Check if the workspace may create one more resource of kind.

    Fails closed: an unknown kind, a missing quota row or a storage
    error all deny.
    """
    if kind not in QUOTA_KINDS:
        logger.warning(f"Unknown quota kind '{kind}' for workspace {workspace_id}. Denying creation.")
        return False

    try:
        quota = get_quota(workspace_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Quota lookup failed for workspace {workspace_id}: {e}")
        return False

    if quota is None:
        logger.warning(f"No quota record found for workspace {workspace_id}. Denying creation.")
        return False

    current, maximum = quota.usage(QUOTA_KINDS[kind])
    return has_capacity(current, maximum)


def get_remaining(workspace_id: int, kind: str):
    """
    Number of resources of kind that can still be created.

    Returns:
        Remaining count, None if unlimited, 0 if over the limit or unknown
    """
    quota = get_quota(workspace_id)
    if quota is None or kind not in QUOTA_KINDS:
        return 0
    current, maximum = quota.usage(QUOTA_KINDS[kind])
    if maximum is None:
        return None
    return max(0, maximum - current)


def set_maxima(workspace_id: int, maxima: dict, commit: bool = True) -> WorkspaceQuota:
    """
    Partially update ceilings. Keys are max_* column names; omitted
    ceilings and every current_* counter are left untouched.

    Raises:
        ValueError: If a key is not a ceiling column
        NotFound: If the workspace has no quota row
    """
    unknown = set(maxima) - set(MAX_COLUMNS)
    if unknown:
        raise ValueError(f"Not quota ceilings: {sorted(unknown)}")

    quota = get_quota(workspace_id)
    if quota is None:
        raise NotFound(f"No quota record for workspace {workspace_id}")

    for column, value in maxima.items():
        setattr(quota, column, value)

    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return quota


def adjust_current(workspace_id: int, delta: dict, commit: bool = True) -> None:
    """
    Add signed amounts to usage counters, e.g. {'contacts': -1}.
    Counters are clamped at zero. One UPDATE statement.

    Raises:
        NotFound: If the workspace has no quota row
    """
    values = {}
    for kind, amount in delta.items():
        current_col, _ = _columns(kind)
        values[current_col.key] = case((current_col + amount < 0, 0), else_=current_col + amount)

    if not values:
        return

    rowcount = _execute_update(
        workspace_id,
        update(WorkspaceQuota)
        .where(WorkspaceQuota.workspace_id == workspace_id)
        .values(**values)
    )
    if rowcount == 0:
        raise NotFound(f"No quota record for workspace {workspace_id}")

    if commit:
        db.session.commit()


def consume(workspace_id: int, kind: str, amount: int = 1, commit: bool = True) -> bool:
    """
    Atomically take capacity: a single conditional UPDATE that only
    matches while current + amount stays within the ceiling.

    Returns:
        True if the counter was advanced, False if the ceiling (or a
        missing row) blocked it
    """
    if kind not in QUOTA_KINDS:
        logger.warning(f"Unknown quota kind '{kind}' for workspace {workspace_id}. Denying creation.")
        return False

    current_col, max_col = _columns(kind)
    rowcount = _execute_update(
        workspace_id,
        update(WorkspaceQuota)
        .where(
            WorkspaceQuota.workspace_id == workspace_id,
            or_(max_col.is_(None), current_col + amount <= max_col),
        )
        .values({current_col: current_col + amount})
    )
    if rowcount == 0:
        return False

    if commit:
        db.session.commit()
    return True


def reserve(workspace_id: int, kind: str, amount: int = 1) -> None:
    """
    consume() for creation paths, without committing so the counter and
    the new row land in the same transaction.

    Raises:
        QuotaExceeded: If the ceiling is reached or no quota row exists
    """
    if consume(workspace_id, kind, amount, commit=False):
        return

    limit = None
    quota = get_quota(workspace_id)
    if quota is not None and kind in QUOTA_KINDS:
        _, limit = quota.usage(QUOTA_KINDS[kind])
    logger.info(f"Quota '{kind}' exhausted for workspace {workspace_id} (limit {limit})")
    raise QuotaExceeded(kind, limit)


def release(workspace_id: int, kind: str, amount: int = 1) -> None:
    """Give capacity back on soft-delete or removal. Caller commits."""
    adjust_current(workspace_id, {kind: -amount}, commit=False)
