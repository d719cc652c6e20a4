# services/billing_service.py
"""
Subscription lifecycle: upgrade, downgrade, cancel and status changes.

This is the only writer of Subscription and of the quota ceilings.
Each transition locks the subscription row, writes the subscription,
then the ceilings, and commits both together, so a failure leaves
neither half applied.

Write operations never raise; they return:
    {'success': True, 'subscription': {...}, 'warnings': [...]}
    {'success': False, 'error': '...', 'code': '...'}

Usage:
    from services import billing_service

    result = billing_service.downgrade(workspace.id, 'free')
    for warning in result.get('warnings', []):
        flash(warning, 'warning')
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from feature_flags import MODULES
from models import db, Subscription, WorkspaceQuota
from services import quota_service
from services.exceptions import WorkspaceError, NotFound, InvalidTierOrStatus
from tier_config import QUOTA_KINDS, get_tier_defaults, validate_tier, validate_status

logger = logging.getLogger(__name__)

BILLING_PERIOD_DAYS = {'monthly': 30, 'annual': 365}

# How each quota kind is named in downgrade warnings
KIND_LABELS = {
    'users': 'users',
    'contacts': 'contacts',
    'deals': 'deals',
    'storage': 'MB of storage',
}


# =============================================================================
# READ
# =============================================================================

def get_subscription(workspace_id: int):
    """
    Subscription for a workspace, or None when it is missing or the
    lookup fails. Read callers (dashboards) treat both as "not configured".
    """
    try:
        return Subscription.query.filter_by(workspace_id=workspace_id).first()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Error loading subscription for workspace {workspace_id}: {e}")
        return None


# =============================================================================
# SETUP
# =============================================================================

def initialize_billing(workspace_id: int, tier: str = 'free', trial_days: int = 0,
                       billing_period: str = 'monthly'):
    """
    Create the Subscription and WorkspaceQuota rows for a new workspace.
    The creating owner already counts as one user. Caller commits.

    Returns:
        Tuple of (Subscription, WorkspaceQuota)
    """
    maxima = get_tier_defaults(tier)
    now = datetime.utcnow()

    subscription = Subscription(
        workspace_id=workspace_id,
        tier=tier,
        status='trialing' if trial_days > 0 else 'active',
        billing_period=billing_period,
        current_period_start=now,
        current_period_end=now + timedelta(days=BILLING_PERIOD_DAYS.get(billing_period, 30)),
        trial_ends_at=now + timedelta(days=trial_days) if trial_days > 0 else None,
        enabled_modules=[],
    )
    quota = WorkspaceQuota(workspace_id=workspace_id, current_users=1, **maxima)

    db.session.add(subscription)
    db.session.add(quota)
    return subscription, quota


# =============================================================================
# TRANSITIONS
# =============================================================================

def _locked_subscription(workspace_id: int) -> Subscription:
    """Load the subscription row, locking it until commit."""
    subscription = Subscription.query.filter_by(
        workspace_id=workspace_id
    ).with_for_update().first()
    if subscription is None:
        raise NotFound(f"No subscription configured for workspace {workspace_id}")
    return subscription


def _run_transition(workspace_id: int, action: str, apply) -> dict:
    """Run apply() in one transaction and turn the outcome into a result dict."""
    try:
        extra = apply() or {}
        db.session.commit()
    except WorkspaceError as e:
        db.session.rollback()
        logger.warning(f"Subscription {action} rejected for workspace {workspace_id}: {e}")
        return {'success': False, 'error': e.message, 'code': e.code}
    except StaleDataError:
        db.session.rollback()
        logger.warning(f"Concurrent subscription change for workspace {workspace_id} during {action}")
        return {
            'success': False,
            'error': 'The subscription was changed by another request. Please retry.',
            'code': 'conflict'
        }
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Subscription {action} failed for workspace {workspace_id}: {e}")
        return {
            'success': False,
            'error': f'Could not {action} the subscription.',
            'code': 'service_unavailable'
        }

    logger.info(f"Subscription {action} applied for workspace {workspace_id}")
    subscription = Subscription.query.filter_by(workspace_id=workspace_id).first()
    return {'success': True, 'subscription': subscription.to_dict() if subscription else None, **extra}


def upgrade(workspace_id: int, new_tier: str, payment_provider: str = None,
            external_subscription_id: str = None, current_period_end: datetime = None) -> dict:
    """
    Move to new_tier, force status to 'active' and apply the tier's ceilings.
    Applying the same tier twice yields the same ceilings.
    """
    def apply():
        maxima = get_tier_defaults(new_tier)
        subscription = _locked_subscription(workspace_id)
        subscription.tier = new_tier
        subscription.status = 'active'
        if payment_provider:
            subscription.payment_provider = payment_provider
        if external_subscription_id:
            subscription.external_subscription_id = external_subscription_id
        if current_period_end:
            subscription.current_period_end = current_period_end
        # Subscription write lands before the ceilings
        db.session.flush()
        quota_service.set_maxima(workspace_id, maxima, commit=False)

    return _run_transition(workspace_id, 'upgrade', apply)


def downgrade(workspace_id: int, new_tier: str) -> dict:
    """
    Move to new_tier, keeping status, and apply its lower ceilings.

    Usage above a new ceiling is left in place. One warning is returned per
    resource kind that is now over its limit; further creation of that
    kind is blocked by the quota check.
    """
    def apply():
        maxima = get_tier_defaults(new_tier)
        subscription = _locked_subscription(workspace_id)
        subscription.tier = new_tier
        db.session.flush()
        quota = quota_service.set_maxima(workspace_id, maxima, commit=False)
        return {'warnings': usage_warnings(quota, new_tier)}

    return _run_transition(workspace_id, 'downgrade', apply)


def cancel(workspace_id: int) -> dict:
    """
    Mark the subscription cancelled. Tier and ceilings stay as they are;
    reduction to the free plan happens later in
    jobs/subscription_expiry.py once the paid period ends.
    """
    def apply():
        subscription = _locked_subscription(workspace_id)
        subscription.status = 'cancelled'
        subscription.cancelled_at = datetime.utcnow()

    return _run_transition(workspace_id, 'cancel', apply)


def set_status(workspace_id: int, status: str) -> dict:
    """Status-only change, e.g. past_due after a failed payment."""
    def apply():
        validate_status(status)
        subscription = _locked_subscription(workspace_id)
        subscription.status = status

    return _run_transition(workspace_id, 'status update', apply)


def set_enabled_modules(workspace_id: int, modules) -> dict:
    """Replace the purchased add-on modules."""
    def apply():
        unknown = set(modules) - set(MODULES)
        if unknown:
            raise InvalidTierOrStatus(f"Unknown modules: {sorted(unknown)}")
        subscription = _locked_subscription(workspace_id)
        subscription.enabled_modules = sorted(set(modules))

    return _run_transition(workspace_id, 'module update', apply)


# =============================================================================
# HELPERS
# =============================================================================

def usage_warnings(quota, tier: str) -> list:
    """One human-readable warning per kind whose usage exceeds its ceiling."""
    validate_tier(tier)
    warnings = []
    for kind, suffix in QUOTA_KINDS.items():
        current, maximum = quota.usage(suffix)
        if maximum is None or current <= maximum:
            continue
        label = KIND_LABELS[kind]
        message = (f"You have {current} {label}, but the {tier} plan allows only {maximum}. "
                   f"Adding more {label} will be blocked.")
        if kind == 'users':
            message += " Please deactivate extra members."
        warnings.append(message)
    return warnings
