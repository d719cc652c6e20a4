# jobs/subscription_expiry.py
"""
Move cancelled subscriptions to the free tier once their paid period ends.
Run daily via scheduler.

Cancellation itself keeps the paid tier and its ceilings; this job applies
the free ceilings later. Data above the new ceilings is kept and only
blocks further growth.
"""

import logging
from datetime import datetime

from jobs.base import set_job_workspace_context

logger = logging.getLogger(__name__)


def downgrade_expired_subscriptions(now: datetime = None) -> int:
    """Find and downgrade cancelled subscriptions past their period end."""
    from models import db, Subscription
    from services import billing_service

    cutoff = now or datetime.utcnow()

    # Get ids first, then release the ORM objects
    workspace_ids = [sub.workspace_id for sub in Subscription.query.filter(
        Subscription.status == 'cancelled',
        Subscription.tier != 'free',
        Subscription.current_period_end.isnot(None),
        Subscription.current_period_end <= cutoff,
    ).all()]

    db.session.remove()

    downgraded = 0
    for workspace_id in workspace_ids:
        try:
            set_job_workspace_context(workspace_id)
            result = billing_service.downgrade(workspace_id, 'free')
            if result['success']:
                downgraded += 1
                for warning in result.get('warnings', []):
                    logger.info(f"Workspace {workspace_id}: {warning}")
            else:
                logger.error(f"Failed to downgrade workspace {workspace_id}: {result['error']}")
        finally:
            # Clean up session after each workspace to prevent connection leaks
            db.session.remove()

    logger.info(f"Downgraded {downgraded} expired subscriptions to free")
    return downgraded
