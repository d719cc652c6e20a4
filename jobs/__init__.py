# jobs package
from .base import with_workspace_context, set_job_workspace_context
from .subscription_expiry import downgrade_expired_subscriptions

__all__ = [
    'with_workspace_context',
    'set_job_workspace_context',
    'downgrade_expired_subscriptions',
]
