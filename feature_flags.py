# feature_flags.py
"""
Per-workspace add-on modules based on subscription tier.
Modules are controlled by:
1. Tier defaults (free, starter, pro, enterprise)
2. Add-ons purchased separately, stored in Subscription.enabled_modules
"""

from functools import wraps

# =============================================================================
# MODULE DEFINITIONS
# =============================================================================

MODULES = ('reports', 'advanced_analytics', 'api_access', 'email_sync')

TIER_MODULES = {
    'free': frozenset(),
    'starter': frozenset({'reports'}),
    'pro': frozenset({'reports', 'email_sync'}),
    'enterprise': frozenset(MODULES),
}


# =============================================================================
# MODULE CHECK FUNCTIONS
# =============================================================================

def get_workspace_modules(subscription) -> set:
    """
    All modules a workspace can use: its tier's modules plus add-ons.

    Args:
        subscription: Subscription model instance, or None

    Returns:
        Set of module names
    """
    if subscription is None:
        return set()

    modules = set(TIER_MODULES.get(subscription.tier, TIER_MODULES['free']))
    modules.update(m for m in (subscription.enabled_modules or []) if m in MODULES)
    return modules


def workspace_has_module(module_name: str, subscription) -> bool:
    """
    Check if a workspace has access to a module.

    A cancelled subscription keeps its modules until the paid period
    ends and the workspace is moved to the free tier.
    """
    return module_name in get_workspace_modules(subscription)


# =============================================================================
# ROUTE PROTECTION DECORATOR
# =============================================================================

def module_required(module_name: str):
    """
    Decorator to require a module for a workspace route. Must run after
    permission_required, which puts the workspace on g.

    Usage:
        @permission_required('view_reports')
        @module_required('reports')
        def reports(workspace_id):
            ...
    """
    from flask import g
    from services.exceptions import AuthorizationDenied

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not workspace_has_module(module_name, g.workspace.subscription):
                raise AuthorizationDenied(f"The '{module_name}' module is not included in your plan.")
            return f(*args, **kwargs)
        return decorated_function
    return decorator
