# tier_config/tier_limits.py
"""
Tier configuration for multi-tenant SaaS.
Quota ceilings per subscription tier. None means unlimited.
"""

from services.exceptions import InvalidTierOrStatus

TIERS = ('free', 'starter', 'pro', 'enterprise')
STATUSES = ('trialing', 'active', 'past_due', 'cancelled')

# Resource kind -> WorkspaceQuota column suffix
QUOTA_KINDS = {
    'users': 'users',
    'contacts': 'contacts',
    'deals': 'deals',
    'storage': 'storage_mb',
}

TIER_DEFAULTS = {
    'free': {
        'max_users': 2,
        'max_contacts': 100,
        'max_deals': 50,
        'max_storage_mb': 500,
    },
    'starter': {
        'max_users': 5,
        'max_contacts': 5000,
        'max_deals': 1000,
        'max_storage_mb': 5120,
    },
    'pro': {
        'max_users': 20,
        'max_contacts': 50000,
        'max_deals': 10000,
        'max_storage_mb': 51200,
    },
    'enterprise': {
        'max_users': None,  # Unlimited
        'max_contacts': None,
        'max_deals': None,
        'max_storage_mb': None,
    }
}


def validate_tier(tier: str) -> str:
    """Return the tier token or raise InvalidTierOrStatus."""
    if tier not in TIER_DEFAULTS:
        raise InvalidTierOrStatus(f"Unknown subscription tier: {tier!r}")
    return tier


def validate_status(status: str) -> str:
    """Return the status token or raise InvalidTierOrStatus."""
    if status not in STATUSES:
        raise InvalidTierOrStatus(f"Unknown subscription status: {status!r}")
    return status


def get_tier_defaults(tier: str) -> dict:
    """
    Get the quota ceilings for a tier.

    Unlike feature lookups this never falls back to 'free': an unknown
    tier is rejected before anything is written.
    """
    return dict(TIER_DEFAULTS[validate_tier(tier)])
