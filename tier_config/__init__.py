# config package
from .tier_limits import (
    TIERS, STATUSES, QUOTA_KINDS, TIER_DEFAULTS,
    get_tier_defaults, validate_tier, validate_status
)

__all__ = [
    'TIERS', 'STATUSES', 'QUOTA_KINDS', 'TIER_DEFAULTS',
    'get_tier_defaults', 'validate_tier', 'validate_status'
]
