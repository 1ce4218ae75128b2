"""
wishbubble/features/tiers/ladder.py

Total order over subscription tiers and the access-check primitives built on it.

No I/O. Tier values outside SubscriptionTier raise InvalidTierError; the
persistence layer only ever stores valid tiers, so seeing one here is a
data-integrity defect upstream.
"""

from typing import Optional, Union

from wishbubble.core.errors import InvalidTierError
from wishbubble.models.subscription import SubscriptionTier


TIER_RANKS = {
    SubscriptionTier.BASIC: 0,
    SubscriptionTier.PLUS: 1,
    SubscriptionTier.COMPLETE: 2,
}

TierLike = Union[SubscriptionTier, str]


def coerce_tier(tier: TierLike) -> SubscriptionTier:
    """Return the SubscriptionTier for a member or its string value."""
    if isinstance(tier, SubscriptionTier):
        return tier
    try:
        return SubscriptionTier(tier)
    except ValueError:
        raise InvalidTierError(f"Unknown subscription tier: {tier!r}") from None


def rank(tier: TierLike) -> int:
    """Numeric level of a tier: BASIC=0, PLUS=1, COMPLETE=2."""
    return TIER_RANKS[coerce_tier(tier)]


def has_access(current_tier: TierLike, required_tier: TierLike) -> bool:
    """True when current_tier is at or above required_tier."""
    return rank(current_tier) >= rank(required_tier)


def upgrade_target(current_tier: TierLike, required_tier: TierLike) -> Optional[SubscriptionTier]:
    """Tier the user must move to for a feature, or None if they already have access.

    The required tier is echoed back as-is; no search for an intermediate tier.
    """
    if has_access(current_tier, required_tier):
        return None
    return coerce_tier(required_tier)


def next_tier(tier: TierLike) -> Optional[SubscriptionTier]:
    """The tier directly above, or None at the top of the ladder."""
    level = rank(tier) + 1
    for candidate, candidate_rank in TIER_RANKS.items():
        if candidate_rank == level:
            return candidate
    return None
