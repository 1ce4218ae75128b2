"""
wishbubble/models/plan.py

Plan definitions: per-tier limits, pricing and marketing features.
"""

from typing import Tuple
from pydantic import BaseModel, ConfigDict

from wishbubble.models.subscription import SubscriptionTier


UNLIMITED = -1


class PlanLimits(BaseModel):
    """
    Capability limits for a tier.

    Numeric limits use -1 for unlimited.
    """
    model_config = ConfigDict(frozen=True)

    max_owned_groups: int
    max_members_per_group: int
    max_wishlists: int
    max_items_per_wishlist: int
    can_use_secret_santa: bool
    trial_days: int = 0


class PlanPricing(BaseModel):
    """Prices in cents."""
    model_config = ConfigDict(frozen=True)

    monthly: int
    yearly: int


class PlanDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: SubscriptionTier
    name: str
    description: str
    limits: PlanLimits
    pricing: PlanPricing
    features: Tuple[str, ...]
