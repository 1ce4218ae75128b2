"""
wishbubble/features/plans/service.py

Plan catalogue and pricing helpers.

Handles:
- Per-tier limits, pricing and feature lists
- Stripe price id lookup (tier + interval) in both directions
- Price display and yearly savings
"""

from typing import Optional, Tuple

from wishbubble.core.config import settings
from wishbubble.features.tiers.ladder import TierLike, coerce_tier
from wishbubble.models.plan import PlanDefinition, PlanLimits, PlanPricing, UNLIMITED
from wishbubble.models.subscription import BillingInterval, SubscriptionTier


PLANS = {
    SubscriptionTier.BASIC: PlanDefinition(
        tier=SubscriptionTier.BASIC,
        name="Basic",
        description="Perfect for getting started",
        limits=PlanLimits(
            max_owned_groups=2,
            max_members_per_group=8,
            max_wishlists=3,
            max_items_per_wishlist=4,
            can_use_secret_santa=False,
            trial_days=0,
        ),
        pricing=PlanPricing(monthly=0, yearly=0),
        features=(
            "Create up to 2 groups",
            "Up to 8 members per group",
            "3 wishlists with 4 items each",
            "Join unlimited groups",
            "Basic notifications",
        ),
    ),
    SubscriptionTier.PLUS: PlanDefinition(
        tier=SubscriptionTier.PLUS,
        name="Plus",
        description="For active gift-givers",
        limits=PlanLimits(
            max_owned_groups=10,
            max_members_per_group=25,
            max_wishlists=UNLIMITED,
            max_items_per_wishlist=UNLIMITED,
            can_use_secret_santa=True,
            trial_days=14,
        ),
        pricing=PlanPricing(monthly=499, yearly=3999),
        features=(
            "Create up to 10 groups",
            "Up to 25 members per group",
            "Unlimited wishlists & items",
            "Secret Santa feature",
            "Priority support",
        ),
    ),
    SubscriptionTier.COMPLETE: PlanDefinition(
        tier=SubscriptionTier.COMPLETE,
        name="Complete",
        description="For large families and friend groups",
        limits=PlanLimits(
            max_owned_groups=UNLIMITED,
            max_members_per_group=UNLIMITED,
            max_wishlists=UNLIMITED,
            max_items_per_wishlist=UNLIMITED,
            can_use_secret_santa=True,
            trial_days=14,
        ),
        pricing=PlanPricing(monthly=999, yearly=7999),
        features=(
            "Everything in Plus",
            "Unlimited groups",
            "Unlimited members per group",
            "Dedicated support",
        ),
    ),
}

CURRENCY_SYMBOLS = {
    "EUR": "€",
    "USD": "$",
    "GBP": "£",
}


def get_plan(tier: TierLike) -> PlanDefinition:
    return PLANS[coerce_tier(tier)]


def get_plan_limits(tier: TierLike) -> PlanLimits:
    return get_plan(tier).limits


def format_price(cents: int, currency: str = "EUR") -> str:
    """Format an amount in cents for display, e.g. 499 -> '€4.99'."""
    amount = f"{cents / 100:,.2f}"
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    if symbol:
        return f"{symbol}{amount}"
    return f"{amount} {currency.upper()}"


def get_yearly_savings_percent(tier: TierLike) -> int:
    """Percent saved by paying yearly instead of 12 monthly payments."""
    pricing = get_plan(tier).pricing
    if pricing.monthly == 0:
        return 0
    yearly_if_monthly = pricing.monthly * 12
    savings = (yearly_if_monthly - pricing.yearly) / yearly_if_monthly * 100
    return round(savings)


def _price_map():
    return {
        (SubscriptionTier.PLUS, BillingInterval.MONTHLY): settings.STRIPE_PRICE_PLUS_MONTHLY,
        (SubscriptionTier.PLUS, BillingInterval.YEARLY): settings.STRIPE_PRICE_PLUS_YEARLY,
        (SubscriptionTier.COMPLETE, BillingInterval.MONTHLY): settings.STRIPE_PRICE_COMPLETE_MONTHLY,
        (SubscriptionTier.COMPLETE, BillingInterval.YEARLY): settings.STRIPE_PRICE_COMPLETE_YEARLY,
    }


def get_stripe_price_id(tier: TierLike, interval: BillingInterval) -> Optional[str]:
    """Map (tier, interval) to the configured Stripe price id."""
    return _price_map().get((coerce_tier(tier), BillingInterval(interval)))


def get_plan_for_price_id(
    price_id: Optional[str],
) -> Optional[Tuple[SubscriptionTier, BillingInterval]]:
    """Reverse lookup of a configured Stripe price id to (tier, interval)."""
    if not price_id:
        return None
    for key, configured in _price_map().items():
        if configured and configured == price_id:
            return key
    return None
