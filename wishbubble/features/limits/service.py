"""
wishbubble/features/limits/service.py

Plan limit checks (groups, members, wishlists, items, Secret Santa).

Each check resolves the user's effective tier first, so a lapsed or
canceled subscription falls back to BASIC limits.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from wishbubble.features.entitlements.service import EntitlementResolver, get_resolver
from wishbubble.features.plans.service import get_plan_limits
from wishbubble.features.tiers.ladder import next_tier
from wishbubble.features.usage.service import SqlUsageCounter, UsageCounter
from wishbubble.models.plan import PlanLimits, UNLIMITED
from wishbubble.models.subscription import SubscriptionTier


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LimitCheckResult:
    allowed: bool
    current: int
    limit: int
    limit_name: str
    upgrade_required: bool
    upgrade_tier: Optional[SubscriptionTier] = None


@dataclass(frozen=True)
class UsageStats:
    tier: SubscriptionTier
    limits: PlanLimits
    owned_groups: int
    wishlists: int
    total_items: int


def _within(limit: int, current: int) -> bool:
    return limit == UNLIMITED or current < limit


def _result(tier: SubscriptionTier, allowed: bool, current: int, limit: int, limit_name: str) -> LimitCheckResult:
    target = None if allowed else next_tier(tier)
    if not allowed:
        logger.info(
            "[limits] LIMIT_REACHED",
            extra={"tier": tier.value, "limit_name": limit_name, "current": current, "limit": limit},
        )
    return LimitCheckResult(
        allowed=allowed,
        current=current,
        limit=limit,
        limit_name=limit_name,
        upgrade_required=target is not None,
        upgrade_tier=target,
    )


class LimitChecker:
    def __init__(self, resolver: EntitlementResolver, counter: UsageCounter):
        self.resolver = resolver
        self.counter = counter

    async def can_create_group(self, user_id: str) -> LimitCheckResult:
        tier = await self.resolver.resolve_effective_tier(user_id)
        limits = get_plan_limits(tier)
        current = await self.counter.count_owned_groups(user_id)
        return _result(tier, _within(limits.max_owned_groups, current), current, limits.max_owned_groups, "groups")

    async def can_add_member(self, user_id: str, group_id: str) -> LimitCheckResult:
        """Owner-side member cap. Joining someone else's group is never limited here."""
        tier = await self.resolver.resolve_effective_tier(user_id)
        limits = get_plan_limits(tier)
        membership = await self.counter.get_group_membership(group_id)

        if membership is None or membership[0] != user_id:
            return LimitCheckResult(
                allowed=True,
                current=0,
                limit=limits.max_members_per_group,
                limit_name="members",
                upgrade_required=False,
            )

        current = membership[1]
        return _result(
            tier,
            _within(limits.max_members_per_group, current),
            current,
            limits.max_members_per_group,
            "members per group",
        )

    async def can_create_wishlist(self, user_id: str) -> LimitCheckResult:
        tier = await self.resolver.resolve_effective_tier(user_id)
        limits = get_plan_limits(tier)
        if limits.max_wishlists == UNLIMITED:
            return LimitCheckResult(
                allowed=True, current=0, limit=UNLIMITED, limit_name="wishlists", upgrade_required=False
            )
        current = await self.counter.count_wishlists(user_id)
        return _result(tier, current < limits.max_wishlists, current, limits.max_wishlists, "wishlists")

    async def can_add_item(self, user_id: str, wishlist_id: str) -> LimitCheckResult:
        tier = await self.resolver.resolve_effective_tier(user_id)
        limits = get_plan_limits(tier)
        if limits.max_items_per_wishlist == UNLIMITED:
            return LimitCheckResult(
                allowed=True, current=0, limit=UNLIMITED, limit_name="items", upgrade_required=False
            )

        wishlist = await self.counter.get_wishlist_items(wishlist_id)
        if wishlist is None or wishlist[0] != user_id:
            # Not the owner: denied, and no upgrade would change that
            return LimitCheckResult(
                allowed=False, current=0, limit=0, limit_name="items", upgrade_required=False
            )

        current = wishlist[1]
        return _result(
            tier,
            current < limits.max_items_per_wishlist,
            current,
            limits.max_items_per_wishlist,
            "items per wishlist",
        )

    async def can_use_secret_santa(self, user_id: str) -> LimitCheckResult:
        tier = await self.resolver.resolve_effective_tier(user_id)
        allowed = get_plan_limits(tier).can_use_secret_santa
        return _result(tier, allowed, 0, 1 if allowed else 0, "Secret Santa")

    async def get_usage_stats(self, user_id: str) -> UsageStats:
        tier = await self.resolver.resolve_effective_tier(user_id)
        owned_groups, wishlist_count, items = await asyncio.gather(
            self.counter.count_owned_groups(user_id),
            self.counter.count_wishlists(user_id),
            self.counter.count_items(user_id),
        )
        return UsageStats(
            tier=tier,
            limits=get_plan_limits(tier),
            owned_groups=owned_groups,
            wishlists=wishlist_count,
            total_items=items,
        )


def get_limit_checker() -> LimitChecker:
    return LimitChecker(get_resolver(), SqlUsageCounter())
