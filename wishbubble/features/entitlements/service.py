"""
wishbubble/features/entitlements/service.py

Effective-tier resolution and tier-gated access checks.

Handles:
- Effective tier from the persisted subscription status (grace on PAST_DUE)
- Access checks against the tier ladder
- Fail-closed gating when subscription state cannot be read

The resolver never writes. Subscription status transitions happen in the
billing webhook path; a read racing a webhook may see the prior status.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from wishbubble.core.config import settings
from wishbubble.core.errors import EntitlementUnavailableError, UpgradeRequiredError
from wishbubble.features.subscriptions.store import SqlSubscriptionStore, SubscriptionStore
from wishbubble.features.tiers.ladder import TierLike, coerce_tier, has_access, upgrade_target
from wishbubble.models.subscription import SubscriptionRecord, SubscriptionStatus, SubscriptionTier


logger = logging.getLogger(__name__)

# Statuses that keep the stored tier. PAST_DUE is the grace period: access
# stays until the provider cancels outright.
ENTITLING_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
})

DEFAULT_TIER = SubscriptionTier.BASIC


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementResolver:
    """Resolve a user's effective tier from an injected SubscriptionStore."""

    def __init__(
        self,
        store: SubscriptionStore,
        *,
        enforce_trial_expiry: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.enforce_trial_expiry = enforce_trial_expiry
        self._clock = clock or _utc_now

    def tier_for_record(self, record: Optional[SubscriptionRecord]) -> SubscriptionTier:
        """Effective tier for a record (or its absence). Pure."""
        if record is None:
            return DEFAULT_TIER

        if record.status not in ENTITLING_STATUSES:
            return DEFAULT_TIER

        if (
            self.enforce_trial_expiry
            and record.status == SubscriptionStatus.TRIALING
            and record.trial_ends_at is not None
            and record.trial_ends_at < self._clock()
        ):
            return DEFAULT_TIER

        return record.tier

    async def resolve_effective_tier(self, user_id: str) -> SubscriptionTier:
        """Look up the user's subscription and return the tier they may use now.

        Raises EntitlementUnavailableError when the store cannot be read.
        """
        record = await self.store.find_by_user_id(user_id)
        tier = self.tier_for_record(record)
        logger.debug(
            "[entitlements] resolved",
            extra={
                "user_id": user_id,
                "effective_tier": tier.value,
                "status": record.status.value if record else None,
            },
        )
        return tier

    async def check_access(self, user_id: str, required_tier: TierLike) -> bool:
        """True when the user's effective tier satisfies required_tier.

        Store failures propagate unchanged; callers gating paid features
        should deny on EntitlementUnavailableError (see allows()).
        """
        required = coerce_tier(required_tier)
        tier = await self.resolve_effective_tier(user_id)
        return has_access(tier, required)

    async def allows(self, user_id: str, required_tier: TierLike) -> bool:
        """Fail-closed variant of check_access."""
        try:
            return await self.check_access(user_id, required_tier)
        except EntitlementUnavailableError:
            logger.warning(
                "[entitlements] DENIED (unavailable)",
                extra={
                    "user_id": user_id,
                    "required_tier": coerce_tier(required_tier).value,
                    "error_code": "entitlement_unavailable",
                },
            )
            return False

    async def require_access(self, user_id: str, required_tier: TierLike) -> SubscriptionTier:
        """Return the effective tier, or raise UpgradeRequiredError naming the tier to buy."""
        required = coerce_tier(required_tier)
        tier = await self.resolve_effective_tier(user_id)
        target = upgrade_target(tier, required)
        if target is None:
            return tier

        logger.info(
            "[entitlements] UPGRADE_REQUIRED",
            extra={
                "user_id": user_id,
                "effective_tier": tier.value,
                "required_tier": target.value,
            },
        )
        raise UpgradeRequiredError(
            f"This feature requires the {target.value} plan",
            required_tier=target,
            current_tier=tier,
        )


_resolver: Optional[EntitlementResolver] = None


def get_resolver() -> EntitlementResolver:
    """Process-wide resolver bound to the SQL store and current settings."""
    global _resolver
    if _resolver is None:
        _resolver = EntitlementResolver(
            SqlSubscriptionStore(),
            enforce_trial_expiry=settings.ENFORCE_TRIAL_EXPIRY,
        )
    return _resolver


async def resolve_effective_tier(user_id: str) -> SubscriptionTier:
    return await get_resolver().resolve_effective_tier(user_id)


async def check_access(user_id: str, required_tier: TierLike) -> bool:
    return await get_resolver().check_access(user_id, required_tier)
