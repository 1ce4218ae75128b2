"""
Shared route dependencies.

require_tier() gates a route on the caller's effective tier. It fails closed:
when subscription state cannot be read the request is rejected with 503
rather than let through.
"""
from fastapi import Depends

from wishbubble.core.auth import get_current_user_id
from wishbubble.features.entitlements.service import get_resolver
from wishbubble.features.tiers.ladder import TierLike, coerce_tier
from wishbubble.models.subscription import SubscriptionTier


def require_tier(tier: TierLike):
    """
    Dependency factory.

    Usage:
        @router.get("/x", dependencies=[Depends(require_tier(SubscriptionTier.PLUS))])

    Resolves to the caller's effective tier. Raises UpgradeRequiredError (403)
    or EntitlementUnavailableError (503), rendered by the app error handler.
    """
    required = coerce_tier(tier)

    async def dependency(user_id: str = Depends(get_current_user_id)) -> SubscriptionTier:
        return await get_resolver().require_access(user_id, required)

    return dependency
