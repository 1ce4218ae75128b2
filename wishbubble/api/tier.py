"""
Tier API.

- GET /api/user/tier: the caller's effective tier
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from wishbubble.core.auth import get_current_user_id
from wishbubble.features.entitlements.service import resolve_effective_tier
from wishbubble.models.subscription import SubscriptionTier


router = APIRouter(prefix="/api/user", tags=["tier"])


class TierResponse(BaseModel):
    tier: SubscriptionTier


@router.get("/tier", response_model=TierResponse)
async def get_tier(user_id: str = Depends(get_current_user_id)):
    """Effective tier after status policy (a canceled PLUS user reads BASIC)."""
    tier = await resolve_effective_tier(user_id)
    return {"tier": tier}
