"""
Bubble feature gates.

- GET /api/bubbles/{bubble_id}/secret-santa/eligibility: PLUS and above
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from wishbubble.api.deps import require_tier
from wishbubble.models.subscription import SubscriptionTier


router = APIRouter(prefix="/api/bubbles", tags=["bubbles"])


class SecretSantaEligibility(BaseModel):
    bubble_id: str
    eligible: bool
    tier: SubscriptionTier


@router.get("/{bubble_id}/secret-santa/eligibility", response_model=SecretSantaEligibility)
async def secret_santa_eligibility(
    bubble_id: str,
    tier: SubscriptionTier = Depends(require_tier(SubscriptionTier.PLUS)),
):
    # Reaching here means the gate passed
    return {"bubble_id": bubble_id, "eligible": True, "tier": tier}
