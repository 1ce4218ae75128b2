"""
Billing API routes.

- POST   /api/billing/checkout: Create checkout session
- POST   /api/billing/portal: Create portal session
- GET    /api/billing/subscription: Subscription, usage and limits
- DELETE /api/billing/subscription: Cancel at period end
- PATCH  /api/billing/subscription: Undo a scheduled cancellation
"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from wishbubble.core.auth import get_current_user_id
from wishbubble.core.errors import AppError, NotFoundError
from wishbubble.features.billing.provider import BillingProviderError
from wishbubble.features.billing.service import (
    billing_enabled,
    cancel_subscription,
    get_billing_status,
    reactivate_subscription,
    start_checkout,
    start_portal,
)
from wishbubble.features.limits.service import get_limit_checker
from wishbubble.models.subscription import BillingInterval, SubscriptionTier


router = APIRouter(prefix="/api/billing", tags=["billing"])


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class BillingUpstreamError(AppError):
    code = "billing_provider_error"
    status_code = 502


class CheckoutRequest(BaseModel):
    tier: SubscriptionTier
    interval: BillingInterval = BillingInterval.MONTHLY
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    return_url: str


class UrlResponse(BaseModel):
    url: str


class SubscriptionInfo(BaseModel):
    tier: Optional[SubscriptionTier] = None
    interval: Optional[BillingInterval] = None
    status: Optional[str] = None
    trial_ends_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None


class UsageInfo(BaseModel):
    owned_groups: int
    wishlists: int
    total_items: int


class LimitsInfo(BaseModel):
    max_owned_groups: int
    max_members_per_group: int
    max_wishlists: int
    max_items_per_wishlist: int
    can_use_secret_santa: bool


class SubscriptionResponse(BaseModel):
    enabled: bool
    effective_tier: SubscriptionTier
    subscription: Optional[SubscriptionInfo] = None
    usage: UsageInfo
    limits: LimitsInfo


class CancelResponse(BaseModel):
    cancel_at_period_end: bool


def _require_billing() -> None:
    if not billing_enabled():
        raise BillingDisabledError("Billing is not configured")


@router.post("/checkout", response_model=UrlResponse)
def create_checkout(request: CheckoutRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create Stripe checkout session.

    Errors:
        400: BASIC requested or price not configured
        409: Already subscribed
        502: Stripe API error
        503: Billing disabled
    """
    _require_billing()
    try:
        url = start_checkout(
            user_id=user_id,
            tier=request.tier,
            interval=request.interval,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
    except BillingProviderError as e:
        raise BillingUpstreamError(str(e)) from e
    if not url:
        raise BillingDisabledError("Billing is not configured")
    return {"url": url}


@router.post("/portal", response_model=UrlResponse)
def create_portal(request: PortalRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create Stripe billing portal session.

    Errors:
        404: Customer not found (user never checked out)
        502: Stripe API error
        503: Billing disabled
    """
    _require_billing()
    try:
        url = start_portal(user_id=user_id, return_url=request.return_url)
    except BillingProviderError as e:
        raise BillingUpstreamError(str(e)) from e
    if not url:
        raise NotFoundError("Customer not found. Complete checkout first.")
    return {"url": url}


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(user_id: str = Depends(get_current_user_id)):
    """Stored subscription (if any) alongside effective-tier usage and limits."""
    status = await run_in_threadpool(get_billing_status, user_id)
    stats = await get_limit_checker().get_usage_stats(user_id)

    subscription = None
    if status["status"] is not None:
        subscription = {key: value for key, value in status.items() if key != "enabled"}

    limits = stats.limits
    return {
        "enabled": status["enabled"],
        "effective_tier": stats.tier,
        "subscription": subscription,
        "usage": {
            "owned_groups": stats.owned_groups,
            "wishlists": stats.wishlists,
            "total_items": stats.total_items,
        },
        "limits": {
            "max_owned_groups": limits.max_owned_groups,
            "max_members_per_group": limits.max_members_per_group,
            "max_wishlists": limits.max_wishlists,
            "max_items_per_wishlist": limits.max_items_per_wishlist,
            "can_use_secret_santa": limits.can_use_secret_santa,
        },
    }


@router.delete("/subscription", response_model=CancelResponse)
def cancel(user_id: str = Depends(get_current_user_id)):
    """Schedule cancellation at the end of the current period."""
    _require_billing()
    try:
        cancel_subscription(user_id)
    except BillingProviderError as e:
        raise BillingUpstreamError(str(e)) from e
    return {"cancel_at_period_end": True}


@router.patch("/subscription", response_model=CancelResponse)
def reactivate(user_id: str = Depends(get_current_user_id)):
    """Undo a scheduled cancellation."""
    _require_billing()
    try:
        reactivate_subscription(user_id)
    except BillingProviderError as e:
        raise BillingUpstreamError(str(e)) from e
    return {"cancel_at_period_end": False}
