"""
wishbubble/models/subscription.py

Subscription tier, status and the per-user subscription record.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SubscriptionTier(str, Enum):
    """Subscription tiers, declared lowest to highest."""
    BASIC = "BASIC"
    PLUS = "PLUS"
    COMPLETE = "COMPLETE"


class SubscriptionStatus(str, Enum):
    """Subscription status as last reported by the billing provider."""
    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    UNPAID = "UNPAID"
    PAUSED = "PAUSED"
    # Stored value this build does not recognise; never entitles
    UNKNOWN = "UNKNOWN"


class BillingInterval(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class SubscriptionRecord(BaseModel):
    """
    A user's subscription as persisted from billing webhooks.

    Constraint: at most one record per user. Records are never deleted;
    cancellation moves the status to CANCELED.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: SubscriptionTier
    status: SubscriptionStatus
    interval: Optional[BillingInterval] = None
    trial_ends_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    stripe_subscription_id: Optional[str] = None
