"""
Billing service orchestrator.

Coordinates:
- Customer management
- Checkout and portal sessions
- Cancel / reactivate at period end
- Webhook processing into the subscriptions table

All Stripe-specific code is in stripe_provider.py. The entitlement resolver
only reads what this module writes.
"""
import hashlib
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from wishbubble.core.config import settings
from wishbubble.core.database import (
    get_db_session,
    billing_events,
    billing_transactions,
    users,
)
from wishbubble.core.errors import ConflictError, NotFoundError, ValidationError
from wishbubble.core.logging import log_event
from wishbubble.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookEvent,
)
from wishbubble.features.billing.stripe_provider import StripeProvider
from wishbubble.features.plans.service import get_plan_limits, get_stripe_price_id
from wishbubble.features.subscriptions.store import (
    get_subscription,
    get_subscription_row_by_stripe_id,
    set_cancel_at_period_end,
    update_subscription_by_stripe_id,
    upsert_subscription,
)
from wishbubble.features.tiers.ladder import coerce_tier
from wishbubble.models.subscription import (
    BillingInterval,
    SubscriptionStatus,
    SubscriptionTier,
)


logger = logging.getLogger(__name__)

# A user holding one of these cannot start another checkout.
OPEN_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
)


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        logger.warning("[billing] provider unavailable")
        return None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_customer_for_user(
    user_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None
) -> Optional[str]:
    """
    Ensure a billing customer exists for the user.

    Returns:
        Stripe customer ID, or None if billing disabled

    Raises:
        BillingProviderError: If customer creation fails
    """
    provider = get_provider()
    if not provider:
        return None

    with get_db_session() as session:
        row = session.execute(
            select(users.c.user_id, users.c.stripe_customer_id).where(users.c.user_id == user_id)
        ).fetchone()

        if row and row.stripe_customer_id:
            return row.stripe_customer_id

        stripe_customer_id = provider.ensure_customer(user_id, email, name)

        if row:
            session.execute(
                update(users)
                .where(users.c.user_id == user_id)
                .values(stripe_customer_id=stripe_customer_id)
            )
        else:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    email=email,
                    name=name,
                    stripe_customer_id=stripe_customer_id,
                )
            )

        return stripe_customer_id


def start_checkout(
    user_id: str,
    tier: SubscriptionTier,
    interval: BillingInterval,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Optional[str]:
    """
    Start a subscription checkout.

    Returns:
        Checkout URL, or None if billing disabled

    Raises:
        ValidationError: BASIC requested or no Stripe price configured
        ConflictError: User already has an open subscription
        BillingProviderError: If checkout creation fails
    """
    provider = get_provider()
    if not provider:
        return None

    tier = coerce_tier(tier)
    interval = BillingInterval(interval)
    if tier == SubscriptionTier.BASIC:
        raise ValidationError("BASIC is free and has no checkout")

    existing = get_subscription(user_id)
    if existing and existing.status in OPEN_STATUSES:
        raise ConflictError(
            "You already have an active subscription. Manage it from your billing settings.",
            code="already_subscribed",
        )

    price_id = get_stripe_price_id(tier, interval)
    if not price_id:
        raise ValidationError(f"Price not configured for {tier.value} {interval.value}")

    stripe_customer_id = ensure_customer_for_user(user_id)
    if not stripe_customer_id:
        raise BillingProviderError("Failed to ensure customer")

    checkout_url = provider.create_checkout_session(
        customer_id=stripe_customer_id,
        price_id=price_id,
        success_url=success_url or f"{settings.APP_URL}/settings/billing?success=true",
        cancel_url=cancel_url or f"{settings.APP_URL}/pricing?canceled=true",
        trial_days=get_plan_limits(tier).trial_days,
        metadata={"user_id": user_id, "tier": tier.value, "interval": interval.value},
    )

    log_event(
        "info",
        "[billing] checkout started",
        user_id=user_id,
        extra={"tier": tier.value, "interval": interval.value},
    )
    return checkout_url


def start_portal(user_id: str, return_url: str) -> Optional[str]:
    """
    Start billing portal session for customer self-service.

    Returns:
        Portal URL, or None if billing disabled or customer doesn't exist
    """
    provider = get_provider()
    if not provider:
        return None

    with get_db_session() as session:
        row = session.execute(
            select(users.c.stripe_customer_id).where(users.c.user_id == user_id)
        ).fetchone()

    if not row or not row.stripe_customer_id:
        return None

    return provider.create_portal_session(
        customer_id=row.stripe_customer_id,
        return_url=return_url,
    )


def _set_cancel_flag(user_id: str, cancel_at_period_end: bool) -> bool:
    provider = get_provider()
    if not provider:
        return False

    subscription = get_subscription(user_id)
    if not subscription or not subscription.stripe_subscription_id:
        raise NotFoundError("No subscription found")

    provider.set_cancel_at_period_end(subscription.stripe_subscription_id, cancel_at_period_end)
    set_cancel_at_period_end(user_id, cancel_at_period_end)

    log_event(
        "info",
        "[billing] cancel_at_period_end updated",
        user_id=user_id,
        extra={"cancel_at_period_end": cancel_at_period_end},
    )
    return True


def cancel_subscription(user_id: str) -> bool:
    """Cancel at the end of the current period. False if billing disabled."""
    return _set_cancel_flag(user_id, True)


def reactivate_subscription(user_id: str) -> bool:
    """Undo a scheduled cancellation. False if billing disabled."""
    return _set_cancel_flag(user_id, False)


def apply_checkout_completed(event: BillingWebhookEvent, provider: BillingProvider) -> None:
    """Create or replace the user's subscription from a completed checkout."""
    if not event.user_id or not event.tier or not event.subscription_id:
        logger.error(
            "[billing] checkout session missing metadata",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        return

    current = provider.retrieve_subscription(event.subscription_id)
    status = (
        SubscriptionStatus.TRIALING
        if current.status == SubscriptionStatus.TRIALING
        else SubscriptionStatus.ACTIVE
    )

    upsert_subscription(
        event.user_id,
        {
            "stripe_subscription_id": event.subscription_id,
            "stripe_price_id": current.price_id,
            "tier": event.tier.value,
            "interval": event.interval.value if event.interval else None,
            "status": status.value,
            "trial_ends_at": current.trial_ends_at,
            "current_period_start": current.current_period_start or _utc_now(),
            "current_period_end": current.current_period_end,
            "cancel_at_period_end": False,
            "canceled_at": None,
        },
    )
    log_event(
        "info",
        "[billing] subscription created",
        user_id=event.user_id,
        event_type=event.event_type,
        extra={"tier": event.tier.value, "status": status.value},
    )


def apply_subscription_updated(event: BillingWebhookEvent) -> None:
    """Copy status, plan, period and cancellation fields onto the stored subscription."""
    values: Dict[str, Any] = {
        "cancel_at_period_end": event.cancel_at_period_end,
        "canceled_at": event.canceled_at,
    }
    if event.status is not None:
        values["status"] = event.status.value
    # Plan switches from the portal arrive as a price change on the same subscription
    if event.tier is not None:
        values["tier"] = event.tier.value
    if event.price_id:
        values["stripe_price_id"] = event.price_id
    if event.interval is not None:
        values["interval"] = event.interval.value
    if event.current_period_start:
        values["current_period_start"] = event.current_period_start
    if event.current_period_end:
        values["current_period_end"] = event.current_period_end
    if event.trial_ends_at:
        values["trial_ends_at"] = event.trial_ends_at

    if not update_subscription_by_stripe_id(event.subscription_id, values):
        logger.error(
            "[billing] subscription not found",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        return

    log_event(
        "info",
        "[billing] subscription updated",
        user_id=event.user_id,
        event_type=event.event_type,
        extra={"status": values.get("status"), "tier": values.get("tier")},
    )


def apply_subscription_deleted(event: BillingWebhookEvent) -> None:
    """Mark the subscription CANCELED; the record is kept."""
    updated = update_subscription_by_stripe_id(
        event.subscription_id,
        {
            "status": SubscriptionStatus.CANCELED.value,
            "canceled_at": event.canceled_at or _utc_now(),
        },
    )
    if updated:
        log_event(
            "info",
            "[billing] subscription canceled",
            user_id=event.user_id,
            event_type=event.event_type,
        )


def record_payment(event: BillingWebhookEvent, succeeded: bool) -> None:
    """Record an invoice payment attempt against the subscription."""
    if not event.subscription_id:
        return

    row = get_subscription_row_by_stripe_id(event.subscription_id)
    if not row:
        return

    with get_db_session() as session:
        session.execute(
            insert(billing_transactions).values(
                subscription_id=row.id,
                user_id=row.user_id,
                stripe_invoice_id=event.invoice_id,
                amount=event.amount or 0,
                currency=event.currency or "eur",
                status="COMPLETED" if succeeded else "FAILED",
                description=(
                    f"Subscription payment - {event.description or ''}"
                    if succeeded
                    else "Payment failed"
                ),
            )
        )

    log_event(
        "info" if succeeded else "warning",
        "[billing] payment succeeded" if succeeded else "[billing] payment failed",
        user_id=row.user_id,
        event_type=event.event_type,
        extra={"amount": event.amount, "currency": event.currency},
    )


def _dispatch(event: BillingWebhookEvent, provider: BillingProvider) -> None:
    if event.event_type == "checkout.session.completed":
        apply_checkout_completed(event, provider)
    elif event.event_type == "customer.subscription.updated":
        apply_subscription_updated(event)
    elif event.event_type == "customer.subscription.deleted":
        apply_subscription_deleted(event)
    elif event.event_type == "invoice.payment_succeeded":
        record_payment(event, succeeded=True)
    elif event.event_type == "invoice.payment_failed":
        record_payment(event, succeeded=False)
    else:
        logger.info(
            "[billing] unhandled webhook event",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )


def process_webhook_event(headers: Dict[str, str], body: bytes) -> BillingWebhookEvent:
    """
    Process billing webhook event (idempotent).

    1. Verify signature
    2. Check idempotency (skip if already processed; re-apply after a failure)
    3. Apply state changes
    4. Mark as processed

    Raises:
        BillingWebhookError: If billing is disabled or the signature is invalid
    """
    provider = get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled")

    event = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.id, billing_events.c.processed).where(
                billing_events.c.stripe_event_id == event.event_id
            )
        ).fetchone()

    if existing and existing.processed:
        logger.info(
            "[billing] duplicate webhook skipped",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        return event

    if existing:
        # Earlier delivery failed; the provider is retrying
        logger.info(
            "[billing] retrying unprocessed webhook",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
    else:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=event.event_id,
                        event_type=event.event_type,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
        except IntegrityError:
            # Another worker recorded this event first
            return event

    try:
        _dispatch(event, provider)

        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event.event_id)
                .values(processed=True, processed_at=_utc_now(), error=None)
            )
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event.event_id)
                .values(error=str(e)[:1000])
            )
        logger.error(
            "[billing] webhook processing failed",
            exc_info=True,
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        raise

    return event


def get_billing_status(user_id: str) -> Dict[str, Any]:
    """
    Get user's stored subscription state.

    Returns:
        {
            "enabled": bool,
            "tier": str | None,
            "interval": str | None,
            "status": str | None,
            "trial_ends_at": datetime | None,
            "current_period_start": datetime | None,
            "current_period_end": datetime | None,
            "cancel_at_period_end": bool,
            "canceled_at": datetime | None,
        }
    """
    subscription = get_subscription(user_id)
    if not subscription:
        return {
            "enabled": billing_enabled(),
            "tier": None,
            "interval": None,
            "status": None,
            "trial_ends_at": None,
            "current_period_start": None,
            "current_period_end": None,
            "cancel_at_period_end": False,
            "canceled_at": None,
        }

    return {
        "enabled": billing_enabled(),
        "tier": subscription.tier.value,
        "interval": subscription.interval.value if subscription.interval else None,
        "status": subscription.status.value,
        "trial_ends_at": subscription.trial_ends_at,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "canceled_at": subscription.canceled_at,
    }
