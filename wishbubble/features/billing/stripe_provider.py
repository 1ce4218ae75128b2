"""
Stripe billing provider implementation.

Implements BillingProvider protocol using Stripe API.
Handles webhook signature verification and event parsing.
"""
import json
import logging
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import stripe

from wishbubble.core.config import settings
from wishbubble.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookEvent,
)
from wishbubble.features.plans.service import get_plan_for_price_id
from wishbubble.models.subscription import BillingInterval, SubscriptionStatus, SubscriptionTier


logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.PAUSED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def _from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _parse_tier(value: Optional[str]) -> Optional[SubscriptionTier]:
    try:
        return SubscriptionTier(value) if value else None
    except ValueError:
        return None


def _parse_interval(value: Optional[str]) -> Optional[BillingInterval]:
    try:
        return BillingInterval(value) if value else None
    except ValueError:
        return None


def map_stripe_status(status: Optional[str]) -> Optional[SubscriptionStatus]:
    """Stripe subscription status -> internal status; None when unrecognized."""
    if not status:
        return None
    mapped = STRIPE_STATUS_MAP.get(status)
    if mapped is None:
        logger.warning("[stripe] unmapped subscription status", extra={"status": status})
    return mapped


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET setting)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.max_network_retries = 3

    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """Create a Stripe customer tagged with the user id."""
        customer_data: Dict[str, Any] = {
            "metadata": {"user_id": user_id}
        }
        if email:
            customer_data["email"] = email
        if name:
            customer_data["name"] = name

        try:
            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_days: int = 0,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Create Stripe checkout session in subscription mode."""
        subscription_data: Dict[str, Any] = {"metadata": metadata or {}}
        if trial_days > 0:
            subscription_data["trial_period_days"] = trial_days

        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                subscription_data=subscription_data,
                metadata=metadata or {},
                allow_promotion_codes=True,
                billing_address_collection="auto",
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")

    def set_cancel_at_period_end(self, subscription_id: str, cancel_at_period_end: bool) -> None:
        try:
            stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel_at_period_end)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription update failed: {e}")

    def retrieve_subscription(self, subscription_id: str) -> BillingWebhookEvent:
        """Fetch a subscription and normalize it (status, trial end, price, periods)."""
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}")

        result = BillingWebhookEvent(event_id=subscription_id, event_type="subscription.retrieved")
        _apply_subscription(result, json.loads(str(subscription)))
        return result

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        # Signature verified; parse the raw JSON as plain dicts.
        return parse_event(json.loads(body))


def _subscription_id_from_invoice(invoice: Dict[str, Any]) -> Optional[str]:
    # Newer API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    sub = details.get("subscription") or invoice.get("subscription")
    if isinstance(sub, dict):
        return sub.get("id")
    return sub


def _apply_subscription(result: BillingWebhookEvent, data: Dict[str, Any]) -> None:
    """Fill subscription fields from a Stripe Subscription object."""
    metadata = data.get("metadata") or {}
    result.subscription_id = data.get("id")
    result.user_id = metadata.get("user_id")
    result.status = map_stripe_status(data.get("status"))
    result.cancel_at_period_end = bool(data.get("cancel_at_period_end", False))
    result.canceled_at = _from_timestamp(data.get("canceled_at"))
    result.trial_ends_at = _from_timestamp(data.get("trial_end"))

    items = (data.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    result.price_id = (first_item.get("price") or {}).get("id")
    # Checkout metadata goes stale after a portal plan switch; the price is current
    plan = get_plan_for_price_id(result.price_id)
    if plan:
        result.tier, result.interval = plan
    else:
        result.tier = _parse_tier(metadata.get("tier"))
        result.interval = _parse_interval(metadata.get("interval"))

    # Period dates moved from the subscription onto its items in newer API versions
    result.current_period_start = _from_timestamp(
        data.get("current_period_start") or first_item.get("current_period_start")
    )
    result.current_period_end = _from_timestamp(
        data.get("current_period_end") or first_item.get("current_period_end")
    )


def parse_event(event: Dict[str, Any]) -> BillingWebhookEvent:
    """Parse a Stripe event payload into a BillingWebhookEvent."""
    event_type = event["type"]
    data = event.get("data", {}).get("object", {})
    metadata = data.get("metadata") or {}
    result = BillingWebhookEvent(
        event_id=event["id"],
        event_type=event_type,
        metadata=metadata,
    )

    if event_type == "checkout.session.completed":
        result.user_id = metadata.get("user_id")
        result.subscription_id = data.get("subscription")
        result.tier = _parse_tier(metadata.get("tier"))
        result.interval = _parse_interval(metadata.get("interval"))

    elif event_type.startswith("customer.subscription."):
        _apply_subscription(result, data)

    elif event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
        result.subscription_id = _subscription_id_from_invoice(data)
        result.invoice_id = data.get("id")
        result.currency = data.get("currency")
        if event_type == "invoice.payment_succeeded":
            result.amount = data.get("amount_paid")
            lines = (data.get("lines") or {}).get("data") or []
            result.description = lines[0].get("description") if lines else None
        else:
            result.amount = data.get("amount_due")

    return result
