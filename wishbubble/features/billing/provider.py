"""
Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
This allows swapping providers without changing business logic.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime

from wishbubble.models.subscription import BillingInterval, SubscriptionStatus, SubscriptionTier


@dataclass
class BillingWebhookEvent:
    """Provider-neutral view of a billing webhook."""
    event_id: str
    event_type: str
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    tier: Optional[SubscriptionTier] = None
    interval: Optional[BillingInterval] = None
    status: Optional[SubscriptionStatus] = None
    trial_ends_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    invoice_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout and portal session creation
    - Cancel-at-period-end toggling
    - Webhook signature verification and parsing
    """

    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Ensure a billing customer exists for the user.

        Returns:
            Provider customer ID

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_days: int = 0,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Create a subscription checkout session.

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL
        """
        ...

    def set_cancel_at_period_end(self, subscription_id: str, cancel_at_period_end: bool) -> None:
        """Schedule (or unschedule) cancellation at the end of the billing period."""
        ...

    def retrieve_subscription(self, subscription_id: str) -> BillingWebhookEvent:
        """Fetch the provider's current view of a subscription."""
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookEvent:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
