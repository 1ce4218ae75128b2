"""
Test billing service.

Tests with mocked Stripe provider (no real API calls) against SQLite.
"""
import pytest
from unittest.mock import Mock, patch
from datetime import datetime, timedelta, timezone
from sqlalchemy import select, insert

from wishbubble.core.database import get_db_session, billing_events, billing_transactions, subscriptions, users
from wishbubble.core.errors import ConflictError, NotFoundError, ValidationError
from wishbubble.features.billing.provider import BillingProviderError, BillingWebhookEvent
from wishbubble.features.billing.service import (
    cancel_subscription,
    ensure_customer_for_user,
    get_billing_status,
    process_webhook_event,
    reactivate_subscription,
    start_checkout,
    start_portal,
)
from wishbubble.features.entitlements.service import get_resolver
from wishbubble.models.subscription import BillingInterval, SubscriptionStatus, SubscriptionTier

TRIAL_END = datetime(2026, 1, 15, tzinfo=timezone.utc)
PERIOD_START = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def mock_stripe_provider():
    """Mock Stripe provider for testing."""
    with patch("wishbubble.features.billing.service.StripeProvider") as mock:
        instance = Mock()
        mock.return_value = instance
        yield instance


def _insert_subscription(user_id="user_alice", tier="PLUS", status="ACTIVE", stripe_subscription_id="sub_123"):
    with get_db_session() as session:
        session.execute(
            insert(subscriptions).values(
                user_id=user_id,
                tier=tier,
                status=status,
                interval="MONTHLY",
                stripe_subscription_id=stripe_subscription_id,
            )
        )


def _event_row(event_id):
    with get_db_session() as session:
        return session.execute(
            select(billing_events).where(billing_events.c.stripe_event_id == event_id)
        ).fetchone()


def test_ensure_customer_creates_new_customer(reset_db, billing_on, mock_stripe_provider):
    mock_stripe_provider.ensure_customer.return_value = "cus_test123"

    result = ensure_customer_for_user("user_alice")

    assert result == "cus_test123"
    mock_stripe_provider.ensure_customer.assert_called_once_with("user_alice", None, None)

    with get_db_session() as session:
        row = session.execute(select(users).where(users.c.user_id == "user_alice")).fetchone()
    assert row.stripe_customer_id == "cus_test123"


def test_ensure_customer_returns_existing_customer(reset_db, billing_on, mock_stripe_provider):
    mock_stripe_provider.ensure_customer.return_value = "cus_test123"
    first = ensure_customer_for_user("user_alice")

    mock_stripe_provider.ensure_customer.reset_mock()
    second = ensure_customer_for_user("user_alice")

    assert first == second
    mock_stripe_provider.ensure_customer.assert_not_called()


def test_start_checkout_creates_session(reset_db, billing_on, mock_stripe_provider):
    mock_stripe_provider.ensure_customer.return_value = "cus_test123"
    mock_stripe_provider.create_checkout_session.return_value = "https://checkout.stripe.com/test"

    url = start_checkout(
        "user_alice",
        SubscriptionTier.PLUS,
        BillingInterval.YEARLY,
        success_url="https://app/success",
        cancel_url="https://app/cancel",
    )

    assert url == "https://checkout.stripe.com/test"
    mock_stripe_provider.create_checkout_session.assert_called_once_with(
        customer_id="cus_test123",
        price_id="price_plus_yearly",
        success_url="https://app/success",
        cancel_url="https://app/cancel",
        trial_days=14,
        metadata={"user_id": "user_alice", "tier": "PLUS", "interval": "YEARLY"},
    )


def test_start_checkout_rejects_basic(reset_db, billing_on, mock_stripe_provider):
    with pytest.raises(ValidationError):
        start_checkout("user_alice", SubscriptionTier.BASIC, BillingInterval.MONTHLY)


@pytest.mark.parametrize("status", ["ACTIVE", "TRIALING", "PAST_DUE"])
def test_start_checkout_rejects_open_subscription(reset_db, billing_on, mock_stripe_provider, status):
    _insert_subscription(status=status)
    with pytest.raises(ConflictError):
        start_checkout("user_alice", SubscriptionTier.COMPLETE, BillingInterval.MONTHLY)
    mock_stripe_provider.create_checkout_session.assert_not_called()


def test_start_checkout_allowed_after_cancel(reset_db, billing_on, mock_stripe_provider):
    _insert_subscription(status="CANCELED")
    mock_stripe_provider.ensure_customer.return_value = "cus_test123"
    mock_stripe_provider.create_checkout_session.return_value = "https://checkout.stripe.com/again"

    assert start_checkout("user_alice", "COMPLETE", "MONTHLY") == "https://checkout.stripe.com/again"


def test_start_checkout_missing_price(reset_db, billing_on, mock_stripe_provider, monkeypatch):
    monkeypatch.setattr(billing_on, "STRIPE_PRICE_COMPLETE_YEARLY", None)
    with pytest.raises(ValidationError):
        start_checkout("user_alice", SubscriptionTier.COMPLETE, BillingInterval.YEARLY)


def test_start_checkout_disabled_returns_none(reset_db, billing_off):
    assert start_checkout("user_alice", SubscriptionTier.PLUS, BillingInterval.MONTHLY) is None


def test_start_portal_requires_customer(reset_db, billing_on, mock_stripe_provider):
    assert start_portal("user_alice", "https://app/billing") is None

    mock_stripe_provider.ensure_customer.return_value = "cus_test123"
    ensure_customer_for_user("user_alice")
    mock_stripe_provider.create_portal_session.return_value = "https://billing.stripe.com/p"

    assert start_portal("user_alice", "https://app/billing") == "https://billing.stripe.com/p"
    mock_stripe_provider.create_portal_session.assert_called_once_with(
        customer_id="cus_test123",
        return_url="https://app/billing",
    )


def test_cancel_without_subscription(reset_db, billing_on, mock_stripe_provider):
    with pytest.raises(NotFoundError):
        cancel_subscription("user_alice")


def test_cancel_then_reactivate(reset_db, billing_on, mock_stripe_provider):
    _insert_subscription()

    assert cancel_subscription("user_alice") is True
    mock_stripe_provider.set_cancel_at_period_end.assert_called_with("sub_123", True)
    assert get_billing_status("user_alice")["cancel_at_period_end"] is True

    assert reactivate_subscription("user_alice") is True
    mock_stripe_provider.set_cancel_at_period_end.assert_called_with("sub_123", False)
    assert get_billing_status("user_alice")["cancel_at_period_end"] is False


def test_cancel_leaves_local_state_on_provider_error(reset_db, billing_on, mock_stripe_provider):
    _insert_subscription()
    mock_stripe_provider.set_cancel_at_period_end.side_effect = BillingProviderError("boom")

    with pytest.raises(BillingProviderError):
        cancel_subscription("user_alice")
    assert get_billing_status("user_alice")["cancel_at_period_end"] is False


@pytest.mark.asyncio
async def test_webhook_checkout_completed_creates_trialing_subscription(reset_db, billing_on, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id="evt_checkout",
        event_type="checkout.session.completed",
        user_id="user_alice",
        subscription_id="sub_123",
        tier=SubscriptionTier.PLUS,
        interval=BillingInterval.MONTHLY,
    )
    mock_stripe_provider.retrieve_subscription.return_value = BillingWebhookEvent(
        event_id="sub_123",
        event_type="subscription.retrieved",
        subscription_id="sub_123",
        price_id="price_plus_monthly",
        status=SubscriptionStatus.TRIALING,
        trial_ends_at=TRIAL_END,
        current_period_start=PERIOD_START,
        current_period_end=TRIAL_END,
    )

    process_webhook_event({"stripe-signature": "sig"}, b'{"id": "evt_checkout"}')

    status = get_billing_status("user_alice")
    assert status["tier"] == "PLUS"
    assert status["status"] == "TRIALING"
    assert status["trial_ends_at"] == TRIAL_END
    assert _event_row("evt_checkout").processed is True
    assert await get_resolver().resolve_effective_tier("user_alice") == SubscriptionTier.PLUS


def test_webhook_duplicate_is_skipped(reset_db, billing_on, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id="evt_dup",
        event_type="checkout.session.completed",
        user_id="user_alice",
        subscription_id="sub_123",
        tier=SubscriptionTier.COMPLETE,
        interval=BillingInterval.YEARLY,
    )
    mock_stripe_provider.retrieve_subscription.return_value = BillingWebhookEvent(
        event_id="sub_123",
        event_type="subscription.retrieved",
        status=SubscriptionStatus.ACTIVE,
    )

    process_webhook_event({"stripe-signature": "sig"}, b"{}")
    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    assert mock_stripe_provider.retrieve_subscription.call_count == 1
    assert get_billing_status("user_alice")["status"] == "ACTIVE"


def test_webhook_checkout_without_metadata_is_acknowledged(reset_db, billing_on, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id="evt_nometa",
        event_type="checkout.session.completed",
        subscription_id="sub_123",
    )

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    mock_stripe_provider.retrieve_subscription.assert_not_called()
    assert get_billing_status("user_alice")["status"] is None
    assert _event_row("evt_nometa").processed is True


@pytest.mark.asyncio
async def test_webhook_past_due_keeps_tier(reset_db, billing_on, mock_stripe_provider):
    _insert_subscription(tier="PLUS", status="ACTIVE")
    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id="evt_update",
        event_type="customer.subscription.updated",
        user_id="user_alice",
        subscription_id="sub_123",
        status=SubscriptionStatus.PAST_DUE,
        current_period_end=TRIAL_END,
    )

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    status = get_billing_status("user_alice")
    assert status["status"] == "PAST_DUE"
    assert status["current_period_end"] == TRIAL_END
    assert await get_resolver().resolve_effective_tier("user_alice") == SubscriptionTier.PLUS


def test_webhook_update_with_unmapped_status_keeps_status(reset_db, billing_on, mock_stripe_provider):
    _insert_subscription(status="ACTIVE")
    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id="evt_incomplete",
        event_type="customer.subscription.updated",
        subscription_id="sub_123",
        status=None,
        cancel_at_period_end=True,
    )

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    status = get_billing_status("user_alice")
    assert status["status"] == "ACTIVE"
    assert status["cancel_at_period_end"] is True


@pytest.mark.asyncio
async def test_webhook_deleted_cancels(reset_db, billing_on, mock_stripe_provider):
    _insert_subscription(tier="COMPLETE", status="ACTIVE")
    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id="evt_delete",
        event_type="customer.subscription.deleted",
        subscription_id="sub_123",
        status=SubscriptionStatus.CANCELED,
    )

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    status = get_billing_status("user_alice")
    assert status["status"] == "CANCELED"
    assert status["canceled_at"] is not None
    # Record kept, tier column untouched
    assert status["tier"] == "COMPLETE"
    assert await get_resolver().resolve_effective_tier("user_alice") == SubscriptionTier.BASIC


@pytest.mark.parametrize(
    "event_type,expected_status",
    [("invoice.payment_succeeded", "COMPLETED"), ("invoice.payment_failed", "FAILED")],
)
def test_webhook_invoice_records_transaction(reset_db, billing_on, mock_stripe_provider, event_type, expected_status):
    _insert_subscription()
    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id=f"evt_{expected_status}",
        event_type=event_type,
        subscription_id="sub_123",
        invoice_id="in_1",
        amount=499,
        currency="eur",
        description="Plus monthly",
    )

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    with get_db_session() as session:
        rows = session.execute(select(billing_transactions)).fetchall()
    assert len(rows) == 1
    assert rows[0].status == expected_status
    assert rows[0].amount == 499
    assert rows[0].user_id == "user_alice"


def test_webhook_invoice_for_unknown_subscription_is_ignored(reset_db, billing_on, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id="evt_orphan",
        event_type="invoice.payment_succeeded",
        subscription_id="sub_unknown",
        amount=499,
    )

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    with get_db_session() as session:
        assert session.execute(select(billing_transactions)).fetchall() == []


def test_webhook_unknown_event_acknowledged(reset_db, billing_on, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id="evt_other",
        event_type="customer.created",
    )

    event = process_webhook_event({"stripe-signature": "sig"}, b"{}")

    assert event.event_id == "evt_other"
    assert _event_row("evt_other").processed is True


def test_webhook_failure_is_recorded_and_raised(reset_db, billing_on, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id="evt_fail",
        event_type="checkout.session.completed",
        user_id="user_alice",
        subscription_id="sub_123",
        tier=SubscriptionTier.PLUS,
    )
    mock_stripe_provider.retrieve_subscription.side_effect = BillingProviderError("stripe down")

    with pytest.raises(BillingProviderError):
        process_webhook_event({"stripe-signature": "sig"}, b"{}")

    row = _event_row("evt_fail")
    assert row.processed is False
    assert "stripe down" in row.error


@pytest.mark.asyncio
async def test_webhook_redelivery_after_failure_is_applied(reset_db, billing_on, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id="evt_retry",
        event_type="checkout.session.completed",
        user_id="user_alice",
        subscription_id="sub_123",
        tier=SubscriptionTier.PLUS,
        interval=BillingInterval.MONTHLY,
    )
    mock_stripe_provider.retrieve_subscription.side_effect = BillingProviderError("stripe down")

    with pytest.raises(BillingProviderError):
        process_webhook_event({"stripe-signature": "sig"}, b"{}")
    assert get_billing_status("user_alice")["status"] is None

    # Stripe redelivers the same event once the outage is over
    mock_stripe_provider.retrieve_subscription.side_effect = None
    mock_stripe_provider.retrieve_subscription.return_value = BillingWebhookEvent(
        event_id="sub_123",
        event_type="subscription.retrieved",
        subscription_id="sub_123",
        status=SubscriptionStatus.ACTIVE,
    )
    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    assert get_billing_status("user_alice")["status"] == "ACTIVE"
    row = _event_row("evt_retry")
    assert row.processed is True
    assert row.error is None
    assert await get_resolver().resolve_effective_tier("user_alice") == SubscriptionTier.PLUS

    # Once processed, further deliveries are duplicates
    process_webhook_event({"stripe-signature": "sig"}, b"{}")
    assert mock_stripe_provider.retrieve_subscription.call_count == 2


@pytest.mark.asyncio
async def test_webhook_plan_switch_updates_tier(reset_db, billing_on, mock_stripe_provider):
    _insert_subscription(tier="PLUS", status="ACTIVE")
    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id="evt_upgrade",
        event_type="customer.subscription.updated",
        user_id="user_alice",
        subscription_id="sub_123",
        status=SubscriptionStatus.ACTIVE,
        price_id="price_complete_yearly",
        tier=SubscriptionTier.COMPLETE,
        interval=BillingInterval.YEARLY,
    )

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.user_id == "user_alice")
        ).fetchone()
    assert row.tier == "COMPLETE"
    assert row.interval == "YEARLY"
    assert row.stripe_price_id == "price_complete_yearly"
    assert await get_resolver().resolve_effective_tier("user_alice") == SubscriptionTier.COMPLETE

    mock_stripe_provider.handle_webhook.return_value = BillingWebhookEvent(
        event_id="evt_downgrade",
        event_type="customer.subscription.updated",
        subscription_id="sub_123",
        status=SubscriptionStatus.ACTIVE,
        price_id="price_plus_monthly",
        tier=SubscriptionTier.PLUS,
        interval=BillingInterval.MONTHLY,
    )

    process_webhook_event({"stripe-signature": "sig"}, b"{}")

    assert get_billing_status("user_alice")["tier"] == "PLUS"
    assert await get_resolver().resolve_effective_tier("user_alice") == SubscriptionTier.PLUS


def test_billing_status_without_subscription(reset_db, billing_on):
    status = get_billing_status("user_nobody")
    assert status["enabled"] is True
    assert status["tier"] is None
    assert status["cancel_at_period_end"] is False


def test_billing_status_reports_period(reset_db, billing_off):
    _insert_subscription()
    with get_db_session() as session:
        session.execute(
            subscriptions.update()
            .where(subscriptions.c.user_id == "user_alice")
            .values(current_period_end=PERIOD_START + timedelta(days=30))
        )
    status = get_billing_status("user_alice")
    assert status["enabled"] is False
    assert status["current_period_end"] == PERIOD_START + timedelta(days=30)
