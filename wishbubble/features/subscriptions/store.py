"""
Subscription persistence.

Read side (SubscriptionStore) is what the entitlement resolver depends on.
Write helpers are used by the billing webhook path only.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import select, insert, update
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from wishbubble.core.database import get_db_session, subscriptions
from wishbubble.core.errors import EntitlementUnavailableError
from wishbubble.models.subscription import (
    BillingInterval,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)


logger = logging.getLogger(__name__)


class SubscriptionStore(Protocol):
    """
    Read-only lookup of a user's subscription record.

    Implementations return None when the user has no record and raise
    EntitlementUnavailableError only for genuine I/O failures.
    """

    async def find_by_user_id(self, user_id: str) -> Optional[SubscriptionRecord]:
        ...


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_column(enum_cls, value, fallback, column: str, user_id: str):
    # Rows may carry values written by another service or a newer build.
    if value is None:
        return fallback
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning(
            "[subscriptions] unrecognised stored value",
            extra={"user_id": user_id, "column": column, "value": value},
        )
        return fallback


def _row_to_record(row) -> SubscriptionRecord:
    return SubscriptionRecord(
        user_id=row.user_id,
        tier=_parse_column(SubscriptionTier, row.tier, SubscriptionTier.BASIC, "tier", row.user_id),
        status=_parse_column(
            SubscriptionStatus, row.status, SubscriptionStatus.UNKNOWN, "status", row.user_id
        ),
        interval=_parse_column(BillingInterval, row.interval, None, "interval", row.user_id),
        trial_ends_at=_as_utc(row.trial_ends_at),
        current_period_start=_as_utc(row.current_period_start),
        current_period_end=_as_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        canceled_at=_as_utc(row.canceled_at),
        stripe_subscription_id=row.stripe_subscription_id,
    )


def get_subscription(user_id: str) -> Optional[SubscriptionRecord]:
    """Blocking lookup by user id."""
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.user_id == user_id)
        ).first()
    return _row_to_record(row) if row else None


class SqlSubscriptionStore:
    """SubscriptionStore backed by the subscriptions table."""

    async def find_by_user_id(self, user_id: str) -> Optional[SubscriptionRecord]:
        try:
            return await run_in_threadpool(get_subscription, user_id)
        # ValueError: no DATABASE_URL, so the engine cannot be created
        except (SQLAlchemyError, ValueError) as e:
            logger.error(
                "[subscriptions] lookup failed",
                extra={"user_id": user_id, "error_code": "entitlement_unavailable"},
            )
            raise EntitlementUnavailableError(
                f"Subscription lookup failed for user {user_id}"
            ) from e


def get_subscription_row_by_stripe_id(stripe_subscription_id: str):
    """Return the raw subscriptions row (id, user_id, ...) or None."""
    with get_db_session() as session:
        return session.execute(
            select(subscriptions).where(
                subscriptions.c.stripe_subscription_id == stripe_subscription_id
            )
        ).first()


def upsert_subscription(user_id: str, values: Dict[str, Any]) -> None:
    """Create or replace the user's subscription row (one row per user)."""
    with get_db_session() as session:
        existing = session.execute(
            select(subscriptions.c.id).where(subscriptions.c.user_id == user_id)
        ).first()

        if existing:
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.user_id == user_id)
                .values(**values, updated_at=datetime.now(timezone.utc))
            )
        else:
            session.execute(insert(subscriptions).values(user_id=user_id, **values))


def update_subscription_by_stripe_id(stripe_subscription_id: str, values: Dict[str, Any]) -> bool:
    """Apply a partial update; returns False if no row matched."""
    with get_db_session() as session:
        result = session.execute(
            update(subscriptions)
            .where(subscriptions.c.stripe_subscription_id == stripe_subscription_id)
            .values(**values, updated_at=datetime.now(timezone.utc))
        )
        return result.rowcount > 0


def set_cancel_at_period_end(user_id: str, cancel_at_period_end: bool) -> None:
    with get_db_session() as session:
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .values(cancel_at_period_end=cancel_at_period_end, updated_at=datetime.now(timezone.utc))
        )
