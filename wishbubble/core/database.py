"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for subscriptions, billing events and usage counting
"""
import logging
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, text
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from wishbubble.core.config import settings


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    connect_args = {}
    if url.startswith("sqlite"):
        # Lookups run in the threadpool; connections move between threads.
        connect_args["check_same_thread"] = False

    # Create engine with connection pooling
    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        connect_args=connect_args,
        echo=False,  # Set to True for SQL query logging
    )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Dispose the pooled engine and forget it (tests switch databases)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False


# Users table
users = Table(
    'users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True, unique=True),
    Column('name', Text, nullable=True),
    Column('stripe_customer_id', String(255), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Subscriptions: one row per user, superseded by status transitions, never deleted
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, unique=True, index=True),
    Column('stripe_subscription_id', String(255), nullable=True, unique=True, index=True),
    Column('stripe_price_id', String(255), nullable=True),
    Column('tier', String(20), nullable=False, server_default='PLUS'),
    Column('interval', String(20), nullable=True),
    Column('status', String(20), nullable=False, server_default='ACTIVE'),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, default=False),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_subscriptions_user_status', 'user_id', 'status'),
)

# Stripe webhook events (idempotency ledger)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(255), nullable=False, unique=True, index=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('payload_hash', String(64), nullable=False),
    Column('processed', Boolean, nullable=False, default=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Invoice payments (succeeded and failed)
billing_transactions = Table(
    'billing_transactions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', Integer, nullable=False, index=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('stripe_invoice_id', String(255), nullable=True, unique=True),
    Column('amount', Integer, nullable=False),
    Column('currency', String(10), nullable=False),
    Column('status', String(20), nullable=False),  # COMPLETED, FAILED
    Column('description', Text, nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Bubbles (groups)
bubbles = Table(
    'bubbles',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('owner_id', String(100), nullable=False, index=True),
    Column('name', Text, nullable=False),
    Column('archived_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_bubbles_owner_archived', 'owner_id', 'archived_at'),
)

bubble_members = Table(
    'bubble_members',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('bubble_id', String(100), nullable=False, index=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('joined_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('left_at', DateTime(timezone=True), nullable=True),
    Index('idx_bubble_members_bubble_left', 'bubble_id', 'left_at'),
)

wishlists = Table(
    'wishlists',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('name', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

wishlist_items = Table(
    'wishlist_items',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('wishlist_id', String(100), nullable=False, index=True),
    Column('title', Text, nullable=False),
    Column('deleted_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_wishlist_items_wishlist_deleted', 'wishlist_id', 'deleted_at'),
)
