# wishbubble/conftest.py
import sys
import pytest
from pathlib import Path

# Add repo root to PYTHONPATH so `wishbubble.*` imports resolve
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture(scope="function")
def db_url(tmp_path, monkeypatch):
    """
    Point the engine at a throwaway SQLite file for this test.

    TEST_DATABASE_URL takes precedence over DATABASE_URL in get_database_url().
    """
    url = f"sqlite:///{tmp_path / 'wishbubble_test.db'}"
    monkeypatch.setenv("TEST_DATABASE_URL", url)
    return url


@pytest.fixture(scope="function")
def reset_db(db_url):
    """Fresh schema per test; the engine is disposed afterwards."""
    from wishbubble.core.database import create_all_tables, dispose_engine, init_engine

    dispose_engine()
    init_engine(db_url)
    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_resolver(monkeypatch):
    """The process-wide resolver must not leak between tests."""
    from wishbubble.features.entitlements import service as entitlements_service

    monkeypatch.setattr(entitlements_service, "_resolver", None)
    yield


@pytest.fixture
def billing_on(monkeypatch):
    """Enable billing with test keys and price ids."""
    from wishbubble.core.config import settings

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test_123")
    monkeypatch.setattr(settings, "STRIPE_PRICE_PLUS_MONTHLY", "price_plus_monthly")
    monkeypatch.setattr(settings, "STRIPE_PRICE_PLUS_YEARLY", "price_plus_yearly")
    monkeypatch.setattr(settings, "STRIPE_PRICE_COMPLETE_MONTHLY", "price_complete_monthly")
    monkeypatch.setattr(settings, "STRIPE_PRICE_COMPLETE_YEARLY", "price_complete_yearly")
    yield settings


@pytest.fixture
def billing_off(monkeypatch):
    from wishbubble.core.config import settings

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    yield settings
