# quiver/conftest.py
import pytest

from quiver.core.config import settings
from quiver.core.database import init_engine, dispose_engine, create_all_tables, drop_all_tables
from quiver.tests.mocks import TEST_ADMIN_KEY, TEST_JWT_SECRET


@pytest.fixture(scope="function", autouse=True)
def sqlite_db(monkeypatch):
    """
    Fresh in-memory database per test.

    Every table is created up front and dropped afterwards, so tests never
    see each other's rows.
    """
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    init_engine("sqlite://")
    create_all_tables()
    yield
    drop_all_tables()
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def test_settings(monkeypatch):
    """Known auth settings; Stripe stays disabled unless a test enables it."""
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "AUTH_ALLOW_HEADER_FALLBACK", True)
    monkeypatch.setattr(settings, "ADMIN_KEY", TEST_ADMIN_KEY)
    monkeypatch.setattr(settings, "FREE_SCAN_LIMIT", 50)
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    yield


@pytest.fixture
def stripe_env(monkeypatch):
    """Enable billing with test keys."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test_123")
    return "whsec_test_123"
