"""
Pytest configuration for testing
"""

import os
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

# Set up environment variables for testing before any imports
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FIREBASE_PROJECT_ID"] = "test-project"
os.environ["FIREBASE_CREDENTIALS_PATH"] = "/tmp/test-creds.json"
os.environ["REDIS_URL"] = "redis://localhost:6379/1"
os.environ["REDIS_PASSWORD"] = ""
os.environ["SWEEP_ENABLED"] = "false"
os.environ["USDT_TRC20_ADDRESS"] = "TDepositAddressTron000000000000000"
os.environ["USDT_ERC20_ADDRESS"] = "0x1111111111111111111111111111111111111111"
os.environ["USDT_BEP20_ADDRESS"] = "0x2222222222222222222222222222222222222222"

NOW = datetime(2026, 3, 1, 12, 0, 0)


class FakeClock:
    """Settable clock shared by manager and tests"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# Mock Firebase Admin before it's imported
@pytest.fixture(autouse=True)
def mock_firebase_admin(monkeypatch):
    """Mock Firebase Admin SDK to avoid initialization issues in tests"""
    mock_credentials = MagicMock()
    monkeypatch.setattr("firebase_admin.credentials.Certificate", mock_credentials.Certificate)

    mock_init = MagicMock()
    monkeypatch.setattr("firebase_admin.initialize_app", mock_init)

    mock_auth = MagicMock()
    monkeypatch.setattr("paywall.core.firebase.auth", mock_auth)

    yield mock_auth


@pytest.fixture(scope="function")
def db_engine():
    """In-memory SQLite engine with all tables created"""
    from paywall.core.database import create_db_engine, init_db

    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    from paywall.core.database import create_session_factory

    return create_session_factory(db_engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(session_factory, clock):
    """SubscriptionManager on SQLite with a fixed clock, local locks and no retry delay"""
    from tenacity import wait_none

    from paywall.core.locks import SubscriptionLockManager
    from paywall.services.state_machine import Policy
    from paywall.services.subscription_manager import SubscriptionManager

    return SubscriptionManager(
        session_factory,
        lock_manager=SubscriptionLockManager(),
        policy=Policy(period_days=30, grace_period_days=7),
        clock=clock,
        monthly_price=Decimal("100"),
        persist_attempts=3,
        retry_wait=wait_none(),
    )


@pytest.fixture
def make_payment(clock):
    """Build PaymentData for a TRC20 transfer"""
    from paywall.models.payment import Network
    from paywall.services.subscription_manager import PaymentData

    def _make(tx_hash: str, amount: str = "100", network=Network.TRC20):
        return PaymentData(
            transaction_hash=tx_hash,
            amount=Decimal(amount),
            network=network,
            payment_date=clock.now,
        )

    return _make


@pytest.fixture(scope="function")
def redis_client():
    """Create Redis client for testing"""
    import redis

    redis_url = os.environ.get("REDIS_URL", "redis://localhost:6379/1")

    try:
        client = redis.from_url(
            redis_url,
            decode_responses=False,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        client.ping()
    except Exception:
        # Redis not available
        yield None
        return

    yield client

    client.flushdb()
    client.close()
