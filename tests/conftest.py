"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import json
import pytest
from unittest.mock import AsyncMock, patch
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool

import billing_sentinel.models  # noqa: F401 - register mappers
from billing_sentinel.config import Settings
from billing_sentinel.database import Base
from billing_sentinel.schemas.stripe_events import WebhookEvent
from billing_sentinel.services.audit import AuditLogger
from billing_sentinel.utils.alerting import RealtimeAlerter

WEBHOOK_SECRET = "whsec_test_secret_for_billing_sentinel"


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
def fernet_key():
    return Fernet.generate_key().decode()


@pytest.fixture
def fernet(fernet_key):
    return Fernet(fernet_key.encode())


@pytest.fixture
def webhook_secret():
    return WEBHOOK_SECRET


@pytest.fixture
def settings(fernet_key, tmp_path):
    """Isolated settings - never reads a developer's .env."""
    return Settings(
        _env_file=None,
        app_env="development",
        app_version="9.9.9",
        build_number="42",
        platform="server",
        admin_api_token="admin-test-token",
        database_url="sqlite+aiosqlite:///:memory:",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_secret_key="sk_test_abc123",
        encryption_key=fernet_key,
        key_store_path=str(tmp_path / "keys.json"),
        audit_remote_url="",
        alert_webhook_url="",
        webhook_retry_delays=[0.0, 0.0, 0.0],
    )


@pytest.fixture
async def session_factory():
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def alerter():
    return RealtimeAlerter()


@pytest.fixture
async def audit(settings, session_factory, alerter, fernet):
    logger = AuditLogger(settings, session_factory=session_factory, alerter=alerter, fernet=fernet)
    yield logger
    await logger.drain(timeout=5.0)


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("billing_sentinel.utils.dedup.get_redis", new_callable=AsyncMock) as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def ops_alert():
    """Replaces send_alert in handler deps."""
    return AsyncMock(return_value=True)


@pytest.fixture
def payments():
    mock = AsyncMock()
    mock.confirm_payment = AsyncMock(return_value={})
    mock.mark_failed = AsyncMock(return_value={})
    mock.sync_subscription = AsyncMock(return_value={})
    return mock


@pytest.fixture
def accounts():
    mock = AsyncMock()
    return mock


def _make_event(event_type: str, obj: dict, event_id: str = "evt_test_1", **envelope) -> WebhookEvent:
    data = {
        "id": event_id,
        "type": event_type,
        "created": 1_700_000_000,
        "livemode": False,
        "data": {"object": obj},
    }
    data.update(envelope)
    return WebhookEvent.model_validate(data)


def _make_raw(event_type: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "created": 1_700_000_000,
        "livemode": False,
        "data": {"object": obj},
    }).encode()


@pytest.fixture
def make_event():
    """Build a WebhookEvent envelope around a data.object."""
    return _make_event


@pytest.fixture
def make_raw():
    """Raw JSON bytes of a webhook delivery."""
    return _make_raw
