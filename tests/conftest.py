"""
Test configuration and fixtures.
Uses a temporary SQLite database so concurrent sessions behave like separate
connections. Mocks Redis and every outbound provider.
"""
from typing import Optional
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

from eventdispatch.config import Settings
from eventdispatch.database import Base
from eventdispatch.services.audit import AuditSink
from eventdispatch.services.event_store import SqlEventStore

import eventdispatch.models  # noqa: F401  (registers every table on Base.metadata)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def session_factory(tmp_path):
    """SQLite database file for tests."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    """Plain session for assertions against the raw tables."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory):
    return SqlEventStore(session_factory)


@pytest.fixture
def settings():
    return Settings(
        webhook_retry_delays_seconds=[1.0, 5.0, 15.0],
        webhook_max_attempts=3,
        webhook_timeout_seconds=10.0,
        webhook_endpoint_rate_limit=0,
        health_check_window_hours=24,
        health_check_min_deliveries=5,
        health_check_failure_threshold=0.8,
        twilio_account_sid="",
        sendgrid_api_key="",
        push_gateway_url="",
        sentry_dsn="",
    )


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock Redis so locks always acquire and nothing leaves the process."""
    redis = AsyncMock()
    redis.set.return_value = True
    redis.eval.return_value = 1
    with patch("eventdispatch.utils.cache.get_redis", new=AsyncMock(return_value=redis)):
        yield redis


class RecordingAuditSink(AuditSink):
    """Collects audit events in memory."""

    def __init__(self):
        self.events: list[dict] = []

    async def record_event(
        self,
        event_type: str,
        severity: str,
        metadata: dict,
        organization_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        self.events.append({
            "event_type": event_type,
            "severity": severity,
            "metadata": metadata,
            "organization_id": organization_id,
            "resource_type": resource_type,
            "resource_id": resource_id,
        })

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["event_type"] == event_type]


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


class FakeSleep:
    """Records backoff delays instead of sleeping."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep():
    return FakeSleep()


class EndpointServer:
    """httpx MockTransport handler with a scripted list of status codes."""

    def __init__(self, statuses=None, default: int = 200, body: str = "ok"):
        self.statuses = list(statuses or [])
        self.default = default
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else self.default
        return httpx.Response(status, text=self.body)


@pytest.fixture
async def make_http_client():
    clients = []

    def _make(handler) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()


@pytest.fixture
def endpoint_server():
    return EndpointServer


@pytest.fixture
def make_sender():
    return _make_sender


def _make_sender(success: bool = True, message_id: str = "msg_123", error: Optional[str] = None):
    """Mock ChannelSender returning a fixed SendResult."""
    from eventdispatch.schemas.notifications import SendResult
    sender = MagicMock()
    sender.send = AsyncMock(
        return_value=SendResult(success=success, provider_message_id=message_id if success else None, error=error)
    )
    return sender