"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import os
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from cryptography.fernet import Fernet

# Settings are read from the environment; configure before anything imports them
os.environ["APP_ENV"] = "test"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["WEBHOOK_APP_SECRET"] = "test-app-secret"
os.environ["WEBHOOK_VERIFY_TOKEN"] = "test-verify-token"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["OPENAI_API_KEY"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["ALERT_WEBHOOK_URL"] = ""

import pytest
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import StaticPool

import intakeflow.models  # noqa: F401 - registers every table on Base.metadata
from intakeflow import database
from intakeflow.config import get_settings
from intakeflow.database import Base
from intakeflow.schemas.inbound_event import InboundEvent
from intakeflow.schemas.intents import IntentResult
from intakeflow.services.booking import BookingAdapter, BookingConfirmation, Slot
from intakeflow.services.messaging import MessagingAdapter
from intakeflow.services.tenants import link_platform_account, resolve_tenant
from intakeflow.utils import alerting
from intakeflow.utils.errors import BookingConflictError

ACCOUNT_ID = "17841400000001"
OWNER_ID = uuid.UUID("a1111111-1111-4111-8111-111111111111")
ACCESS_TOKEN = "EAAG-test-token"


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# SQLite gives a column declared "UUID" numeric affinity, which mangles all-digit hex ids
@compiles(UUID, "sqlite")
def _compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(32)"


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Each test sees settings built from the environment above."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_alert_state():
    alerting._local_cooldowns.clear()
    alerting._internal_error_events.clear()
    yield
    alerting._local_cooldowns.clear()
    alerting._internal_error_events.clear()


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("intakeflow.utils.redis_client.get_redis", new_callable=AsyncMock) as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.lpush = AsyncMock(return_value=1)
        redis_mock.brpop = AsyncMock(return_value=None)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
async def session_factory():
    """
    Shared in-memory SQLite database.
    StaticPool keeps one connection so services opening their own sessions see the same data.
    Commit test setup before calling a service that opens its own session.
    """
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    with patch.object(database, "_async_session_factory", factory):
        yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    """In-memory SQLite database for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def tenant(db):
    """A linked Instagram account with an access token, committed."""
    await link_platform_account(
        db,
        owner_id=OWNER_ID,
        platform="instagram",
        platform_account_id=ACCOUNT_ID,
        access_token=ACCESS_TOKEN,
        display_name="Test Clinic",
        timezone="UTC",
    )
    await db.commit()
    return await resolve_tenant(db, "instagram", ACCOUNT_ID)


@pytest.fixture
def make_event():
    """Factory for inbound events on the test account."""
    def _make(text: str, event_id: str = None, sender: str = "user-1", platform: str = "instagram"):
        return InboundEvent(
            event_id=event_id or f"mid.{uuid.uuid4().hex[:12]}",
            platform=platform,
            platform_account_id=ACCOUNT_ID,
            sender_external_id=sender,
            text=text,
            correlation_id="cid-test",
        )
    return _make


def make_slots(count: int = 3) -> list[Slot]:
    """Half-hour slots on a fixed Monday morning."""
    first = datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)
    return [
        Slot(first + timedelta(minutes=30 * i), first + timedelta(minutes=30 * (i + 1)))
        for i in range(count)
    ]


class FakeBookingAdapter(BookingAdapter):
    """In-memory booking backend with the same idempotency contract as the real one."""

    def __init__(self, slots=None):
        self.slots = list(slots if slots is not None else make_slots())
        self.taken: set = set()
        self.by_key: dict[str, BookingConfirmation] = {}
        self.commit_calls: list[dict] = []
        self.slot_calls = 0

    async def get_available_slots(self, owner_id, date_from, date_to, tz_name="UTC"):
        self.slot_calls += 1
        return [s for s in self.slots if s.start not in self.taken]

    async def commit_booking(self, owner_id, slot, idempotency_key, details):
        self.commit_calls.append({"slot": slot, "key": idempotency_key, "details": details})
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        if slot.start in self.taken:
            raise BookingConflictError("Slot already booked")
        confirmation = BookingConfirmation(f"APT-{len(self.by_key) + 1:04d}", slot)
        self.taken.add(slot.start)
        self.by_key[idempotency_key] = confirmation
        return confirmation


class FakeMessagingAdapter(MessagingAdapter):
    """Records sends; `errors` are raised one per call before succeeding."""

    def __init__(self, errors=None):
        self.sent: list[dict] = []
        self.errors = list(errors or [])

    async def send(self, platform_account_id, recipient_external_id, text, correlation_id=None, access_token=None):
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append({
            "account": platform_account_id,
            "recipient": recipient_external_id,
            "text": text,
            "access_token": access_token,
        })
        return {"message_id": f"out-{len(self.sent)}"}


@pytest.fixture
def fake_booking():
    return FakeBookingAdapter()


@pytest.fixture
def fake_messaging():
    return FakeMessagingAdapter()


@pytest.fixture
def mock_classifier():
    """Mock for the intent classifier - prevents real AI API calls in tests."""
    with (
        patch("intakeflow.agents.conductor.classify_intent", new_callable=AsyncMock) as classify,
        patch("intakeflow.agents.conductor.generate_reply", new_callable=AsyncMock) as reply,
    ):
        classify.return_value = IntentResult(intent="book_appointment", confidence=0.92, provider="openai")
        reply.return_value = "We're open Monday to Friday, 9am to 5pm."
        classify.generate_reply = reply
        yield classify
