"""Shared test fixtures and configuration."""
import pytest
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import Mock

from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test-token")
os.environ.setdefault("TWILIO_PHONE_NUMBER", "+15550000000")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")

from parallel_dialer.main import app
from parallel_dialer.db.database import get_db
from parallel_dialer.db.models import Base, CallAttempt
from parallel_dialer.core.config import Settings
from parallel_dialer.core.dependencies import build_dialer, get_dialer
from parallel_dialer.core.security import API_PURPOSE, WEBHOOK_PURPOSE, generate_token
from parallel_dialer.services.markers.in_memory import InMemoryMarkerStore
from parallel_dialer.services.notifications import NotificationHub
from parallel_dialer.services.tasks import BackgroundJobQueue, Job
from parallel_dialer.services.telephony.client import PlacedCall, TelephonyClient
from parallel_dialer.services.telephony.urls import CallbackUrls


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
BASE_URL = "https://dialer.test"


class FakeTelephony(TelephonyClient):
    """Records provider operations instead of calling Twilio."""

    def __init__(self):
        super().__init__("ACtest", "test-token", "+15550000000", client=Mock())
        self.placed: List[Dict[str, Any]] = []
        self.hung_up: List[str] = []
        self.canceled: List[str] = []
        self.redirects: List[Tuple[str, str]] = []
        self.ended_conferences: List[str] = []
        self.gone = set()
        self.place_error: Optional[Exception] = None
        self._count = 0

    async def place_call(self, to, url, status_callback, amd_options=None, from_=None):
        if self.place_error is not None:
            raise self.place_error
        self._count += 1
        sid = f"CA{self._count:032d}"
        self.placed.append({
            "sid": sid,
            "to": to,
            "url": url,
            "status_callback": status_callback,
            "amd_options": amd_options or {},
        })
        return PlacedCall(sid=sid, status="queued")

    async def hangup_call(self, call_sid):
        self.hung_up.append(call_sid)
        return call_sid not in self.gone

    async def cancel_call(self, call_sid):
        self.canceled.append(call_sid)
        return call_sid not in self.gone

    async def redirect_call(self, call_sid, url):
        self.redirects.append((call_sid, url))
        return call_sid not in self.gone

    async def end_conference(self, conference_name):
        self.ended_conferences.append(conference_name)
        return True


class RecordingNotifier(NotificationHub):
    """Notification hub that remembers every broadcast."""

    def __init__(self):
        super().__init__()
        self.events: List[Tuple[int, str, Dict[str, Any]]] = []

    async def broadcast(self, user_id, event, data):
        self.events.append((user_id, event, data))
        await super().broadcast(user_id, event, data)

    def of_type(self, event: str, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return [
            data for (uid, name, data) in self.events
            if name == event and (user_id is None or uid == user_id)
        ]


class RecordingJobQueue(BackgroundJobQueue):
    """Job queue that holds jobs until the test runs them."""

    def __init__(self):
        super().__init__(workers=1, max_attempts=1, retry_delay_seconds=0)
        self.jobs: List[Job] = []

    def enqueue(self, name, factory):
        job = Job(name=name, factory=factory)
        self.jobs.append(job)
        return job

    @property
    def names(self) -> List[str]:
        return [job.name for job in self.jobs]

    async def run_pending(self) -> None:
        while self.jobs:
            job = self.jobs.pop(0)
            await self._run(job)


class FrozenClock:
    """Controllable replacement for datetime.utcnow."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def test_settings():
    """Override settings for testing."""
    return Settings(
        twilio_account_sid="ACtest",
        twilio_auth_token="test-token",
        twilio_phone_number="+15550000000",
        database_url=TEST_DATABASE_URL,
        webhook_secret="test-webhook-secret",
        base_url=BASE_URL,
        marker_backend="memory",
        greeting_url="",
        auto_record=True,
    )


@pytest.fixture
async def test_db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def test_db(session_factory):
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def marker_store():
    return InMemoryMarkerStore(ttl_seconds=7200)


@pytest.fixture
def telephony():
    return FakeTelephony()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def jobs():
    return RecordingJobQueue()


@pytest.fixture
def dialer(marker_store, telephony, notifier, jobs, session_factory, test_settings):
    """Dialer services wired with fakes."""
    return build_dialer(
        store=marker_store,
        telephony=telephony,
        notifier=notifier,
        jobs=jobs,
        session_factory=session_factory,
        config=test_settings,
    )


@pytest.fixture
def urls():
    """Callback URLs for user 1."""
    return CallbackUrls.for_user(BASE_URL, 1)


@pytest.fixture
def make_attempt(session_factory):
    """Insert a CallAttempt row; returns the stored row."""
    async def _make_attempt(
        call_sid: str,
        line_id: str = "line-0",
        user_id: int = 1,
        status: str = "ringing",
        **fields,
    ) -> CallAttempt:
        async with session_factory() as session:
            attempt = CallAttempt(
                user_id=user_id,
                call_sid=call_sid,
                line_id=line_id,
                phone=fields.pop("phone", "+15551230000"),
                contact_name=fields.pop("contact_name", f"Contact {line_id}"),
                amd_enabled=fields.pop("amd_enabled", True),
                status=status,
                extra={},
                **fields,
            )
            session.add(attempt)
            await session.commit()
            await session.refresh(attempt)
            return attempt
    return _make_attempt


@pytest.fixture
def webhook_token():
    return generate_token(1, WEBHOOK_PURPOSE)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {generate_token(1, API_PURPOSE)}"}


@pytest.fixture
def override_get_db(session_factory):
    """Override get_db dependency with test database."""
    async def _override_get_db():
        async with session_factory() as session:
            yield session
    return _override_get_db


@pytest.fixture
def test_client(override_get_db, dialer, test_settings, monkeypatch):
    """Create FastAPI test client with overrides."""
    # Override dependencies
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dialer] = lambda: dialer

    # Override settings in modules that use it
    monkeypatch.setattr("parallel_dialer.core.dependencies.settings", test_settings)
    monkeypatch.setattr("parallel_dialer.api.webhooks.voice.settings", test_settings)
    monkeypatch.setattr("parallel_dialer.api.health.settings", test_settings)

    client = TestClient(app)

    yield client

    # Clear overrides
    app.dependency_overrides.clear()
