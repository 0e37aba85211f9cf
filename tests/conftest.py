"""Pytest configuration and shared fixtures.

Every test that touches the database gets a fresh file-backed SQLite
database built from the ORM metadata, and an escalation engine driven by
a ManualClock, so timers only fire when a test advances time.
"""

import os
import tempfile
from collections.abc import AsyncGenerator, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

# Set testing mode and database BEFORE importing the app
_DB_DIR = tempfile.mkdtemp(prefix="oncall-tests-")
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"

from src.config import settings

# Override settings for testing
settings.testing = True

from src.database import drop_models, get_session_maker, init_models, reset_database
from src.main import app
from src.services.clock import ManualClock
from src.services.escalation_engine import EscalationEngine
from src.services.notification_dispatcher import DispatchResult, Recipient
from src.services.scheduler import get_dispatcher, get_escalation_engine

T0 = datetime(2024, 1, 1, tzinfo=UTC)


@dataclass
class SentNotification:
    idempotency_key: str
    recipients: list[Recipient]
    payload: dict[str, Any]


class RecordingDispatcher:
    """Dispatcher double that records every send.

    Recipients listed in ``failing`` are reported as undelivered.
    """

    def __init__(self, failing: Sequence[Recipient] = ()):
        self.sent: list[SentNotification] = []
        self.failing = set(failing)

    async def send(
        self,
        idempotency_key: str,
        recipients: Sequence[Recipient],
        payload: dict[str, Any],
    ) -> DispatchResult:
        self.sent.append(SentNotification(idempotency_key, list(recipients), payload))
        return DispatchResult({r: r not in self.failing for r in recipients})

    @property
    def keys(self) -> list[str]:
        return [n.idempotency_key for n in self.sent]


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[None, None]:
    """Create all tables for one test, drop them afterwards."""
    await init_models()
    yield
    await drop_models()
    await reset_database()


@pytest_asyncio.fixture
async def db_session(database) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for each test."""
    async with get_session_maker()() as session:
        yield session


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest_asyncio.fixture
async def engine(database, clock, dispatcher) -> AsyncGenerator[EscalationEngine, None]:
    """Escalation engine on virtual time; in-flight dispatches drained at teardown."""
    escalation_engine = EscalationEngine(
        clock=clock,
        dispatcher=dispatcher,
        session_factory=get_session_maker(),
    )
    yield escalation_engine
    await escalation_engine.drain()


@pytest_asyncio.fixture
async def client(database, engine, dispatcher) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client wired to the test engine and dispatcher."""
    app.dependency_overrides[get_escalation_engine] = lambda: engine
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
