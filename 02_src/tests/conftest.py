"""Pytest configuration and fixtures."""

import asyncio
import sys
import uuid
from datetime import datetime, time, timezone
from pathlib import Path
from unittest.mock import AsyncMock, Mock
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Wednesday, inside and outside the default 09:00-21:00 window
OPEN_TIME = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
CLOSED_TIME = datetime(2026, 3, 4, 23, 30, tzinfo=timezone.utc)
CONSOLE_PASSWORD = "console-secret"


class FakeConnection:
    """In-memory IConnection that records what the relay sends."""

    def __init__(self, connection_id: str | None = None, fail_sends: bool = False):
        self._connection_id = connection_id or str(uuid.uuid4())
        self.events = []
        self.closed = False
        self.close_code = None
        self.fail_sends = fail_sends

    @property
    def connection_id(self) -> str:
        return self._connection_id

    async def send(self, event) -> None:
        if self.fail_sends:
            raise ConnectionError("peer went away")
        self.events.append(event)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]

    def types(self):
        return [e.type for e in self.events]


class Clock:
    """Settable clock for business-hours checks."""

    def __init__(self, now: datetime = OPEN_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest_asyncio.fixture
async def storage():
    """Create in-memory storage for testing."""
    from relay.storage import Storage

    st = Storage(":memory:")
    await st.init()
    yield st
    await st.close()


@pytest.fixture
def registry():
    from relay.presence import PresenceRegistry

    return PresenceRegistry(broadcast_timeout=0.5)


@pytest.fixture
def tracker(storage):
    """Create Tracker with storage."""
    from relay.tracker import Tracker

    return Tracker(storage)


@pytest.fixture
def mock_bot():
    """Create mock bot channel."""
    bot = Mock()
    bot.send_notification = AsyncMock(return_value=None)
    return bot


@pytest.fixture
def mock_push():
    """Create mock push sender."""
    push = Mock()
    push.send = AsyncMock(return_value=None)
    return push


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def business_hours():
    from relay.autoreply import BusinessHours

    return BusinessHours(start=time(9, 0), end=time(21, 0), tz=ZoneInfo("UTC"))


@pytest.fixture
def moderation(storage, registry, tracker):
    from relay.moderation import ModerationService

    return ModerationService(storage, registry, tracker)


@pytest.fixture
def dispatcher(storage, mock_bot, mock_push, tracker):
    from relay.notifications import NotificationDispatcher

    return NotificationDispatcher(
        storage=storage,
        bot=mock_bot,
        push=mock_push,
        tracker=tracker,
        owner_groups={"shop": "-100200"},
    )


@pytest.fixture
def auto_reply(storage, registry, business_hours, clock):
    from relay.autoreply import AutoReplyScheduler

    return AutoReplyScheduler(
        storage=storage,
        registry=registry,
        hours=business_hours,
        text="We are closed",
        delay=0.01,
        clock=clock,
    )


@pytest_asyncio.fixture
async def engine(storage, registry, moderation, dispatcher, auto_reply, tracker):
    """Create RelayEngine wired to in-memory components."""
    from relay.engine import RelayEngine
    from relay.identity import IdentityIssuer

    eng = RelayEngine(
        storage=storage,
        registry=registry,
        issuer=IdentityIssuer(),
        moderation=moderation,
        dispatcher=dispatcher,
        auto_reply=auto_reply,
        tracker=tracker,
        welcome_text="Hello!",
        console_password=CONSOLE_PASSWORD,
    )
    yield eng
    await eng.drain()
    await registry.evict_all()


@pytest.fixture
def connect(engine):
    """Open a fake connection on the engine."""

    def _connect(connection_id: str | None = None) -> FakeConnection:
        conn = FakeConnection(connection_id)
        engine.connect(conn)
        return conn

    return _connect


async def settle(delay: float = 0.05) -> None:
    """Let scheduled tasks run."""
    await asyncio.sleep(delay)
