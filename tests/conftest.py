"""Test configuration and fixtures for chatmem tests."""

import asyncio
import random
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from chatmem import ChatMemory
from chatmem.core.config import Settings, load_settings
from chatmem.db import Database
from chatmem.providers.llm import GenerationProvider
from chatmem.providers.transport import Transport
from chatmem.schemas import IncomingMessage, StoredMessage
from chatmem.services.cache import CacheRegistry
from chatmem.services.memory import MemoryStore

# Wednesday, inside the default active hours
FROZEN_NOW = datetime(2025, 6, 11, 15, 0, tzinfo=timezone.utc)
TEST_SEED = 42


class MockGenerationProvider(GenerationProvider):
    """Mock generation provider for testing (no external API calls)."""

    model = "mock-model"

    def __init__(self, reply: str | None = "Да нормально всё", delay: float = 0.0, fail: bool = False):
        self.reply = reply
        self.delay = delay
        self.fail = fail
        self.calls: list[tuple[str, str, dict | None]] = []

    async def generate(self, system_prompt: str, user_prompt: str, style_hints: dict | None = None) -> str | None:
        self.calls.append((system_prompt, user_prompt, style_hints))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("provider unavailable")
        return self.reply


class RecordingTransport(Transport):
    """Keeps every sent reply instead of delivering it."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    async def send(self, chat_id: str, text: str) -> str:
        self.sent.append((chat_id, text))
        return f"out-{len(self.sent)}"


class FrozenClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: datetime = FROZEN_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Monotonic clock for cache TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def make_message(
    content: str,
    author: str = "Alex",
    *,
    chat_id: str = "chat-1",
    source_id: str | None = None,
    timestamp: datetime = FROZEN_NOW,
    from_agent: bool = False,
    topics: list[str] | None = None,
    mentions: list[str] | None = None,
) -> StoredMessage:
    return StoredMessage(
        chat_id=chat_id,
        source_id=source_id or f"{author}-{abs(hash((content, timestamp))) % 10**8}",
        author=author,
        content=content,
        timestamp=timestamp,
        from_agent=from_agent,
        topics=topics or [],
        mentions=mentions or [],
    )


def incoming(
    text: str,
    author: str = "Alex",
    *,
    chat_id: str = "chat-1",
    message_id: str,
    timestamp: datetime = FROZEN_NOW,
) -> IncomingMessage:
    return IncomingMessage(chat_id=chat_id, author=author, text=text, message_id=message_id, timestamp=timestamp)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(TEST_SEED)


@pytest.fixture
def caches(monotonic) -> CacheRegistry:
    return CacheRegistry(clock=monotonic)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return load_settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'chatmem.db'}",
        random_seed=TEST_SEED,
        timezone="UTC",
    )


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[Database]:
    """In-memory database with all tables created."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def db_session(database) -> AsyncGenerator[AsyncSession]:
    async with database.session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(db_session, caches) -> MemoryStore:
    return MemoryStore(db_session, caches)


@pytest.fixture
def mock_generator() -> MockGenerationProvider:
    return MockGenerationProvider()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest_asyncio.fixture
async def memory(settings, clock, transport) -> AsyncGenerator[ChatMemory]:
    """ChatMemory with no generation provider, backed by a temporary SQLite file."""
    instance = ChatMemory(settings, transport=transport, clock=clock, rng=random.Random(TEST_SEED))
    await instance.init()
    yield instance
    await instance.close()
