"""Database management - engine, session factory, initialization."""

import json
import logging
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from chatmem.core.errors import TransientIOFailure

logger = logging.getLogger(__name__)


def _json_dumps(value) -> str:
    return json.dumps(value, ensure_ascii=False)


class Database:
    """Async SQLite manager (aiosqlite driver)."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.in_memory = ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:")
        engine_kwargs: dict = {"echo": echo, "json_serializer": _json_dumps}
        if self.in_memory:
            # One shared connection, otherwise every checkout sees an empty database
            engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["connect_args"] = {"timeout": 30}
        self.engine = create_async_engine(url, **engine_kwargs)
        if not self.in_memory:
            event.listen(self.engine.sync_engine, "connect", self._on_connect)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @staticmethod
    def _on_connect(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    @asynccontextmanager
    async def session(self):
        """Context manager that yields a session with auto-commit/rollback."""
        async with self.session_factory() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    async def read(self, fn, operation: str = "read"):
        """Run ``fn(session)`` in its own session, retrying once on driver errors."""
        for attempt in (1, 2):
            try:
                async with self.session() as s:
                    return await fn(s)
            except DBAPIError as e:
                if attempt == 2:
                    raise TransientIOFailure(operation, e) from e
                logger.warning("Store read %s failed, retrying once: %s", operation, e)

    async def write(self, fn, operation: str = "write"):
        """Run ``fn(session)`` in a committed transaction. Writes are never retried."""
        try:
            async with self.session() as s:
                return await fn(s)
        except SQLAlchemyError as e:
            raise TransientIOFailure(operation, e) from e

    async def init(self) -> None:
        """Create all tables."""
        from chatmem.models.base import Base
        # Import all models to register them with Base.metadata
        import chatmem.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized: %s", self.engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        """Dispose engine and release all connections."""
        await self.engine.dispose()
