"""Async database access for Renta-Engine.

One engine per process. Every service call opens its own unit of work via
``get_session()``; rental state never spans two sessions.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from renta_engine.common.config import RentaSettings, get_settings
from renta_engine.common.models import Base

# Table registration for create_all().
import renta_engine.machines.models  # noqa: F401
import renta_engine.sessions.models  # noqa: F401
import renta_engine.payments.models  # noqa: F401


def engine_options(url: str, busy_timeout: float) -> dict[str, Any]:
    """Keyword arguments for ``create_async_engine`` suited to the backend."""
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return {"pool_pre_ping": True}
    database = parsed.database
    if database and database != ":memory:" and not database.startswith("file:"):
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    # Concurrent writers wait for the file lock.
    return {"connect_args": {"timeout": busy_timeout}}


class DatabaseManager:
    """Owns the engine and hands out units of work."""

    def __init__(self, settings: RentaSettings | None = None):
        self._settings = settings or get_settings()
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        url = self._settings.db_url
        self.engine = create_async_engine(
            url, **engine_options(url, self._settings.db_busy_timeout)
        )
        self._session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    def _require_engine(self) -> AsyncEngine:
        if self.engine is None:
            raise RuntimeError("DatabaseManager not initialized, call init() first")
        return self.engine

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """One unit of work: commit on success, roll back on any error."""
        self._require_engine()
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        async with self._require_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        """True when the database answers a trivial query."""
        if self.engine is None:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self._session_factory = None
