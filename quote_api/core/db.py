"""Async database engine and session factory helpers."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from quote_api.core.config import Settings
from quote_api.models.base import Base


def build_engine(config: Settings) -> AsyncEngine:
    """Create the async SQLite engine used by the idempotency store."""

    options: dict[str, Any] = {"echo": config.DEBUG}
    if config.DB_PATH != ":memory:":
        Path(config.DB_PATH).expanduser().parent.mkdir(parents=True, exist_ok=True)
        options.update(
            pool_pre_ping=True,
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
        )
    engine = create_async_engine(config.DATABASE_URL, **options)

    @event.listens_for(engine.sync_engine, "connect")
    def _tune_connection(dbapi_connection, _connection_record):  # type: ignore[no-untyped-def]
        # Concurrent writers on the same file wait up to the busy timeout.
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(f"PRAGMA busy_timeout = {int(config.DB_BUSY_TIMEOUT_MS)}")
            if config.DB_PATH != ":memory:":
                cursor.execute("PRAGMA journal_mode = WAL")
        finally:
            cursor.close()

    return engine


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create the store tables if they do not exist yet."""

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
