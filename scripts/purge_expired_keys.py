"""Delete idempotency records whose TTL has elapsed."""

import asyncio
import pathlib
import sys

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from quote_api.core.config import settings
from quote_api.core.db import build_engine, build_sessionmaker, init_models
from quote_api.core.idempotency import IdempotencyStore, utcnow
from quote_api.core.logging import setup_logging


async def purge() -> int:
    engine = build_engine(settings)
    try:
        await init_models(engine)
        store = IdempotencyStore(build_sessionmaker(engine), ttl=settings.idempotency_ttl)
        return await store.purge_expired(utcnow())
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    purged = asyncio.run(purge())
    print(f"Purged {purged} expired idempotency records from {settings.DB_PATH}")
