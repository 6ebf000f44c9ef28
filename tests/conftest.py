import os
from datetime import datetime, timedelta, timezone

import pytest

# Settings are read at import time; keep the module-level app off disk and
# free of rate limits during tests.
os.environ.setdefault("DB_PATH", ":memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from quote_api.core.config import Settings  # noqa: E402
from quote_api.core.db import build_engine, build_sessionmaker, init_models  # noqa: E402
from quote_api.core.idempotency import IdempotencyStore  # noqa: E402
from quote_api.services.calculator import QuoteCalculator  # noqa: E402
from quote_api.services.coordinator import RequestCoordinator  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def config(tmp_path) -> Settings:
    return Settings(
        DB_PATH=str(tmp_path / "quotes.db"),
        IDEMPOTENCY_TTL_HOURS=24,
        IDEMPOTENCY_WAIT_TIMEOUT_SEC=3.0,
        IDEMPOTENCY_POLL_INTERVAL_SEC=0.01,
        IDEMPOTENCY_STALE_RETRIES=1,
        PURGE_EXPIRED_ON_STARTUP=False,
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def engine(anyio_backend, config):
    engine = build_engine(config)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def store(engine, config) -> IdempotencyStore:
    return IdempotencyStore(build_sessionmaker(engine), ttl=config.idempotency_ttl)


@pytest.fixture
async def coordinator(store, config, clock) -> RequestCoordinator:
    return RequestCoordinator(store, QuoteCalculator(), config=config, clock=clock)
