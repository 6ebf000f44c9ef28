"""Application configuration loaded from environment variables."""

from datetime import timedelta
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed settings shared by the app factory, the store and the coordinator."""

    # Read .env with BOM tolerance; case-sensitive keys
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "Quote API"
    ENV: str = "dev"  # dev | staging | prod
    DEBUG: bool = False

    # Server
    HOST: str = "127.0.0.1"
    PORT: int = 3000

    # CORS
    CORS_ALLOWED_ORIGINS: list[str] = Field(default_factory=list)

    # Store (SQLite file)
    DB_PATH: str = "./data/quotes.db"
    DB_BUSY_TIMEOUT_MS: int = 5000
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Idempotency
    IDEMPOTENCY_TTL_HOURS: float = 24
    IDEMPOTENCY_KEY_MAX_LENGTH: int = 128
    # How long a request waits on another in-flight request with the same key
    # before answering 409 + Retry-After.
    IDEMPOTENCY_WAIT_TIMEOUT_SEC: float = 5.0
    IDEMPOTENCY_POLL_INTERVAL_SEC: float = 0.05
    IDEMPOTENCY_STALE_RETRIES: int = 1
    PURGE_EXPIRED_ON_STARTUP: bool = True

    # Rate limit for quote creation. See quote_api.core.rate_limit.limiter for syntax.
    QUOTE_RATE_LIMIT: str = "120/minute"
    RATE_LIMIT_ENABLED: bool = True

    # Maximum accepted request body size.
    MAX_BODY_BYTES: int = 16 * 1024  # 16 KB

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_PII_OK: bool = False

    @property
    def idempotency_ttl(self) -> timedelta:
        return timedelta(hours=self.IDEMPOTENCY_TTL_HOURS)

    @property
    def DATABASE_URL(self) -> str:
        if self.DB_PATH == ":memory:":
            return "sqlite+aiosqlite:///:memory:"
        return f"sqlite+aiosqlite:///{Path(self.DB_PATH).expanduser()}"


settings = Settings()
