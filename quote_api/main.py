"""Application entry point for the Quote API service."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from quote_api.api.routes.quotes import router as quotes_router
from quote_api.core.config import Settings, settings
from quote_api.core.db import build_engine, build_sessionmaker, init_models
from quote_api.core.errors import QuoteServiceError, error_body, register_exception_handlers
from quote_api.core.idempotency import IdempotencyStore, utcnow
from quote_api.core.logging import setup_logging
from quote_api.core.middleware import BodySizeLimitMiddleware, RequestContextLogMiddleware
from quote_api.core.rate_limit import init_rate_limiter
from quote_api.services.calculator import QuoteCalculator
from quote_api.services.coordinator import RequestCoordinator


def _cors_origins(config: Settings) -> list[str]:
    if config.ENV == "prod":
        if not config.CORS_ALLOWED_ORIGINS:
            raise RuntimeError("CORS_ALLOWED_ORIGINS must be configured for prod")
        return config.CORS_ALLOWED_ORIGINS
    return config.CORS_ALLOWED_ORIGINS or ["http://localhost:5173"]


def create_app(
    config: Settings | None = None,
    *,
    coordinator: RequestCoordinator | None = None,
) -> FastAPI:
    """Build the FastAPI app.

    The coordinator (and the store it owns) is created here and kept on
    ``app.state``; tests pass their own to point the app at a scratch database.
    """

    config = config or settings
    setup_logging(config.LOG_LEVEL)

    app = FastAPI(title=config.APP_NAME, debug=config.DEBUG)

    engine = None
    if coordinator is None:
        engine = build_engine(config)
        store = IdempotencyStore(
            build_sessionmaker(engine),
            ttl=config.idempotency_ttl,
            log_pii_ok=config.LOG_PII_OK,
        )
        coordinator = RequestCoordinator(store, QuoteCalculator(), config=config)
    app.state.coordinator = coordinator

    init_rate_limiter(app)
    register_exception_handlers(app)

    app.add_middleware(RequestContextLogMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(config),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Idempotency-Key", "X-Request-ID"],
        expose_headers=["Idempotency-Replayed", "Retry-After", "X-Request-ID"],
    )
    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=config.MAX_BODY_BYTES)

    @app.on_event("startup")
    async def startup_event() -> None:
        """Create tables and drop records whose TTL has already elapsed."""
        if engine is not None:
            await init_models(engine)
        if config.PURGE_EXPIRED_ON_STARTUP:
            await app.state.coordinator.store.purge_expired(utcnow())
        logger.bind(ttl_hours=config.IDEMPOTENCY_TTL_HOURS).info("quote_api_started")

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        if engine is not None:
            await engine.dispose()

    @app.get("/healthz", tags=["system"], summary="Liveness probe")
    def healthz() -> dict[str, str]:
        """Simple liveness probe that load balancers and monitors can call."""

        return {"status": "ok"}

    @app.get("/readyz", tags=["system"], summary="Readiness probe")
    async def readyz():
        try:
            await app.state.coordinator.store.ping()
        except QuoteServiceError as exc:
            return JSONResponse(status_code=503, content=error_body(exc.code))
        return {"ready": True}

    app.include_router(quotes_router, prefix="/v1")
    return app


app = create_app()
