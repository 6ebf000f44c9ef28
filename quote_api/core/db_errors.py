"""Shared helpers for database error handling."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from loguru import logger
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from quote_api.core.errors import StoreUnavailableError


def _extract_error_code(exc: SQLAlchemyError) -> tuple[int | None, str | None]:
    if not isinstance(exc, DBAPIError):
        return None, None
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None, None
    return getattr(orig, "sqlite_errorcode", None), getattr(orig, "sqlite_errorname", None)


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """Surface any SQLAlchemy failure inside the block as ``StoreUnavailableError``.

    Nothing is retried here; the caller's client retries with the same key.
    """

    try:
        yield
    except SQLAlchemyError as exc:
        code, name = _extract_error_code(exc)
        logger.bind(
            operation=operation,
            db_error_code=code,
            db_error_name=name,
            error=str(getattr(exc, "orig", exc)),
        ).error("store_unavailable")
        raise StoreUnavailableError(f"Idempotency store failed during {operation}.") from exc
