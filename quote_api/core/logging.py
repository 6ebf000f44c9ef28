"""Application logging configuration helpers."""

from __future__ import annotations

import hashlib
import logging
from contextvars import ContextVar
from sys import stdout
from typing import Any

from loguru import logger

from quote_api.core.config import settings

request_id_ctx_var: ContextVar[str] = ContextVar("request_id", default="-")
idempotency_key_ctx_var: ContextVar[str] = ContextVar("idempotency_key", default="-")


def mask_idempotency_key(key: str, *, pii_ok: bool | None = None) -> str:
    """Return a log-safe representation of ``key``.

    Unless ``pii_ok`` (default: ``LOG_PII_OK``) is set the key is replaced
    with a short SHA-256 prefix, so entries for the same key can still be correlated.
    """

    if pii_ok is None:
        pii_ok = settings.LOG_PII_OK
    if pii_ok:
        return key
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"hash:{digest[:16]}"


def _patch_record(record: dict[str, Any]) -> None:
    record["extra"].setdefault("request_id", request_id_ctx_var.get())
    record["extra"].setdefault("idempotency_key", idempotency_key_ctx_var.get())


def setup_logging(level: str | None = None) -> None:
    """Configure the standard logging module and Loguru sinks."""

    logging.basicConfig(level=logging.INFO)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logger.remove()
    logger.configure(patcher=_patch_record)
    logger.add(
        stdout,
        level=level or settings.LOG_LEVEL,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        serialize=True,
    )
