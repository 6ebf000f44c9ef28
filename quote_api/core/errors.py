"""Error taxonomy for the quote service and its HTTP translation."""

from __future__ import annotations

from typing import Any, Mapping

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger


class QuoteServiceError(Exception):
    """Base class for errors that map to a stable machine-readable code."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str | None = None,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.headers = dict(headers or {})


class ValidationError(QuoteServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class MissingIdempotencyKeyError(QuoteServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "MISSING_IDEMPOTENCY_KEY"


class InvalidIdempotencyKeyError(QuoteServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_IDEMPOTENCY_KEY"


class UnsupportedCurrency(QuoteServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "UNSUPPORTED_CURRENCY"


class InvalidAmount(QuoteServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_AMOUNT"


class IdempotencyKeyReusedWithDifferentPayload(QuoteServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PAYLOAD"


class IdempotencyRequestInProgress(QuoteServiceError):
    """Another request owns the key; the client should retry after a delay."""

    status_code = status.HTTP_409_CONFLICT
    code = "IDEMPOTENCY_REQUEST_IN_PROGRESS"

    def __init__(self, message: str | None = None, *, retry_after: int = 1) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(message, headers={"Retry-After": str(self.retry_after)})


class QuoteNotFoundError(QuoteServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "QUOTE_NOT_FOUND"


class StaleClaimError(QuoteServiceError):
    """The claim was reclaimed before finalize. Handled by the coordinator."""

    code = "STALE_CLAIM"


class StoreUnavailableError(QuoteServiceError):
    code = "STORE_UNAVAILABLE"


def error_body(code: str, detail: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"error": code}
    if detail is not None:
        body["detail"] = detail
    return body


def _validation_detail(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    """Attach handlers that render domain errors as ``{"error": CODE}`` bodies."""

    async def quote_service_error_handler(request: Request, exc: QuoteServiceError):
        log = logger.bind(code=exc.code, status=exc.status_code, path=str(request.url.path))
        if exc.status_code >= 500:
            log.error("request_failed: {}", exc.message)
        else:
            log.info("request_rejected: {}", exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.code),
            headers=exc.headers or None,
        )

    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        detail = _validation_detail(exc)
        logger.bind(path=str(request.url.path), errors=len(detail)).info("request_invalid")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body(ValidationError.code, detail),
        )

    app.add_exception_handler(QuoteServiceError, quote_service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
