"""Idempotent quote creation: claim the key, compute once, replay afterwards."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

import anyio
from loguru import logger

from quote_api.core.config import Settings, settings as default_settings
from quote_api.core.errors import (
    IdempotencyKeyReusedWithDifferentPayload,
    IdempotencyRequestInProgress,
    InvalidIdempotencyKeyError,
    MissingIdempotencyKeyError,
    StaleClaimError,
    StoreUnavailableError,
)
from quote_api.core.idempotency import (
    IdempotencyClaim,
    IdempotencyClaimState,
    IdempotencyStore,
    utcnow,
)
from quote_api.core.logging import idempotency_key_ctx_var, mask_idempotency_key
from quote_api.schemas.quote import Quote, QuoteRequest
from quote_api.services.calculator import QuoteCalculator
from quote_api.services.canonical import canonicalize, hash_payload

RETRY_AFTER_SECONDS = 1


class QuoteStatus(str, Enum):
    CREATED = "created"
    RETRIEVED = "retrieved"


@dataclass(frozen=True, slots=True)
class QuoteResult:
    """Outcome of ``RequestCoordinator.handle``.

    ``body`` is the exact JSON text stored with the idempotency record, so a
    replay is byte-identical to the original response.
    """

    status: QuoteStatus
    quote: Quote
    body: str

    @property
    def created(self) -> bool:
        return self.status is QuoteStatus.CREATED


def _retrieved(claim: IdempotencyClaim) -> QuoteResult:
    body = claim.result_json or ""
    return QuoteResult(QuoteStatus.RETRIEVED, Quote.model_validate_json(body), body)


class RequestCoordinator:
    """Runs the claim / compute / finalize protocol for ``POST /v1/quotes``."""

    def __init__(
        self,
        store: IdempotencyStore,
        calculator: QuoteCalculator,
        *,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        config = config or default_settings
        self.store = store
        self.calculator = calculator
        self.clock = clock
        self.id_factory = id_factory
        self.key_max_length = config.IDEMPOTENCY_KEY_MAX_LENGTH
        self.wait_timeout = config.IDEMPOTENCY_WAIT_TIMEOUT_SEC
        self.poll_interval = config.IDEMPOTENCY_POLL_INTERVAL_SEC
        self.stale_retries = config.IDEMPOTENCY_STALE_RETRIES
        self.log_pii_ok = config.LOG_PII_OK

    def _require_key(self, raw: str | None) -> str:
        key = (raw or "").strip()
        if not key:
            raise MissingIdempotencyKeyError("Idempotency-Key header is required for this operation.")
        if len(key) > self.key_max_length:
            raise InvalidIdempotencyKeyError(
                f"Idempotency-Key must be {self.key_max_length} characters or fewer."
            )
        return key

    async def handle(self, raw_key: str | None, payload: QuoteRequest) -> QuoteResult:
        key = self._require_key(raw_key)
        payload_hash = hash_payload(canonicalize(payload))
        token = idempotency_key_ctx_var.set(mask_idempotency_key(key, pii_ok=self.log_pii_ok))
        try:
            return await self._run(key, payload_hash, payload)
        finally:
            idempotency_key_ctx_var.reset(token)

    async def _run(self, key: str, payload_hash: str, payload: QuoteRequest) -> QuoteResult:
        log = logger.bind(payload_hash=payload_hash[:16])
        stale_restarts = 0
        wait_deadline: float | None = None
        while True:
            claim = await self.store.claim(key, payload_hash, self.clock())

            if claim.state == IdempotencyClaimState.COMPLETE:
                log.info("idempotency_replay")
                return _retrieved(claim)

            if claim.state == IdempotencyClaimState.CONFLICT:
                log.info("idempotency_conflict")
                raise IdempotencyKeyReusedWithDifferentPayload(
                    "Idempotency-Key was already used with a different payload."
                )

            if claim.state == IdempotencyClaimState.IN_PROGRESS:
                log.info("idempotency_in_progress")
                if wait_deadline is None:
                    wait_deadline = anyio.current_time() + self.wait_timeout
                result = await self._wait_for_completion(key, payload_hash, wait_deadline)
                if result is not None:
                    return result
                # The original claim was released or expired; try to take it.
                continue

            log.info("idempotency_claimed")
            try:
                return await self._compute_and_finalize(key, claim.claim_token or "", payload)
            except StaleClaimError:
                if stale_restarts >= self.stale_retries:
                    log.warning("idempotency_stale_retries_exhausted")
                    raise IdempotencyRequestInProgress(
                        "Idempotency-Key was reclaimed by another request.",
                        retry_after=RETRY_AFTER_SECONDS,
                    ) from None
                stale_restarts += 1
                log.bind(restart=stale_restarts).warning("idempotency_restart_after_stale_claim")

    async def _compute_and_finalize(self, key: str, claim_token: str, payload: QuoteRequest) -> QuoteResult:
        try:
            figures = self.calculator.compute(
                payload.source_currency, payload.target_currency, payload.source_amount
            )
        except Exception as exc:
            try:
                released = await self.store.release(key, claim_token)
            except StoreUnavailableError:
                # The claim stays until its TTL lapses; report the calculator error.
                logger.bind(code=getattr(exc, "code", type(exc).__name__)).exception(
                    "idempotency_release_failed"
                )
                raise exc from None
            logger.bind(
                code=getattr(exc, "code", type(exc).__name__), released=released
            ).info("idempotency_released")
            raise

        quote = Quote(
            id=self.id_factory(),
            source_currency=payload.source_currency,
            target_currency=payload.target_currency,
            source_amount=payload.source_amount,
            rate=figures.rate,
            fee=figures.fee,
            target_amount=figures.target_amount,
            created_at=self.clock(),
        )
        body = await self.store.finalize(key, claim_token, quote, self.clock())
        logger.bind(quote_id=quote.id).info("quote_created")
        return QuoteResult(QuoteStatus.CREATED, quote, body)

    async def _wait_for_completion(
        self, key: str, payload_hash: str, deadline: float
    ) -> QuoteResult | None:
        """Poll until the in-flight request finishes.

        Returns the replayed result, or ``None`` when the key is free again.
        Raises ``IdempotencyRequestInProgress`` once ``deadline`` passes; the
        deadline is shared by every wait of one request.
        """

        try:
            with anyio.fail_at(deadline):
                while True:
                    await anyio.sleep(self.poll_interval)
                    claim = await self.store.lookup(key, payload_hash, self.clock())
                    if claim is None:
                        return None
                    if claim.state == IdempotencyClaimState.COMPLETE:
                        logger.info("idempotency_replay_after_wait")
                        return _retrieved(claim)
                    if claim.state == IdempotencyClaimState.CONFLICT:
                        # Expired and re-claimed with another payload meanwhile.
                        raise IdempotencyKeyReusedWithDifferentPayload(
                            "Idempotency-Key was already used with a different payload."
                        )
        except TimeoutError:
            logger.bind(timeout=self.wait_timeout).warning("idempotency_wait_timeout")
            raise IdempotencyRequestInProgress(
                "Another request with this Idempotency-Key is in progress. Please retry shortly.",
                retry_after=RETRY_AFTER_SECONDS,
            ) from None
