"""Persistent idempotency store for quote creation.

Every operation is one short transaction. ``claim`` is the only
serialization point: a single ``INSERT ... ON CONFLICT DO UPDATE ... WHERE
expired`` statement either takes the key (fresh insert or replacement of an
expired record) or leaves the live record untouched, in which case the record
is read back inside the same transaction and classified.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from loguru import logger
from sqlalchemy import delete, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quote_api.core.db_errors import translate_store_errors
from quote_api.core.errors import StaleClaimError, StoreUnavailableError
from quote_api.core.logging import mask_idempotency_key
from quote_api.models.idempotency_record import IdempotencyRecord
from quote_api.models.quote import QuoteRecord
from quote_api.schemas.quote import Quote


class RecordState(str, Enum):
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"


class IdempotencyClaimState(str, Enum):
    CLAIMED = "claimed"
    COMPLETE = "complete"
    CONFLICT = "conflict"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True, slots=True)
class IdempotencyClaim:
    """Represents the result of attempting to claim an idempotency key."""

    state: IdempotencyClaimState
    claim_token: str | None = None
    result_json: str | None = None
    expires_at: datetime | None = None

    @property
    def quote(self) -> Quote | None:
        if self.result_json is None:
            return None
        return Quote.model_validate_json(self.result_json)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _naive_utc(value: datetime) -> datetime:
    # Columns hold naive UTC; SQLite compares them as text.
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _classify(record: IdempotencyRecord, payload_hash: str, now: datetime) -> IdempotencyClaim | None:
    if record.claim_expires_at <= now:
        return None
    if record.payload_hash != payload_hash:
        return IdempotencyClaim(IdempotencyClaimState.CONFLICT, expires_at=record.claim_expires_at)
    if record.state == RecordState.COMPLETE.value and record.result_json is not None:
        return IdempotencyClaim(
            IdempotencyClaimState.COMPLETE,
            result_json=record.result_json,
            expires_at=record.claim_expires_at,
        )
    return IdempotencyClaim(IdempotencyClaimState.IN_PROGRESS, expires_at=record.claim_expires_at)


class IdempotencyStore:
    """Claim, finalize and release idempotency records in the quote database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl: timedelta,
        log_pii_ok: bool | None = None,
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError("idempotency TTL must be positive")
        self._session_factory = session_factory
        self.ttl = ttl
        self.log_pii_ok = log_pii_ok

    async def claim(self, key: str, payload_hash: str, now: datetime) -> IdempotencyClaim:
        """Attempt to take ``key`` for a request whose payload hashes to ``payload_hash``.

        The first caller inserts a PENDING row and gets CLAIMED. Later callers
        within the TTL get COMPLETE (same hash, finished), IN_PROGRESS (same
        hash, pending) or CONFLICT (different hash).
        """

        now = _naive_utc(now)
        expires_at = now + self.ttl
        token = secrets.token_hex(16)
        stmt = sqlite_insert(IdempotencyRecord).values(
            key=key,
            payload_hash=payload_hash,
            state=RecordState.PENDING.value,
            claim_token=token,
            result_json=None,
            created_at=now,
            claim_expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[IdempotencyRecord.key],
            set_={
                "payload_hash": stmt.excluded.payload_hash,
                "state": stmt.excluded.state,
                "claim_token": stmt.excluded.claim_token,
                "result_json": None,
                "created_at": stmt.excluded.created_at,
                "claim_expires_at": stmt.excluded.claim_expires_at,
            },
            where=IdempotencyRecord.claim_expires_at <= now,
        ).returning(IdempotencyRecord.claim_token)

        with translate_store_errors("claim"):
            async with self._session_factory() as session:
                async with session.begin():
                    taken = (await session.execute(stmt)).scalar_one_or_none()
                    if taken == token:
                        return IdempotencyClaim(
                            IdempotencyClaimState.CLAIMED,
                            claim_token=token,
                            expires_at=expires_at,
                        )
                    record = await session.scalar(
                        select(IdempotencyRecord).where(IdempotencyRecord.key == key)
                    )

        claim = _classify(record, payload_hash, now) if record is not None else None
        if claim is None:
            # The upsert only skips live rows, so the row must be live here.
            raise StoreUnavailableError("Idempotency record vanished during claim.")
        return claim

    async def lookup(self, key: str, payload_hash: str, now: datetime) -> IdempotencyClaim | None:
        """Classify the live record for ``key`` without writing; ``None`` if there is none."""

        with translate_store_errors("lookup"):
            async with self._session_factory() as session:
                record = await session.scalar(
                    select(IdempotencyRecord).where(IdempotencyRecord.key == key)
                )
        if record is None:
            return None
        return _classify(record, payload_hash, _naive_utc(now))

    async def finalize(self, key: str, claim_token: str, quote: Quote, now: datetime) -> str:
        """Mark the claim COMPLETE with ``quote`` and persist the quote row.

        Returns the stored response body. Raises ``StaleClaimError`` when the
        claim expired or was replaced since ``claim`` returned it.
        """

        now = _naive_utc(now)
        body = quote.to_json()
        with translate_store_errors("finalize"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(IdempotencyRecord)
                        .where(IdempotencyRecord.key == key)
                        .where(IdempotencyRecord.claim_token == claim_token)
                        .where(IdempotencyRecord.state == RecordState.PENDING.value)
                        .where(IdempotencyRecord.claim_expires_at > now)
                        .values(state=RecordState.COMPLETE.value, result_json=body)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        masked = mask_idempotency_key(key, pii_ok=self.log_pii_ok)
                        logger.bind(idempotency_key=masked).warning("idempotency_claim_stale")
                        raise StaleClaimError(f"Claim on {masked} is no longer held.")
                    session.add(
                        QuoteRecord(
                            id=quote.id,
                            idempotency_key=key,
                            source_currency=quote.source_currency,
                            target_currency=quote.target_currency,
                            source_amount=format(quote.source_amount, "f"),
                            rate=format(quote.rate, "f"),
                            fee=format(quote.fee, "f"),
                            target_amount=format(quote.target_amount, "f"),
                            created_at=_naive_utc(quote.created_at),
                            body_json=body,
                        )
                    )
        return body

    async def release(self, key: str, claim_token: str) -> bool:
        """Delete a PENDING claim so the key can be retried immediately."""

        with translate_store_errors("release"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(IdempotencyRecord)
                        .where(IdempotencyRecord.key == key)
                        .where(IdempotencyRecord.claim_token == claim_token)
                        .where(IdempotencyRecord.state == RecordState.PENDING.value)
                        .execution_options(synchronize_session=False)
                    )
        return result.rowcount == 1

    async def purge_expired(self, now: datetime) -> int:
        """Physically remove records whose TTL has elapsed."""

        with translate_store_errors("purge_expired"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(IdempotencyRecord)
                        .where(IdempotencyRecord.claim_expires_at <= _naive_utc(now))
                        .execution_options(synchronize_session=False)
                    )
        purged = result.rowcount or 0
        logger.bind(purged=purged).info("idempotency_records_purged")
        return purged

    async def get_quote(self, quote_id: str) -> Quote | None:
        with translate_store_errors("get_quote"):
            async with self._session_factory() as session:
                body = await session.scalar(
                    select(QuoteRecord.body_json).where(QuoteRecord.id == quote_id)
                )
        if body is None:
            return None
        return Quote.model_validate_json(body)

    async def ping(self) -> None:
        with translate_store_errors("ping"):
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
