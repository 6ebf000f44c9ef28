import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from quote_api.core.db import build_sessionmaker
from quote_api.core.errors import StaleClaimError, StoreUnavailableError
from quote_api.core.idempotency import IdempotencyClaimState, IdempotencyStore
from quote_api.schemas.quote import Quote

NOW = datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc)
HASH_A = "a" * 64
HASH_B = "b" * 64


def _quote(quote_id: str = "11111111-1111-4111-8111-111111111111") -> Quote:
    return Quote(
        id=quote_id,
        source_currency="SGD",
        target_currency="EUR",
        source_amount=Decimal("100.00"),
        rate=Decimal("0.681481"),
        fee=Decimal("0.50"),
        target_amount=Decimal("67.81"),
        created_at=NOW,
    )


@pytest.mark.anyio
async def test_first_claim_wins_and_repeat_is_in_progress(store):
    first = await store.claim("k1", HASH_A, NOW)
    second = await store.claim("k1", HASH_A, NOW + timedelta(seconds=1))

    assert first.state == IdempotencyClaimState.CLAIMED
    assert first.claim_token
    assert first.expires_at == (NOW + store.ttl).replace(tzinfo=None)
    assert second.state == IdempotencyClaimState.IN_PROGRESS
    assert second.claim_token is None


@pytest.mark.anyio
async def test_different_hash_conflicts_while_pending_and_complete(store):
    claim = await store.claim("k1", HASH_A, NOW)
    assert (await store.claim("k1", HASH_B, NOW)).state == IdempotencyClaimState.CONFLICT

    await store.finalize("k1", claim.claim_token, _quote(), NOW)
    assert (await store.claim("k1", HASH_B, NOW)).state == IdempotencyClaimState.CONFLICT


@pytest.mark.anyio
async def test_finalize_then_claim_returns_stored_result(store):
    claim = await store.claim("k1", HASH_A, NOW)
    body = await store.finalize("k1", claim.claim_token, _quote(), NOW)

    replay = await store.claim("k1", HASH_A, NOW + timedelta(minutes=5))

    assert replay.state == IdempotencyClaimState.COMPLETE
    assert replay.result_json == body
    assert replay.quote == _quote()


@pytest.mark.anyio
async def test_conflicting_claim_leaves_record_untouched(store):
    claim = await store.claim("k1", HASH_A, NOW)
    body = await store.finalize("k1", claim.claim_token, _quote(), NOW)

    await store.claim("k1", HASH_B, NOW)

    unchanged = await store.lookup("k1", HASH_A, NOW)
    assert unchanged.state == IdempotencyClaimState.COMPLETE
    assert unchanged.result_json == body


@pytest.mark.anyio
async def test_finalize_with_foreign_token_is_stale(store):
    await store.claim("k1", HASH_A, NOW)

    with pytest.raises(StaleClaimError):
        await store.finalize("k1", "not-the-owner", _quote(), NOW)

    assert await store.get_quote(_quote().id) is None


@pytest.mark.anyio
async def test_expired_claim_is_reclaimed_and_old_owner_goes_stale(store):
    old = await store.claim("k1", HASH_A, NOW)
    later = NOW + store.ttl + timedelta(seconds=1)

    new = await store.claim("k1", HASH_B, later)

    assert new.state == IdempotencyClaimState.CLAIMED
    assert new.claim_token != old.claim_token
    with pytest.raises(StaleClaimError):
        await store.finalize("k1", old.claim_token, _quote(), later)
    await store.finalize("k1", new.claim_token, _quote(), later)


@pytest.mark.anyio
async def test_finalize_after_expiry_is_stale(store):
    claim = await store.claim("k1", HASH_A, NOW)

    with pytest.raises(StaleClaimError):
        await store.finalize("k1", claim.claim_token, _quote(), NOW + store.ttl)


@pytest.mark.anyio
async def test_expired_complete_record_is_replaced(store):
    claim = await store.claim("k1", HASH_A, NOW)
    await store.finalize("k1", claim.claim_token, _quote(), NOW)

    reclaimed = await store.claim("k1", HASH_B, NOW + store.ttl)

    assert reclaimed.state == IdempotencyClaimState.CLAIMED
    pending = await store.lookup("k1", HASH_B, NOW + store.ttl)
    assert pending.state == IdempotencyClaimState.IN_PROGRESS
    assert pending.result_json is None


@pytest.mark.anyio
async def test_release_frees_the_key(store):
    claim = await store.claim("k1", HASH_A, NOW)

    assert await store.release("k1", "someone-else") is False
    assert await store.release("k1", claim.claim_token) is True
    assert await store.lookup("k1", HASH_A, NOW) is None
    assert (await store.claim("k1", HASH_B, NOW)).state == IdempotencyClaimState.CLAIMED


@pytest.mark.anyio
async def test_release_does_not_remove_completed_records(store):
    claim = await store.claim("k1", HASH_A, NOW)
    await store.finalize("k1", claim.claim_token, _quote(), NOW)

    assert await store.release("k1", claim.claim_token) is False
    assert (await store.lookup("k1", HASH_A, NOW)).state == IdempotencyClaimState.COMPLETE


@pytest.mark.anyio
async def test_lookup_ignores_expired_records(store):
    await store.claim("k1", HASH_A, NOW)

    assert await store.lookup("k1", HASH_A, NOW + store.ttl) is None
    assert await store.lookup("missing", HASH_A, NOW) is None


@pytest.mark.anyio
async def test_purge_expired_only_removes_stale_records(store):
    await store.claim("old", HASH_A, NOW)
    await store.claim("fresh", HASH_A, NOW + timedelta(hours=12))

    purged = await store.purge_expired(NOW + store.ttl + timedelta(minutes=1))

    assert purged == 1
    assert await store.lookup("fresh", HASH_A, NOW + store.ttl) is not None


@pytest.mark.anyio
async def test_get_quote_returns_persisted_quote(store):
    claim = await store.claim("k1", HASH_A, NOW)
    await store.finalize("k1", claim.claim_token, _quote(), NOW)

    assert await store.get_quote(_quote().id) == _quote()
    assert await store.get_quote("unknown") is None


@pytest.mark.anyio
async def test_concurrent_claims_on_one_key_have_a_single_winner(store):
    claims = await asyncio.gather(*(store.claim("race", HASH_A, NOW) for _ in range(10)))

    states = [claim.state for claim in claims]
    assert states.count(IdempotencyClaimState.CLAIMED) == 1
    assert states.count(IdempotencyClaimState.IN_PROGRESS) == 9


@pytest.mark.anyio
async def test_independent_keys_claim_in_parallel(store):
    claims = await asyncio.gather(*(store.claim(f"key-{i}", HASH_A, NOW) for i in range(10)))

    assert all(claim.state == IdempotencyClaimState.CLAIMED for claim in claims)


@pytest.mark.anyio
async def test_sql_failures_surface_as_store_unavailable(anyio_backend, config):
    from quote_api.core.db import build_engine

    engine = build_engine(config)  # tables never created
    try:
        store = IdempotencyStore(build_sessionmaker(engine), ttl=config.idempotency_ttl)
        with pytest.raises(StoreUnavailableError):
            await store.claim("k1", HASH_A, NOW)
    finally:
        await engine.dispose()


def test_ttl_must_be_positive():
    with pytest.raises(ValueError):
        IdempotencyStore(None, ttl=timedelta(0))  # type: ignore[arg-type]
