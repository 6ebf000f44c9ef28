"""Canonical serialization and hashing of quote request payloads.

The digest produced here is the only signal used to tell a genuine retry from
a key reused with a different payload, so it has to be stable across field
order, whitespace and equivalent amount spellings:

* keys are sorted and the JSON is written without insignificant whitespace;
* decimals are written in fixed-point notation (``1E+2`` becomes ``100``);
* amounts reach this module already quantized to two places by
  :class:`~quote_api.schemas.quote.QuoteRequest`, so ``100`` and ``100.00``
  hash the same while ``100.01`` does not;
* floats are refused outright.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from typing import Any, Mapping

from pydantic import BaseModel

# Refuse decimals whose fixed-point form would dwarf their input.
MAX_DECIMAL_EXPONENT = 64


def _canonical_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return _canonical_value(value.model_dump(by_alias=True))
    if isinstance(value, Mapping):
        return {str(k): _canonical_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical_value(v) for v in value]
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        raise TypeError("floats cannot be canonicalized; parse amounts as Decimal")
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValueError(f"cannot canonicalize non-finite decimal {value!r}")
        if abs(value.as_tuple().exponent) > MAX_DECIMAL_EXPONENT:
            raise ValueError(f"decimal exponent out of range: {value!r}")
        return format(value, "f")
    if isinstance(value, (str, int)):
        return value
    raise TypeError(f"unsupported payload value of type {type(value).__name__}")


def canonicalize(payload: BaseModel | Mapping[str, Any]) -> bytes:
    """Serialize a validated payload into canonical UTF-8 JSON bytes."""

    return json.dumps(
        _canonical_value(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def hash_payload(data: bytes) -> str:
    """Return the SHA-256 hex digest of canonical payload bytes."""

    return hashlib.sha256(data).hexdigest()


def fingerprint(payload: BaseModel | Mapping[str, Any]) -> str:
    return hash_payload(canonicalize(payload))
