"""Pydantic schemas for quote requests and responses."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

TWO_PLACES = Decimal("0.01")
CURRENCY_PATTERN = r"^[A-Z]{3}$"
AMOUNT_MAX_EXPONENT = 32


def normalise_amount(value: Decimal) -> Decimal:
    """Quantize ``value`` to two places when that does not change its value.

    ``100``, ``100.0`` and ``100.00`` all become ``Decimal("100.00")``. Values
    with more significant places are returned untouched and rejected later by
    the calculator.
    """

    try:
        quantised = value.quantize(TWO_PLACES)
    except InvalidOperation:
        return value
    return quantised if quantised == value else value


class QuoteRequest(BaseModel):
    """Body of ``POST /v1/quotes``."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    source_currency: str = Field(alias="sourceCurrency", pattern=CURRENCY_PATTERN)
    target_currency: str = Field(alias="targetCurrency", pattern=CURRENCY_PATTERN)
    source_amount: Decimal = Field(alias="sourceAmount")

    @field_validator("source_currency", "target_currency", mode="before")
    @classmethod
    def _normalise_currency(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("source_amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("sourceAmount must be a decimal string or number")
        if isinstance(value, float):
            # repr() is the shortest round-tripping form, so 100.1 stays 100.1
            return Decimal(repr(value))
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("source_amount")
    @classmethod
    def _finite_amount(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("sourceAmount must be a finite decimal")
        value = normalise_amount(value)
        # Fixed-point rendering grows with the exponent, not the input length.
        if abs(value.as_tuple().exponent) > AMOUNT_MAX_EXPONENT:
            raise ValueError("sourceAmount is out of range")
        return value


class Quote(BaseModel):
    """A computed quote, as returned to clients and persisted for replays."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    source_currency: str = Field(alias="sourceCurrency")
    target_currency: str = Field(alias="targetCurrency")
    source_amount: Decimal = Field(alias="sourceAmount")
    rate: Decimal
    fee: Decimal
    target_amount: Decimal = Field(alias="targetAmount")
    created_at: datetime = Field(alias="createdAt")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class ErrorOut(BaseModel):
    error: str
    detail: list[dict[str, Any]] | None = None
