"""Deterministic quote arithmetic over a fixed exchange-rate snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Context, Decimal
from types import MappingProxyType
from typing import Mapping

from quote_api.core.errors import InvalidAmount, UnsupportedCurrency

TWO_PLACES = Decimal("0.01")
RATE_PLACES = Decimal("0.000001")
FEE_RATE = Decimal("0.005")
MAX_SOURCE_AMOUNT = Decimal("1E16")

# All arithmetic runs in this context so results do not depend on the
# caller's thread-local decimal settings.
_CONTEXT = Context(prec=28, rounding=ROUND_HALF_UP)


def _quantise(value: Decimal, scale: Decimal) -> Decimal:
    return value.quantize(scale, rounding=ROUND_HALF_UP, context=_CONTEXT)


@dataclass(frozen=True)
class RateSnapshot:
    """Units of each currency per one unit of ``base``."""

    base: str
    rates: Mapping[str, Decimal] = field(default_factory=dict)
    as_of: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", MappingProxyType(dict(self.rates)))

    def units_per_base(self, currency: str) -> Decimal:
        try:
            return self.rates[currency]
        except KeyError:
            raise UnsupportedCurrency(f"Currency {currency!r} is not supported.") from None


DEFAULT_SNAPSHOT = RateSnapshot(
    base="USD",
    as_of="2024-01-02",
    rates={
        "USD": Decimal("1"),
        "EUR": Decimal("0.92"),
        "GBP": Decimal("0.79"),
        "SGD": Decimal("1.35"),
        "JPY": Decimal("149.50"),
        "AUD": Decimal("1.52"),
        "CAD": Decimal("1.36"),
        "CHF": Decimal("0.88"),
        "CNY": Decimal("7.24"),
        "HKD": Decimal("7.82"),
        "INR": Decimal("83.20"),
        "MYR": Decimal("4.70"),
    },
)


@dataclass(frozen=True, slots=True)
class QuoteFigures:
    rate: Decimal
    fee: Decimal
    target_amount: Decimal


class QuoteCalculator:
    """Pure ``(source, target, amount) -> (rate, fee, target_amount)`` function.

    * ``rate`` is the cross rate through the snapshot base, rounded half-up to
      six places.
    * ``fee`` is ``FEE_RATE`` of the source amount, rounded half-up to cents.
    * ``target_amount`` is ``(amount - fee) * rate``, rounded half-up to cents.
    """

    def __init__(self, snapshot: RateSnapshot = DEFAULT_SNAPSHOT, fee_rate: Decimal = FEE_RATE) -> None:
        self.snapshot = snapshot
        self.fee_rate = fee_rate

    def supports(self, currency: str) -> bool:
        return currency in self.snapshot.rates

    def _validate_amount(self, amount: Decimal) -> None:
        if not isinstance(amount, Decimal) or not amount.is_finite():
            raise InvalidAmount("sourceAmount must be a finite decimal.")
        if amount <= 0:
            raise InvalidAmount("sourceAmount must be greater than zero.")
        if amount >= MAX_SOURCE_AMOUNT:
            raise InvalidAmount("sourceAmount exceeds the supported precision.")
        if _quantise(amount, TWO_PLACES) != amount:
            raise InvalidAmount("sourceAmount must have at most two decimal places.")

    def compute(self, source_currency: str, target_currency: str, source_amount: Decimal) -> QuoteFigures:
        source_units = self.snapshot.units_per_base(source_currency)
        target_units = self.snapshot.units_per_base(target_currency)
        self._validate_amount(source_amount)

        amount = _quantise(source_amount, TWO_PLACES)
        rate = _quantise(_CONTEXT.divide(target_units, source_units), RATE_PLACES)
        fee = _quantise(_CONTEXT.multiply(amount, self.fee_rate), TWO_PLACES)
        net = _CONTEXT.subtract(amount, fee)
        target_amount = _quantise(_CONTEXT.multiply(net, rate), TWO_PLACES)
        return QuoteFigures(rate=rate, fee=fee, target_amount=target_amount)
