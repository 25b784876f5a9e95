# ledger/money.py
"""
Fixed-point money helpers.

All amounts are `decimal.Decimal`. The only conversions to and from a provider's
integer minor units live here (to_minor_units / from_minor_units), and both round
ROUND_HALF_UP.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

from ledger.errors import ValidationError

ZERO = Decimal("0")
DEFAULT_PLACES = 2


def to_decimal(value: Any) -> Decimal:
    """Parse a money value. Floats go through str() so 0.1 stays 0.1."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValidationError("invalid_amount", f"not a money value: {value!r}")
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, (float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError("invalid_amount", f"not a money value: {value!r}")
    else:
        raise ValidationError("invalid_amount", f"not a money value: {value!r}")

    if not result.is_finite():
        raise ValidationError("invalid_amount", f"not a money value: {value!r}")
    return result


def _exponent(places: int) -> Decimal:
    return Decimal(1).scaleb(-int(places))


def quantize(value: Any, places: int = DEFAULT_PLACES) -> Decimal:
    return to_decimal(value).quantize(_exponent(places), rounding=ROUND_HALF_UP)


def to_minor_units(amount: Any, places: int = DEFAULT_PLACES) -> int:
    """Decimal major units -> provider integer minor units (e.g. 12.345 EUR -> 1235)."""
    scaled = to_decimal(amount).scaleb(int(places))
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(units: Any, places: int = DEFAULT_PLACES) -> Decimal:
    """Provider integer minor units -> Decimal major units (e.g. 1235 -> 12.35)."""
    return quantize(to_decimal(units).scaleb(-int(places)), places)


def money_sum(values: Iterable[Any]) -> Decimal:
    total = ZERO
    for v in values:
        total += to_decimal(v)
    return total


def is_positive(value: Any) -> bool:
    return to_decimal(value) > ZERO


def is_zero(value: Any) -> bool:
    return to_decimal(value) == ZERO


def format_money(amount: Any, currency: str, places: int = DEFAULT_PLACES) -> str:
    return f"{quantize(amount, places):,} {currency.upper()}"
