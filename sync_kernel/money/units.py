"""
Minor-unit money handling.

Money travels through the kernel as integer minor units (cents). Conversion
happens exactly twice: when a value enters (ingestion, fetch normalization)
and when a payload is rendered for the accounting API.

Every source field declares how its numbers are scaled with a `UnitTag`.
`UnitTag.LEGACY_HEURISTIC` reproduces the magnitude guess older timesheet
payloads relied on; it exists for parity checks, not as a default.
"""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Union

Number = Union[int, float, str, Decimal]

_CENT = Decimal("0.01")
_HUNDRED = Decimal(100)
_WHOLE = re.compile(r"^[+-]?\d+$")


class MoneyError(ValueError):
    """Raised when a value cannot be read as money."""


class UnitTag(str, Enum):
    MAJOR = "major"                         # "50.00" means fifty
    MINOR = "minor"                         # 5000 means fifty
    LEGACY_HEURISTIC = "legacy_heuristic"


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise MoneyError(f"Not a monetary value: {value!r}")
    if isinstance(value, float):
        # str() keeps 0.1 as 0.1 instead of its binary expansion.
        value = str(value)
    try:
        result = Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError) as e:
        raise MoneyError(f"Not a monetary value: {value!r}") from e
    if not result.is_finite():
        raise MoneyError(f"Not a finite monetary value: {value!r}")
    return result


def guess_minor_units(value: Number) -> int:
    """
    Legacy scaling heuristic.

    >= 100000 is taken as a x100 artifact on top of cents, >= 1000 as
    already in cents, anything smaller as major units.
    """
    amount = _to_decimal(value)
    if amount >= 100000:
        return int((amount / _HUNDRED).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if amount >= 1000:
        return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return int((amount * _HUNDRED).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_minor_units(value: Number, unit: UnitTag = UnitTag.MAJOR) -> int:
    """Convert a tagged amount into integer minor units."""
    unit = UnitTag(unit)
    if unit == UnitTag.LEGACY_HEURISTIC:
        return guess_minor_units(value)

    amount = _to_decimal(value)
    if unit == UnitTag.MINOR:
        # "50.00" is a major-unit literal even though its value is whole.
        if isinstance(value, float) or (
            isinstance(value, str) and not _WHOLE.match(value.strip().replace(",", ""))
        ):
            raise MoneyError(f"Minor-unit value must be a whole number literal: {value!r}")
        if amount != amount.to_integral_value() or amount.as_tuple().exponent < 0:
            raise MoneyError(f"Minor-unit value must be whole: {value!r}")
        return int(amount)

    cents = amount.quantize(_CENT, rounding=ROUND_HALF_UP) * _HUNDRED
    return int(cents)


def from_minor_units(minor: int) -> str:
    """Render minor units as a two-decimal major-unit string, e.g. 5000 -> "50.00"."""
    if isinstance(minor, bool) or not isinstance(minor, int):
        raise MoneyError(f"Minor units must be an int: {minor!r}")
    return str((Decimal(minor) / _HUNDRED).quantize(_CENT))


def format_money(minor: int, currency: str = "") -> str:
    text = from_minor_units(minor)
    return f"{currency} {text}".strip()
