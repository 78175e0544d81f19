from __future__ import annotations

import math
from decimal import Decimal
from fractions import Fraction
from functools import cmp_to_key
from typing import Callable, Dict, Mapping

from errors import ConfigurationError, RoundingImbalanceError

Comparator = Callable[[str, str], int]


def name_ascending(left: str, right: str) -> int:
    return (left > right) - (left < right)


def name_descending(left: str, right: str) -> int:
    return -name_ascending(left, right)


TIE_BREAKERS: Dict[str, Comparator] = {
    "name_ascending": name_ascending,
    "name_descending": name_descending,
}


def get_tie_breaker(name: str) -> Comparator:
    try:
        return TIE_BREAKERS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown rounding tie-break '{name}'.")


def target_units(total: Fraction, unit: Decimal) -> int:
    """Round ``total`` to a whole number of currency units, halves away from zero."""
    return _half_up(total / Fraction(unit))


def _half_up(value: Fraction) -> int:
    floor = math.floor(value)
    remainder = value - floor
    if remainder > Fraction(1, 2) or (remainder == Fraction(1, 2) and value > 0):
        return floor + 1
    return floor


def largest_remainder(
    shares: Mapping[str, Fraction],
    unit: Decimal,
    tie_break: Comparator = name_ascending,
    *,
    field: str = "tips",
) -> Dict[str, Decimal]:
    """Round exact shares to ``unit`` so the rounded values sum to the rounded total.

    Every share is floored, then the leftover units go one each to the largest
    remainders; equal remainders are ordered by ``tie_break``.
    """
    unit_fraction = Fraction(unit)
    total = sum(shares.values(), Fraction(0))
    target = target_units(total, unit)
    floors: Dict[str, int] = {}
    remainders: Dict[str, Fraction] = {}
    for name, share in shares.items():
        scaled = share / unit_fraction
        floors[name] = math.floor(scaled)
        remainders[name] = scaled - floors[name]
    leftover = target - sum(floors.values())
    if leftover < 0 or leftover > len(shares):
        raise RoundingImbalanceError(field, Decimal(target) * unit, Decimal(sum(floors.values())) * unit)

    def compare(left: str, right: str) -> int:
        if remainders[left] != remainders[right]:
            return -1 if remainders[left] > remainders[right] else 1
        return tie_break(left, right)

    for name in sorted(shares, key=cmp_to_key(compare))[:leftover]:
        floors[name] += 1
    rounded = {name: Decimal(units) * unit for name, units in floors.items()}
    check_conservation(rounded, Decimal(target) * unit, field=field)
    return rounded


def check_conservation(rounded: Mapping[str, Decimal], expected: Decimal, *, field: str = "tips") -> None:
    actual = sum(rounded.values(), Decimal("0"))
    if actual != expected:
        rows = [{"employee_name": name, field: str(value)} for name, value in sorted(rounded.items())]
        raise RoundingImbalanceError(field, expected, actual, rows=rows)


def quantize(value: Fraction, unit: Decimal) -> Decimal:
    return Decimal(target_units(value, unit)) * unit
