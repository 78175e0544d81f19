from __future__ import annotations

import sys
from decimal import Decimal
from fractions import Fraction
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from errors import ConfigurationError, RoundingImbalanceError  # noqa: E402
from tipengine.rounding import (  # noqa: E402
    check_conservation,
    get_tie_breaker,
    largest_remainder,
    name_descending,
    quantize,
    target_units,
)

CENT = Decimal("0.01")


def test_leftover_cent_goes_to_first_name_on_a_tie() -> None:
    shares = {name: Fraction(100, 3) for name in ("Cal", "Ana", "Bo")}

    rounded = largest_remainder(shares, CENT)

    assert rounded == {"Ana": Decimal("33.34"), "Bo": Decimal("33.33"), "Cal": Decimal("33.33")}
    assert sum(rounded.values()) == Decimal("100.00")


def test_tie_break_is_pluggable() -> None:
    shares = {name: Fraction(100, 3) for name in ("Cal", "Ana", "Bo")}

    rounded = largest_remainder(shares, CENT, name_descending)

    assert rounded["Cal"] == Decimal("33.34")
    assert get_tie_breaker("name_descending") is name_descending
    with pytest.raises(ConfigurationError):
        get_tie_breaker("random")


def test_largest_remainders_win_before_names() -> None:
    shares = {
        "Ana": Fraction(1001, 1000),  # 1.001
        "Bo": Fraction(1008, 1000),  # 1.008
        "Cal": Fraction(991, 1000),  # 0.991
    }

    rounded = largest_remainder(shares, CENT)

    assert rounded == {"Ana": Decimal("1.00"), "Bo": Decimal("1.01"), "Cal": Decimal("0.99")}


def test_rounded_total_matches_exact_pool_for_many_employees() -> None:
    amounts = [Fraction(4094, 100), Fraction(1777, 100), Fraction(3, 100)]
    names = [f"Emp {index:02d}" for index in range(7)]
    shares = {name: sum(amounts) / len(names) for name in names}

    rounded = largest_remainder(shares, CENT)

    assert sum(rounded.values()) == Decimal("58.74")
    assert max(rounded.values()) - min(rounded.values()) <= CENT


def test_zero_shares_stay_zero() -> None:
    rounded = largest_remainder({"Ana": Fraction(5), "Zed": Fraction(0)}, CENT)

    assert rounded == {"Ana": Decimal("5.00"), "Zed": Decimal("0.00")}


def test_other_currency_units() -> None:
    rounded = largest_remainder({"Ana": Fraction(10, 3), "Bo": Fraction(20, 3)}, Decimal("1"))

    assert rounded == {"Ana": Decimal("3"), "Bo": Decimal("7")}


def test_half_units_round_away_from_zero() -> None:
    assert target_units(Fraction(1, 200), CENT) == 1
    assert target_units(Fraction(-1, 200), CENT) == -1
    assert target_units(Fraction(1, 300), CENT) == 0
    assert quantize(Fraction(12345, 1000), CENT) == Decimal("12.35")


def test_conservation_check_raises_on_drift() -> None:
    with pytest.raises(RoundingImbalanceError) as excinfo:
        check_conservation({"Ana": Decimal("10.00"), "Bo": Decimal("5.01")}, Decimal("15.00"), field="cash_tips")

    assert excinfo.value.field == "cash_tips"
    assert excinfo.value.actual == Decimal("15.01")
    assert excinfo.value.rows[0] == {"employee_name": "Ana", "cash_tips": "10.00"}
