from __future__ import annotations

import datetime
import sys
from decimal import Decimal
from fractions import Fraction
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from roles import RoleResolver  # noqa: E402
from tipengine.api import run_engine  # noqa: E402
from tipengine.attribution import attribute_tips  # noqa: E402
from tipengine.cash import CASH_ROSTER_POLICIES, DayRosterPolicy, distribute_cash, get_cash_policy  # noqa: E402
from tipengine.inputs import CashInput, EngineInputs, MappingInput, ShiftInput, TipInput  # noqa: E402
from tipengine.presence import PatternBook  # noqa: E402
from tipengine.timeline import build_timeline  # noqa: E402
from errors import ConfigurationError  # noqa: E402

DAY = datetime.date(2024, 4, 2)
MAPPINGS = [
    MappingInput("FRONT", actual_role_name="Server", trainee_role_name="Server Trainee", trainee_percentage=Decimal("50")),
    MappingInput("BACK", actual_role_name="Cook"),
    MappingInput("FLOATER", actual_role_name="Busser"),
]
FULL_POOL = {
    1: {"FRONT": Decimal("100")},
    2: {"BACK": Decimal("100")},
    3: {"FRONT": Decimal("60"), "BACK": Decimal("40")},
    4: {"FLOATER": Decimal("100")},
    5: {"FRONT": Decimal("80"), "FLOATER": Decimal("20")},
    6: {"BACK": Decimal("70"), "FLOATER": Decimal("30")},
    7: {"FRONT": Decimal("70"), "BACK": Decimal("20"), "FLOATER": Decimal("10")},
}


def _shift(shift_id, name, start, end, role) -> ShiftInput:
    return ShiftInput(
        id=shift_id,
        name=name,
        date=DAY,
        start=datetime.time.fromisoformat(start),
        end=datetime.time.fromisoformat(end),
        role=role,
    )


def _tip(tip_id, payment_time, amount) -> TipInput:
    return TipInput(id=tip_id, order_date=DAY, payment_time=datetime.time.fromisoformat(payment_time), amount=Decimal(amount))


def _inputs(shifts, tips=(), cash=(), patterns=None, **overrides) -> EngineInputs:
    return EngineInputs(
        shifts=list(shifts),
        tips=list(tips),
        cash_days=list(cash),
        mappings=MAPPINGS,
        patterns=patterns if patterns is not None else FULL_POOL,
        window_start=600,
        window_end=1380,
        **overrides,
    )


def _by_name(outcome):
    return {row["employee_name"]: row for row in outcome.rows}


def test_single_group_on_duty_receives_the_whole_tip() -> None:
    outcome = run_engine(
        _inputs(
            [_shift(1, "Ana", "10:00", "16:00", "Server")],
            tips=[_tip(1, "12:15", "40.94")],
            patterns={1: {"FRONT": Decimal("100")}},
        )
    )

    assert outcome.status == "completed"
    assert outcome.issues == []
    assert _by_name(outcome)["Ana"]["tips"] == Decimal("40.94")


def test_three_groups_split_by_pattern_percentages() -> None:
    shifts = [
        _shift(1, "Ana", "10:00", "16:00", "Server"),
        _shift(2, "Bo", "10:00", "16:00", "Cook"),
        _shift(3, "Cal", "10:00", "16:00", "Busser"),
    ]
    timeline = build_timeline(shifts, RoleResolver(MAPPINGS))
    result = attribute_tips([_tip(1, "12:00", "100.00")], timeline, PatternBook(FULL_POOL), lambda name: True)

    assert dict(result.shares) == {"Ana": Fraction(70), "Bo": Fraction(20), "Cal": Fraction(10)}
    assert result.attributed == Fraction(100)
    assert result.issues == []


def test_trainee_gets_half_of_a_full_rate_peer() -> None:
    shifts = [
        _shift(1, "Ana", "10:00", "16:00", "Server"),
        _shift(2, "Tia", "10:00", "16:00", "Server Trainee"),
    ]
    timeline = build_timeline(shifts, RoleResolver(MAPPINGS))
    result = attribute_tips([_tip(1, "12:00", "90.00")], timeline, PatternBook(FULL_POOL), lambda name: True)

    assert result.shares["Ana"] == Fraction(60)
    assert result.shares["Tia"] == Fraction(30)
    assert result.shares["Tia"] * 2 == result.shares["Ana"]


def test_trainee_without_percentage_counts_as_full_rate() -> None:
    mappings = [MappingInput("FRONT", actual_role_name="Server", trainee_role_name="Server Trainee")]
    shifts = [
        _shift(1, "Ana", "10:00", "16:00", "Server"),
        _shift(2, "Tia", "10:00", "16:00", "Server Trainee"),
    ]
    timeline = build_timeline(shifts, RoleResolver(mappings))
    result = attribute_tips([_tip(1, "12:00", "10.00")], timeline, PatternBook(FULL_POOL), lambda name: True)

    assert result.shares["Ana"] == result.shares["Tia"] == Fraction(5)


def test_untipped_employees_are_left_out_of_the_split() -> None:
    shifts = [
        _shift(1, "Ana", "10:00", "16:00", "Server"),
        _shift(2, "Abe", "10:00", "16:00", "Server"),
    ]
    timeline = build_timeline(shifts, RoleResolver(MAPPINGS))
    result = attribute_tips(
        [_tip(1, "12:00", "25.00")], timeline, PatternBook(FULL_POOL), lambda name: name != "Abe"
    )

    assert dict(result.shares) == {"Ana": Fraction(25)}


def test_share_without_eligible_employee_is_reported_not_dropped() -> None:
    shifts = [
        _shift(1, "Ana", "10:00", "16:00", "Server"),
        _shift(2, "Bo", "10:00", "16:00", "Cook"),
    ]
    timeline = build_timeline(shifts, RoleResolver(MAPPINGS))
    result = attribute_tips(
        [_tip(7, "12:00", "50.00")], timeline, PatternBook(FULL_POOL), lambda name: name != "Bo"
    )

    assert dict(result.shares) == {"Ana": Fraction(30)}
    assert result.unattributed == Fraction(20)
    issue = result.issues[0]
    assert issue["type"] == "unattributable_share"
    assert issue["role_group"] == "BACK"
    assert issue["source_id"] == 7
    assert issue["amount"] == "20.00"


def test_tip_with_nobody_on_duty_is_unattributable() -> None:
    timeline = build_timeline([_shift(1, "Ana", "10:00", "12:00", "Server")], RoleResolver(MAPPINGS))
    result = attribute_tips([_tip(1, "15:00", "12.00")], timeline, PatternBook(FULL_POOL), lambda name: True)

    assert result.attributed == 0
    assert result.issues[0]["type"] == "unattributable_share"
    assert result.issues[0]["role_group"] is None


def test_missing_pattern_is_reported() -> None:
    patterns = {1: {"FRONT": Decimal("100")}, 3: {"FRONT": Decimal("50"), "BACK": Decimal("50")}}
    timeline = build_timeline([_shift(1, "Bo", "10:00", "16:00", "Cook")], RoleResolver(MAPPINGS))
    result = attribute_tips([_tip(1, "12:00", "12.00")], timeline, PatternBook(patterns), lambda name: True)

    assert result.issues[0]["type"] == "missing_pattern"
    assert result.issues[0]["pattern"] == "BACK"
    assert result.unattributed == Fraction(12)


def test_cash_uses_the_whole_day_roster_regardless_of_hours() -> None:
    shifts = [
        _shift(1, "Ana", "10:00", "13:00", "Server"),
        _shift(2, "Amy", "17:00", "23:00", "Server"),
        _shift(3, "Bo", "10:00", "22:00", "Cook"),
    ]
    timeline = build_timeline(shifts, RoleResolver(MAPPINGS))
    result = distribute_cash(
        [CashInput(id=1, date=DAY, amount=Decimal("90.00"))],
        timeline,
        PatternBook(FULL_POOL),
        lambda name: True,
    )

    assert dict(result.shares) == {"Ana": Fraction(27), "Amy": Fraction(27), "Bo": Fraction(36)}
    assert result.issues == []


def test_cash_on_a_day_without_shifts_is_reported() -> None:
    timeline = build_timeline([], RoleResolver(MAPPINGS))
    result = distribute_cash(
        [CashInput(id=4, date=DAY, amount=Decimal("15.00"))],
        timeline,
        PatternBook(FULL_POOL),
        lambda name: True,
    )

    assert result.issues[0]["type"] == "unattributable_share"
    assert result.issues[0]["source"] == "cash"


def test_cash_policy_registry() -> None:
    assert isinstance(get_cash_policy("day_roster"), DayRosterPolicy)
    assert set(CASH_ROSTER_POLICIES) == {"day_roster"}
    with pytest.raises(ConfigurationError):
        get_cash_policy("hours_weighted")


def test_out_of_range_tip_is_isolated_from_the_rest() -> None:
    shifts = [_shift(1, "Ana", "10:00", "16:00", "Server")]
    outcome = run_engine(_inputs(shifts, tips=[_tip(1, "12:00", "20.00"), _tip(2, "08:30", "5.00")]))

    assert outcome.status == "exceptions"
    assert [issue["type"] for issue in outcome.issues] == ["out_of_range_tip"]
    assert _by_name(outcome)["Ana"]["tips"] == Decimal("20.00")
    assert outcome.totals["out_of_range_tips"] == "5.00"


def test_unmapped_role_stops_the_run() -> None:
    shifts = [_shift(1, "Ana", "10:00", "16:00", "Server"), _shift(2, "Hal", "10:00", "16:00", "Host")]
    outcome = run_engine(_inputs(shifts, tips=[_tip(1, "12:00", "20.00")]))

    assert outcome.fatal
    assert outcome.rows == []
    assert outcome.report["counts"]["unmapped_role"] == 1


def test_rerun_on_same_inputs_is_identical() -> None:
    shifts = [
        _shift(1, "Ana", "10:00", "16:00", "Server"),
        _shift(2, "Ari", "10:00", "16:00", "Server"),
        _shift(3, "Tia", "11:00", "15:00", "Server Trainee"),
        _shift(4, "Bo", "10:00", "22:00", "Cook"),
    ]
    tips = [_tip(1, "12:00", "10.00"), _tip(2, "13:30", "7.77"), _tip(3, "18:00", "3.01")]
    cash = [CashInput(id=1, date=DAY, amount=Decimal("100.00"))]

    first = run_engine(_inputs(shifts, tips=tips, cash=cash))
    second = run_engine(_inputs(shifts, tips=tips, cash=cash))

    assert first.rows == second.rows
    assert first.report == second.report
    assert sum(row["tips"] for row in first.rows) == Decimal("20.78")
    assert sum(row["cash_tips"] for row in first.rows) == Decimal("100.00")
