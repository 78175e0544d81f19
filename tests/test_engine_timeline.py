from __future__ import annotations

import datetime
import sys
from decimal import Decimal
from fractions import Fraction
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from roles import RoleResolver  # noqa: E402
from tipengine.inputs import MappingInput, ShiftInput, TipInput  # noqa: E402
from tipengine.off_hours import OperatingWindow, filter_tips  # noqa: E402
from tipengine.presence import PatternBook, resolve_day, resolve_instant  # noqa: E402
from tipengine.timeline import SECONDS_PER_DAY, build_timeline  # noqa: E402

DAY = datetime.date(2024, 4, 1)
MAPPINGS = [
    MappingInput("FRONT", actual_role_name="Server", trainee_role_name="Server Trainee", trainee_percentage=Decimal("50")),
    MappingInput("BACK", actual_role_name="Cook"),
    MappingInput("FLOATER", actual_role_name="Busser"),
]


def _shift(shift_id, name, start, end, role, date=DAY) -> ShiftInput:
    return ShiftInput(
        id=shift_id,
        name=name,
        date=date,
        start=datetime.time.fromisoformat(start) if start else None,
        end=datetime.time.fromisoformat(end) if end else None,
        role=role,
    )


def _tip(tip_id, payment_time, amount="10.00", date=DAY) -> TipInput:
    return TipInput(
        id=tip_id,
        order_date=date,
        payment_time=datetime.time.fromisoformat(payment_time) if payment_time else None,
        amount=Decimal(amount),
    )


def test_timeline_places_complete_shifts_and_collects_the_rest() -> None:
    shifts = [
        _shift(1, "Ana", "10:00", "16:00", "Server"),
        _shift(2, "Ben", "11:00", "17:00", ""),
        _shift(3, "Cy", "12:00", "18:00", "Host"),
        _shift(4, "Dee", "12:00", "20:00", " server trainee "),
    ]
    timeline = build_timeline(shifts, RoleResolver(MAPPINGS))

    intervals = timeline.intervals_on(DAY)
    assert [interval.employee for interval in intervals] == ["Ana", "Dee"]
    assert intervals[0].group == "FRONT" and intervals[0].weight == Fraction(1)
    assert intervals[1].is_trainee and intervals[1].weight == Fraction(1, 2)
    assert [record.id for record in timeline.incomplete] == [2]
    assert [record.id for record in timeline.unmapped] == [3]
    issue_types = [issue["type"] for issue in timeline.issues()]
    assert issue_types == ["incomplete_shift", "unmapped_role"]
    assert timeline.issues()[0]["missing"] == ["role"]


def test_shifts_outside_the_pool_are_set_aside() -> None:
    shifts = [_shift(1, "Ana", "10:00", "16:00", "Server"), _shift(2, "Bo", "10:00", "16:00", "Cook")]
    timeline = build_timeline(shifts, RoleResolver(MAPPINGS), pool_groups={"FRONT"})

    assert timeline.employees() == ["Ana"]
    assert [record.id for record in timeline.excluded] == [2]
    assert timeline.issues() == []


def test_intervals_are_half_open() -> None:
    timeline = build_timeline([_shift(1, "Ana", "10:00", "16:00", "Server")], RoleResolver(MAPPINGS))

    assert resolve_instant(timeline, DAY, datetime.time(10, 0))[0] == 1
    assert resolve_instant(timeline, DAY, datetime.time(15, 59, 59))[0] == 1
    assert resolve_instant(timeline, DAY, datetime.time(16, 0))[0] == 0
    assert resolve_instant(timeline, DAY, datetime.time(9, 59))[0] == 0


def test_overnight_shift_covers_the_next_morning() -> None:
    timeline = build_timeline([_shift(1, "Nia", "20:00", "02:00", "Cook")], RoleResolver(MAPPINGS))

    interval = timeline.intervals_on(DAY)[0]
    assert interval.end == 2 * 3600 + SECONDS_PER_DAY
    next_day = DAY + datetime.timedelta(days=1)
    mask, active = resolve_instant(timeline, next_day, datetime.time(1, 30))
    assert mask == 2
    assert [item.employee for item in active] == ["Nia"]
    assert resolve_instant(timeline, next_day, datetime.time(2, 0))[0] == 0
    # Cash rosters stay with the day the shift started.
    assert resolve_day(timeline, next_day)[0] == 0


def test_presence_mask_is_the_union_of_groups_on_duty() -> None:
    shifts = [
        _shift(1, "Ana", "10:00", "16:00", "Server"),
        _shift(2, "Bo", "12:00", "22:00", "Cook"),
        _shift(3, "Cal", "18:00", "23:00", "Busser"),
    ]
    timeline = build_timeline(shifts, RoleResolver(MAPPINGS))

    assert resolve_instant(timeline, DAY, datetime.time(11, 0))[0] == 1
    assert resolve_instant(timeline, DAY, datetime.time(13, 0))[0] == 3
    assert resolve_instant(timeline, DAY, datetime.time(19, 0))[0] == 6
    assert resolve_day(timeline, DAY)[0] == 7


def test_pattern_book_converts_percentages_to_fractions() -> None:
    book = PatternBook({3: {"FRONT": Decimal("66.67"), "BACK": Decimal("33.33")}})

    assert book.lookup(3) == {"FRONT": Fraction(6667, 10000), "BACK": Fraction(3333, 10000)}
    assert book.lookup(1) is None
    assert book.pool_mask == 3


def test_operating_window_start_inclusive_end_exclusive() -> None:
    window = OperatingWindow(600, 1380)
    tips = [
        _tip(1, "09:59:59"),
        _tip(2, "10:00"),
        _tip(3, "22:59:59"),
        _tip(4, "23:00"),
        _tip(5, None),
    ]
    result = filter_tips(tips, window)

    assert [tip.id for tip in result.in_range] == [2, 3]
    assert [tip.id for tip in result.out_of_range] == [1, 4, 5]
    issues = result.issues()
    assert {issue["type"] for issue in issues} == {"out_of_range_tip"}
    assert issues[2]["payment_time"] is None
    assert "no payment time" in issues[2]["message"]


def test_open_window_sides_accept_everything_with_a_time() -> None:
    tips = [_tip(1, "00:00"), _tip(2, "23:59:59"), _tip(3, None)]

    result = filter_tips(tips, OperatingWindow(None, None))
    assert [tip.id for tip in result.in_range] == [1, 2]

    result = filter_tips(tips, OperatingWindow(None, 600))
    assert [tip.id for tip in result.in_range] == [1]


def test_window_falls_back_to_default_when_store_has_none() -> None:
    class StoreStub:
        off_hours_before_minutes = None
        off_hours_after_minutes = None

    window = OperatingWindow.from_store(StoreStub(), {"before_minutes": 600, "after_minutes": 1320})
    assert window == OperatingWindow(600, 1320)

    StoreStub.off_hours_after_minutes = 1380
    assert OperatingWindow.from_store(StoreStub(), {"before_minutes": 600}) == OperatingWindow(None, 1380)
