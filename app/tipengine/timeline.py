from __future__ import annotations

import datetime
from collections import defaultdict
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Dict, Iterable, List, Optional, Set

from roles import RoleResolver
from validation import incomplete_shift_issue, unmapped_role_issue

SECONDS_PER_DAY = 24 * 60 * 60


def seconds_of_day(value: datetime.time) -> int:
    return value.hour * 3600 + value.minute * 60 + value.second


@dataclass(frozen=True)
class Interval:
    """One complete shift placed on its date, as ``[start, end)`` seconds from midnight.

    Shifts that cross midnight keep their start date and run past ``SECONDS_PER_DAY``.
    """

    shift_id: Optional[int]
    employee: str
    group: str
    date: datetime.date
    start: int
    end: int
    is_trainee: bool = False
    weight: Fraction = Fraction(1)

    def covers(self, second: int) -> bool:
        return self.start <= second < self.end


@dataclass
class Timeline:
    days: Dict[datetime.date, List[Interval]] = field(default_factory=dict)
    incomplete: List = field(default_factory=list)
    unmapped: List = field(default_factory=list)
    # Complete shifts whose group takes no part in the tip pool (managers and the like).
    excluded: List = field(default_factory=list)

    def intervals_on(self, date: datetime.date) -> List[Interval]:
        return list(self.days.get(date, []))

    def covering(self, date: datetime.date, second: int) -> List[Interval]:
        """Intervals on duty at ``second`` of ``date``, including overnight shifts from the day before."""
        active = [interval for interval in self.days.get(date, []) if interval.covers(second)]
        previous = date - datetime.timedelta(days=1)
        active.extend(
            interval
            for interval in self.days.get(previous, [])
            if interval.covers(second + SECONDS_PER_DAY)
        )
        return active

    def employees(self, since: Optional[datetime.date] = None) -> List[str]:
        names = {
            interval.employee
            for date, intervals in self.days.items()
            if since is None or date >= since
            for interval in intervals
        }
        return sorted(names)

    def issues(self) -> List[Dict]:
        issues = [incomplete_shift_issue(record) for record in self.incomplete]
        issues.extend(unmapped_role_issue(record) for record in self.unmapped)
        return issues


def build_timeline(
    shifts: Iterable,
    resolver: RoleResolver,
    pool_groups: Optional[Set[str]] = None,
) -> Timeline:
    """Place every complete, mapped shift on the timeline.

    Incomplete records and unknown role labels are collected, never guessed at.
    When ``pool_groups`` is given, shifts of other groups are set aside.
    """
    timeline = Timeline()
    days: Dict[datetime.date, List[Interval]] = defaultdict(list)
    for record in shifts:
        if not record.is_complete:
            timeline.incomplete.append(record)
            continue
        assignment = resolver.resolve(record.role)
        if assignment is None:
            timeline.unmapped.append(record)
            continue
        if pool_groups is not None and assignment.group not in pool_groups:
            timeline.excluded.append(record)
            continue
        start = seconds_of_day(record.start)
        end = seconds_of_day(record.end)
        if end <= start:
            end += SECONDS_PER_DAY
        days[record.date].append(
            Interval(
                shift_id=record.id,
                employee=record.name.strip(),
                group=assignment.group,
                date=record.date,
                start=start,
                end=end,
                is_trainee=assignment.is_trainee,
                weight=assignment.weight,
            )
        )
    for date in days:
        days[date].sort(key=lambda interval: (interval.start, interval.employee, interval.shift_id or 0))
    timeline.days = dict(days)
    return timeline
