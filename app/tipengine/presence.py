from __future__ import annotations

import datetime
from decimal import Decimal
from fractions import Fraction
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from roles import group_bit

from .timeline import Interval, Timeline, seconds_of_day


def presence_mask(intervals: Iterable[Interval]) -> int:
    mask = 0
    for interval in intervals:
        mask |= group_bit(interval.group)
    return mask


def resolve_instant(timeline: Timeline, date: datetime.date, instant: datetime.time) -> Tuple[int, List[Interval]]:
    active = timeline.covering(date, seconds_of_day(instant))
    return presence_mask(active), active


def resolve_day(timeline: Timeline, date: datetime.date, roster: Optional[List[Interval]] = None) -> Tuple[int, List[Interval]]:
    intervals = timeline.intervals_on(date) if roster is None else roster
    return presence_mask(intervals), intervals


class PatternBook:
    """Distribution patterns keyed by presence mask, held as exact fractions of one."""

    def __init__(self, patterns: Mapping[int, Mapping[str, Decimal]]) -> None:
        self._patterns: Dict[int, Dict[str, Fraction]] = {
            int(mask): {
                group: Fraction(Decimal(str(value))) / 100
                for group, value in percentages.items()
            }
            for mask, percentages in patterns.items()
        }

    def lookup(self, mask: int) -> Optional[Dict[str, Fraction]]:
        shares = self._patterns.get(mask)
        return dict(shares) if shares is not None else None

    @property
    def pool_mask(self) -> int:
        mask = 0
        for pattern_mask in self._patterns:
            mask |= pattern_mask
        return mask
