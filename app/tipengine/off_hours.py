from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from validation import out_of_range_issue


@dataclass(frozen=True)
class OperatingWindow:
    """Store operating window in minutes of the day, ``[start, end)``; ``None`` is unbounded."""

    start_minutes: Optional[int] = None
    end_minutes: Optional[int] = None

    def contains(self, instant: Optional[datetime.time]) -> bool:
        if instant is None:
            return False
        seconds = instant.hour * 3600 + instant.minute * 60 + instant.second
        if self.start_minutes is not None and seconds < self.start_minutes * 60:
            return False
        if self.end_minutes is not None and seconds >= self.end_minutes * 60:
            return False
        return True

    @classmethod
    def from_store(cls, store, default: Optional[Dict] = None) -> "OperatingWindow":
        before = store.off_hours_before_minutes
        after = store.off_hours_after_minutes
        if before is None and after is None and default:
            before = default.get("before_minutes")
            after = default.get("after_minutes")
        return cls(
            start_minutes=int(before) if before is not None else None,
            end_minutes=int(after) if after is not None else None,
        )


@dataclass
class FilterResult:
    in_range: List = field(default_factory=list)
    out_of_range: List = field(default_factory=list)
    window: OperatingWindow = field(default_factory=OperatingWindow)

    def issues(self) -> List[Dict]:
        return [
            out_of_range_issue(tip, self.window.start_minutes, self.window.end_minutes)
            for tip in self.out_of_range
        ]


def filter_tips(tips: Iterable, window: OperatingWindow) -> FilterResult:
    """Split tips by payment time; a tip without one is always out of range."""
    result = FilterResult(window=window)
    for tip in tips:
        if window.contains(tip.payment_time):
            result.in_range.append(tip)
        else:
            result.out_of_range.append(tip)
    return result
