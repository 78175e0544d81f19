from __future__ import annotations

import datetime
from fractions import Fraction
from typing import Callable, Dict, Iterable, List, Type

from errors import ConfigurationError
from validation import missing_pattern_issue, unattributable_share_issue

from .attribution import Attribution, eligible_weights, split_amount
from .presence import PatternBook, resolve_day
from .timeline import Interval, Timeline


class CashRosterPolicy:
    """Decides who shares a day's cash tips and with what raw weight."""

    name = ""

    def roster(self, timeline: Timeline, date: datetime.date) -> List[Interval]:
        raise NotImplementedError

    def weights(self, roster: List[Interval], is_tipped: Callable[[str], bool]) -> Dict[str, Dict[str, Fraction]]:
        raise NotImplementedError


class DayRosterPolicy(CashRosterPolicy):
    """Everyone with a complete shift that day shares equally within their group; hours are ignored."""

    name = "day_roster"

    def roster(self, timeline: Timeline, date: datetime.date) -> List[Interval]:
        return timeline.intervals_on(date)

    def weights(self, roster: List[Interval], is_tipped: Callable[[str], bool]) -> Dict[str, Dict[str, Fraction]]:
        return eligible_weights(roster, is_tipped)


CASH_ROSTER_POLICIES: Dict[str, Type[CashRosterPolicy]] = {
    DayRosterPolicy.name: DayRosterPolicy,
}


def get_cash_policy(name: str) -> CashRosterPolicy:
    try:
        return CASH_ROSTER_POLICIES[name]()
    except KeyError:
        raise ConfigurationError(f"Unknown cash distribution '{name}'.")


def distribute_cash(
    cash_days: Iterable,
    timeline: Timeline,
    patterns: PatternBook,
    is_tipped: Callable[[str], bool],
    policy: CashRosterPolicy | None = None,
) -> Attribution:
    """Split each day's cash amount by the pattern for everyone on that day's roster."""
    policy = policy or DayRosterPolicy()
    result = Attribution()
    for day in cash_days:
        amount = Fraction(day.amount)
        if not amount:
            continue
        mask, roster = resolve_day(timeline, day.date, policy.roster(timeline, day.date))
        if not mask:
            result.unattributed += amount
            result.issues.append(
                unattributable_share_issue(source="cash", source_id=day.id, date=day.date, amount=amount)
            )
            continue
        shares = patterns.lookup(mask)
        if shares is None:
            result.unattributed += amount
            result.issues.append(missing_pattern_issue(source="cash", source_id=day.id, date=day.date, mask=mask))
            continue
        allocations, orphaned = split_amount(amount, shares, policy.weights(roster, is_tipped))
        result.credit(allocations)
        for group, portion in orphaned:
            result.unattributed += portion
            result.issues.append(
                unattributable_share_issue(
                    source="cash",
                    source_id=day.id,
                    date=day.date,
                    amount=portion,
                    role_group=group,
                    mask=mask,
                )
            )
    return result
