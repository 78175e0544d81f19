from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Callable, Dict, Iterable, List, Mapping, Tuple

from validation import missing_pattern_issue, unattributable_share_issue

from .presence import PatternBook, resolve_instant
from .timeline import Interval, Timeline


@dataclass
class Attribution:
    """Exact (unrounded) amounts owed per employee plus the exceptions met on the way."""

    shares: Dict[str, Fraction] = field(default_factory=lambda: defaultdict(Fraction))
    issues: List[Dict] = field(default_factory=list)
    attributed: Fraction = Fraction(0)
    unattributed: Fraction = Fraction(0)

    def credit(self, allocations: Mapping[str, Fraction]) -> None:
        for name, amount in allocations.items():
            self.shares[name] += amount
            self.attributed += amount


def eligible_weights(intervals: Iterable[Interval], is_tipped: Callable[[str], bool]) -> Dict[str, Dict[str, Fraction]]:
    """Group tipped employees by role group with their raw weight.

    An employee with overlapping records in one group counts once, at the higher weight.
    """
    groups: Dict[str, Dict[str, Fraction]] = defaultdict(dict)
    for interval in intervals:
        if not is_tipped(interval.employee):
            continue
        current = groups[interval.group].get(interval.employee)
        if current is None or interval.weight > current:
            groups[interval.group][interval.employee] = interval.weight
    return groups


def split_amount(
    amount: Fraction,
    shares: Mapping[str, Fraction],
    eligible: Mapping[str, Mapping[str, Fraction]],
) -> Tuple[Dict[str, Fraction], List[Tuple[str, Fraction]]]:
    """Split ``amount`` by group share, then by normalised weight inside each group.

    Returns the per-employee allocations and the ``(group, amount)`` portions nobody could take.
    """
    allocations: Dict[str, Fraction] = defaultdict(Fraction)
    orphaned: List[Tuple[str, Fraction]] = []
    for group, share in shares.items():
        if not share:
            continue
        portion = amount * share
        weights = eligible.get(group, {})
        total_weight = sum(weights.values(), Fraction(0))
        if total_weight <= 0:
            orphaned.append((group, portion))
            continue
        for name, weight in weights.items():
            allocations[name] += portion * weight / total_weight
    return allocations, orphaned


def attribute_tips(
    tips: Iterable,
    timeline: Timeline,
    patterns: PatternBook,
    is_tipped: Callable[[str], bool],
) -> Attribution:
    """Attribute each in-range tip to the employees on duty at its payment instant."""
    result = Attribution()
    for tip in tips:
        amount = Fraction(tip.amount)
        mask, active = resolve_instant(timeline, tip.order_date, tip.payment_time)
        if not mask:
            result.unattributed += amount
            result.issues.append(
                unattributable_share_issue(
                    source="tip",
                    source_id=tip.id,
                    date=tip.order_date,
                    amount=amount,
                    instant=tip.payment_time,
                )
            )
            continue
        shares = patterns.lookup(mask)
        if shares is None:
            result.unattributed += amount
            result.issues.append(
                missing_pattern_issue(source="tip", source_id=tip.id, date=tip.order_date, mask=mask)
            )
            continue
        allocations, orphaned = split_amount(amount, shares, eligible_weights(active, is_tipped))
        result.credit(allocations)
        for group, portion in orphaned:
            result.unattributed += portion
            result.issues.append(
                unattributable_share_issue(
                    source="tip",
                    source_id=tip.id,
                    date=tip.order_date,
                    amount=portion,
                    role_group=group,
                    mask=mask,
                    instant=tip.payment_time,
                )
            )
    return result
