from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from fractions import Fraction
from typing import Any, Dict, List

from roles import RoleResolver, groups_for_mask
from validation import build_report

from .attribution import Attribution, attribute_tips
from .cash import distribute_cash, get_cash_policy
from .inputs import EngineInputs
from .off_hours import OperatingWindow, filter_tips
from .presence import PatternBook
from .rounding import get_tie_breaker, largest_remainder, quantize
from .timeline import build_timeline

logger = logging.getLogger(__name__)

COMPLETED = "completed"
EXCEPTIONS = "exceptions"


@dataclass
class EngineOutcome:
    status: str
    rows: List[Dict[str, Any]] = field(default_factory=list)
    report: Dict[str, Any] = field(default_factory=dict)
    totals: Dict[str, str] = field(default_factory=dict)

    @property
    def fatal(self) -> bool:
        return bool(self.report.get("fatal"))

    @property
    def issues(self) -> List[Dict[str, Any]]:
        return list(self.report.get("issues", []))


def _rounded(attribution: Attribution, names: List[str], inputs: EngineInputs, field_name: str) -> Dict[str, Decimal]:
    shares = {name: attribution.shares.get(name, Fraction(0)) for name in names}
    return largest_remainder(
        shares,
        inputs.currency_unit,
        get_tie_breaker(inputs.tie_break),
        field=field_name,
    )


def run_engine(inputs: EngineInputs) -> EngineOutcome:
    """Run one full calculation over an input snapshot without touching storage.

    An unmapped role stops the run with no rows. Other exceptions still produce
    provisional rows so the caller can show what is already attributable.
    """
    resolver = RoleResolver(inputs.mappings)
    patterns = PatternBook(inputs.patterns)
    pool_groups = set(groups_for_mask(patterns.pool_mask))
    timeline = build_timeline(inputs.shifts, resolver, pool_groups)
    issues = timeline.issues()
    if timeline.unmapped:
        logger.warning("Stopping run: %d shift record(s) carry unmapped roles", len(timeline.unmapped))
        return EngineOutcome(status=EXCEPTIONS, report=build_report(issues))

    window = OperatingWindow(inputs.window_start, inputs.window_end)
    filtered = filter_tips(inputs.tips, window)
    issues.extend(filtered.issues())

    tip_attribution = attribute_tips(filtered.in_range, timeline, patterns, inputs.is_tipped)
    cash_attribution = distribute_cash(
        inputs.cash_days,
        timeline,
        patterns,
        inputs.is_tipped,
        get_cash_policy(inputs.cash_distribution),
    )
    issues.extend(tip_attribution.issues)
    issues.extend(cash_attribution.issues)

    names = sorted(
        set(timeline.employees(since=inputs.period_start))
        | set(tip_attribution.shares)
        | set(cash_attribution.shares)
    )
    tips = _rounded(tip_attribution, names, inputs, "tips")
    cash = _rounded(cash_attribution, names, inputs, "cash_tips")
    rows = [{"employee_name": name, "tips": tips[name], "cash_tips": cash[name]} for name in names]

    report = build_report(issues)
    unit = inputs.currency_unit
    totals = {
        "tips": str(sum(tips.values(), Decimal("0"))),
        "cash_tips": str(sum(cash.values(), Decimal("0"))),
        "in_range_tips": str(quantize(sum((Fraction(tip.amount) for tip in filtered.in_range), Fraction(0)), unit)),
        "out_of_range_tips": str(
            quantize(sum((Fraction(tip.amount) for tip in filtered.out_of_range), Fraction(0)), unit)
        ),
        "unattributed_tips": str(quantize(tip_attribution.unattributed, unit)),
        "unattributed_cash": str(quantize(cash_attribution.unattributed, unit)),
    }
    status = EXCEPTIONS if report["issues"] else COMPLETED
    logger.info(
        "Engine run finished: %d employee(s), %d issue(s), tips %s, cash %s",
        len(rows),
        len(report["issues"]),
        totals["tips"],
        totals["cash_tips"],
    )
    return EngineOutcome(status=status, rows=rows, report=report, totals=totals)

