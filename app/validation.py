from __future__ import annotations

import datetime
from decimal import Decimal
from fractions import Fraction
from typing import Any, Dict, Iterable, List, Optional

from roles import mask_label

INCOMPLETE_SHIFT = "incomplete_shift"
UNMAPPED_ROLE = "unmapped_role"
OUT_OF_RANGE_TIP = "out_of_range_tip"
UNATTRIBUTABLE_SHARE = "unattributable_share"
MISSING_PATTERN = "missing_pattern"

ISSUE_ORDER = [INCOMPLETE_SHIFT, UNMAPPED_ROLE, OUT_OF_RANGE_TIP, UNATTRIBUTABLE_SHARE, MISSING_PATTERN]
# An unmapped role stops the run before anything is attributed.
FATAL_ISSUE_TYPES = {UNMAPPED_ROLE}
CHECK_LABELS = {
    INCOMPLETE_SHIFT: "All shift records complete?",
    UNMAPPED_ROLE: "All roles mapped?",
    OUT_OF_RANGE_TIP: "All tips inside operating hours?",
    UNATTRIBUTABLE_SHARE: "Every share has an eligible employee?",
    MISSING_PATTERN: "Every on-duty combination has a pattern?",
}


def _format_minutes(minutes: Optional[int]) -> str:
    if minutes is None:
        return "--:--"
    hours, mins = divmod(int(minutes), 60)
    return f"{hours:02d}:{mins:02d}"


def _format_time(value: Optional[datetime.time]) -> Optional[str]:
    return value.strftime("%H:%M:%S") if value else None


def _format_amount(value) -> str:
    if isinstance(value, Fraction):
        value = Decimal(value.numerator) / Decimal(value.denominator)
    return str(Decimal(value).quantize(Decimal("0.01")))


def incomplete_shift_issue(record) -> Dict[str, Any]:
    missing = [
        field
        for field, value in (
            ("name", (record.name or "").strip()),
            ("date", record.date),
            ("start", record.start),
            ("end", record.end),
            ("role", (record.role or "").strip()),
        )
        if not value
    ]
    who = record.name or "Unnamed employee"
    return {
        "type": INCOMPLETE_SHIFT,
        "severity": "error",
        "shift_id": record.id,
        "employee": record.name,
        "date": record.date.isoformat() if record.date else None,
        "missing": missing,
        "message": f"Shift record for {who} is missing {', '.join(missing)}.",
    }


def unmapped_role_issue(record) -> Dict[str, Any]:
    return {
        "type": UNMAPPED_ROLE,
        "severity": "fatal",
        "shift_id": record.id,
        "employee": record.name,
        "role": record.role,
        "message": f"Role '{record.role}' for {record.name} has no role mapping; configure it before calculating.",
    }


def out_of_range_issue(tip, window_start: Optional[int], window_end: Optional[int]) -> Dict[str, Any]:
    if tip.payment_time is None:
        reason = "has no payment time"
    else:
        reason = (
            f"was paid at {_format_time(tip.payment_time)}, outside "
            f"{_format_minutes(window_start)}-{_format_minutes(window_end)}"
        )
    return {
        "type": OUT_OF_RANGE_TIP,
        "severity": "error",
        "tip_id": tip.id,
        "date": tip.order_date.isoformat(),
        "payment_time": _format_time(tip.payment_time),
        "original_payment_time": _format_time(tip.original_payment_time),
        "is_adjusted": bool(tip.is_adjusted),
        "amount": _format_amount(tip.amount),
        "message": f"Tip of {_format_amount(tip.amount)} on {tip.order_date.isoformat()} {reason}; correct its payment time.",
    }


def unattributable_share_issue(
    *,
    source: str,
    source_id: Optional[int],
    date: datetime.date,
    amount,
    role_group: Optional[str] = None,
    mask: Optional[int] = None,
    instant: Optional[datetime.time] = None,
) -> Dict[str, Any]:
    when = f"{date.isoformat()} {_format_time(instant)}" if instant else date.isoformat()
    if role_group is None:
        message = f"No complete shift covers the {source} of {_format_amount(amount)} at {when}."
    else:
        message = (
            f"Pattern {mask_label(mask or 0)} gives {role_group} a share of the {source} at {when}, "
            f"but no tipped {role_group} employee is on duty."
        )
    return {
        "type": UNATTRIBUTABLE_SHARE,
        "severity": "error",
        "source": source,
        "source_id": source_id,
        "date": date.isoformat(),
        "time": _format_time(instant),
        "role_group": role_group,
        "pattern": mask_label(mask) if mask else None,
        "amount": _format_amount(amount),
        "message": message,
    }


def missing_pattern_issue(*, source: str, source_id: Optional[int], date: datetime.date, mask: int) -> Dict[str, Any]:
    return {
        "type": MISSING_PATTERN,
        "severity": "error",
        "source": source,
        "source_id": source_id,
        "date": date.isoformat(),
        "pattern": mask_label(mask),
        "mask": mask,
        "message": f"No distribution pattern is configured for {mask_label(mask)}.",
    }


def is_fatal(issues: Iterable[Dict[str, Any]]) -> bool:
    return any(issue.get("type") in FATAL_ISSUE_TYPES for issue in issues)


def build_report(issues: List[Dict[str, Any]]) -> Dict[str, Any]:
    counts = {issue_type: 0 for issue_type in ISSUE_ORDER}
    for issue in issues:
        counts[issue["type"]] = counts.get(issue["type"], 0) + 1
    checks = [
        {
            "label": CHECK_LABELS[issue_type],
            "status": "fail" if counts[issue_type] else "pass",
            "details": f"{counts[issue_type]} open" if counts[issue_type] else "",
        }
        for issue_type in ISSUE_ORDER
    ]
    ordered = sorted(issues, key=lambda issue: ISSUE_ORDER.index(issue["type"]))
    return {
        "issues": ordered,
        "counts": counts,
        "checks": checks,
        "fatal": is_fatal(issues),
    }
