from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from database import CENT, Store, TipCalculation, TipCalculationResult, _utcnow, record_audit_log
from errors import CalculationStateError, RecordNotFoundError, StaleResultError

logger = logging.getLogger(__name__)


def serialize_result(row: TipCalculationResult) -> Dict[str, Any]:
    return {
        "id": row.id,
        "calculation_id": row.calculation_id,
        "employee_name": row.employee_name,
        "tips": str(Decimal(row.tips).quantize(CENT)),
        "cash_tips": str(Decimal(row.cash_tips).quantize(CENT)),
        "is_archived": bool(row.is_archived),
        "version": row.version,
        "edited_by": row.edited_by,
        "edited_at": row.edited_at.isoformat() if row.edited_at else None,
    }


def get_result_set(session, calculation_id: int, *, include_archived: bool = False) -> Dict[str, Any]:
    """Per-employee rows of one calculation, with column totals."""
    calculation = session.get(TipCalculation, calculation_id)
    if not calculation:
        raise RecordNotFoundError(f"Calculation {calculation_id} was not found.")
    stmt = (
        select(TipCalculationResult)
        .where(TipCalculationResult.calculation_id == calculation_id)
        .order_by(TipCalculationResult.employee_name.asc())
    )
    if not include_archived:
        stmt = stmt.where(TipCalculationResult.is_archived.is_(False))
    rows = list(session.scalars(stmt))
    return {
        "calculation_id": calculation.id,
        "store_id": calculation.store_id,
        "status": calculation.status,
        "period_start": calculation.period_start.isoformat(),
        "period_end": calculation.period_end.isoformat(),
        "results": [serialize_result(row) for row in rows],
        "totals": {
            "tips": str(sum((Decimal(row.tips) for row in rows), Decimal("0")).quantize(CENT)),
            "cash_tips": str(sum((Decimal(row.cash_tips) for row in rows), Decimal("0")).quantize(CENT)),
        },
    }


def list_records(session, store_ids: Optional[Iterable[int]] = None) -> List[Dict[str, Any]]:
    """Visible rows of every completed calculation across stores.

    Newest period first, then store label (abbreviation, else name), then employee.
    ``store_ids`` limits the view to those stores; an empty selection lists nothing.
    """
    stmt = (
        select(TipCalculationResult, TipCalculation, Store)
        .join(TipCalculation, TipCalculationResult.calculation_id == TipCalculation.id)
        .join(Store, TipCalculation.store_id == Store.id)
        .where(TipCalculation.status == "completed", TipCalculationResult.is_archived.is_(False))
    )
    if store_ids is not None:
        store_ids = list(store_ids)
        if not store_ids:
            return []
        stmt = stmt.where(TipCalculation.store_id.in_(store_ids))
    records = []
    for row, calculation, store in session.execute(stmt):
        record = serialize_result(row)
        record.update(
            {
                "store_id": store.id,
                "store": store.abbreviation or store.name,
                "period_start": calculation.period_start.isoformat(),
                "period_end": calculation.period_end.isoformat(),
            }
        )
        records.append(record)
    records.sort(key=lambda item: (item["store"], item["employee_name"]))
    records.sort(key=lambda item: item["period_start"], reverse=True)
    return records


def _get_result(session, result_id: int) -> Optional[TipCalculationResult]:
    return session.get(TipCalculationResult, result_id)


def _require_completed(row: TipCalculationResult) -> None:
    status = row.calculation.status
    if status != "completed":
        raise CalculationStateError(
            f"Result {row.id} belongs to a {status} calculation; only completed results can be changed by hand."
        )


def _check_version(row: TipCalculationResult, expected_version: Optional[int]) -> None:
    if expected_version is not None and int(expected_version) != row.version:
        raise StaleResultError(row.id, int(expected_version), row.version)


def _clean_amount(label: str, value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{label} must be a number.")
    if not amount.is_finite():
        raise ValueError(f"{label} must be a number.")
    return amount.quantize(CENT)


def _commit_versioned(session, row: TipCalculationResult, expected_version: Optional[int]) -> None:
    try:
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        current = session.get(TipCalculationResult, row.id)
        actual = current.version if current is not None else -1
        raise StaleResultError(row.id, int(expected_version or 0), actual) from exc


def edit_result(
    session,
    result_id: int,
    *,
    tips=None,
    cash_tips=None,
    expected_version: Optional[int] = None,
    actor: str = "system",
) -> TipCalculationResult:
    """Overwrite one result's amounts by hand.

    Repeating an edit that is already in place returns the row unchanged, so a
    retried request is harmless even though its version is now behind.
    """
    row = _get_result(session, result_id)
    if row is None:
        raise RecordNotFoundError(f"Result {result_id} was not found.")
    _require_completed(row)
    changes: Dict[str, Decimal] = {}
    if tips is not None:
        changes["tips"] = _clean_amount("tips", tips)
    if cash_tips is not None:
        changes["cash_tips"] = _clean_amount("cash_tips", cash_tips)
    if not changes:
        raise ValueError("Nothing to edit: provide tips and/or cash_tips.")
    if all(Decimal(getattr(row, field)) == value for field, value in changes.items()):
        return row
    _check_version(row, expected_version)

    previous = {field: str(Decimal(getattr(row, field)).quantize(CENT)) for field in changes}
    for field, value in changes.items():
        setattr(row, field, value)
    row.edited_by = actor or "system"
    row.edited_at = _utcnow()
    record_audit_log(
        session,
        user_id=actor,
        action="RESULT_EDIT",
        target_id=row.id,
        payload={
            "calculation_id": row.calculation_id,
            "employee_name": row.employee_name,
            "previous": previous,
            "current": {field: str(value) for field, value in changes.items()},
            "edited_at": row.edited_at.isoformat(),
        },
        commit=False,
    )
    _commit_versioned(session, row, expected_version)
    session.refresh(row)
    logger.info("Result %s edited by %s", row.id, row.edited_by)
    return row


def archive_result(
    session,
    result_id: int,
    *,
    expected_version: Optional[int] = None,
    actor: str = "system",
) -> TipCalculationResult:
    row = _get_result(session, result_id)
    if row is None:
        raise RecordNotFoundError(f"Result {result_id} was not found.")
    _require_completed(row)
    if row.is_archived:
        return row
    _check_version(row, expected_version)
    row.is_archived = True
    row.edited_by = actor or "system"
    row.edited_at = _utcnow()
    record_audit_log(
        session,
        user_id=actor,
        action="RESULT_ARCHIVE",
        target_id=row.id,
        payload={
            "calculation_id": row.calculation_id,
            "employee_name": row.employee_name,
            "previous": {"is_archived": False},
            "edited_at": row.edited_at.isoformat(),
        },
        commit=False,
    )
    _commit_versioned(session, row, expected_version)
    session.refresh(row)
    logger.info("Result %s archived by %s", row.id, row.edited_by)
    return row


def delete_result(
    session,
    result_id: int,
    *,
    expected_version: Optional[int] = None,
    actor: str = "system",
) -> bool:
    """Delete one result row; a row that is already gone counts as deleted."""
    row = _get_result(session, result_id)
    if row is None:
        return False
    _require_completed(row)
    _check_version(row, expected_version)
    snapshot = serialize_result(row)
    session.delete(row)
    record_audit_log(
        session,
        user_id=actor,
        action="RESULT_DELETE",
        target_id=result_id,
        payload={"previous": snapshot, "deleted_at": _utcnow().isoformat()},
        commit=False,
    )
    _commit_versioned(session, row, expected_version)
    logger.info("Result %s deleted by %s", result_id, actor or "system")
    return True
