from __future__ import annotations

import datetime
import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

import database
from database import (
    EmployeeTipStatus,
    TipCalculation,
    TipCalculationResult,
    _utcnow,
    get_cash_tip_days,
    get_shift_records,
    get_store,
    get_tip_transactions,
    record_audit_log,
)
from errors import (
    CalculationInProgressError,
    CalculationStateError,
    RecordNotFoundError,
    RoundingImbalanceError,
)
from policy import currency_unit, load_active_policy
from tip_pool import list_role_mappings, pattern_table
from tipengine.api import COMPLETED, EngineOutcome, run_engine
from tipengine.inputs import CashInput, EngineInputs, MappingInput, ShiftInput, TipInput
from tipengine.off_hours import OperatingWindow

logger = logging.getLogger(__name__)


def _check_period(period_start: datetime.date, period_end: datetime.date) -> None:
    if period_start is None or period_end is None:
        raise ValueError("period_start and period_end are required.")
    if period_start > period_end:
        raise ValueError("period_start must be on or before period_end.")


def get_calculation(session, calculation_id: int) -> TipCalculation:
    calculation = session.get(TipCalculation, calculation_id)
    if not calculation:
        raise RecordNotFoundError(f"Calculation {calculation_id} was not found.")
    return calculation


def get_processing_calculation(session, store_id: int) -> Optional[TipCalculation]:
    stmt = select(TipCalculation).where(
        TipCalculation.store_id == store_id,
        TipCalculation.status == "processing",
    )
    return session.scalars(stmt).first()


def _open_calculation(
    session, store_id: int, period_start: datetime.date, period_end: datetime.date, actor: str
) -> TipCalculation:
    """Add a processing calculation and flush it; the caller owns the commit."""
    calculation = TipCalculation(
        store_id=store_id,
        period_start=period_start,
        period_end=period_end,
        status="processing",
        created_by=actor or "system",
    )
    session.add(calculation)
    try:
        session.flush()
    except IntegrityError as exc:
        session.rollback()
        current = get_processing_calculation(session, store_id)
        raise CalculationInProgressError(store_id, current.id if current else None) from exc
    return calculation


def start_calculation(
    session,
    store_id: int,
    period_start: datetime.date,
    period_end: datetime.date,
    *,
    actor: str = "system",
    replace: bool = False,
) -> TipCalculation:
    """Open a processing calculation; an existing one is only discarded when ``replace`` is set."""
    _check_period(period_start, period_end)
    get_store(session, store_id)
    existing = get_processing_calculation(session, store_id)
    if existing is not None:
        if not replace:
            raise CalculationInProgressError(store_id, existing.id)
        logger.info("Discarding processing calculation %s for store %s", existing.id, store_id)
        session.delete(existing)
        session.flush()
    calculation = _open_calculation(session, store_id, period_start, period_end, actor)
    session.commit()
    session.refresh(calculation)
    logger.info(
        "Started calculation %s for store %s (%s to %s)",
        calculation.id,
        store_id,
        period_start.isoformat(),
        period_end.isoformat(),
    )
    return calculation


def discard_calculation(session, store_id: int) -> bool:
    calculation = get_processing_calculation(session, store_id)
    if calculation is None:
        return False
    session.delete(calculation)
    session.commit()
    logger.info("Discarded processing calculation %s for store %s", calculation.id, store_id)
    return True


def calculation_status(session, store_id: int) -> Dict[str, Any]:
    """Report the store's completed calculation first, else its processing one."""
    get_store(session, store_id)
    for status in ("completed", "processing"):
        stmt = (
            select(TipCalculation)
            .where(TipCalculation.store_id == store_id, TipCalculation.status == status)
            .order_by(TipCalculation.created_at.desc(), TipCalculation.id.desc())
        )
        calculation = session.scalars(stmt).first()
        if calculation is not None:
            return serialize_calculation(calculation)
    return {"status": None, "calculation_id": None}


def serialize_calculation(calculation: TipCalculation) -> Dict[str, Any]:
    return {
        "status": calculation.status,
        "calculation_id": calculation.id,
        "store_id": calculation.store_id,
        "period_start": calculation.period_start.isoformat(),
        "period_end": calculation.period_end.isoformat(),
        "last_run_at": calculation.last_run_at.isoformat() if calculation.last_run_at else None,
        "completed_at": calculation.completed_at.isoformat() if calculation.completed_at else None,
        "exceptions": calculation.issues(),
    }


def _require_processing(calculation: TipCalculation) -> None:
    if calculation.status != "processing":
        raise CalculationStateError(
            f"Calculation {calculation.id} is {calculation.status}; tip status can only change while processing."
        )


def tip_status_map(calculation: TipCalculation) -> Dict[str, bool]:
    return {row.employee_name: bool(row.is_tipped) for row in calculation.tip_statuses}


def set_employee_tip_status(
    session, calculation_id: int, employee_name: str, is_tipped: bool, *, actor: str = "system"
) -> EmployeeTipStatus:
    calculation = get_calculation(session, calculation_id)
    _require_processing(calculation)
    name = (employee_name or "").strip()
    if not name:
        raise ValueError("employee_name is required.")
    row = next((item for item in calculation.tip_statuses if item.employee_name == name), None)
    if row is None:
        row = EmployeeTipStatus(employee_name=name, is_tipped=bool(is_tipped))
        calculation.tip_statuses.append(row)
    elif row.is_tipped == bool(is_tipped):
        return row
    else:
        row.is_tipped = bool(is_tipped)
    record_audit_log(
        session,
        user_id=actor,
        action="TIP_STATUS_SET",
        target_type="TipCalculation",
        target_id=calculation.id,
        payload={"employee_name": name, "is_tipped": bool(is_tipped)},
        commit=False,
    )
    session.commit()
    session.refresh(row)
    return row


def list_calculation_employees(session, calculation_id: int) -> List[Dict[str, Any]]:
    """Names from the period's complete shift records with their tip status (tipped by default)."""
    calculation = get_calculation(session, calculation_id)
    statuses = tip_status_map(calculation)
    names = set()
    for record in get_shift_records(session, calculation.store_id, calculation.period_start, calculation.period_end):
        if record.is_complete and record.name:
            names.add(record.name.strip())
    names.update(statuses)
    return [{"employee_name": name, "is_tipped": statuses.get(name, True)} for name in sorted(names)]


def _overnight_carryover(session, store_id: int, period_start: datetime.date) -> List:
    """Complete shifts from the evening before the period that run past midnight into it."""
    previous = period_start - datetime.timedelta(days=1)
    return [
        record
        for record in get_shift_records(session, store_id, previous, previous)
        if record.is_complete and record.end <= record.start
    ]


def load_engine_inputs(session, calculation: TipCalculation, policy: Dict[str, Any]) -> EngineInputs:
    """Fetch every input of one run up front, as plain immutable values."""
    store = get_store(session, calculation.store_id)
    window = OperatingWindow.from_store(store, policy.get("default_window"))
    start, end = calculation.period_start, calculation.period_end
    return EngineInputs(
        shifts=[
            ShiftInput.from_record(row)
            for row in _overnight_carryover(session, store.id, start) + get_shift_records(session, store.id, start, end)
        ],
        tips=[TipInput.from_record(row) for row in get_tip_transactions(session, store.id, start, end)],
        cash_days=[CashInput.from_record(row) for row in get_cash_tip_days(session, store.id, start, end)],
        mappings=[MappingInput.from_record(row) for row in list_role_mappings(session, store.id)],
        patterns=pattern_table(session, store.id),
        period_start=start,
        window_start=window.start_minutes,
        window_end=window.end_minutes,
        tip_status=tip_status_map(calculation),
        currency_unit=currency_unit(policy),
        tie_break=policy["rounding_tie_break"],
        cash_distribution=policy["cash_distribution"],
    )


def _replace_results(session, calculation: TipCalculation, rows: List[Dict[str, Any]]) -> None:
    """Make the stored rows match ``rows``; unchanged rows keep their id and version."""
    existing = {row.employee_name: row for row in calculation.results}
    wanted = {row["employee_name"] for row in rows}
    for name, row in existing.items():
        if name not in wanted:
            calculation.results.remove(row)
    session.flush()
    for row in rows:
        current = existing.get(row["employee_name"])
        if current is None:
            calculation.results.append(
                TipCalculationResult(
                    employee_name=row["employee_name"],
                    tips=row["tips"],
                    cash_tips=row["cash_tips"],
                )
            )
            continue
        if Decimal(current.tips) != row["tips"]:
            current.tips = row["tips"]
        if Decimal(current.cash_tips) != row["cash_tips"]:
            current.cash_tips = row["cash_tips"]


def _persist_outcome(session, calculation: TipCalculation, outcome: EngineOutcome, actor: str) -> None:
    now = _utcnow()
    _replace_results(session, calculation, outcome.rows)
    calculation.issuesJSON = json.dumps(outcome.issues, default=str)
    calculation.last_run_at = now
    if outcome.status == COMPLETED:
        calculation.status = "completed"
        calculation.completed_at = now
        record_audit_log(
            session,
            user_id=actor,
            action="CALCULATION_COMPLETE",
            target_type="TipCalculation",
            target_id=calculation.id,
            payload={"totals": outcome.totals},
            commit=False,
        )


def compute(
    session,
    store_id: int,
    period_start: datetime.date,
    period_end: datetime.date,
    *,
    actor: str = "system",
    policy: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Run the engine for a store and period and store the outcome atomically.

    Uses the store's processing calculation for the same period, opening one in
    the same transaction when none exists. The calculation only becomes
    completed when the run reports no exceptions; a fatal report clears the
    stored rows and keeps the calculation processing.
    """
    _check_period(period_start, period_end)
    get_store(session, store_id)
    calculation = get_processing_calculation(session, store_id)
    if calculation is not None and (calculation.period_start, calculation.period_end) != (period_start, period_end):
        raise CalculationInProgressError(store_id, calculation.id)

    policy = load_active_policy(database.PolicySessionLocal if policy is None else policy)
    if calculation is None:
        calculation = _open_calculation(session, store_id, period_start, period_end, actor)
    calculation_id = calculation.id
    logger.info("Computing calculation %s for store %s", calculation_id, store_id)
    try:
        inputs = load_engine_inputs(session, calculation, policy)
        outcome = run_engine(inputs)
        if outcome.fatal:
            _replace_results(session, calculation, [])
            calculation.issuesJSON = json.dumps(outcome.issues, default=str)
            calculation.last_run_at = _utcnow()
        else:
            _persist_outcome(session, calculation, outcome, actor or "system")
        session.commit()
    except RoundingImbalanceError:
        session.rollback()
        logger.error("Calculation %s aborted: rounded totals do not reconcile", calculation_id)
        raise
    except Exception:
        session.rollback()
        logger.exception("Calculation %s failed; nothing was stored", calculation_id)
        raise

    if outcome.fatal:
        logger.warning(
            "Calculation %s stopped with %d fatal issue(s)",
            calculation_id,
            outcome.report["counts"].get("unmapped_role", 0),
        )
    else:
        logger.info(
            "Calculation %s is %s with %d open issue(s)",
            calculation_id,
            calculation.status,
            len(outcome.issues),
        )
    return {
        "status": outcome.status,
        "calculation_id": calculation_id,
        "calculation_status": calculation.status,
        "exceptions": outcome.issues,
        "checks": outcome.report.get("checks", []),
        "totals": outcome.totals,
    }
