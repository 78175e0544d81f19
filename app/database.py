from __future__ import annotations

import datetime
import json
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    or_,
    select,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.types import Time

from errors import ConfigurationError, RecordNotFoundError


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
TIP_POOL_DATABASE_URL = os.environ.get(
    "TIP_POOL_DATABASE_URL", f"sqlite:///{(DATA_DIR / 'tip_pool.db').as_posix()}"
)
POLICY_DATABASE_URL = os.environ.get(
    "TIP_POOL_POLICY_DATABASE_URL", f"sqlite:///{(DATA_DIR / 'policy.db').as_posix()}"
)
MINUTES_PER_DAY = 24 * 60
# Money columns keep two decimal places; currency units must be whole multiples of a cent.
AMOUNT_SCALE = 2
CENT = Decimal(1).scaleb(-AMOUNT_SCALE)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(DeclarativeBase):
    """Metadata for store, import and calculation tables living in tip_pool.db."""

    pass


class PolicyBase(DeclarativeBase):
    """Standalone metadata for policy tables living in policy.db."""

    pass


class Store(Base):
    __tablename__ = "stores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    abbreviation: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    # Minute-of-day offsets; null leaves that side of the window open.
    off_hours_before_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    off_hours_after_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    role_mappings: Mapped[List["RoleMapping"]] = relationship(
        back_populates="store", cascade="all, delete-orphan"
    )
    patterns: Mapped[List["DistributionPattern"]] = relationship(
        back_populates="store", cascade="all, delete-orphan"
    )


class RoleMapping(Base):
    __tablename__ = "role_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    role_name: Mapped[str] = mapped_column(String(16), nullable=False)
    actual_role_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    trainee_role_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    trainee_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    store: Mapped[Store] = relationship(back_populates="role_mappings")

    __table_args__ = (
        UniqueConstraint("store_id", "role_name", name="uq_role_mappings_store_group"),
        UniqueConstraint("store_id", "actual_role_name", name="uq_role_mappings_store_actual"),
        UniqueConstraint("store_id", "trainee_role_name", name="uq_role_mappings_store_trainee"),
    )


class DistributionPattern(Base):
    __tablename__ = "distribution_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    mask: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    store: Mapped[Store] = relationship(back_populates="patterns")
    shares: Mapped[List["PatternShare"]] = relationship(
        back_populates="pattern", cascade="all, delete-orphan", order_by="PatternShare.role_group"
    )

    __table_args__ = (UniqueConstraint("store_id", "mask", name="uq_distribution_patterns_store_mask"),)

    def percentages(self) -> Dict[str, Decimal]:
        return {share.role_group: Decimal(share.percentage) for share in self.shares}


class PatternShare(Base):
    __tablename__ = "pattern_shares"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pattern_id: Mapped[int] = mapped_column(
        ForeignKey("distribution_patterns.id", ondelete="CASCADE"), nullable=False
    )
    role_group: Mapped[str] = mapped_column(String(16), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))

    pattern: Mapped[DistributionPattern] = relationship(back_populates="shares")

    __table_args__ = (UniqueConstraint("pattern_id", "role_group", name="uq_pattern_shares_group"),)


class ShiftRecord(Base):
    __tablename__ = "shift_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    start: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    end: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    role: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    is_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_complete_on_import: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("ix_shift_records_store_date", "store_id", "date"),)


class TipTransaction(Base):
    __tablename__ = "tip_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    order_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    payment_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, AMOUNT_SCALE), nullable=False)
    is_adjusted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_payment_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (Index("ix_tip_transactions_store_date", "store_id", "order_date"),)


class CashTipDay(Base):
    __tablename__ = "cash_tip_days"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, AMOUNT_SCALE), nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (Index("ix_cash_tip_days_store_date", "store_id", "date"),)


class TipCalculation(Base):
    __tablename__ = "tip_calculations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    period_start: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    period_end: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="processing")
    issuesJSON: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    last_run_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    results: Mapped[List["TipCalculationResult"]] = relationship(
        back_populates="calculation",
        cascade="all, delete-orphan",
        order_by="TipCalculationResult.employee_name",
    )
    tip_statuses: Mapped[List["EmployeeTipStatus"]] = relationship(
        back_populates="calculation", cascade="all, delete-orphan"
    )

    __table_args__ = (
        # Persisted guard: one processing calculation per store, whatever process writes it.
        Index(
            "uq_tip_calculations_store_processing",
            "store_id",
            unique=True,
            sqlite_where=text("status = 'processing'"),
            postgresql_where=text("status = 'processing'"),
        ),
    )

    def issues(self) -> List[Dict[str, Any]]:
        try:
            value = json.loads(self.issuesJSON or "[]")
            if isinstance(value, list):
                return value
        except json.JSONDecodeError:
            pass
        return []


class EmployeeTipStatus(Base):
    __tablename__ = "employee_tip_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    calculation_id: Mapped[int] = mapped_column(
        ForeignKey("tip_calculations.id", ondelete="CASCADE"), nullable=False
    )
    employee_name: Mapped[str] = mapped_column(String(120), nullable=False)
    is_tipped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    calculation: Mapped[TipCalculation] = relationship(back_populates="tip_statuses")

    __table_args__ = (
        UniqueConstraint("calculation_id", "employee_name", name="uq_employee_tip_status_name"),
    )


class TipCalculationResult(Base):
    __tablename__ = "tip_calculation_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    calculation_id: Mapped[int] = mapped_column(
        ForeignKey("tip_calculations.id", ondelete="CASCADE"), nullable=False
    )
    employee_name: Mapped[str] = mapped_column(String(120), nullable=False)
    tips: Mapped[Decimal] = mapped_column(Numeric(12, AMOUNT_SCALE), nullable=False, default=Decimal("0"))
    cash_tips: Mapped[Decimal] = mapped_column(Numeric(12, AMOUNT_SCALE), nullable=False, default=Decimal("0"))
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    edited_by: Mapped[str | None] = mapped_column(String(60), nullable=True)
    edited_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    calculation: Mapped[TipCalculation] = relationship(back_populates="results")

    __table_args__ = (
        UniqueConstraint("calculation_id", "employee_name", name="uq_tip_results_employee"),
    )
    __mapper_args__ = {"version_id_col": version}


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="TipCalculationResult")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def payload(self) -> Dict[str, Any]:
        try:
            value = json.loads(self.payloadJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class Policy(PolicyBase):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("name", name="uq_policies_name"),
    )

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


tip_engine = create_engine(
    TIP_POOL_DATABASE_URL,
    echo=False,
    future=True,
)
policy_engine = create_engine(
    POLICY_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=tip_engine, expire_on_commit=False, future=True)
PolicySessionLocal = sessionmaker(bind=policy_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(tip_engine)
    PolicyBase.metadata.create_all(policy_engine)


def _coerce_policy_session(session):
    """Return (policy_session, should_close) ensuring policy data stays in its own database."""
    PolicyBase.metadata.create_all(policy_engine)
    if session is None:
        return PolicySessionLocal(), True
    bind = getattr(session, "bind", None)
    if bind is tip_engine:
        return PolicySessionLocal(), True
    return session, False


def upsert_policy(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> Policy:
    policy_session, close_session = _coerce_policy_session(session)
    try:
        existing: Optional[Policy] = policy_session.execute(
            select(Policy).where(Policy.name == name)
        ).scalars().first()
        payload = params_dict if isinstance(params_dict, dict) else {}
        if existing:
            existing.paramsJSON = json.dumps(payload)
            existing.lastEditedBy = edited_by
            existing.lastEditedAt = _utcnow()
            policy_session.commit()
            policy_session.refresh(existing)
            return existing
        policy = Policy(
            name=name,
            paramsJSON=json.dumps(payload),
            lastEditedBy=edited_by,
            lastEditedAt=_utcnow(),
        )
        policy_session.add(policy)
        policy_session.commit()
        policy_session.refresh(policy)
        return policy
    finally:
        if close_session:
            policy_session.close()


def get_active_policy(session) -> Optional[Policy]:
    policy_session, close_session = _coerce_policy_session(session)
    try:
        stmt = select(Policy).order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
        return policy_session.scalars(stmt).first()
    finally:
        if close_session:
            policy_session.close()


# ---------------------------------------------------------------------------
# Stores


def _validate_window_bound(label: str, value: Optional[int]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{label} must be a whole number of minutes.")
    if minutes < 0 or minutes > MINUTES_PER_DAY:
        raise ConfigurationError(f"{label} must be between 0 and {MINUTES_PER_DAY} minutes (0-24 hours).")
    return minutes


def create_store(
    session,
    name: str,
    abbreviation: str,
    *,
    before_minutes: Optional[int] = None,
    after_minutes: Optional[int] = None,
) -> Store:
    if not (name or "").strip() or not (abbreviation or "").strip():
        raise ConfigurationError("Store name and abbreviation are required.")
    store = Store(name=name.strip(), abbreviation=abbreviation.strip())
    _apply_store_window(store, before_minutes, after_minutes)
    session.add(store)
    session.commit()
    session.refresh(store)
    return store


def list_stores(session) -> List[Store]:
    return list(session.scalars(select(Store).order_by(Store.name.asc(), Store.id.asc())))


def get_store(session, store_id: int) -> Store:
    store = session.get(Store, store_id)
    if not store:
        raise RecordNotFoundError(f"Store {store_id} was not found.")
    return store


def _apply_store_window(store: Store, before_minutes, after_minutes) -> None:
    before = _validate_window_bound("off_hours_before_minutes", before_minutes)
    after = _validate_window_bound("off_hours_after_minutes", after_minutes)
    if before is not None and after is not None and before >= after:
        raise ConfigurationError("The operating window must start before it ends.")
    store.off_hours_before_minutes = before
    store.off_hours_after_minutes = after


def update_store_window(session, store_id: int, before_minutes, after_minutes) -> Store:
    store = get_store(session, store_id)
    _apply_store_window(store, before_minutes, after_minutes)
    session.commit()
    session.refresh(store)
    return store


# ---------------------------------------------------------------------------
# Imported records


def is_shift_complete(name, date, start, end, role) -> bool:
    return bool(
        (name or "").strip()
        and date is not None
        and start is not None
        and end is not None
        and (role or "").strip()
    )


def _coerce_date(value) -> Optional[datetime.date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise ValueError(f"Invalid date '{value}'; expected YYYY-MM-DD.")


def coerce_time(value) -> Optional[datetime.time]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime.time):
        return value
    label = str(value).strip()
    try:
        return datetime.time.fromisoformat(label)
    except ValueError:
        raise ValueError(f"Invalid time '{value}'; expected HH:MM or HH:MM:SS.")


def upsert_shift_record(session, record: Dict[str, Any], *, actor: Optional[str] = None) -> ShiftRecord:
    """Create or edit one shift record; completeness is recomputed on every save."""
    record_id = record.get("id")
    if record_id:
        shift = session.get(ShiftRecord, record_id)
        if not shift:
            raise RecordNotFoundError(f"Shift record {record_id} was not found.")
        previous = _shift_to_dict(shift)
    else:
        store_id = record.get("store_id")
        if not store_id:
            raise ValueError("store_id is required for new shift records.")
        shift = ShiftRecord(store_id=store_id)
        session.add(shift)
        previous = None

    for field in ("name", "role"):
        if field in record:
            setattr(shift, field, (record.get(field) or "").strip() or ("" if field == "role" else None))
    if "date" in record:
        shift.date = _coerce_date(record.get("date"))
    if "start" in record:
        shift.start = coerce_time(record.get("start"))
    if "end" in record:
        shift.end = coerce_time(record.get("end"))
    if shift.role is None:
        shift.role = ""

    shift.is_complete = is_shift_complete(shift.name, shift.date, shift.start, shift.end, shift.role)
    if previous is None:
        shift.is_complete_on_import = bool(record.get("is_complete_on_import", shift.is_complete))
    session.flush()
    if previous is not None and actor:
        record_audit_log(
            session,
            user_id=actor,
            action="SHIFT_EDIT",
            target_type="ShiftRecord",
            target_id=shift.id,
            payload={"previous": previous, "current": _shift_to_dict(shift)},
            commit=False,
        )
    session.commit()
    session.refresh(shift)
    return shift


def _shift_to_dict(shift: ShiftRecord) -> Dict[str, Any]:
    return {
        "id": shift.id,
        "name": shift.name,
        "date": shift.date.isoformat() if shift.date else None,
        "start": shift.start.isoformat() if shift.start else None,
        "end": shift.end.isoformat() if shift.end else None,
        "role": shift.role,
        "is_complete": shift.is_complete,
        "is_complete_on_import": shift.is_complete_on_import,
    }


def correct_tip_payment_time(session, tip_id: int, payment_time, *, actor: str = "system") -> TipTransaction:
    """Store a manually corrected payment time, keeping the first original value for audit."""
    tip = session.get(TipTransaction, tip_id)
    if not tip:
        raise RecordNotFoundError(f"Tip transaction {tip_id} was not found.")
    corrected = coerce_time(payment_time)
    previous = tip.payment_time
    if not tip.is_adjusted:
        tip.original_payment_time = previous
        tip.is_adjusted = True
    tip.payment_time = corrected
    record_audit_log(
        session,
        user_id=actor,
        action="TIP_TIME_CORRECT",
        target_type="TipTransaction",
        target_id=tip.id,
        payload={
            "previous": previous.isoformat() if previous else None,
            "current": corrected.isoformat() if corrected else None,
            "original": tip.original_payment_time.isoformat() if tip.original_payment_time else None,
        },
        commit=False,
    )
    session.commit()
    session.refresh(tip)
    return tip


def get_shift_records(session, store_id: int, period_start: datetime.date, period_end: datetime.date) -> List[ShiftRecord]:
    """Shift records dated inside the period plus undated (incomplete) ones for the store."""
    stmt = (
        select(ShiftRecord)
        .where(
            ShiftRecord.store_id == store_id,
            or_(
                ShiftRecord.date.is_(None),
                ShiftRecord.date.between(period_start, period_end),
            ),
        )
        .order_by(ShiftRecord.date.asc(), ShiftRecord.start.asc(), ShiftRecord.id.asc())
    )
    return list(session.scalars(stmt))


def get_tip_transactions(session, store_id: int, period_start: datetime.date, period_end: datetime.date) -> List[TipTransaction]:
    stmt = (
        select(TipTransaction)
        .where(
            TipTransaction.store_id == store_id,
            TipTransaction.order_date.between(period_start, period_end),
        )
        .order_by(TipTransaction.order_date.asc(), TipTransaction.id.asc())
    )
    return list(session.scalars(stmt))


def get_cash_tip_days(session, store_id: int, period_start: datetime.date, period_end: datetime.date) -> List[CashTipDay]:
    stmt = (
        select(CashTipDay)
        .where(
            CashTipDay.store_id == store_id,
            CashTipDay.date.between(period_start, period_end),
        )
        .order_by(CashTipDay.date.asc(), CashTipDay.id.asc())
    )
    return list(session.scalars(stmt))


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "TipCalculationResult",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
    *,
    commit: bool = True,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id or "system",
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    if commit:
        session.commit()
    return log
