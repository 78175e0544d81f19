from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from database import is_shift_complete


@dataclass(frozen=True)
class ShiftInput:
    id: Optional[int]
    name: Optional[str]
    date: Optional[datetime.date]
    start: Optional[datetime.time]
    end: Optional[datetime.time]
    role: Optional[str]

    @property
    def is_complete(self) -> bool:
        return is_shift_complete(self.name, self.date, self.start, self.end, self.role)

    @classmethod
    def from_record(cls, record) -> "ShiftInput":
        return cls(
            id=record.id,
            name=(record.name or "").strip() or None,
            date=record.date,
            start=record.start,
            end=record.end,
            role=record.role,
        )


@dataclass(frozen=True)
class TipInput:
    id: Optional[int]
    order_date: datetime.date
    payment_time: Optional[datetime.time]
    amount: Decimal
    is_adjusted: bool = False
    original_payment_time: Optional[datetime.time] = None

    @classmethod
    def from_record(cls, record) -> "TipInput":
        return cls(
            id=record.id,
            order_date=record.order_date,
            payment_time=record.payment_time,
            amount=Decimal(record.amount),
            is_adjusted=bool(record.is_adjusted),
            original_payment_time=record.original_payment_time,
        )


@dataclass(frozen=True)
class CashInput:
    id: Optional[int]
    date: datetime.date
    amount: Decimal

    @classmethod
    def from_record(cls, record) -> "CashInput":
        return cls(id=record.id, date=record.date, amount=Decimal(record.amount))


@dataclass(frozen=True)
class MappingInput:
    role_name: str
    actual_role_name: Optional[str] = None
    trainee_role_name: Optional[str] = None
    trainee_percentage: Optional[Decimal] = None

    @classmethod
    def from_record(cls, record) -> "MappingInput":
        return cls(
            role_name=record.role_name,
            actual_role_name=record.actual_role_name,
            trainee_role_name=record.trainee_role_name,
            trainee_percentage=record.trainee_percentage,
        )


@dataclass
class EngineInputs:
    """Snapshot of everything one calculation run reads.

    Window bounds are minutes of the day; ``None`` leaves that side open.
    Employees missing from ``tip_status`` count as tipped. Shifts dated before
    ``period_start`` only lend their overnight hours to the period.
    """

    shifts: List[ShiftInput]
    tips: List[TipInput]
    cash_days: List[CashInput]
    mappings: List[MappingInput]
    patterns: Dict[int, Dict[str, Decimal]]
    period_start: Optional[datetime.date] = None
    window_start: Optional[int] = None
    window_end: Optional[int] = None
    tip_status: Dict[str, bool] = field(default_factory=dict)
    currency_unit: Decimal = Decimal("0.01")
    tie_break: str = "name_ascending"
    cash_distribution: str = "day_roster"

    def is_tipped(self, name: str) -> bool:
        return bool(self.tip_status.get(name, True))
