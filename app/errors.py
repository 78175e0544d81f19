from __future__ import annotations

from typing import Any, Dict, List, Optional


class TipEngineError(Exception):
    """Base class for every error raised by the tip pool modules."""


class ConfigurationError(TipEngineError, ValueError):
    pass


class RecordNotFoundError(TipEngineError, LookupError):
    pass


class CalculationStateError(TipEngineError):
    pass


class CalculationInProgressError(CalculationStateError):
    def __init__(self, store_id: int, calculation_id: Optional[int] = None) -> None:
        self.store_id = store_id
        self.calculation_id = calculation_id
        detail = f" (calculation {calculation_id})" if calculation_id else ""
        super().__init__(f"Store {store_id} already has a processing calculation{detail}.")


class StaleResultError(TipEngineError):
    def __init__(self, result_id: int, expected: int, actual: int) -> None:
        self.result_id = result_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Result {result_id} was modified concurrently (expected version {expected}, found {actual})."
        )


class RoundingImbalanceError(TipEngineError):
    """Rounded totals drifted from the exact pool. Always a bug, never user-recoverable."""

    def __init__(self, field: str, expected: Any, actual: Any, rows: Optional[List[Dict[str, Any]]] = None) -> None:
        self.field = field
        self.expected = expected
        self.actual = actual
        self.rows = rows or []
        super().__init__(f"Rounded {field} total {actual} does not match pool total {expected}.")
