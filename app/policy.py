from __future__ import annotations

import copy
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

from database import CENT, get_active_policy, upsert_policy
from errors import ConfigurationError


TIE_BREAK_CHOICES = {"name_ascending", "name_descending"}
CASH_DISTRIBUTION_CHOICES = {"day_roster"}

BASELINE_POLICY: Dict[str, Any] = {
    "name": "Baseline Tip Pool",
    "currency_unit": "0.01",
    "rounding_tie_break": "name_ascending",
    "cash_distribution": "day_roster",
    # Used for stores that never configured their own operating window.
    "default_window": {"before_minutes": None, "after_minutes": None},
}


def load_active_policy(conn) -> Dict:
    """Return the active policy payload as a dict."""
    if conn is None:
        return _normalize_policy({})
    if isinstance(conn, dict):
        return _normalize_policy(conn)
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session)
            return _normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn)
    return _normalize_policy(policy.params_dict() if policy else {})


def parse_currency_unit(value) -> Decimal:
    """Return ``value`` as a Decimal unit the result columns can store without truncation."""
    try:
        unit = Decimal(str(value))
    except InvalidOperation:
        raise ConfigurationError(f"Currency unit '{value}' is not a number.")
    if not unit.is_finite() or unit <= 0 or unit % CENT != 0:
        raise ConfigurationError(f"Currency unit '{value}' must be a positive multiple of {CENT}.")
    return unit


def validate_policy(params: Dict) -> Dict:
    """Reject settings the engine would otherwise replace with baseline values."""
    if not isinstance(params, dict):
        raise ConfigurationError("Policy parameters must be an object.")
    if "currency_unit" in params:
        parse_currency_unit(params["currency_unit"])
    if "rounding_tie_break" in params and params["rounding_tie_break"] not in TIE_BREAK_CHOICES:
        raise ConfigurationError(f"Unknown rounding tie-break '{params['rounding_tie_break']}'.")
    if "cash_distribution" in params and params["cash_distribution"] not in CASH_DISTRIBUTION_CHOICES:
        raise ConfigurationError(f"Unknown cash distribution '{params['cash_distribution']}'.")
    return _normalize_policy(params)


def _normalize_policy(policy: Dict) -> Dict:
    """Fill missing keys from the baseline and drop values the engine cannot use."""
    normalized = copy.deepcopy(BASELINE_POLICY)
    if isinstance(policy, dict):
        for key, value in policy.items():
            if isinstance(value, dict) and isinstance(normalized.get(key), dict):
                normalized[key].update(value)
            else:
                normalized[key] = copy.deepcopy(value)
    try:
        unit = parse_currency_unit(normalized.get("currency_unit"))
    except ConfigurationError:
        unit = Decimal(BASELINE_POLICY["currency_unit"])
    normalized["currency_unit"] = str(unit)
    if normalized.get("rounding_tie_break") not in TIE_BREAK_CHOICES:
        normalized["rounding_tie_break"] = BASELINE_POLICY["rounding_tie_break"]
    if normalized.get("cash_distribution") not in CASH_DISTRIBUTION_CHOICES:
        normalized["cash_distribution"] = BASELINE_POLICY["cash_distribution"]
    return normalized


def currency_unit(policy: Dict) -> Decimal:
    return Decimal(_normalize_policy(policy)["currency_unit"])


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the policy safely."""
    return copy.deepcopy(BASELINE_POLICY)


def ensure_default_policy(session_factory) -> None:
    """Seed the baseline policy exactly once so the engine can run end-to-end."""

    with session_factory() as session:
        if get_active_policy(session):
            return
        baseline = build_default_policy()
        name = baseline.get("name", "Baseline Tip Pool")
        params = {key: value for key, value in baseline.items() if key != "name"}
        upsert_policy(session, name, params, edited_by="system")
