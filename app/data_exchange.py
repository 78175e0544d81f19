from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Dict, Optional

from database import DATA_DIR, Policy, get_active_policy, get_store, upsert_policy
from errors import ConfigurationError
from policy import validate_policy
from results import get_result_set
from roles import groups_for_mask, normalize_group
from tip_pool import (
    add_pool_group,
    create_role_mapping,
    list_role_mappings,
    pattern_table,
    pool_mask,
    update_pattern_percentages,
)

EXPORT_DIR = DATA_DIR / "exports"


def _timestamp() -> str:
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def _export_path(export_dir: Optional[Path], stem: str) -> Path:
    target = Path(export_dir) if export_dir else EXPORT_DIR
    target.mkdir(parents=True, exist_ok=True)
    return target / f"{stem}_{_timestamp()}.json"


# ---------------------------------------------------------------------------
# Calculation results


def export_calculation_results(session, calculation_id: int, *, export_dir: Optional[Path] = None) -> Path:
    result_set = get_result_set(session, calculation_id, include_archived=True)
    filename = _export_path(export_dir, f"tip_results_{calculation_id}")
    filename.write_text(
        json.dumps(
            {"generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(), **result_set},
            indent=2,
        ),
        encoding="utf-8",
    )
    return filename


# ---------------------------------------------------------------------------
# Tip pool configuration


def export_tip_pool(session, store_id: int, *, export_dir: Optional[Path] = None) -> Path:
    store = get_store(session, store_id)
    mappings = [
        {
            "role_name": mapping.role_name,
            "actual_role_name": mapping.actual_role_name,
            "trainee_role_name": mapping.trainee_role_name,
            "trainee_percentage": (
                str(mapping.trainee_percentage) if mapping.trainee_percentage is not None else None
            ),
        }
        for mapping in list_role_mappings(session, store_id)
    ]
    patterns = {
        str(mask): {group: str(value) for group, value in percentages.items()}
        for mask, percentages in pattern_table(session, store_id).items()
    }
    payload = {
        "store": {"name": store.name, "abbreviation": store.abbreviation},
        "settings": {
            "off_hours_before_minutes": store.off_hours_before_minutes,
            "off_hours_after_minutes": store.off_hours_after_minutes,
        },
        "role_mappings": mappings,
        "pool_groups": groups_for_mask(pool_mask(session, store_id)),
        "patterns": patterns,
    }
    filename = _export_path(export_dir, f"tip_pool_{store.abbreviation or store.id}")
    filename.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return filename


def import_tip_pool(session, store_id: int, file_path: Path) -> Dict[str, int]:
    """Load mappings, pool groups and percentages exported from another store.

    Existing mappings are kept; groups already in the pool are left as they are.
    """
    data = json.loads(Path(file_path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigurationError("Tip pool file must be a JSON object.")
    get_store(session, store_id)
    mapped = {mapping.role_name for mapping in list_role_mappings(session, store_id)}
    created = 0
    for entry in data.get("role_mappings", []):
        if not isinstance(entry, dict) or not entry.get("role_name"):
            continue
        group = normalize_group(entry["role_name"])
        if group in mapped:
            continue
        create_role_mapping(
            session,
            store_id,
            group,
            actual_role_name=entry.get("actual_role_name"),
            trainee_role_name=entry.get("trainee_role_name"),
            trainee_percentage=entry.get("trainee_percentage"),
        )
        mapped.add(group)
        created += 1
    current = set(groups_for_mask(pool_mask(session, store_id)))
    added = 0
    for group in data.get("pool_groups", []):
        group = normalize_group(group)
        if group in current:
            continue
        add_pool_group(session, store_id, group)
        current.add(group)
        added += 1
    patterns = {int(mask): values for mask, values in (data.get("patterns") or {}).items()}
    if patterns:
        update_pattern_percentages(session, store_id, patterns)
    return {"role_mappings": created, "pool_groups": added, "patterns": len(patterns)}


# ---------------------------------------------------------------------------
# Policy import/export


def export_policy_dataset(session, *, export_dir: Optional[Path] = None) -> Path:
    policy = get_active_policy(session)
    if not policy:
        raise ValueError("No active policy found to export.")
    payload = {
        "name": policy.name,
        "params": policy.params_dict(),
    }
    filename = _export_path(export_dir, "policy")
    filename.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return filename


def import_policy_dataset(session, file_path: Path, *, edited_by: str = "import") -> Policy:
    data = json.loads(Path(file_path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Policy file must be a JSON object.")
    params = data.get("params") if isinstance(data.get("params"), dict) else None
    if params is None:
        params = {k: v for k, v in data.items() if k != "name"}
    params = dict(params)
    params.pop("name", None)
    validate_policy(params)
    name = data.get("name") or "Imported Policy"
    return upsert_policy(session, name, params, edited_by=edited_by)
