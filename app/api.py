"""FastAPI surface over the tip pool database and calculation engine.

Handlers stay thin: they parse the payload, call one service function and
serialize what it returns. Service errors map to HTTP status codes in one place.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure legacy absolute imports (e.g., "import database") still resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from database import (  # noqa: E402
    _shift_to_dict,
    correct_tip_payment_time,
    create_store,
    get_active_policy,
    init_database,
    list_stores,
    update_store_window,
    upsert_policy,
    upsert_shift_record,
)
from calculations import (  # noqa: E402
    calculation_status,
    compute,
    discard_calculation,
    list_calculation_employees,
    serialize_calculation,
    set_employee_tip_status,
    start_calculation,
)
from errors import (  # noqa: E402
    CalculationStateError,
    RecordNotFoundError,
    RoundingImbalanceError,
    StaleResultError,
    TipEngineError,
)
from policy import ensure_default_policy, validate_policy  # noqa: E402
from results import (  # noqa: E402
    archive_result,
    delete_result,
    edit_result,
    get_result_set,
    list_records,
    serialize_result,
)
from tip_pool import (  # noqa: E402
    add_pool_group,
    create_role_mapping,
    delete_role_mapping,
    list_role_mappings,
    remove_pool_group,
    serialize_tip_pool,
    update_pattern_percentages,
    update_role_mapping,
    validate_tip_pool,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    ensure_default_policy(database.PolicySessionLocal)
    yield


app = FastAPI(title="Tip Pool API", version="0.1", lifespan=lifespan)


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _status_code_for(exc: TipEngineError) -> int:
    if isinstance(exc, RecordNotFoundError):
        return 404
    if isinstance(exc, (CalculationStateError, StaleResultError)):
        return 409
    if isinstance(exc, RoundingImbalanceError):
        return 500
    return 400


@app.exception_handler(TipEngineError)
async def tip_engine_error_handler(_: Request, exc: TipEngineError) -> JSONResponse:
    status_code = _status_code_for(exc)
    if status_code == 500:
        logger.error("Request failed: %s", exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(_: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def _parse_date(value: Any, label: str) -> datetime.date:
    if not value:
        raise HTTPException(status_code=400, detail=f"{label} is required")
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{label} must be YYYY-MM-DD")


def _actor(payload: Optional[Dict[str, Any]]) -> str:
    return ((payload or {}).get("actor") or "api").strip() or "api"


def _serialize_store(store) -> Dict[str, Any]:
    return {
        "id": store.id,
        "name": store.name,
        "abbreviation": store.abbreviation,
        "off_hours_before_minutes": store.off_hours_before_minutes,
        "off_hours_after_minutes": store.off_hours_after_minutes,
    }


def _serialize_mapping(mapping) -> Dict[str, Any]:
    return {
        "id": mapping.id,
        "role_name": mapping.role_name,
        "actual_role_name": mapping.actual_role_name,
        "trainee_role_name": mapping.trainee_role_name,
        "trainee_percentage": str(mapping.trainee_percentage) if mapping.trainee_percentage is not None else None,
    }


def _tip_pool_payload(db, store_id: int) -> Dict[str, Any]:
    return {
        "store_id": store_id,
        "patterns": serialize_tip_pool(db, store_id),
        "problems": validate_tip_pool(db, store_id),
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Store configuration


@app.get("/api/v1/stores")
def stores(db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"stores": [_serialize_store(store) for store in list_stores(db)]}))


@app.post("/api/v1/stores")
def create_store_endpoint(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    store = create_store(
        db,
        payload.get("name") or "",
        payload.get("abbreviation") or "",
        before_minutes=payload.get("off_hours_before_minutes"),
        after_minutes=payload.get("off_hours_after_minutes"),
    )
    return JSONResponse(status_code=201, content=jsonable_encoder(_serialize_store(store)))


@app.put("/api/v1/stores/{store_id}/settings")
def update_store_settings(store_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    store = update_store_window(
        db,
        store_id,
        payload.get("off_hours_before_minutes"),
        payload.get("off_hours_after_minutes"),
    )
    return JSONResponse(content=jsonable_encoder(_serialize_store(store)))


@app.get("/api/v1/stores/{store_id}/role-mappings")
def role_mappings(store_id: int, db=Depends(get_db)) -> JSONResponse:
    database.get_store(db, store_id)
    mappings = [_serialize_mapping(mapping) for mapping in list_role_mappings(db, store_id)]
    return JSONResponse(content=jsonable_encoder({"store_id": store_id, "role_mappings": mappings}))


@app.post("/api/v1/stores/{store_id}/role-mappings")
def create_role_mapping_endpoint(store_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    mapping = create_role_mapping(
        db,
        store_id,
        payload.get("role_name") or "",
        actual_role_name=payload.get("actual_role_name"),
        trainee_role_name=payload.get("trainee_role_name"),
        trainee_percentage=payload.get("trainee_percentage"),
    )
    return JSONResponse(status_code=201, content=jsonable_encoder(_serialize_mapping(mapping)))


@app.put("/api/v1/role-mappings/{mapping_id}")
def update_role_mapping_endpoint(mapping_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    fields = {
        key: payload[key]
        for key in ("role_name", "actual_role_name", "trainee_role_name", "trainee_percentage")
        if key in payload
    }
    mapping = update_role_mapping(db, mapping_id, fields)
    return JSONResponse(content=jsonable_encoder(_serialize_mapping(mapping)))


@app.delete("/api/v1/role-mappings/{mapping_id}")
def delete_role_mapping_endpoint(mapping_id: int, db=Depends(get_db)) -> JSONResponse:
    delete_role_mapping(db, mapping_id)
    return JSONResponse(content={"mapping_id": mapping_id, "deleted": True})


@app.get("/api/v1/stores/{store_id}/tip-pool")
def tip_pool(store_id: int, db=Depends(get_db)) -> JSONResponse:
    database.get_store(db, store_id)
    return JSONResponse(content=jsonable_encoder(_tip_pool_payload(db, store_id)))


@app.put("/api/v1/stores/{store_id}/tip-pool")
def update_tip_pool(store_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    patterns = payload.get("patterns")
    if not isinstance(patterns, dict) or not patterns:
        raise HTTPException(status_code=400, detail="patterns must map pattern masks to percentages")
    try:
        updates = {int(mask): values for mask, values in patterns.items()}
    except ValueError:
        raise HTTPException(status_code=400, detail="pattern masks must be integers")
    update_pattern_percentages(db, store_id, updates)
    return JSONResponse(content=jsonable_encoder(_tip_pool_payload(db, store_id)))


@app.post("/api/v1/stores/{store_id}/tip-pool/groups/{group}")
def add_tip_pool_group(store_id: int, group: str, db=Depends(get_db)) -> JSONResponse:
    add_pool_group(db, store_id, group)
    return JSONResponse(status_code=201, content=jsonable_encoder(_tip_pool_payload(db, store_id)))


@app.delete("/api/v1/stores/{store_id}/tip-pool/groups/{group}")
def remove_tip_pool_group(store_id: int, group: str, db=Depends(get_db)) -> JSONResponse:
    remove_pool_group(db, store_id, group)
    return JSONResponse(content=jsonable_encoder(_tip_pool_payload(db, store_id)))


# ---------------------------------------------------------------------------
# Calculation lifecycle


@app.post("/api/v1/stores/{store_id}/calculations")
def start_calculation_endpoint(store_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    calculation = start_calculation(
        db,
        store_id,
        _parse_date(payload.get("period_start"), "period_start"),
        _parse_date(payload.get("period_end"), "period_end"),
        actor=_actor(payload),
        replace=bool(payload.get("replace", False)),
    )
    return JSONResponse(status_code=201, content=jsonable_encoder(serialize_calculation(calculation)))


@app.delete("/api/v1/stores/{store_id}/calculations/processing")
def discard_calculation_endpoint(store_id: int, db=Depends(get_db)) -> JSONResponse:
    database.get_store(db, store_id)
    discarded = discard_calculation(db, store_id)
    return JSONResponse(content={"store_id": store_id, "discarded": discarded})


@app.post("/api/v1/stores/{store_id}/calculations/compute")
def compute_endpoint(store_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    result = compute(
        db,
        store_id,
        _parse_date(payload.get("period_start"), "period_start"),
        _parse_date(payload.get("period_end"), "period_end"),
        actor=_actor(payload),
    )
    return JSONResponse(content=jsonable_encoder(result))


@app.get("/api/v1/stores/{store_id}/calculations/status")
def calculation_status_endpoint(store_id: int, db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(calculation_status(db, store_id)))


@app.get("/api/v1/calculations/{calculation_id}/results")
def calculation_results(
    calculation_id: int,
    include_archived: bool = Query(False),
    db=Depends(get_db),
) -> JSONResponse:
    result_set = get_result_set(db, calculation_id, include_archived=include_archived)
    return JSONResponse(content=jsonable_encoder(result_set))


@app.get("/api/v1/calculations/{calculation_id}/employees")
def calculation_employees(calculation_id: int, db=Depends(get_db)) -> JSONResponse:
    employees = list_calculation_employees(db, calculation_id)
    return JSONResponse(content=jsonable_encoder({"calculation_id": calculation_id, "employees": employees}))


@app.put("/api/v1/calculations/{calculation_id}/employees/{employee_name}/tip-status")
def update_tip_status(
    calculation_id: int, employee_name: str, payload: Dict[str, Any], db=Depends(get_db)
) -> JSONResponse:
    if "is_tipped" not in payload:
        raise HTTPException(status_code=400, detail="is_tipped is required")
    row = set_employee_tip_status(
        db, calculation_id, employee_name, bool(payload["is_tipped"]), actor=_actor(payload)
    )
    return JSONResponse(
        content=jsonable_encoder(
            {"calculation_id": calculation_id, "employee_name": row.employee_name, "is_tipped": row.is_tipped}
        )
    )


# ---------------------------------------------------------------------------
# Completed results


@app.get("/api/v1/records")
def records(store_id: Optional[List[int]] = Query(None), db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"records": list_records(db, store_id)}))


@app.patch("/api/v1/results/{result_id}")
def edit_result_endpoint(result_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    row = edit_result(
        db,
        result_id,
        tips=payload.get("tips"),
        cash_tips=payload.get("cash_tips"),
        expected_version=payload.get("expected_version"),
        actor=_actor(payload),
    )
    return JSONResponse(content=jsonable_encoder(serialize_result(row)))


@app.post("/api/v1/results/{result_id}/archive")
def archive_result_endpoint(
    result_id: int, payload: Dict[str, Any] | None = None, db=Depends(get_db)
) -> JSONResponse:
    row = archive_result(
        db,
        result_id,
        expected_version=(payload or {}).get("expected_version"),
        actor=_actor(payload),
    )
    return JSONResponse(content=jsonable_encoder(serialize_result(row)))


@app.delete("/api/v1/results/{result_id}")
def delete_result_endpoint(
    result_id: int,
    expected_version: Optional[int] = Query(None),
    actor: str = Query("api"),
    db=Depends(get_db),
) -> JSONResponse:
    deleted = delete_result(db, result_id, expected_version=expected_version, actor=actor)
    return JSONResponse(content={"result_id": result_id, "deleted": deleted})


# ---------------------------------------------------------------------------
# Manual corrections


@app.put("/api/v1/tips/{tip_id}/payment-time")
def correct_payment_time(tip_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    if not payload.get("payment_time"):
        raise HTTPException(status_code=400, detail="payment_time is required")
    tip = correct_tip_payment_time(db, tip_id, payload["payment_time"], actor=_actor(payload))
    return JSONResponse(
        content=jsonable_encoder(
            {
                "id": tip.id,
                "order_date": tip.order_date.isoformat(),
                "payment_time": tip.payment_time.isoformat() if tip.payment_time else None,
                "original_payment_time": (
                    tip.original_payment_time.isoformat() if tip.original_payment_time else None
                ),
                "is_adjusted": tip.is_adjusted,
                "amount": str(tip.amount),
            }
        )
    )


@app.put("/api/v1/shifts/{shift_id}")
def edit_shift(shift_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    fields = {key: payload[key] for key in ("name", "date", "start", "end", "role") if key in payload}
    shift = upsert_shift_record(db, {"id": shift_id, **fields}, actor=_actor(payload))
    return JSONResponse(content=jsonable_encoder(_shift_to_dict(shift)))


# ---------------------------------------------------------------------------
# Policy


@app.get("/api/v1/policy/active")
def active_policy(db=Depends(get_db)) -> JSONResponse:
    policy = get_active_policy(db)
    if not policy:
        raise HTTPException(status_code=404, detail="No active policy found")
    payload = {
        "id": policy.id,
        "name": policy.name,
        "params": policy.params_dict(),
        "lastEditedBy": policy.lastEditedBy,
        "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
    }
    return JSONResponse(content=jsonable_encoder(payload))


@app.put("/api/v1/policy/active")
def set_active_policy(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    name = payload.get("name")
    params = payload.get("params") or {}
    actor = _actor(payload)
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    validate_policy(params)
    policy = upsert_policy(db, name=name, params_dict=params, edited_by=actor)
    database.record_audit_log(
        db, user_id=actor, action="POLICY_EDIT", target_type="Policy", target_id=policy.id, payload={"name": policy.name}
    )
    return JSONResponse(
        content=jsonable_encoder(
            {
                "id": policy.id,
                "name": policy.name,
                "params": policy.params_dict(),
                "lastEditedBy": policy.lastEditedBy,
                "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
            }
        )
    )
