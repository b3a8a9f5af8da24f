import logging
import os

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

load_dotenv()

from db.base import Base
from db.deps import get_lending_db
from db.session import engine_lending
from schemas.equipment import EquipmentCreate, EquipmentUpdate
from schemas.requests import ApproveDto, CreateRequestDto, UpdateRequestDto
from services.errors import (
    BusinessRuleError,
    ConcurrentModification,
    Forbidden,
    LendingError,
    NotFound,
    StorageFailure,
)
from services.inventory_service import (
    create_equipment,
    get_active_equipment,
    get_availability,
    list_equipment,
    serialize_equipment,
    soft_delete_equipment,
    update_equipment,
)
from services.request_workflow import (
    TransitionFields,
    cancel_request,
    create_request,
    decide_request,
    get_request,
    list_pending_requests,
    list_requests,
    mark_overdue_requests,
    return_request,
    serialize_request,
    transition_request,
)
from services.session_service import Caller, caller_from_session, get_session

AUTH_LOGGER = logging.getLogger("equipment_lending.auth")
APP_LOGGER = logging.getLogger("equipment_lending.app")

app = FastAPI(title="Equipment Lending")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)
app.add_middleware(
    SessionMiddleware,
    secret_key=(os.environ.get("SESSION_SIGNING_SECRET") or "").strip(),
    session_cookie="equipment_lending_session",
    same_site="lax",
    https_only=False,
)

if _env_flag("LENDING_CREATE_SCHEMA", "true"):
    Base.metadata.create_all(bind=engine_lending)

_ERROR_STATUS = (
    (NotFound, 404),
    (Forbidden, 403),
    (ConcurrentModification, 409),
    (StorageFailure, 503),
    (BusinessRuleError, 400),
)


@app.exception_handler(LendingError)
async def handle_lending_error(request: Request, exc: LendingError):
    status_code = next((status for error_type, status in _ERROR_STATUS if isinstance(exc, error_type)), 500)
    if status_code >= 500:
        APP_LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"success": False, **exc.as_dict()})


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    if session_token:
        session_from_token = get_session(session_token)
        if session_from_token:
            # The cookie keeps the signed token, so expiry is re-checked on every call.
            request.session["token"] = session_token
            return session_from_token
    cookie_token = request.session.get("token")
    if isinstance(cookie_token, str):
        return get_session(cookie_token)
    return None


def get_caller(
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
) -> Caller:
    caller = caller_from_session(_get_active_session(request, x_session_token))
    if caller is None:
        AUTH_LOGGER.info("Rejected unauthenticated call to %s", request.url.path)
        raise HTTPException(status_code=401, detail="Not logged in.")
    return caller


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lending_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/auth/me")
def auth_me(caller: Caller = Depends(get_caller)):
    return {"user": {"userID": caller.user_id, "role": caller.role, "isPrivileged": caller.is_privileged}}


@app.get("/api/equipment")
def get_equipment_list(db: Session = Depends(get_lending_db), caller: Caller = Depends(get_caller)):
    return [serialize_equipment(equipment) for equipment in list_equipment(db)]


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: str, db: Session = Depends(get_lending_db), caller: Caller = Depends(get_caller)):
    return serialize_equipment(get_active_equipment(db, equipment_id))


@app.get("/api/equipment/{equipment_id}/availability")
def get_equipment_availability(
    equipment_id: str,
    db: Session = Depends(get_lending_db),
    caller: Caller = Depends(get_caller),
):
    return get_availability(db, equipment_id)


@app.post("/api/equipment")
def add_equipment(payload: EquipmentCreate, db: Session = Depends(get_lending_db), caller: Caller = Depends(get_caller)):
    equipment = create_equipment(
        db,
        caller,
        name=payload.name,
        category=payload.category,
        quantity=payload.quantity,
        available_quantity=payload.availableQuantity,
        condition=payload.condition,
        description=payload.description,
    )
    return serialize_equipment(equipment)


@app.put("/api/equipment/{equipment_id}")
def edit_equipment(
    equipment_id: str,
    payload: EquipmentUpdate,
    db: Session = Depends(get_lending_db),
    caller: Caller = Depends(get_caller),
):
    fields = {_map_equipment_field(field): value for field, value in payload.model_dump(exclude_unset=True).items()}
    return serialize_equipment(update_equipment(db, caller, equipment_id, fields))


@app.delete("/api/equipment/{equipment_id}")
def delete_equipment(equipment_id: str, db: Session = Depends(get_lending_db), caller: Caller = Depends(get_caller)):
    equipment = soft_delete_equipment(db, caller, equipment_id)
    return {"message": f"Equipment '{equipment.Name}' deleted successfully."}


@app.get("/api/requests")
def get_requests(
    status: str | None = Query(None),
    db: Session = Depends(get_lending_db),
    caller: Caller = Depends(get_caller),
):
    return [serialize_request(request) for request in list_requests(db, caller, status)]


@app.get("/api/requests/pending")
def get_pending_requests(db: Session = Depends(get_lending_db), caller: Caller = Depends(get_caller)):
    return [serialize_request(request) for request in list_pending_requests(db, caller)]


@app.post("/api/requests/overdue/run")
def run_overdue_sweep(db: Session = Depends(get_lending_db), caller: Caller = Depends(get_caller)):
    updated = mark_overdue_requests(db, caller)
    return {"markedOverdue": len(updated), "requestIDs": [request.Id for request in updated]}


@app.get("/api/requests/{request_id}")
def get_request_item(request_id: str, db: Session = Depends(get_lending_db), caller: Caller = Depends(get_caller)):
    return serialize_request(get_request(db, caller, request_id))


@app.post("/api/requests")
def borrow(payload: CreateRequestDto, db: Session = Depends(get_lending_db), caller: Caller = Depends(get_caller)):
    request = create_request(db, caller, payload.equipmentID, payload.quantity, payload.notes)
    return serialize_request(request)


@app.put("/api/requests/{request_id}/approve")
def approve(
    request_id: str,
    payload: ApproveDto,
    db: Session = Depends(get_lending_db),
    caller: Caller = Depends(get_caller),
):
    request = decide_request(
        db,
        caller,
        request_id,
        payload.approve,
        due_date=payload.dueDate,
        admin_notes=payload.adminNotes,
    )
    message = "Request approved successfully" if payload.approve else "Request rejected successfully"
    return {"message": message, "request": serialize_request(request)}


@app.put("/api/requests/{request_id}/return")
def mark_returned(request_id: str, db: Session = Depends(get_lending_db), caller: Caller = Depends(get_caller)):
    return {"message": "Equipment returned successfully", "request": serialize_request(return_request(db, caller, request_id))}


@app.put("/api/requests/{request_id}/cancel")
def mark_cancelled(request_id: str, db: Session = Depends(get_lending_db), caller: Caller = Depends(get_caller)):
    return {"message": "Request cancelled", "request": serialize_request(cancel_request(db, caller, request_id))}


@app.put("/api/requests/{request_id}")
def update_request(
    request_id: str,
    payload: UpdateRequestDto,
    db: Session = Depends(get_lending_db),
    caller: Caller = Depends(get_caller),
):
    fields = TransitionFields(
        approved_at=payload.approvedAt,
        due_date=payload.dueDate,
        issued_at=payload.issuedAt,
        returned_at=payload.returnedAt,
        admin_notes=payload.adminNotes,
    )
    return serialize_request(transition_request(db, caller, request_id, payload.status, fields))


def _map_equipment_field(field: str) -> str:
    mapping = {
        "name": "Name",
        "category": "Category",
        "condition": "Condition",
        "description": "Description",
        "quantity": "Quantity",
    }
    return mapping.get(field, field)
