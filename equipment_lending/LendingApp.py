import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

load_dotenv()

from db.deps import get_lending_db
from db.session import SessionLocalLending
from models.lending_models import Equipment, User
from schemas.equipment import (
    ClassroomCreateDto,
    ClassroomUpdateDto,
    ConfigUpdateDto,
    DeviceReportDto,
    EquipmentCreateDto,
    EquipmentStatusDto,
    EquipmentUpdateDto,
)
from schemas.loans import CheckinByPairRequest, CheckinRequest, DenyRequest, ReserveDto, SubmitLoanDto
from schemas.notifications import ContactAdminsDto, SendNotificationDto
from services import classroom_service, loan_service, notification_service
from services.asset_registry import require_unit
from services.audit_service import append_audit
from services.config_service import get_config, serialize_config, update_config
from services.equipment_service import (
    register_unit,
    retire_unit,
    serialize_unit,
    set_unit_status,
    update_unit_details,
)
from services.errors import InfrastructureError, LendingError, PolicyDenied, ScheduleConflict
from services.iot_service import gate_status, handle_device_report, live_view
from services.reconciler import ScheduledReconciler
from services.user_access_service import get_session, remove_session
from services.user_service import require_capability, require_user, serialize_user

LOGGER = logging.getLogger("equipment_lending.api")
AUTH_LOGGER = logging.getLogger("equipment_lending.auth")


def _env_flag(name: str, default: str = "false") -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


RECONCILER_ENABLED = _env_flag("RECONCILER_ENABLED")
OVERDUE_SWEEP_INTERVAL_SECONDS = float(os.environ.get("OVERDUE_SWEEP_INTERVAL_SECONDS") or "900")
PRESENCE_SWEEP_INTERVAL_SECONDS = float(os.environ.get("PRESENCE_SWEEP_INTERVAL_SECONDS") or "60")
IOT_API_KEY = (os.environ.get("IOT_API_KEY") or "").strip()


@asynccontextmanager
async def lifespan(app: FastAPI):
    reconciler = None
    if RECONCILER_ENABLED:
        reconciler = ScheduledReconciler(
            SessionLocalLending,
            overdue_interval=OVERDUE_SWEEP_INTERVAL_SECONDS,
            presence_interval=PRESENCE_SWEEP_INTERVAL_SECONDS,
        )
        reconciler.start()
    app.state.reconciler = reconciler
    try:
        yield
    finally:
        if reconciler is not None:
            reconciler.stop()


app = FastAPI(title="Equipment Lending API", lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
_APP_SESSION_SECRET = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
if len(_APP_SESSION_SECRET) >= 32:
    app.add_middleware(
        SessionMiddleware,
        secret_key=_APP_SESSION_SECRET,
        session_cookie="equipment_lending_session",
        same_site="lax",
        https_only=False,
    )


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    if isinstance(exc, InfrastructureError):
        LOGGER.error("Store failure path=%s detail=%s", request.url.path, exc.detail, exc_info=exc.__cause__)
    elif not isinstance(exc, (PolicyDenied, ScheduleConflict)):
        LOGGER.info("Request rejected path=%s code=%s", request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    LOGGER.error("Unhandled store error path=%s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=503, content={"detail": "Store unavailable.", "code": "store_unavailable"})


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_token = get_session(session_token)
    if session_from_token:
        request.session["user"] = dict(session_from_token)
        return dict(session_from_token)
    session_from_cookie = request.session.get("user")
    if session_token is None and isinstance(session_from_cookie, dict):
        return dict(session_from_cookie)
    return None


def _require_user_or_401(request: Request, db: Session, session_token: str | None) -> User:
    session = _get_active_session(request, session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    try:
        return require_user(db, int(session.get("userID") or 0))
    except LendingError:
        request.session.clear()
        raise HTTPException(status_code=401, detail="Session user no longer exists.")


def _audit_auth_event(db: Session, *, action: str, details: str, user_id: int | None = None) -> None:
    append_audit(db, entity_type="Auth", entity_id=int(user_id or 0), action=action, details=details, user_id=user_id)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lending_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail="db_unavailable") from exc


# ---- auth ----

@app.get("/api/auth/me")
def auth_me(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    return {"user": serialize_user(user)}


@app.post("/api/auth/logout")
def auth_logout(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _get_active_session(request, x_session_token)
    request.session.clear()
    remove_session(x_session_token)
    if session:
        _audit_auth_event(db, action="LOGOUT", details="Session closed", user_id=int(session.get("userID") or 0))
        AUTH_LOGGER.info("Logout user_id=%s", session.get("userID"))
    return {"ok": True}


# ---- equipment ----

@app.get("/api/equipment")
def list_equipment(
    request: Request,
    status: str | None = Query(None),
    category: str | None = Query(None),
    include_retired: bool = Query(False, alias="includeRetired"),
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_user_or_401(request, db, x_session_token)
    stmt = select(Equipment)
    if not include_retired:
        stmt = stmt.where(Equipment.IsRetired.is_(False))
    if status:
        stmt = stmt.where(Equipment.Status == status)
    if category:
        stmt = stmt.where(func.lower(Equipment.Category) == category.strip().lower())
    units = db.execute(stmt.order_by(Equipment.Name, Equipment.EquipmentID)).scalars().all()
    return [serialize_unit(unit) for unit in units]


@app.get("/api/equipment/{equipment_id}")
def get_equipment(
    request: Request,
    equipment_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_user_or_401(request, db, x_session_token)
    return serialize_unit(require_unit(db, equipment_id))


@app.post("/api/equipment", status_code=201)
def create_equipment(
    request: Request,
    payload: EquipmentCreateDto,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "manage_equipment")
    unit = register_unit(db, payload, added_by=user.UserID)
    append_audit(
        db,
        entity_type="Equipment",
        entity_id=unit.EquipmentID,
        action="EQUIPMENT_REGISTERED",
        details=f"{unit.SerialNumber} {unit.Name}",
        user_id=user.UserID,
    )
    return serialize_unit(unit)


@app.put("/api/equipment/{equipment_id}")
def update_equipment(
    request: Request,
    equipment_id: int,
    payload: EquipmentUpdateDto,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "manage_equipment")
    return serialize_unit(update_unit_details(db, equipment_id, payload))


@app.post("/api/equipment/{equipment_id}/status")
def change_equipment_status(
    request: Request,
    equipment_id: int,
    payload: EquipmentStatusDto,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "manage_equipment")
    unit = set_unit_status(db, equipment_id, payload.status, payload.condition)
    append_audit(
        db,
        entity_type="Equipment",
        entity_id=equipment_id,
        action="EQUIPMENT_STATUS",
        details=f"Status set to {unit.Status}",
        user_id=user.UserID,
    )
    return serialize_unit(unit)


@app.delete("/api/equipment/{equipment_id}")
def delete_equipment(
    request: Request,
    equipment_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "manage_equipment")
    unit = retire_unit(db, equipment_id)
    append_audit(
        db,
        entity_type="Equipment",
        entity_id=equipment_id,
        action="EQUIPMENT_RETIRED",
        details=unit.SerialNumber,
        user_id=user.UserID,
    )
    return {"ok": True, "equipmentID": equipment_id}


# ---- transactions ----

@app.post("/api/transactions", status_code=201)
def submit_loan(
    request: Request,
    payload: SubmitLoanDto,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    record = loan_service.submit_loan(
        db,
        user,
        equipment_id=payload.equipmentID,
        expected_return_time=payload.expectedReturnTime,
        destination=payload.destination,
        purpose=payload.purpose,
        target_user_id=payload.userID,
    )
    return loan_service.serialize_transaction(record)


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    status: str | None = Query(None),
    user_id: int | None = Query(None, alias="userID"),
    equipment_id: int | None = Query(None, alias="equipmentID"),
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "approve")
    statuses = [item.strip() for item in status.split(",") if item.strip()] if status else None
    rows = loan_service.list_transactions(db, user_id=user_id, equipment_id=equipment_id, statuses=statuses)
    return [loan_service.serialize_transaction(row) for row in rows]


@app.get("/api/transactions/my")
def my_transactions(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    rows = loan_service.list_transactions(db, user_id=user.UserID)
    return [loan_service.serialize_transaction(row) for row in rows]


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    request: Request,
    transaction_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    return loan_service.serialize_transaction(loan_service.get_visible_transaction(db, user, transaction_id))


@app.post("/api/transactions/{transaction_id}/approve")
def approve_transaction(
    request: Request,
    transaction_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    return loan_service.serialize_transaction(loan_service.approve(db, user, transaction_id))


@app.post("/api/transactions/{transaction_id}/deny")
def deny_transaction(
    request: Request,
    transaction_id: int,
    payload: DenyRequest | None = None,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    reason = payload.reason if payload else None
    return loan_service.serialize_transaction(loan_service.deny(db, user, transaction_id, reason))


@app.post("/api/transactions/{transaction_id}/request-return")
def request_return(
    request: Request,
    transaction_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    return loan_service.serialize_transaction(loan_service.request_return(db, user, transaction_id))


def _checkin_response(result: dict) -> dict:
    return {
        "late": result["late"],
        "daysLate": result["daysLate"],
        "previousScore": result["previousScore"],
        "newScore": result["newScore"],
        "transaction": loan_service.serialize_transaction(result["transaction"]),
    }


@app.post("/api/transactions/{transaction_id}/checkin")
def checkin_transaction(
    request: Request,
    transaction_id: int,
    payload: CheckinRequest | None = None,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    result = loan_service.checkin(
        db,
        user,
        transaction_id=transaction_id,
        condition=payload.condition if payload else None,
    )
    return _checkin_response(result)


@app.post("/api/transactions/checkin")
def checkin_by_pair(
    request: Request,
    payload: CheckinByPairRequest,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    result = loan_service.checkin(
        db,
        user,
        user_id=payload.userID,
        equipment_id=payload.equipmentID,
        condition=payload.condition,
    )
    return _checkin_response(result)


@app.post("/api/transactions/{transaction_id}/cancel")
def cancel_transaction(
    request: Request,
    transaction_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    return loan_service.serialize_transaction(loan_service.cancel(db, user, transaction_id))


@app.post("/api/transactions/{transaction_id}/pickup")
def pickup_reservation(
    request: Request,
    transaction_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    return loan_service.serialize_transaction(loan_service.pickup(db, user, transaction_id))


@app.post("/api/reservations", status_code=201)
def create_reservation(
    request: Request,
    payload: ReserveDto,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    record = loan_service.reserve(
        db,
        user,
        equipment_id=payload.equipmentID,
        start_time=payload.startTime,
        end_time=payload.endTime,
        destination=payload.destination,
        purpose=payload.purpose,
    )
    return loan_service.serialize_transaction(record)


# ---- classrooms ----

@app.get("/api/classrooms")
def list_classrooms(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_user_or_401(request, db, x_session_token)
    return [classroom_service.serialize_classroom(room) for room in classroom_service.list_classrooms(db)]


@app.post("/api/classrooms", status_code=201)
def create_classroom(
    request: Request,
    payload: ClassroomCreateDto,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "manage_equipment")
    room = classroom_service.create_classroom(db, payload.name, payload.hasScreen)
    return classroom_service.serialize_classroom(room)


@app.put("/api/classrooms/{classroom_id}")
def update_classroom(
    request: Request,
    classroom_id: int,
    payload: ClassroomUpdateDto,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "manage_equipment")
    room = classroom_service.update_classroom(db, classroom_id, name=payload.name, has_screen=payload.hasScreen)
    append_audit(
        db,
        entity_type="Classroom",
        entity_id=room.ClassroomID,
        action="CLASSROOM_UPDATED",
        details=f"{room.Name} hasScreen={bool(room.HasScreen)}",
        user_id=user.UserID,
    )
    return classroom_service.serialize_classroom(room)


@app.delete("/api/classrooms/{classroom_id}")
def delete_classroom(
    request: Request,
    classroom_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "manage_equipment")
    classroom_service.delete_classroom(db, classroom_id)
    append_audit(
        db,
        entity_type="Classroom",
        entity_id=classroom_id,
        action="CLASSROOM_DELETED",
        details=f"Classroom {classroom_id} removed",
        user_id=user.UserID,
    )
    return {"ok": True, "classroomID": classroom_id}


# ---- IoT, monitoring, gate ----

@app.post("/api/iot/update")
def iot_update(
    payload: DeviceReportDto,
    db: Session = Depends(get_lending_db),
    x_api_key: str | None = Header(None, alias="X-Api-Key"),
):
    if not IOT_API_KEY or (x_api_key or "").strip() != IOT_API_KEY:
        raise HTTPException(status_code=401, detail="Unauthorized device.")
    unit = handle_device_report(db, payload)
    return {"message": "Status updated", "equipmentID": unit.EquipmentID, "trackingStatus": unit.TrackingStatus}


@app.get("/api/monitoring/live")
def monitoring_live(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "receive_alerts")
    return live_view(db)


@app.get("/api/gate/check-status/{student_number}")
def gate_check(
    request: Request,
    student_number: str,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "gate_check")
    return gate_status(db, student_number)


# ---- notifications ----

@app.get("/api/notifications")
def my_notifications(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    return [notification_service.serialize_notification(item) for item in notification_service.list_for_user(db, user.UserID)]


@app.get("/api/notifications/pending")
def pending_notifications(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "approve")
    return [notification_service.serialize_notification(item) for item in notification_service.list_pending(db)]


@app.post("/api/notifications/{notification_id}/read")
def read_notification(
    request: Request,
    notification_id: int,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    notification_service.mark_read(db, user.UserID, notification_id)
    return {"ok": True}


@app.post("/api/notifications/mark-all-read")
def read_all_notifications(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    return {"ok": True, "updated": notification_service.mark_all_read(db, user.UserID)}


@app.post("/api/notifications/send-to-user")
def send_notification_to_user(
    request: Request,
    payload: SendNotificationDto,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "send_notifications")
    notification_service.send_to_user(db, user, payload.userID, payload.title, payload.message, payload.type)
    return {"message": "Notification sent successfully"}


@app.post("/api/notifications/contact-admins")
def contact_admins(
    request: Request,
    payload: ContactAdminsDto,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    delivered = notification_service.contact_admins(db, user, payload.subject, payload.message)
    return {"message": "Admins have been notified.", "recipients": delivered}


# ---- configuration ----

@app.get("/api/config")
def read_config(
    request: Request,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "manage_config")
    return serialize_config(get_config(db))


@app.put("/api/config")
def write_config(
    request: Request,
    payload: ConfigUpdateDto,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_user_or_401(request, db, x_session_token)
    require_capability(user, "manage_config")
    config = update_config(db, payload.model_dump(exclude_none=True))
    append_audit(
        db,
        entity_type="Config",
        entity_id=0,
        action="CONFIG_UPDATED",
        details=", ".join(sorted(payload.model_dump(exclude_none=True))),
        user_id=user.UserID,
    )
    return serialize_config(config)
