from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.lending_models import TRACKING_STATUSES, Equipment, LoanTransaction
from services import notification_service
from services.audit_service import append_audit
from services.config_service import get_config
from services.errors import InfrastructureError, NotFound, ValidationFailed
from services.loan_store import IN_POSSESSION_STATUSES
from services.user_service import find_by_student_number

LOGGER = logging.getLogger("equipment_lending.iot")

LOW_BATTERY_THRESHOLD = 20
NEVER_SEEN = datetime(1970, 1, 1)


def normalize_tracking_status(raw: str | None) -> str:
    value = (raw or "").strip()
    for known in TRACKING_STATUSES:
        if value.lower() == known.lower():
            return known
    raise ValidationFailed(f"Unknown tracking status {raw}.")


def handle_device_report(db: Session, payload, now: datetime | None = None) -> Equipment:
    """Apply one tracker heartbeat. A transition into Lost raises an alert."""
    now = now or datetime.now()
    tag = (payload.tag or "").strip()
    if not tag:
        raise ValidationFailed("tag is required.")
    reported = normalize_tracking_status(payload.status)

    unit = db.execute(
        select(Equipment).where(Equipment.TrackingTag == tag).execution_options(populate_existing=True)
    ).scalars().first()
    if not unit:
        LOGGER.warning("Report for unknown tag tag=%s", tag)
        raise NotFound("Tag not registered.", code="tag_not_found")

    previous = unit.TrackingStatus
    unit.LastSeenAt = now
    unit.TrackingStatus = reported
    if payload.battery is not None:
        unit.BatteryLevel = max(0, min(100, int(payload.battery)))
    if payload.location:
        unit.Location = payload.location
    if payload.lat is not None and payload.lng is not None:
        unit.Latitude = float(payload.lat)
        unit.Longitude = float(payload.lng)
    unit.UpdatedDate = now
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise InfrastructureError("Equipment store unavailable.") from exc

    if previous != reported:
        LOGGER.info("Tracking status changed equipment_id=%s %s->%s", unit.EquipmentID, previous, reported)
    if reported == "Lost" and previous != "Lost":
        where = payload.location or unit.Location or "unknown location"
        LOGGER.error("Tracker reports unit lost equipment_id=%s tag=%s location=%s", unit.EquipmentID, tag, where)
        append_audit(
            db,
            entity_type="Equipment",
            entity_id=unit.EquipmentID,
            action="IOT_ALERT_LOST",
            details=f"Sensor reported {unit.Name} ({tag}) removed from {where}.",
        )
        notification_service.notify_capability(
            db,
            "receive_alerts",
            "Security alert: equipment removed",
            f"{unit.Name} has moved out of the authorized zone ({where}).",
            "error",
            unit.EquipmentID,
        )
    return unit


def live_view(db: Session, now: datetime | None = None) -> dict:
    now = now or datetime.now()
    timeout = timedelta(minutes=get_config(db).presence_timeout_minutes)
    trackers = db.execute(
        select(Equipment)
        .where(Equipment.TrackingTag.is_not(None))
        .where(Equipment.IsRetired.is_(False))
        .order_by(Equipment.EquipmentID)
    ).scalars().all()

    stats = {"total": len(trackers), "online": 0, "offline": 0, "lowBattery": 0}
    rows = []
    for unit in trackers:
        online = now - (unit.LastSeenAt or NEVER_SEEN) < timeout
        stats["online" if online else "offline"] += 1
        battery = unit.BatteryLevel or 0
        if battery < LOW_BATTERY_THRESHOLD:
            stats["lowBattery"] += 1
        rows.append(
            {
                "id": unit.TrackingTag,
                "equipmentID": unit.EquipmentID,
                "equipment": unit.Name,
                "status": "online" if online else "offline",
                "trackingStatus": unit.TrackingStatus,
                "battery": battery,
                "location": unit.Location or "Unknown",
                "geoCoordinates": {"lat": unit.Latitude, "lng": unit.Longitude}
                if unit.Latitude is not None and unit.Longitude is not None
                else None,
                "lastSeen": unit.LastSeenAt,
            }
        )
    return {"stats": stats, "trackers": rows}


def gate_status(db: Session, student_number: str) -> dict:
    user = find_by_student_number(db, student_number)
    if not user:
        raise NotFound("Student not found.", code="student_not_found")
    held = db.execute(
        select(Equipment.Name)
        .join(LoanTransaction, LoanTransaction.EquipmentID == Equipment.EquipmentID)
        .where(LoanTransaction.UserID == user.UserID)
        .where(LoanTransaction.Status.in_(IN_POSSESSION_STATUSES))
        .order_by(LoanTransaction.TransactionID)
    ).scalars().all()
    if held:
        return {
            "allowed": False,
            "status": "RED",
            "student": user.FullName,
            "message": f"Holding {len(held)} item(s).",
            "items": list(held),
        }
    return {"allowed": True, "status": "GREEN", "student": user.FullName, "message": "Clear to exit.", "items": []}
