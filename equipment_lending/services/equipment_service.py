from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.lending_models import UNIT_CATEGORIES, UNIT_CONDITIONS, Equipment, LoanTransaction
from services.asset_registry import require_unit, transition_unit_status
from services.errors import StateConflict, ValidationFailed
from services.loan_store import OPEN_STATUSES

# Statuses staff may set by hand; CheckedOut only ever comes from the loan flow.
MANUAL_UNIT_STATUSES = {"Available", "Maintenance", "Damaged", "Lost"}


def _parse_seq(serial_number: str) -> Optional[int]:
    parts = serial_number.split("-")
    if len(parts) != 2:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def generate_next_serial_number(db: Session) -> str:
    year = date.today().year
    prefix = f"EQ{year}-"

    existing = db.execute(select(Equipment.SerialNumber).where(Equipment.SerialNumber.startswith(prefix))).scalars().all()

    max_seq = 0
    for serial in existing:
        if not serial:
            continue
        seq = _parse_seq(serial)
        if seq and seq > max_seq:
            max_seq = seq

    next_seq = max_seq + 1
    return f"{prefix}{next_seq:04d}"


def _normalize_category(raw: str | None) -> str:
    value = (raw or "").strip()
    for known in UNIT_CATEGORIES:
        if value.lower() == known.lower():
            return known
    raise ValidationFailed(f"Unknown equipment category {raw}.")


def normalize_condition(raw: str | None) -> str:
    value = (raw or "Good").strip()
    for known in UNIT_CONDITIONS:
        if value.lower() == known.lower():
            return known
    raise ValidationFailed(f"Unknown equipment condition {raw}.")


def register_unit(db: Session, payload, added_by: int | None) -> Equipment:
    name = (payload.name or "").strip()
    if not name:
        raise ValidationFailed("name is required.")
    now = datetime.now()
    unit = Equipment(
        SerialNumber=(payload.serialNumber or "").strip() or generate_next_serial_number(db),
        Name=name,
        Category=_normalize_category(payload.category),
        Description=payload.description or "",
        Brand=payload.brand or "",
        Model=payload.model or "",
        Status="Available",
        Condition=normalize_condition(payload.condition),
        Location=payload.location or "Main Storage",
        TrackingTag=(payload.trackingTag or "").strip() or None,
        TrackingStatus="Unknown",
        BatteryLevel=100,
        IsRetired=False,
        AddedBy=added_by,
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(unit)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationFailed("Serial number or tracking tag already registered.", code="duplicate_unit") from exc
    db.refresh(unit)
    return unit


def update_unit_details(db: Session, equipment_id: int, payload) -> Equipment:
    unit = require_unit(db, equipment_id)
    if payload.name is not None:
        unit.Name = payload.name.strip() or unit.Name
    if payload.category is not None:
        unit.Category = _normalize_category(payload.category)
    if payload.description is not None:
        unit.Description = payload.description
    if payload.brand is not None:
        unit.Brand = payload.brand
    if payload.model is not None:
        unit.Model = payload.model
    if payload.location is not None:
        unit.Location = payload.location
    if payload.trackingTag is not None:
        unit.TrackingTag = payload.trackingTag.strip() or None
    unit.UpdatedDate = datetime.now()
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationFailed("Tracking tag already registered.", code="duplicate_unit") from exc
    return unit


def has_open_loan(db: Session, equipment_id: int) -> bool:
    row = db.execute(
        select(LoanTransaction.TransactionID)
        .where(LoanTransaction.EquipmentID == equipment_id)
        .where(LoanTransaction.ReturnTime.is_(None))
        .where(LoanTransaction.Status.in_(OPEN_STATUSES))
    ).first()
    return row is not None


def set_unit_status(db: Session, equipment_id: int, target: str, condition: str | None = None) -> Equipment:
    if target not in MANUAL_UNIT_STATUSES:
        raise ValidationFailed(f"Status must be one of {', '.join(sorted(MANUAL_UNIT_STATUSES))}.")
    unit = require_unit(db, equipment_id)
    if unit.Status == "CheckedOut" or has_open_loan(db, equipment_id):
        raise StateConflict("Unit is on loan; check it in first.", code="unit_on_loan")
    normalized_condition = normalize_condition(condition) if condition else None
    transition_unit_status(db, equipment_id, unit.Status, target, condition=normalized_condition)
    return require_unit(db, equipment_id)


def retire_unit(db: Session, equipment_id: int) -> Equipment:
    unit = require_unit(db, equipment_id)
    if has_open_loan(db, equipment_id):
        raise StateConflict("Unit is referenced by an open loan.", code="unit_on_loan")
    unit.IsRetired = True
    unit.UpdatedDate = datetime.now()
    db.commit()
    return unit


def serialize_unit(unit: Equipment) -> dict:
    return {
        "equipmentID": unit.EquipmentID,
        "serialNumber": unit.SerialNumber,
        "name": unit.Name,
        "category": unit.Category,
        "description": unit.Description,
        "brand": unit.Brand,
        "model": unit.Model,
        "status": unit.Status,
        "condition": unit.Condition,
        "location": unit.Location,
        "geoCoordinates": {"lat": unit.Latitude, "lng": unit.Longitude}
        if unit.Latitude is not None and unit.Longitude is not None
        else None,
        "trackingTag": unit.TrackingTag,
        "trackingStatus": unit.TrackingStatus,
        "lastSeenAt": unit.LastSeenAt,
        "batteryLevel": unit.BatteryLevel,
        "isRetired": bool(unit.IsRetired),
        "createdDate": unit.CreatedDate,
        "updatedDate": unit.UpdatedDate,
    }
