from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.lending_models import TRACKING_STATUSES, UNIT_CONDITIONS, UNIT_STATUSES, Equipment
from services.errors import InfrastructureError, NotFound, StateConflict, ValidationFailed

LOGGER = logging.getLogger("equipment_lending.loans")


def get_unit(db: Session, equipment_id: int) -> Equipment | None:
    try:
        return db.execute(
            select(Equipment)
            .where(Equipment.EquipmentID == int(equipment_id))
            .execution_options(populate_existing=True)
        ).scalars().first()
    except SQLAlchemyError as exc:
        raise InfrastructureError("Equipment store unavailable.") from exc


def require_unit(db: Session, equipment_id: int) -> Equipment:
    unit = get_unit(db, equipment_id)
    if not unit or unit.IsRetired:
        raise NotFound(f"Equipment {equipment_id} not found.", code="unit_not_found")
    return unit


def transition_unit_status(
    db: Session,
    equipment_id: int,
    from_expected: str,
    to: str,
    *,
    condition: str | None = None,
) -> None:
    """Compare-and-set the unit status.

    Raises NotFound when the unit is absent and a retryable StateConflict when
    the stored status no longer equals ``from_expected``. Commits on success.
    """
    if to not in UNIT_STATUSES:
        raise ValidationFailed(f"Unknown equipment status {to}.")
    if condition is not None and condition not in UNIT_CONDITIONS:
        raise ValidationFailed(f"Unknown equipment condition {condition}.")

    values: dict = {"Status": to, "UpdatedDate": datetime.now()}
    if condition is not None:
        values["Condition"] = condition
    try:
        result = db.execute(
            update(Equipment)
            .where(Equipment.EquipmentID == equipment_id, Equipment.Status == from_expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            return
        db.rollback()
    except SQLAlchemyError as exc:
        db.rollback()
        raise InfrastructureError("Equipment store unavailable.") from exc

    current = get_unit(db, equipment_id)
    if not current:
        raise NotFound(f"Equipment {equipment_id} not found.", code="unit_not_found")
    LOGGER.info(
        "Unit CAS lost equipment_id=%s expected=%s actual=%s target=%s",
        equipment_id,
        from_expected,
        current.Status,
        to,
    )
    raise StateConflict(
        f"Equipment {equipment_id} is {current.Status}, expected {from_expected}.",
        code="unit_conflict",
        retryable=True,
    )


def transition_tracking_status(
    db: Session,
    equipment_id: int,
    from_expected: str | None,
    to: str,
    *,
    silent_before: datetime | None = None,
) -> bool:
    """Compare-and-set the IoT tracking status; returns False when the CAS lost.

    With ``silent_before`` the update also requires that the tracker has not
    reported since that instant, so a heartbeat landing after the caller's read
    wins over a timeout decision.
    """
    if to not in TRACKING_STATUSES:
        raise ValidationFailed(f"Unknown tracking status {to}.")
    stmt = update(Equipment).where(Equipment.EquipmentID == equipment_id)
    if from_expected is None:
        stmt = stmt.where(Equipment.TrackingStatus.is_(None))
    else:
        stmt = stmt.where(Equipment.TrackingStatus == from_expected)
    if silent_before is not None:
        stmt = stmt.where(or_(Equipment.LastSeenAt.is_(None), Equipment.LastSeenAt < silent_before))
    try:
        result = db.execute(
            stmt.values(TrackingStatus=to, UpdatedDate=datetime.now()).execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            return True
        db.rollback()
        return False
    except SQLAlchemyError as exc:
        db.rollback()
        raise InfrastructureError("Equipment store unavailable.") from exc
