from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.lending_models import Classroom
from services.errors import InfrastructureError, NotFound, ValidationFailed

LOGGER = logging.getLogger("equipment_lending.api")


def serialize_classroom(room: Classroom) -> dict:
    return {"classroomID": room.ClassroomID, "name": room.Name, "hasScreen": bool(room.HasScreen)}


def list_classrooms(db: Session) -> list[Classroom]:
    return list(db.execute(select(Classroom).order_by(Classroom.Name)).scalars().all())


def require_classroom(db: Session, classroom_id: int) -> Classroom:
    room = db.get(Classroom, int(classroom_id))
    if not room:
        raise NotFound(f"Classroom {classroom_id} not found.", code="classroom_not_found")
    return room


def _clean_name(raw: str | None) -> str:
    name = (raw or "").strip()
    if not name:
        raise ValidationFailed("name is required.")
    return name


def _name_taken(db: Session, name: str, classroom_id: int | None = None) -> bool:
    stmt = select(Classroom.ClassroomID).where(func.lower(Classroom.Name) == name.lower())
    if classroom_id is not None:
        stmt = stmt.where(Classroom.ClassroomID != classroom_id)
    return db.execute(stmt).first() is not None


def _commit(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationFailed("Classroom already exists.", code="duplicate_classroom") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise InfrastructureError("Classroom store unavailable.") from exc


def create_classroom(db: Session, name: str, has_screen: bool = False) -> Classroom:
    name = _clean_name(name)
    if _name_taken(db, name):
        raise ValidationFailed("Classroom already exists.", code="duplicate_classroom")
    room = Classroom(Name=name, HasScreen=bool(has_screen))
    db.add(room)
    _commit(db)
    db.refresh(room)
    return room


def update_classroom(db: Session, classroom_id: int, *, name: str | None = None, has_screen: bool | None = None) -> Classroom:
    """Rename a room or correct its screen flag; the projector policy reads the flag on every request."""
    room = require_classroom(db, classroom_id)
    if name is not None:
        cleaned = _clean_name(name)
        if _name_taken(db, cleaned, room.ClassroomID):
            raise ValidationFailed("Classroom already exists.", code="duplicate_classroom")
        room.Name = cleaned
    if has_screen is not None:
        room.HasScreen = bool(has_screen)
    _commit(db)
    db.refresh(room)
    LOGGER.info("Classroom updated classroom_id=%s has_screen=%s", room.ClassroomID, room.HasScreen)
    return room


def delete_classroom(db: Session, classroom_id: int) -> None:
    room = require_classroom(db, classroom_id)
    db.delete(room)
    _commit(db)
    LOGGER.info("Classroom deleted classroom_id=%s", classroom_id)
