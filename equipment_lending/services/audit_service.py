from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.lending_models import AuditLog

AUDIT_LOGGER = logging.getLogger("equipment_lending.audit")


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    details: str | None = None,
    user_id: int | None = None,
) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def append_audit(
    db: Session,
    *,
    entity_type: str,
    entity_id: int,
    action: str,
    details: str | None = None,
    user_id: int | None = None,
) -> None:
    """Write one audit entry in its own commit; failures are logged and dropped."""
    try:
        log_audit(db, entity_type, int(entity_id or 0), action, details, user_id=user_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        AUDIT_LOGGER.warning("Audit append failed action=%s entity=%s:%s", action, entity_type, entity_id, exc_info=True)
