from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.lending_models import Notification, User
from services.errors import InfrastructureError, NotFound, ValidationFailed
from services.user_service import list_users_with_capability, require_user

LOGGER = logging.getLogger("equipment_lending.notify")

SEVERITIES = ("info", "success", "warning", "error")


def send(
    db: Session,
    user_id: int,
    title: str,
    message: str,
    severity: str = "info",
    related_id: int | str | None = None,
) -> bool:
    """Queue a notification for one user. Never raises; returns False on failure."""
    try:
        db.add(
            Notification(
                RecipientID=user_id,
                Title=title,
                Message=message,
                Severity=severity if severity in SEVERITIES else "info",
                RelatedID=str(related_id) if related_id is not None else None,
                IsRead=False,
                CreatedAt=datetime.now(),
            )
        )
        db.commit()
        return True
    except SQLAlchemyError:
        db.rollback()
        LOGGER.warning("Notification dropped user_id=%s title=%s", user_id, title, exc_info=True)
        return False


def notify_capability(
    db: Session,
    capability: str,
    title: str,
    message: str,
    severity: str = "info",
    related_id: int | str | None = None,
) -> int:
    try:
        recipients = list_users_with_capability(db, capability)
    except SQLAlchemyError:
        db.rollback()
        LOGGER.warning("Notification broadcast skipped capability=%s", capability, exc_info=True)
        return 0
    sent = 0
    for user in recipients:
        if send(db, user.UserID, title, message, severity, related_id):
            sent += 1
    return sent


def list_for_user(db: Session, user_id: int, limit: int = 50) -> list[Notification]:
    return list(
        db.execute(
            select(Notification)
            .where(Notification.RecipientID == user_id)
            .order_by(Notification.CreatedAt.desc(), Notification.NotificationID.desc())
            .limit(limit)
        ).scalars().all()
    )


def list_pending(db: Session, limit: int = 200) -> list[Notification]:
    return list(
        db.execute(
            select(Notification)
            .where(Notification.SentAt.is_(None))
            .order_by(Notification.NotificationID)
            .limit(limit)
        ).scalars().all()
    )


def mark_read(db: Session, user_id: int, notification_id: int) -> None:
    result = db.execute(
        update(Notification)
        .where(Notification.NotificationID == notification_id, Notification.RecipientID == user_id)
        .values(IsRead=True)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise NotFound(f"Notification {notification_id} not found.", code="notification_not_found")
    db.commit()


def mark_all_read(db: Session, user_id: int) -> int:
    result = db.execute(
        update(Notification)
        .where(Notification.RecipientID == user_id, Notification.IsRead.is_(False))
        .values(IsRead=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(result.rowcount or 0)


def _require_text(**fields: str | None) -> dict[str, str]:
    cleaned = {name: (value or "").strip() for name, value in fields.items()}
    missing = [name for name, value in cleaned.items() if not value]
    if missing:
        raise ValidationFailed(f"Missing required fields ({', '.join(missing)}).")
    return cleaned


def send_to_user(
    db: Session,
    sender: User,
    user_id: int,
    title: str | None,
    message: str | None,
    severity: str = "info",
) -> None:
    """Staff message to one user's inbox."""
    text = _require_text(title=title, message=message)
    recipient = require_user(db, user_id)
    if not send(db, recipient.UserID, text["title"], text["message"], severity):
        raise InfrastructureError("Notification store unavailable.")
    LOGGER.info("Direct notification sender_id=%s recipient_id=%s", sender.UserID, recipient.UserID)


def contact_admins(db: Session, sender: User, subject: str | None, message: str | None) -> int:
    text = _require_text(subject=subject, message=message)
    admins = list_users_with_capability(db, "manage_config")
    if not admins:
        raise NotFound("No admins found to contact.", code="no_admins")
    title = f"Message from {sender.Username or sender.Email}"
    body = f"Subject: {text['subject']}\n\n{text['message']}"
    delivered = sum(1 for admin in admins if send(db, admin.UserID, title, body, "info"))
    if not delivered:
        raise InfrastructureError("Notification store unavailable.")
    return delivered


def serialize_notification(item: Notification) -> dict:
    return {
        "notificationID": item.NotificationID,
        "recipientID": item.RecipientID,
        "title": item.Title,
        "message": item.Message,
        "severity": item.Severity,
        "relatedID": item.RelatedID,
        "isRead": bool(item.IsRead),
        "createdAt": item.CreatedAt,
        "sentAt": item.SentAt,
    }
