from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.lending_models import USER_ROLES, User
from services.errors import Forbidden, InfrastructureError, NotFound, ValidationFailed


DEFAULT_ROLE = "Student"
MAX_SCORE = 100
MIN_SCORE = 0

STAFF_CAPABILITIES = frozenset(
    {
        "borrow",
        "reserve",
        "approve",
        "checkin",
        "borrow_on_behalf",
        "self_checkout",
        "manage_equipment",
        "receive_alerts",
        "send_notifications",
    }
)

CAPABILITIES_BY_ROLE: dict[str, frozenset[str]] = {
    "Student": frozenset({"borrow", "reserve"}),
    "Staff": STAFF_CAPABILITIES,
    "IT": STAFF_CAPABILITIES,
    "Security": frozenset({"borrow", "reserve", "gate_check", "receive_alerts"}),
    "Admin": STAFF_CAPABILITIES | {"gate_check", "manage_config", "manage_users"},
}


def normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip()
    for known in USER_ROLES:
        if role.lower() == known.lower():
            return known
    return DEFAULT_ROLE


def capabilities_for(role: str | None) -> frozenset[str]:
    return CAPABILITIES_BY_ROLE.get(normalize_role(role), CAPABILITIES_BY_ROLE[DEFAULT_ROLE])


def has_capability(user: User, capability: str) -> bool:
    return capability in capabilities_for(user.Role)


def require_capability(user: User, capability: str) -> None:
    if not has_capability(user, capability):
        raise Forbidden(f"Role {normalize_role(user.Role)} may not perform this action.", code=f"missing_{capability}")


def clamp_score(value: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, int(value)))


def get_user(db: Session, user_id: int) -> User | None:
    try:
        return db.execute(
            select(User).where(User.UserID == int(user_id)).execution_options(populate_existing=True)
        ).scalars().first()
    except SQLAlchemyError as exc:
        raise InfrastructureError("User store unavailable.") from exc


def require_user(db: Session, user_id: int) -> User:
    user = get_user(db, user_id)
    if not user or not user.IsActive:
        raise NotFound(f"User {user_id} not found.", code="user_not_found")
    return user


def find_by_student_number(db: Session, student_number: str) -> User | None:
    return db.execute(select(User).where(User.StudentNumber == student_number.strip())).scalars().first()


def list_users_with_capability(db: Session, capability: str) -> list[User]:
    roles = [role for role, caps in CAPABILITIES_BY_ROLE.items() if capability in caps]
    return list(
        db.execute(
            select(User).where(User.Role.in_(roles)).where(User.IsActive.is_(True)).order_by(User.UserID)
        ).scalars().all()
    )


def upsert_user(
    db: Session,
    *,
    username: str,
    full_name: str | None = None,
    email: str | None = None,
    role: str | None = None,
    student_number: str | None = None,
) -> User:
    key = (username or "").strip().lower()
    if not key:
        raise ValidationFailed("username is required.")

    user = db.execute(select(User).where(User.Username == key)).scalars().first()
    now = datetime.now()
    if not user:
        if not full_name or not email:
            raise ValidationFailed("fullName and email are required for new users.")
        user = User(
            Username=key,
            FullName=full_name.strip(),
            Email=email.strip(),
            Role=normalize_role(role),
            StudentNumber=(student_number or "").strip() or None,
            ResponsibilityScore=MAX_SCORE,
            IsActive=True,
            CreatedDate=now,
            UpdatedDate=now,
        )
        db.add(user)
    else:
        if full_name:
            user.FullName = full_name.strip()
        if email:
            user.Email = email.strip()
        if role is not None:
            user.Role = normalize_role(role)
        if student_number is not None:
            user.StudentNumber = student_number.strip() or None
        user.UpdatedDate = now

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationFailed("Username or student number already in use.", code="duplicate_user") from exc
    db.refresh(user)
    return user


def serialize_user(user: User) -> dict[str, Any]:
    role = normalize_role(user.Role)
    return {
        "userID": user.UserID,
        "username": user.Username,
        "fullName": user.FullName,
        "email": user.Email,
        "studentNumber": user.StudentNumber,
        "role": role,
        "capabilities": sorted(capabilities_for(role)),
        "responsibilityScore": user.ResponsibilityScore,
        "isActive": bool(user.IsActive),
    }
