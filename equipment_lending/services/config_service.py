from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.lending_models import SystemConfig
from services.errors import InfrastructureError, ValidationFailed


@dataclass(frozen=True)
class LendingConfig:
    max_loan_hours: int = 24
    late_penalty_per_day: int = 5
    overdue_sweep_penalty: int = 3
    presence_timeout_minutes: int = 5
    min_borrow_score: int = 60
    default_reservation_hours: int = 2


_FIELD_MAP = {
    "maxLoanHours": "MaxLoanHours",
    "latePenaltyPerDay": "LatePenaltyPerDay",
    "overdueSweepPenalty": "OverdueSweepPenalty",
    "presenceTimeoutMinutes": "PresenceTimeoutMinutes",
    "minBorrowScore": "MinBorrowScore",
    "defaultReservationHours": "DefaultReservationHours",
}


def _load_row(db: Session) -> SystemConfig | None:
    return db.execute(
        select(SystemConfig).order_by(SystemConfig.ConfigID).execution_options(populate_existing=True)
    ).scalars().first()


def get_config(db: Session) -> LendingConfig:
    try:
        row = _load_row(db)
    except SQLAlchemyError as exc:
        raise InfrastructureError("Configuration store unavailable.") from exc
    if not row:
        return LendingConfig()
    defaults = LendingConfig()
    return LendingConfig(
        max_loan_hours=int(row.MaxLoanHours if row.MaxLoanHours is not None else defaults.max_loan_hours),
        late_penalty_per_day=int(row.LatePenaltyPerDay if row.LatePenaltyPerDay is not None else defaults.late_penalty_per_day),
        overdue_sweep_penalty=int(row.OverdueSweepPenalty if row.OverdueSweepPenalty is not None else defaults.overdue_sweep_penalty),
        presence_timeout_minutes=int(
            row.PresenceTimeoutMinutes if row.PresenceTimeoutMinutes is not None else defaults.presence_timeout_minutes
        ),
        min_borrow_score=int(row.MinBorrowScore if row.MinBorrowScore is not None else defaults.min_borrow_score),
        default_reservation_hours=int(
            row.DefaultReservationHours if row.DefaultReservationHours is not None else defaults.default_reservation_hours
        ),
    )


def serialize_config(config: LendingConfig) -> dict:
    return {
        "maxLoanHours": config.max_loan_hours,
        "latePenaltyPerDay": config.late_penalty_per_day,
        "overdueSweepPenalty": config.overdue_sweep_penalty,
        "presenceTimeoutMinutes": config.presence_timeout_minutes,
        "minBorrowScore": config.min_borrow_score,
        "defaultReservationHours": config.default_reservation_hours,
    }


def update_config(db: Session, changes: dict) -> LendingConfig:
    row = _load_row(db)
    if not row:
        defaults = LendingConfig()
        row = SystemConfig(
            MaxLoanHours=defaults.max_loan_hours,
            LatePenaltyPerDay=defaults.late_penalty_per_day,
            OverdueSweepPenalty=defaults.overdue_sweep_penalty,
            PresenceTimeoutMinutes=defaults.presence_timeout_minutes,
            MinBorrowScore=defaults.min_borrow_score,
            DefaultReservationHours=defaults.default_reservation_hours,
        )
        db.add(row)

    for field, value in changes.items():
        column = _FIELD_MAP.get(field)
        if column is None or value is None:
            continue
        number = int(value)
        if number < 0:
            db.rollback()
            raise ValidationFailed(f"{field} must not be negative.")
        if column in {"MaxLoanHours", "PresenceTimeoutMinutes", "DefaultReservationHours"} and number == 0:
            db.rollback()
            raise ValidationFailed(f"{field} must be greater than zero.")
        setattr(row, column, number)

    row.UpdatedDate = datetime.now()
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise InfrastructureError("Configuration store unavailable.") from exc
    return get_config(db)
