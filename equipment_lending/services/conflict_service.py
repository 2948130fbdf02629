from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from models.lending_models import LoanTransaction
from services.loan_store import OCCUPYING_STATUSES, find_for_unit_in_statuses

DEFAULT_RESERVATION_HOURS = 2


def windows_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval overlap; touching windows do not overlap."""
    return start_a < end_b and start_b < end_a


def reservation_window(start: datetime, end: datetime | None, default_hours: int = DEFAULT_RESERVATION_HOURS) -> tuple[datetime, datetime]:
    if end is None:
        end = start + timedelta(hours=default_hours)
    return start, end


def find_conflicts(
    db: Session,
    equipment_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_transaction_id: int | None = None,
    claimed_before: int | None = None,
) -> list[LoanTransaction]:
    """Occupying transactions whose window overlaps the requested one.

    When ``claimed_before`` is given, in-flight Provisional records with a lower
    id also count, so two concurrent claims resolve in insertion order.
    """
    statuses = OCCUPYING_STATUSES + (("Provisional",) if claimed_before else ())
    rows = find_for_unit_in_statuses(db, equipment_id, statuses, exclude_transaction_id)
    conflicts = []
    for row in rows:
        if row.Status == "Provisional" and row.TransactionID >= claimed_before:
            continue
        if windows_overlap(window_start, window_end, row.StartTime, row.ExpectedReturnTime):
            conflicts.append(row)
    return conflicts


def has_conflict(
    db: Session,
    equipment_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_transaction_id: int | None = None,
) -> bool:
    return bool(find_conflicts(db, equipment_id, window_start, window_end, exclude_transaction_id))
