from __future__ import annotations

import functools
import logging
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.lending_models import LoanTransaction, User
from services import notification_service
from services.asset_registry import require_unit, transition_unit_status
from services.audit_service import append_audit
from services.config_service import get_config
from services.conflict_service import find_conflicts, has_conflict, reservation_window
from services.equipment_service import normalize_condition
from services.errors import (
    Forbidden,
    LendingError,
    NotFound,
    PolicyDenied,
    ScheduleConflict,
    StateConflict,
    ValidationFailed,
)
from services.loan_store import (
    IN_POSSESSION_STATUSES,
    create_transaction,
    find_for_unit_in_statuses,
    find_open_for_user_and_unit,
    require_transaction,
    transition_status,
)
from services.policy_service import LoanRequest, annotate_purpose, evaluate
from services.score_service import adjust_score, days_late, score_after_checkin
from services.user_service import has_capability, require_capability, require_user

LOGGER = logging.getLogger("equipment_lending.loans")

APPROVAL_FALLBACK_DURATION = timedelta(hours=2)
PICKUP_EARLY_GRACE = timedelta(minutes=15)


def to_local_naive(value: datetime | None) -> datetime | None:
    """Stored times are naive local time; aware inputs are converted first."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def _now(now: datetime | None) -> datetime:
    return to_local_naive(now) or datetime.now()


def retry_once(operation):
    """Re-run an operation once after a lost compare-and-set.

    The retry starts from fresh reads, so a state change made by the winner is
    re-validated rather than overwritten. A second loss surfaces as a transient
    conflict the caller may retry.
    """

    @functools.wraps(operation)
    def wrapper(db: Session, *args, **kwargs):
        try:
            return operation(db, *args, **kwargs)
        except StateConflict as exc:
            if not exc.retryable:
                raise
            LOGGER.info("Retrying after CAS loss operation=%s code=%s", operation.__name__, exc.code)
        try:
            return operation(db, *args, **kwargs)
        except StateConflict as exc:
            if not exc.retryable:
                raise
            LOGGER.warning("CAS lost twice operation=%s code=%s", operation.__name__, exc.code)
            raise StateConflict(
                "The record changed concurrently; please retry.",
                code="transient_conflict",
            ) from exc

    return wrapper


def _audit(db: Session, record: LoanTransaction, action: str, details: str, actor: User | None) -> None:
    append_audit(
        db,
        entity_type="Transaction",
        entity_id=record.TransactionID,
        action=action,
        details=details,
        user_id=actor.UserID if actor else None,
    )


def _mark_failed(db: Session, transaction_id: int, note: str) -> None:
    try:
        transition_status(db, transaction_id, "Provisional", "Failed", Notes=note)
    except LendingError:
        LOGGER.exception("Compensation failed transaction_id=%s step=mark_failed", transaction_id)


def _revert(db: Session, transaction_id: int, current: str, previous: str, **values) -> None:
    try:
        transition_status(db, transaction_id, current, previous, **values)
    except LendingError:
        LOGGER.exception(
            "Compensation failed transaction_id=%s step=revert from=%s to=%s",
            transaction_id,
            current,
            previous,
        )


def _release_unit(db: Session, equipment_id: int, condition: str | None = None) -> None:
    try:
        transition_unit_status(db, equipment_id, "CheckedOut", "Available", condition=condition)
    except LendingError:
        LOGGER.exception("Compensation failed equipment_id=%s step=release_unit", equipment_id)


def _reclaim_unit(db: Session, equipment_id: int, condition: str | None) -> None:
    try:
        transition_unit_status(db, equipment_id, "Available", "CheckedOut", condition=condition)
    except LendingError:
        LOGGER.exception("Compensation failed equipment_id=%s step=reclaim_unit", equipment_id)


def _is_staff(user: User) -> bool:
    return has_capability(user, "approve")


def _require_window(start: datetime, end: datetime) -> None:
    if end <= start:
        raise ValidationFailed("Return time must be after the start time.", code="invalid_window")


@retry_once
def submit_loan(
    db: Session,
    caller: User,
    *,
    equipment_id: int,
    expected_return_time: datetime,
    destination: str = "",
    purpose: str = "",
    target_user_id: int | None = None,
    now: datetime | None = None,
) -> LoanTransaction:
    now = _now(now)
    due = to_local_naive(expected_return_time)
    on_behalf = target_user_id is not None and int(target_user_id) != caller.UserID
    if on_behalf:
        require_capability(caller, "borrow_on_behalf")
        borrower = require_user(db, target_user_id)
    else:
        require_capability(caller, "borrow")
        borrower = require_user(db, caller.UserID)
    if due is None:
        raise ValidationFailed("expectedReturnTime is required.")
    _require_window(now, due)

    unit = require_unit(db, equipment_id)
    config = get_config(db)
    decision = evaluate(db, LoanRequest(borrower, unit, now, due, destination or "", purpose or ""), config)
    if decision.denied:
        raise PolicyDenied(decision.denial.reason, code=decision.denial.code)

    if unit.Status != "Available":
        raise StateConflict(f"Equipment is currently {unit.Status}.", code="unavailable")
    if has_conflict(db, unit.EquipmentID, now, due):
        raise ScheduleConflict("The unit is reserved during the requested window.")
    duplicates = [
        row for row in find_for_unit_in_statuses(db, unit.EquipmentID, ("Pending",)) if row.UserID == borrower.UserID
    ]
    if duplicates:
        raise StateConflict("A pending request for this unit already exists.", code="duplicate_request")

    immediate = (on_behalf or has_capability(caller, "self_checkout")) and not decision.force_pending
    annotated = annotate_purpose(purpose, decision.annotations)

    if not immediate:
        record = create_transaction(
            db,
            user_id=borrower.UserID,
            equipment_id=unit.EquipmentID,
            status="Pending",
            start_time=now,
            expected_return_time=due,
            destination=destination or "",
            purpose=annotated,
            created_by=caller.UserID,
            now=now,
        )
        LOGGER.info(
            "Loan requested transaction_id=%s user_id=%s equipment_id=%s",
            record.TransactionID,
            borrower.UserID,
            unit.EquipmentID,
        )
        _audit(db, record, "LOAN_REQUESTED", f"Requested {unit.Name} until {due:%Y-%m-%d %H:%M}", caller)
        notification_service.notify_capability(
            db,
            "approve",
            "New borrow request",
            f"{borrower.FullName} requested {unit.Name}.",
            "info",
            record.TransactionID,
        )
        return record

    record = create_transaction(
        db,
        user_id=borrower.UserID,
        equipment_id=unit.EquipmentID,
        status="Provisional",
        start_time=now,
        expected_return_time=due,
        destination=destination or "",
        purpose=annotated,
        created_by=caller.UserID,
        checkout_time=now,
        now=now,
    )
    try:
        transition_unit_status(db, unit.EquipmentID, "Available", "CheckedOut")
    except LendingError:
        _mark_failed(db, record.TransactionID, "Unit claim lost")
        raise

    if find_conflicts(db, unit.EquipmentID, now, due, record.TransactionID, claimed_before=record.TransactionID):
        _release_unit(db, unit.EquipmentID)
        _mark_failed(db, record.TransactionID, "Window claimed concurrently")
        raise ScheduleConflict("The unit is reserved during the requested window.")

    try:
        record = transition_status(db, record.TransactionID, "Provisional", "CheckedOut")
    except LendingError:
        _release_unit(db, unit.EquipmentID)
        _mark_failed(db, record.TransactionID, "Checkout not recorded")
        raise

    LOGGER.info(
        "Loan checked out transaction_id=%s user_id=%s equipment_id=%s",
        record.TransactionID,
        borrower.UserID,
        unit.EquipmentID,
    )
    _audit(db, record, "LOAN_CHECKED_OUT", f"Checked out {unit.Name} until {due:%Y-%m-%d %H:%M}", caller)
    notification_service.send(
        db,
        borrower.UserID,
        "Equipment checked out",
        f"{unit.Name} is due back {due:%Y-%m-%d %H:%M}.",
        "success",
        record.TransactionID,
    )
    return record


@retry_once
def approve(db: Session, caller: User, transaction_id: int, now: datetime | None = None) -> LoanTransaction:
    now = _now(now)
    require_capability(caller, "approve")
    record = require_transaction(db, transaction_id)
    if record.Status != "Pending":
        raise StateConflict(f"Transaction is {record.Status}, not Pending.", code="wrong_state")
    unit = require_unit(db, record.EquipmentID)
    if unit.Status != "Available":
        raise StateConflict(f"Equipment is currently {unit.Status}.", code="unavailable")

    # StartTime of a Pending record is the moment the loan was requested.
    duration = record.ExpectedReturnTime - (record.StartTime or record.CreatedDate)
    if duration <= timedelta(0):
        duration = APPROVAL_FALLBACK_DURATION
    new_due = now + duration

    transition_status(db, record.TransactionID, "Pending", "Provisional")

    if find_conflicts(db, unit.EquipmentID, now, new_due, record.TransactionID, claimed_before=record.TransactionID):
        _revert(db, record.TransactionID, "Provisional", "Pending")
        raise ScheduleConflict("The unit is reserved during the approved window.")

    try:
        transition_unit_status(db, unit.EquipmentID, "Available", "CheckedOut")
    except LendingError:
        _revert(db, record.TransactionID, "Provisional", "Pending")
        raise

    try:
        record = transition_status(
            db,
            record.TransactionID,
            "Provisional",
            "CheckedOut",
            StartTime=now,
            CheckoutTime=now,
            ExpectedReturnTime=new_due,
            ApprovedBy=caller.UserID,
        )
    except LendingError:
        _release_unit(db, unit.EquipmentID)
        _revert(db, record.TransactionID, "Provisional", "Pending")
        raise

    LOGGER.info("Loan approved transaction_id=%s approver_id=%s", record.TransactionID, caller.UserID)
    _audit(db, record, "LOAN_APPROVED", f"Approved until {new_due:%Y-%m-%d %H:%M}", caller)
    notification_service.send(
        db,
        record.UserID,
        "Request approved",
        f"Your request for {unit.Name} was approved. Due {new_due:%Y-%m-%d %H:%M}.",
        "success",
        record.TransactionID,
    )
    return record


@retry_once
def deny(
    db: Session,
    caller: User,
    transaction_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> LoanTransaction:
    require_capability(caller, "approve")
    record = require_transaction(db, transaction_id)
    if record.Status != "Pending":
        raise StateConflict(f"Transaction is {record.Status}, not Pending.", code="wrong_state")
    note = (reason or "").strip() or None
    record = transition_status(db, record.TransactionID, "Pending", "Denied", Notes=note)

    LOGGER.info("Loan denied transaction_id=%s approver_id=%s", record.TransactionID, caller.UserID)
    _audit(db, record, "LOAN_DENIED", note or "Denied", caller)
    message = "Your borrow request was denied."
    if note:
        message = f"{message} Reason: {note}"
    notification_service.send(db, record.UserID, "Request denied", message, "warning", record.TransactionID)
    return record


@retry_once
def request_return(db: Session, caller: User, transaction_id: int, now: datetime | None = None) -> LoanTransaction:
    now = _now(now)
    record = require_transaction(db, transaction_id)
    if record.UserID != caller.UserID:
        raise Forbidden("Only the borrower can request a return.", code="not_owner")
    if record.Status == "Overdue":
        record = transition_status(db, record.TransactionID, "Overdue", "Overdue", ReturnRequestedAt=now)
    elif record.Status == "CheckedOut":
        record = transition_status(db, record.TransactionID, "CheckedOut", "PendingReturn", ReturnRequestedAt=now)
    else:
        raise StateConflict(f"Transaction is {record.Status}; nothing to return.", code="wrong_state")

    _audit(db, record, "RETURN_REQUESTED", "Borrower requested return", caller)
    notification_service.notify_capability(
        db,
        "checkin",
        "Return requested",
        f"{caller.FullName} is returning equipment {record.EquipmentID}.",
        "info",
        record.TransactionID,
    )
    return record


@retry_once
def checkin(
    db: Session,
    caller: User,
    *,
    transaction_id: int | None = None,
    user_id: int | None = None,
    equipment_id: int | None = None,
    condition: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Close an open loan: transaction, then unit, then score.

    Each later step failing undoes the earlier ones in reverse order.
    """
    now = _now(now)
    require_capability(caller, "checkin")
    if transaction_id is not None:
        record = require_transaction(db, transaction_id)
        if record.Status not in IN_POSSESSION_STATUSES:
            raise StateConflict(f"Transaction is {record.Status}; no open loan.", code="no_open_loan")
    elif user_id is not None and equipment_id is not None:
        record = find_open_for_user_and_unit(db, int(user_id), int(equipment_id))
        if not record:
            raise NotFound("No open loan for this user and unit.", code="no_open_loan")
    else:
        raise ValidationFailed("transactionID or userID and equipmentID are required.")

    unit = require_unit(db, record.EquipmentID)
    if unit.Status != "CheckedOut":
        raise StateConflict(f"Equipment is {unit.Status}, not CheckedOut.", code="unit_state_mismatch")
    new_condition = normalize_condition(condition) if condition else unit.Condition
    previous_condition = unit.Condition
    prior_status = record.Status
    config = get_config(db)
    late_days = days_late(record.ExpectedReturnTime, now)

    record = transition_status(
        db,
        record.TransactionID,
        prior_status,
        "Returned",
        ReturnTime=now,
        ReturnCondition=new_condition,
    )

    try:
        transition_unit_status(db, unit.EquipmentID, "CheckedOut", "Available", condition=new_condition)
    except LendingError:
        _revert(db, record.TransactionID, "Returned", prior_status, ReturnTime=None, ReturnCondition=None)
        raise

    try:
        prior_score, new_score = adjust_score(
            db,
            record.UserID,
            lambda score: score_after_checkin(score, late_days, config.late_penalty_per_day),
        )
    except LendingError:
        _reclaim_unit(db, unit.EquipmentID, previous_condition)
        _revert(db, record.TransactionID, "Returned", prior_status, ReturnTime=None, ReturnCondition=None)
        raise

    late = late_days > 0
    LOGGER.info(
        "Loan returned transaction_id=%s late=%s days_late=%s score=%s->%s",
        record.TransactionID,
        late,
        late_days,
        prior_score,
        new_score,
    )
    _audit(
        db,
        record,
        "LOAN_RETURNED",
        f"Condition={new_condition} daysLate={late_days} score={prior_score}->{new_score}",
        caller,
    )
    if late:
        message = f"{unit.Name} was returned {late_days} day(s) late. Score is now {new_score}."
        severity = "warning"
    else:
        message = f"Thanks for returning {unit.Name} on time. Score is now {new_score}."
        severity = "success"
    notification_service.send(db, record.UserID, "Equipment returned", message, severity, record.TransactionID)
    return {
        "late": late,
        "daysLate": late_days,
        "previousScore": prior_score,
        "newScore": new_score,
        "transaction": record,
    }


@retry_once
def reserve(
    db: Session,
    caller: User,
    *,
    equipment_id: int,
    start_time: datetime,
    end_time: datetime | None = None,
    destination: str = "",
    purpose: str = "",
    now: datetime | None = None,
) -> LoanTransaction:
    now = _now(now)
    require_capability(caller, "reserve")
    borrower = require_user(db, caller.UserID)
    start = to_local_naive(start_time)
    if start is None:
        raise ValidationFailed("startTime is required.")
    if start <= now:
        raise ValidationFailed("Reservations must start in the future.", code="past_window")
    config = get_config(db)
    start, end = reservation_window(start, to_local_naive(end_time), config.default_reservation_hours)
    _require_window(start, end)

    unit = require_unit(db, equipment_id)
    decision = evaluate(db, LoanRequest(borrower, unit, start, end, destination or "", purpose or ""), config)
    if decision.denied:
        raise PolicyDenied(decision.denial.reason, code=decision.denial.code)
    if has_conflict(db, unit.EquipmentID, start, end):
        raise ScheduleConflict("The unit is already booked for an overlapping window.")

    record = create_transaction(
        db,
        user_id=borrower.UserID,
        equipment_id=unit.EquipmentID,
        status="Provisional",
        start_time=start,
        expected_return_time=end,
        destination=destination or "",
        purpose=purpose or "",
        created_by=caller.UserID,
        now=now,
    )
    if find_conflicts(db, unit.EquipmentID, start, end, record.TransactionID, claimed_before=record.TransactionID):
        _mark_failed(db, record.TransactionID, "Window claimed concurrently")
        raise ScheduleConflict("The unit is already booked for an overlapping window.")
    try:
        record = transition_status(db, record.TransactionID, "Provisional", "Reserved")
    except LendingError:
        _mark_failed(db, record.TransactionID, "Reservation not recorded")
        raise

    LOGGER.info(
        "Reservation created transaction_id=%s equipment_id=%s window=%s..%s",
        record.TransactionID,
        unit.EquipmentID,
        start.isoformat(),
        end.isoformat(),
    )
    _audit(db, record, "RESERVED", f"{unit.Name} {start:%Y-%m-%d %H:%M} - {end:%Y-%m-%d %H:%M}", caller)
    notification_service.send(
        db,
        borrower.UserID,
        "Reservation confirmed",
        f"{unit.Name} is reserved from {start:%Y-%m-%d %H:%M} to {end:%Y-%m-%d %H:%M}.",
        "success",
        record.TransactionID,
    )
    return record


@retry_once
def cancel(db: Session, caller: User, transaction_id: int, now: datetime | None = None) -> LoanTransaction:
    record = require_transaction(db, transaction_id)
    if record.UserID != caller.UserID and not _is_staff(caller):
        raise Forbidden("Only the owner or staff can cancel this reservation.", code="not_owner")
    if record.Status != "Reserved":
        raise StateConflict(f"Transaction is {record.Status}, not Reserved.", code="wrong_state")
    record = transition_status(db, record.TransactionID, "Reserved", "Cancelled")

    _audit(db, record, "RESERVATION_CANCELLED", "Cancelled", caller)
    if record.UserID != caller.UserID:
        notification_service.send(
            db,
            record.UserID,
            "Reservation cancelled",
            f"Your reservation {record.TransactionID} was cancelled by staff.",
            "warning",
            record.TransactionID,
        )
    return record


@retry_once
def pickup(db: Session, caller: User, transaction_id: int, now: datetime | None = None) -> LoanTransaction:
    """Convert a reservation into a checked-out loan when the borrower collects the unit.

    Pickup is allowed from ``PICKUP_EARLY_GRACE`` before the window starts
    until it ends. The borrowing policies are evaluated against the remaining
    window; a force-pending outcome hands the request to staff as ``Pending``.
    """
    now = _now(now)
    record = require_transaction(db, transaction_id)
    if record.UserID != caller.UserID and not _is_staff(caller):
        raise Forbidden("Only the owner or staff can pick up this reservation.", code="not_owner")
    if record.Status != "Reserved":
        raise StateConflict(f"Transaction is {record.Status}, not Reserved.", code="wrong_state")
    if now >= record.ExpectedReturnTime:
        raise StateConflict("The reservation window has ended.", code="reservation_expired")
    if now < record.StartTime - PICKUP_EARLY_GRACE:
        raise StateConflict(
            f"The reservation starts at {record.StartTime:%Y-%m-%d %H:%M}.",
            code="reservation_not_started",
        )

    borrower = require_user(db, record.UserID)
    unit = require_unit(db, record.EquipmentID)
    request = LoanRequest(borrower, unit, now, record.ExpectedReturnTime, record.Destination or "", record.Purpose or "")
    decision = evaluate(db, request, get_config(db))
    if decision.denied:
        raise PolicyDenied(decision.denial.reason, code=decision.denial.code)
    if decision.force_pending:
        record = transition_status(
            db,
            record.TransactionID,
            "Reserved",
            "Pending",
            StartTime=now,
            Purpose=annotate_purpose(record.Purpose or "", decision.annotations),
        )
        _audit(db, record, "RESERVATION_REFERRED", "Pickup needs staff approval", caller)
        notification_service.notify_capability(
            db,
            "approve",
            "New borrow request",
            f"{borrower.FullName} is collecting {unit.Name}; approval required.",
            "info",
            record.TransactionID,
        )
        return record

    start = min(now, record.StartTime)
    if start < record.StartTime and find_conflicts(db, unit.EquipmentID, start, record.StartTime, record.TransactionID):
        raise ScheduleConflict("The unit is booked until the reservation starts.")
    if unit.Status != "Available":
        raise StateConflict(f"Equipment is currently {unit.Status}.", code="unavailable")

    transition_unit_status(db, unit.EquipmentID, "Available", "CheckedOut")
    try:
        record = transition_status(db, record.TransactionID, "Reserved", "CheckedOut", StartTime=start, CheckoutTime=now)
    except LendingError:
        _release_unit(db, unit.EquipmentID)
        raise

    LOGGER.info("Reservation picked up transaction_id=%s equipment_id=%s", record.TransactionID, unit.EquipmentID)
    _audit(db, record, "RESERVATION_PICKED_UP", f"Picked up {unit.Name}", caller)
    return record


def list_transactions(
    db: Session,
    *,
    user_id: int | None = None,
    equipment_id: int | None = None,
    statuses: Iterable[str] | None = None,
    limit: int = 200,
) -> list[LoanTransaction]:
    stmt = select(LoanTransaction)
    if user_id is not None:
        stmt = stmt.where(LoanTransaction.UserID == user_id)
    if equipment_id is not None:
        stmt = stmt.where(LoanTransaction.EquipmentID == equipment_id)
    if statuses:
        stmt = stmt.where(LoanTransaction.Status.in_(tuple(statuses)))
    stmt = stmt.order_by(LoanTransaction.CreatedDate.desc(), LoanTransaction.TransactionID.desc()).limit(limit)
    return list(db.execute(stmt.execution_options(populate_existing=True)).scalars().all())


def get_visible_transaction(db: Session, caller: User, transaction_id: int) -> LoanTransaction:
    record = require_transaction(db, transaction_id)
    if record.UserID != caller.UserID and not _is_staff(caller):
        raise Forbidden("You can only view your own transactions.", code="not_owner")
    return record


def serialize_transaction(record: LoanTransaction) -> dict:
    return {
        "transactionID": record.TransactionID,
        "userID": record.UserID,
        "equipmentID": record.EquipmentID,
        "status": record.Status,
        "startTime": record.StartTime,
        "expectedReturnTime": record.ExpectedReturnTime,
        "checkoutTime": record.CheckoutTime,
        "returnTime": record.ReturnTime,
        "returnRequestedAt": record.ReturnRequestedAt,
        "destination": record.Destination,
        "purpose": record.Purpose,
        "notes": record.Notes,
        "returnCondition": record.ReturnCondition,
        "approvedBy": record.ApprovedBy,
        "createdBy": record.CreatedBy,
        "createdDate": record.CreatedDate,
        "user": {
            "userID": record.User.UserID,
            "fullName": record.User.FullName,
            "studentNumber": record.User.StudentNumber,
        } if record.User else None,
        "equipment": {
            "equipmentID": record.Equipment.EquipmentID,
            "name": record.Equipment.Name,
            "serialNumber": record.Equipment.SerialNumber,
            "category": record.Equipment.Category,
        } if record.Equipment else None,
    }
