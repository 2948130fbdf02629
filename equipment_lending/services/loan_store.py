from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.lending_models import LoanTransaction
from services.errors import InfrastructureError, NotFound, StateConflict

LOGGER = logging.getLogger("equipment_lending.loans")

TERMINAL_STATUSES = ("Returned", "Cancelled", "Denied", "Failed")
OPEN_STATUSES = ("Pending", "CheckedOut", "PendingReturn", "Overdue")
IN_POSSESSION_STATUSES = ("CheckedOut", "PendingReturn", "Overdue")
# Overdue and PendingReturn are modifiers on a checked-out loan and keep occupying its window.
OCCUPYING_STATUSES = ("Reserved", "CheckedOut", "PendingReturn", "Overdue")
OVERDUE_ELIGIBLE_STATUSES = ("CheckedOut", "PendingReturn")


def _fresh(stmt):
    return stmt.execution_options(populate_existing=True)


def create_transaction(
    db: Session,
    *,
    user_id: int,
    equipment_id: int,
    status: str,
    start_time: datetime,
    expected_return_time: datetime,
    destination: str,
    purpose: str,
    created_by: int | None,
    checkout_time: datetime | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> LoanTransaction:
    stamp = now or datetime.now()
    record = LoanTransaction(
        UserID=user_id,
        EquipmentID=equipment_id,
        Status=status,
        StartTime=start_time,
        ExpectedReturnTime=expected_return_time,
        CheckoutTime=checkout_time,
        Destination=destination,
        Purpose=purpose,
        Notes=notes,
        CreatedBy=created_by,
        CreatedDate=stamp,
        UpdatedDate=stamp,
    )
    db.add(record)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise InfrastructureError("Transaction store unavailable.") from exc
    db.refresh(record)
    return record


def get_transaction(db: Session, transaction_id: int) -> LoanTransaction | None:
    try:
        return db.execute(
            _fresh(select(LoanTransaction).where(LoanTransaction.TransactionID == int(transaction_id)))
        ).scalars().first()
    except SQLAlchemyError as exc:
        raise InfrastructureError("Transaction store unavailable.") from exc


def require_transaction(db: Session, transaction_id: int) -> LoanTransaction:
    record = get_transaction(db, transaction_id)
    if not record:
        raise NotFound(f"Transaction {transaction_id} not found.", code="transaction_not_found")
    return record


def find_by_user(db: Session, user_id: int) -> list[LoanTransaction]:
    return list(
        db.execute(
            _fresh(
                select(LoanTransaction)
                .where(LoanTransaction.UserID == user_id)
                .order_by(LoanTransaction.CreatedDate.desc(), LoanTransaction.TransactionID.desc())
            )
        ).scalars().all()
    )


def find_open_by_equipment(db: Session, equipment_id: int) -> list[LoanTransaction]:
    return list(
        db.execute(
            _fresh(
                select(LoanTransaction)
                .where(LoanTransaction.EquipmentID == equipment_id)
                .where(LoanTransaction.ReturnTime.is_(None))
                .where(LoanTransaction.Status.in_(OPEN_STATUSES))
                .order_by(LoanTransaction.TransactionID)
            )
        ).scalars().all()
    )


def find_open_for_user_and_unit(db: Session, user_id: int, equipment_id: int) -> LoanTransaction | None:
    return db.execute(
        _fresh(
            select(LoanTransaction)
            .where(LoanTransaction.UserID == user_id)
            .where(LoanTransaction.EquipmentID == equipment_id)
            .where(LoanTransaction.ReturnTime.is_(None))
            .where(LoanTransaction.Status.in_(IN_POSSESSION_STATUSES))
            .order_by(LoanTransaction.TransactionID.desc())
        )
    ).scalars().first()


def find_by_status(db: Session, statuses: Iterable[str]) -> list[LoanTransaction]:
    return list(
        db.execute(
            _fresh(
                select(LoanTransaction)
                .where(LoanTransaction.Status.in_(tuple(statuses)))
                .order_by(LoanTransaction.TransactionID)
            )
        ).scalars().all()
    )


def find_for_unit_in_statuses(
    db: Session,
    equipment_id: int,
    statuses: Iterable[str],
    exclude_transaction_id: int | None = None,
) -> list[LoanTransaction]:
    stmt = (
        select(LoanTransaction)
        .where(LoanTransaction.EquipmentID == equipment_id)
        .where(LoanTransaction.Status.in_(tuple(statuses)))
    )
    if exclude_transaction_id:
        stmt = stmt.where(LoanTransaction.TransactionID != exclude_transaction_id)
    return list(db.execute(_fresh(stmt.order_by(LoanTransaction.TransactionID))).scalars().all())


def transition_status(
    db: Session,
    transaction_id: int,
    from_expected: str | Iterable[str],
    to: str,
    **values,
) -> LoanTransaction:
    """Compare-and-set the transaction status, writing ``values`` in the same update.

    Keyword values are column names (``ReturnTime=...``). Raises a retryable
    StateConflict when the stored status no longer matches. Commits on success.
    """
    expected = (from_expected,) if isinstance(from_expected, str) else tuple(from_expected)
    values.setdefault("UpdatedDate", datetime.now())
    try:
        result = db.execute(
            update(LoanTransaction)
            .where(LoanTransaction.TransactionID == transaction_id, LoanTransaction.Status.in_(expected))
            .values(Status=to, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            return require_transaction(db, transaction_id)
        db.rollback()
    except SQLAlchemyError as exc:
        db.rollback()
        raise InfrastructureError("Transaction store unavailable.") from exc

    current = require_transaction(db, transaction_id)
    LOGGER.info(
        "Transaction CAS lost transaction_id=%s expected=%s actual=%s target=%s",
        transaction_id,
        ",".join(expected),
        current.Status,
        to,
    )
    raise StateConflict(
        f"Transaction {transaction_id} is {current.Status}.",
        code="transaction_conflict",
        retryable=True,
    )


def mark_overdue(db: Session, transaction_id: int, from_status: str, now: datetime) -> bool:
    """Flip one loan to Overdue on the edge only; False when another writer got there first."""
    try:
        result = db.execute(
            update(LoanTransaction)
            .where(
                LoanTransaction.TransactionID == transaction_id,
                LoanTransaction.Status == from_status,
                LoanTransaction.OverduePenalizedAt.is_(None),
            )
            .values(Status="Overdue", OverduePenalizedAt=now, UpdatedDate=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            return True
        db.rollback()
        return False
    except SQLAlchemyError as exc:
        db.rollback()
        raise InfrastructureError("Transaction store unavailable.") from exc


def update_fields(db: Session, record: LoanTransaction, **values) -> LoanTransaction:
    for column, value in values.items():
        setattr(record, column, value)
    record.UpdatedDate = datetime.now()
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise InfrastructureError("Transaction store unavailable.") from exc
    return record
