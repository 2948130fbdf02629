from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.lending_models import Equipment
from services import notification_service
from services.asset_registry import transition_tracking_status
from services.audit_service import append_audit
from services.config_service import get_config
from services.errors import LendingError
from services.loan_store import OVERDUE_ELIGIBLE_STATUSES, find_by_status, mark_overdue, transition_status
from services.score_service import adjust_score

LOGGER = logging.getLogger("equipment_lending.reconciler")

NEVER_SEEN = datetime(1970, 1, 1)


def run_overdue_sweep(db: Session, now: datetime | None = None) -> int:
    """Move loans past their due time to Overdue and apply the standing penalty once.

    Returns the number of loans flagged by this run.
    """
    now = now or datetime.now()
    config = get_config(db)
    flagged = 0
    for record in find_by_status(db, OVERDUE_ELIGIBLE_STATUSES):
        if record.ExpectedReturnTime >= now or record.OverduePenalizedAt is not None:
            continue
        previous = record.Status
        if not mark_overdue(db, record.TransactionID, previous, now):
            LOGGER.info("Overdue CAS lost transaction_id=%s", record.TransactionID)
            continue
        try:
            prior, new = adjust_score(db, record.UserID, lambda score: score - config.overdue_sweep_penalty)
        except LendingError:
            LOGGER.exception("Overdue penalty failed transaction_id=%s; reverting flag", record.TransactionID)
            try:
                transition_status(db, record.TransactionID, "Overdue", previous, OverduePenalizedAt=None)
            except LendingError:
                LOGGER.exception("Compensation failed transaction_id=%s step=unflag_overdue", record.TransactionID)
            continue

        flagged += 1
        LOGGER.info(
            "Loan overdue transaction_id=%s user_id=%s score=%s->%s",
            record.TransactionID,
            record.UserID,
            prior,
            new,
        )
        append_audit(
            db,
            entity_type="Transaction",
            entity_id=record.TransactionID,
            action="OVERDUE",
            details=f"Due {record.ExpectedReturnTime:%Y-%m-%d %H:%M}; score {prior}->{new}",
        )
        notification_service.send(
            db,
            record.UserID,
            "Equipment overdue",
            f"Your loan {record.TransactionID} was due {record.ExpectedReturnTime:%Y-%m-%d %H:%M}. "
            f"Responsibility score is now {new}.",
            "warning",
            record.TransactionID,
        )
    return flagged


def run_presence_sweep(db: Session, now: datetime | None = None) -> int:
    """Mark silent trackers Unknown. Lost and Unknown trackers are left alone."""
    now = now or datetime.now()
    config = get_config(db)
    timeout = timedelta(minutes=config.presence_timeout_minutes)
    units = db.execute(
        select(Equipment)
        .where(Equipment.TrackingTag.is_not(None))
        .where(Equipment.IsRetired.is_(False))
        .where(Equipment.TrackingStatus.not_in(("Lost", "Unknown")))
        .order_by(Equipment.EquipmentID)
        .execution_options(populate_existing=True)
    ).scalars().all()

    transitioned = 0
    for unit in units:
        silence = now - (unit.LastSeenAt or NEVER_SEEN)
        if silence <= timeout:
            continue
        if not transition_tracking_status(
            db, unit.EquipmentID, unit.TrackingStatus, "Unknown", silent_before=now - timeout
        ):
            LOGGER.info("Presence CAS lost equipment_id=%s", unit.EquipmentID)
            continue
        transitioned += 1
        minutes = int(silence.total_seconds() // 60)
        LOGGER.warning("Tracker offline equipment_id=%s tag=%s silent_minutes=%s", unit.EquipmentID, unit.TrackingTag, minutes)
        append_audit(
            db,
            entity_type="Equipment",
            entity_id=unit.EquipmentID,
            action="IOT_OFFLINE",
            details=f"Tag {unit.TrackingTag} silent for {minutes} min",
        )
        notification_service.notify_capability(
            db,
            "receive_alerts",
            "Tracker offline",
            f"{unit.Name} ({unit.TrackingTag}) has not reported for {minutes} minutes.",
            "warning",
            unit.EquipmentID,
        )
    return transitioned


class ScheduledReconciler:
    """Runs each sweep on its own daemon thread with a fresh session per tick."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        overdue_interval: float = 900,
        presence_interval: float = 60,
    ) -> None:
        self._session_factory = session_factory
        self._jobs = [
            ("overdue", run_overdue_sweep, overdue_interval),
            ("presence", run_presence_sweep, presence_interval),
        ]
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = []
        for name, sweep, interval in self._jobs:
            thread = threading.Thread(
                target=self._loop,
                args=(name, sweep, interval),
                name=f"reconciler-{name}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        LOGGER.info("Reconciler started jobs=%s", ",".join(name for name, _, _ in self._jobs))

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        LOGGER.info("Reconciler stopped")

    def run_once(self, name: str, now: datetime | None = None) -> int:
        for job_name, sweep, _ in self._jobs:
            if job_name == name:
                return self._tick(job_name, sweep, now)
        raise KeyError(name)

    def _tick(self, name: str, sweep, now: datetime | None = None) -> int:
        db = self._session_factory()
        try:
            return sweep(db, now)
        finally:
            db.close()

    def _loop(self, name: str, sweep, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                count = self._tick(name, sweep)
                if count:
                    LOGGER.info("Sweep finished job=%s changed=%s", name, count)
            except Exception:
                LOGGER.exception("Sweep failed job=%s", name)
