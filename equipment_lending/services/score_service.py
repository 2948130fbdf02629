from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.lending_models import User
from services.errors import InfrastructureError, NotFound, StateConflict
from services.user_service import MAX_SCORE, clamp_score

LOGGER = logging.getLogger("equipment_lending.loans")

ON_TIME_BONUS = 2
SCORE_CAS_ATTEMPTS = 5


def days_late(expected_return: datetime, returned_at: datetime) -> int:
    """Whole days late, rounding any started day up; 0 when on time."""
    if returned_at <= expected_return:
        return 0
    return math.ceil((returned_at - expected_return) / timedelta(days=1))


def score_after_checkin(prior: int, late_days: int, penalty_per_day: int) -> int:
    if late_days > 0:
        return clamp_score(prior - late_days * penalty_per_day)
    return min(MAX_SCORE, prior + ON_TIME_BONUS)


def adjust_score(db: Session, user_id: int, compute: Callable[[int], int]) -> tuple[int, int]:
    """Read-CAS-write the user's score; returns (prior, new).

    The write is conditioned on the value that was read, so two concurrent
    penalties never overwrite each other. Commits on success.
    """
    for attempt in range(SCORE_CAS_ATTEMPTS):
        try:
            prior = db.execute(select(User.ResponsibilityScore).where(User.UserID == user_id)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            db.rollback()
            raise InfrastructureError("User store unavailable.") from exc
        if prior is None:
            raise NotFound(f"User {user_id} not found.", code="user_not_found")

        target = clamp_score(compute(int(prior)))
        try:
            result = db.execute(
                update(User)
                .where(User.UserID == user_id, User.ResponsibilityScore == prior)
                .values(ResponsibilityScore=target, UpdatedDate=datetime.now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                db.commit()
                return int(prior), target
            db.rollback()
        except SQLAlchemyError as exc:
            db.rollback()
            raise InfrastructureError("User store unavailable.") from exc
        LOGGER.info("Score CAS lost user_id=%s attempt=%s", user_id, attempt + 1)

    raise StateConflict("Responsibility score is being updated concurrently.", code="score_contention", retryable=True)
