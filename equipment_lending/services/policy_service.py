from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.lending_models import Classroom, Equipment, User
from services.config_service import LendingConfig

LOGGER = logging.getLogger("equipment_lending.loans")

ALLOW = "allow"
FORCE_PENDING = "force_pending"
DENY = "deny"

ROOM_SCREEN_NOTE = "[Room has a fixed screen; projector request needs staff review]"


@dataclass
class LoanRequest:
    borrower: User
    unit: Equipment
    start: datetime
    due: datetime
    destination: str
    purpose: str


@dataclass
class PolicyDecision:
    outcome: str = ALLOW
    code: Optional[str] = None
    reason: Optional[str] = None
    annotation: Optional[str] = None


@dataclass
class PolicyResult:
    outcome: str = ALLOW
    denial: Optional[PolicyDecision] = None
    annotations: list[str] = field(default_factory=list)

    @property
    def denied(self) -> bool:
        return self.outcome == DENY

    @property
    def force_pending(self) -> bool:
        return self.outcome == FORCE_PENDING


PolicyPredicate = Callable[[Session, LoanRequest, LendingConfig], PolicyDecision]


def minimum_score(db: Session, request: LoanRequest, config: LendingConfig) -> PolicyDecision:
    score = int(request.borrower.ResponsibilityScore or 0)
    if score < config.min_borrow_score:
        return PolicyDecision(
            DENY,
            code="low_score",
            reason=f"Responsibility score {score} is below the required {config.min_borrow_score}.",
        )
    return PolicyDecision()


def duration_limit(db: Session, request: LoanRequest, config: LendingConfig) -> PolicyDecision:
    if request.due - request.start > timedelta(hours=config.max_loan_hours):
        return PolicyDecision(
            DENY,
            code="duration_policy",
            reason=f"Loans may not exceed {config.max_loan_hours} hours.",
        )
    return PolicyDecision()


def projector_room(db: Session, request: LoanRequest, config: LendingConfig) -> PolicyDecision:
    if (request.unit.Category or "") != "Projector":
        return PolicyDecision()
    destination = (request.destination or "").strip()
    if not destination:
        return PolicyDecision()
    room = db.execute(
        select(Classroom).where(func.lower(Classroom.Name) == destination.lower())
    ).scalars().first()
    if room and room.HasScreen:
        return PolicyDecision(FORCE_PENDING, code="room_has_screen", annotation=ROOM_SCREEN_NOTE)
    return PolicyDecision()


DEFAULT_POLICIES: list[PolicyPredicate] = [minimum_score, duration_limit, projector_room]


def evaluate(
    db: Session,
    request: LoanRequest,
    config: LendingConfig,
    policies: list[PolicyPredicate] | None = None,
) -> PolicyResult:
    """Run the predicates in order; the first deny wins, force-pending accumulates."""
    result = PolicyResult()
    for predicate in policies if policies is not None else DEFAULT_POLICIES:
        decision = predicate(db, request, config)
        if decision.outcome == DENY:
            LOGGER.info(
                "Loan request denied by policy user_id=%s equipment_id=%s code=%s",
                request.borrower.UserID,
                request.unit.EquipmentID,
                decision.code,
            )
            return PolicyResult(outcome=DENY, denial=decision, annotations=result.annotations)
        if decision.outcome == FORCE_PENDING:
            result.outcome = FORCE_PENDING
            if decision.annotation:
                result.annotations.append(decision.annotation)
    return result


def annotate_purpose(purpose: str, annotations: list[str]) -> str:
    text = (purpose or "").strip()
    for note in annotations:
        if note not in text:
            text = f"{text} {note}".strip()
    return text
