"""
Stage Transition Controller
===========================
Validates and applies assessment stage changes.

Every change is a compare-and-swap: the UPDATE only matches while the row
is still at the expected stage, so two concurrent advances from the same
stage cannot both succeed. The winner writes exactly one audit entry in
the same transaction; the loser gets ``StaleState`` with the stage it
actually found.

Allowed edges:
  - one step forward along PIPELINE
  - any non-terminal stage -> cancelled
  - appointment_scheduled | assessment_in_progress -> appointment_scheduled,
    only with reason ``appointment_cancelled``

The controller never provisions child records; follow-ups that depend on
the new stage run after the commit (see ``workflow.advance_assessment``).
"""

from __future__ import annotations

import enum
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, true, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from claimflow.auth.access_policy import Actor, assessment_predicate, require_admin
from claimflow.core.deadline import Deadline, check_deadline
from claimflow.core.errors import (
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    StaleState,
)
from claimflow.models.assessment import PIPELINE, Assessment, AssessmentStage
from claimflow.services.audit import append_audit_entry

logger = logging.getLogger(__name__)


class TransitionReason(str, enum.Enum):
    APPOINTMENT_CANCELLED = "appointment_cancelled"


ALLOWED_PREDECESSORS: dict[AssessmentStage, frozenset[AssessmentStage]] = {
    target: frozenset({source}) for source, target in zip(PIPELINE, PIPELINE[1:])
}
ALLOWED_PREDECESSORS[AssessmentStage.cancelled] = frozenset(
    s for s in AssessmentStage if not s.is_terminal
)

FALLBACK_EDGES = frozenset({
    (AssessmentStage.appointment_scheduled, AssessmentStage.appointment_scheduled),
    (AssessmentStage.assessment_in_progress, AssessmentStage.appointment_scheduled),
})

# Column stamped when a case enters the stage.
STAGE_TIMESTAMPS = {
    AssessmentStage.assessment_in_progress: "started_at",
    AssessmentStage.estimate_finalized: "estimate_finalized_at",
    AssessmentStage.frc_completed: "completed_at",
    AssessmentStage.cancelled: "cancelled_at",
}


def validate_transition(
    source: AssessmentStage,
    target: AssessmentStage,
    reason: Optional[str] = None,
) -> None:
    """Raise ``InvalidTransition`` unless *source* -> *target* is an allowed edge."""
    if source.is_terminal:
        raise InvalidTransition(
            f"{source.value} is terminal", expected=source, target=target
        )
    if (source, target) in FALLBACK_EDGES:
        if reason != TransitionReason.APPOINTMENT_CANCELLED.value:
            raise InvalidTransition(
                f"{source.value} -> {target.value} is only allowed after an appointment "
                "cancellation",
                expected=source,
                target=target,
            )
        return
    if source not in ALLOWED_PREDECESSORS.get(target, ()):
        raise InvalidTransition(
            f"Cannot move from {source.value} to {target.value}",
            expected=source,
            target=target,
        )


def _load(session: Session, assessment_id: uuid.UUID, scope: ColumnElement[bool]) -> Assessment:
    stmt = (
        select(Assessment)
        .where(Assessment.id == assessment_id, scope)
        .execution_options(populate_existing=True)
    )
    case = session.scalars(stmt).one_or_none()
    if case is None:
        raise NotFound(f"Assessment {assessment_id} not found", assessment_id=assessment_id)
    return case


def _stale(case: Assessment, expected: AssessmentStage, actual: AssessmentStage) -> StaleState:
    return StaleState(
        f"Assessment {case.assessment_number} is at {actual.value}, expected {expected.value}",
        expected=expected,
        actual=actual,
        assessment_id=case.id,
    )


def transition(
    session: Session,
    assessment_id: uuid.UUID,
    expected: AssessmentStage | str,
    target: AssessmentStage | str,
    *,
    changed_by: str,
    scope: Optional[ColumnElement[bool]] = None,
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
    deadline: Optional[Deadline] = None,
) -> Assessment:
    """
    Compare-and-swap *assessment_id* from *expected* to *target*.

    *scope* restricts which rows may be touched (an access predicate, or an
    ownership witness such as ``Assessment.appointment_id == ...``). Runs in
    the caller's transaction; the caller commits.
    """
    expected = AssessmentStage(expected)
    target = AssessmentStage(target)
    reason = getattr(reason, "value", reason)
    scope = true() if scope is None else scope

    check_deadline(deadline, "stage transition")
    validate_transition(expected, target, reason)

    case = _load(session, assessment_id, scope)
    if case.stage is not expected:
        raise _stale(case, expected, case.stage)
    if expected is target:
        return case
    if target.requires_appointment and case.appointment_id is None:
        raise PreconditionFailed(
            f"Assessment {case.assessment_number} has no linked appointment; "
            f"cannot enter {target.value}",
            assessment_id=case.id,
            target=target,
        )

    now = datetime.now(timezone.utc)
    values = {"stage": target, "updated_at": now}
    stamp = STAGE_TIMESTAMPS.get(target)
    if stamp is not None:
        values[stamp] = now

    stmt = (
        update(Assessment)
        .where(Assessment.id == assessment_id, Assessment.stage == expected, scope)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        with session.begin_nested():
            result = session.execute(stmt)
    except IntegrityError as exc:
        # ck_assessments_appointment_required
        raise PreconditionFailed(
            f"Assessment {case.assessment_number} cannot enter {target.value} "
            "without a linked appointment",
            assessment_id=case.id,
            target=target,
        ) from exc

    if result.rowcount == 0:
        actual = session.scalar(
            select(Assessment.stage).where(Assessment.id == assessment_id, scope)
        )
        if actual is None:
            raise NotFound(f"Assessment {assessment_id} not found", assessment_id=assessment_id)
        raise _stale(case, expected, actual)

    append_audit_entry(
        session,
        entity_type="assessment",
        entity_id=case.id,
        action="stage_changed",
        changed_by=changed_by,
        field_name="stage",
        old_value=expected,
        new_value=target,
        metadata={"reason": reason, **(metadata or {})},
    )
    session.refresh(case)
    logger.info(
        "Assessment %s: %s -> %s (%s)",
        case.assessment_number,
        expected.value,
        target.value,
        changed_by,
    )
    return case


def advance(
    session: Session,
    actor: Actor,
    assessment_id: uuid.UUID,
    expected: AssessmentStage | str,
    target: AssessmentStage | str,
    *,
    reason: Optional[str] = None,
    deadline: Optional[Deadline] = None,
) -> Assessment:
    """
    Actor-facing CAS advance, filtered by the actor's access predicate.

    Cancelling and archiving are administrator-only.
    """
    target = AssessmentStage(target)
    if target in (AssessmentStage.cancelled, AssessmentStage.archived):
        require_admin(actor, f"move assessments to {target.value}")
    return transition(
        session,
        assessment_id,
        expected,
        target,
        changed_by=actor.label,
        scope=assessment_predicate(actor),
        reason=reason,
        deadline=deadline,
    )


def cancel_assessment(
    session: Session,
    actor: Actor,
    assessment_id: uuid.UUID,
    *,
    reason: Optional[str] = None,
    deadline: Optional[Deadline] = None,
) -> Assessment:
    """Side-exit any non-terminal assessment to ``cancelled``."""
    require_admin(actor, "cancel assessments")
    case = _load(session, assessment_id, true())
    if case.stage.is_terminal:
        raise InvalidTransition(
            f"Assessment {case.assessment_number} is already {case.stage.value}",
            assessment_id=case.id,
        )
    return transition(
        session,
        case.id,
        case.stage,
        AssessmentStage.cancelled,
        changed_by=actor.label,
        metadata={"note": reason},
        deadline=deadline,
    )


def archive(
    session: Session,
    actor: Actor,
    assessment_id: uuid.UUID,
    *,
    deadline: Optional[Deadline] = None,
) -> Assessment:
    require_admin(actor, "archive assessments")
    return transition(
        session,
        assessment_id,
        AssessmentStage.frc_completed,
        AssessmentStage.archived,
        changed_by=actor.label,
        deadline=deadline,
    )
