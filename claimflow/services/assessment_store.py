"""
Assessment (case) record store.

Creation has exactly one entry point, ``create_for_request``, and it is
administrator-only. Every read path is strict find-or-fail: a request that
exists without an assessment is a data-integrity fault and is reported as
``NotFound``, never repaired on the fly.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from claimflow.auth.access_policy import (
    Actor,
    can_create_assessment,
    owns_appointment,
    scope_assessments,
)
from claimflow.core.deadline import Deadline
from claimflow.core.errors import (
    AccessDenied,
    DuplicateRequest,
    NotFound,
    PreconditionFailed,
    StaleState,
)
from claimflow.models.appointment import Appointment, AppointmentStatus
from claimflow.models.assessment import Assessment, AssessmentStage
from claimflow.models.claim_request import ClaimRequest
from claimflow.models.sequence_counter import SequenceKind
from claimflow.services.audit import append_audit_entry
from claimflow.services.sequence_allocator import allocate_and_insert

logger = logging.getLogger(__name__)

ENTITY_TYPE = "assessment"


def _assessment_exists(session: Session, request_id: uuid.UUID) -> bool:
    return session.scalar(
        select(Assessment.id).where(Assessment.request_id == request_id)
    ) is not None


def create_for_request(
    session: Session,
    actor: Actor,
    request_id: uuid.UUID,
    *,
    inspection_id: Optional[uuid.UUID] = None,
    deadline: Optional[Deadline] = None,
) -> Assessment:
    """
    Create the one assessment for *request_id* at ``request_submitted``.

    Runs in the caller's transaction; the caller commits.

    Raises:
        AccessDenied: actor is not an administrator.
        NotFound: the request does not exist.
        DuplicateRequest: the request already has an assessment.
    """
    if not can_create_assessment(actor):
        logger.warning("Access denied: %s attempted to create an assessment", actor.label)
        raise AccessDenied("Only administrators may create assessments", actor=actor.label)

    request = session.get(ClaimRequest, request_id)
    if request is None:
        raise NotFound(f"Request {request_id} not found", request_id=request_id)

    if _assessment_exists(session, request_id):
        raise DuplicateRequest(
            f"Request {request.request_number} already has an assessment",
            request_id=request_id,
        )

    def build(number: str) -> Assessment:
        return Assessment(
            id=uuid.uuid4(),
            assessment_number=number,
            request_id=request_id,
            inspection_id=inspection_id,
            stage=AssessmentStage.request_submitted,
            created_by=actor.label,
        )

    try:
        case = allocate_and_insert(
            session,
            SequenceKind.assessment,
            build,
            number_column=Assessment.assessment_number,
            deadline=deadline,
        )
    except IntegrityError as exc:
        # A concurrent writer won the unique(request_id) race.
        if _assessment_exists(session, request_id):
            raise DuplicateRequest(
                f"Request {request.request_number} already has an assessment",
                request_id=request_id,
            ) from exc
        raise PreconditionFailed(
            f"Assessment for request {request.request_number} could not be created",
            request_id=request_id,
        ) from exc

    append_audit_entry(
        session,
        entity_type=ENTITY_TYPE,
        entity_id=case.id,
        action="created",
        changed_by=actor.label,
        field_name="stage",
        new_value=case.stage,
        metadata={
            "assessment_number": case.assessment_number,
            "request_number": request.request_number,
        },
    )
    logger.info("Assessment %s created for request %s", case.assessment_number, request.request_number)
    return case


def find_by_request(session: Session, actor: Actor, request_id: uuid.UUID) -> Assessment:
    """
    Return the assessment for *request_id* or raise ``NotFound``.

    Never creates. A request without an assessment is logged as an
    integrity fault.
    """
    stmt = scope_assessments(
        select(Assessment).where(Assessment.request_id == request_id), actor
    )
    case = session.scalars(stmt).one_or_none()
    if case is not None:
        return case

    if session.get(ClaimRequest, request_id) is not None and not _assessment_exists(session, request_id):
        logger.error("Data integrity: request %s has no assessment", request_id)
    raise NotFound(f"No assessment for request {request_id}", request_id=request_id)


def get(session: Session, actor: Actor, assessment_id: uuid.UUID) -> Assessment:
    """Policy-filtered read by id."""
    stmt = scope_assessments(
        select(Assessment)
        .where(Assessment.id == assessment_id)
        .execution_options(populate_existing=True),
        actor,
    )
    case = session.scalars(stmt).one_or_none()
    if case is None:
        raise NotFound(f"Assessment {assessment_id} not found", assessment_id=assessment_id)
    return case


def list_visible(
    session: Session,
    actor: Actor,
    stage: Optional[AssessmentStage] = None,
    *,
    limit: int = 100,
    offset: int = 0,
) -> list[Assessment]:
    stmt = select(Assessment)
    if stage is not None:
        stmt = stmt.where(Assessment.stage == AssessmentStage(stage))
    stmt = scope_assessments(stmt, actor)
    stmt = stmt.order_by(Assessment.created_at.desc(), Assessment.assessment_number.desc())
    return list(session.scalars(stmt.offset(offset).limit(limit)))


def link_appointment(
    session: Session,
    actor: Actor,
    assessment_id: uuid.UUID,
    appointment_id: uuid.UUID,
) -> Assessment:
    """
    Point the assessment at *appointment_id*.

    The appointment is the ownership witness: administrators may link any
    appointment, caseworkers only one assigned to them. The appointment
    must belong to the same request. Re-linking the same appointment is a
    no-op; replacing a linked appointment is only allowed once that
    appointment is cancelled.
    """
    appointment = session.get(Appointment, appointment_id)
    if appointment is None or not owns_appointment(actor, appointment):
        raise NotFound(f"Appointment {appointment_id} not found", appointment_id=appointment_id)

    case = session.scalars(
        select(Assessment)
        .where(Assessment.id == assessment_id)
        .execution_options(populate_existing=True)
    ).one_or_none()
    if case is None:
        raise NotFound(f"Assessment {assessment_id} not found", assessment_id=assessment_id)

    if case.appointment_id == appointment.id:
        return case
    if appointment.request_id != case.request_id:
        raise PreconditionFailed(
            f"Appointment {appointment.appointment_number} belongs to another request",
            assessment_id=case.id,
            appointment_id=appointment.id,
        )
    if appointment.status is AppointmentStatus.cancelled:
        raise PreconditionFailed(
            f"Appointment {appointment.appointment_number} is cancelled",
            appointment_id=appointment.id,
        )
    if case.stage.is_terminal:
        raise PreconditionFailed(
            f"Assessment {case.assessment_number} is {case.stage.value}",
            assessment_id=case.id,
        )

    previous = case.appointment_id
    if previous is not None:
        current = session.get(Appointment, previous)
        if current is not None and current.status is not AppointmentStatus.cancelled:
            raise PreconditionFailed(
                f"Assessment {case.assessment_number} is already linked to "
                f"{current.appointment_number}",
                assessment_id=case.id,
                appointment_id=previous,
            )

    guard = (
        Assessment.appointment_id.is_(None)
        if previous is None
        else Assessment.appointment_id == previous
    )
    stmt = (
        update(Assessment)
        .where(Assessment.id == case.id, guard)
        .values(appointment_id=appointment.id, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    try:
        with session.begin_nested():
            result = session.execute(stmt)
    except IntegrityError as exc:
        raise PreconditionFailed(
            f"Appointment {appointment.appointment_number} is linked to another assessment",
            appointment_id=appointment.id,
        ) from exc

    if result.rowcount == 0:
        session.refresh(case)
        raise StaleState(
            f"Assessment {case.assessment_number} appointment link changed concurrently",
            expected=previous,
            actual=case.appointment_id,
        )

    append_audit_entry(
        session,
        entity_type=ENTITY_TYPE,
        entity_id=case.id,
        action="appointment_linked",
        changed_by=actor.label,
        field_name="appointment_id",
        old_value=previous,
        new_value=appointment.id,
        metadata={"appointment_number": appointment.appointment_number},
    )
    session.refresh(case)
    return case
