"""
Pipeline workflow operations.

These are the entry points the HTTP layer calls. Unlike the store and the
stage controller, each operation owns its transaction: it commits on
success and rolls back on failure. Best-effort follow-ups (provisioning
after a start or advance, reverting a case after its appointment is cancelled) run in
a separate transaction after the primary commit, so their failure can
never undo the primary change. Failed follow-ups are logged and queued in
the compensation outbox.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from claimflow.auth.access_policy import Actor, owns_appointment, require_admin
from claimflow.core.deadline import Deadline
from claimflow.core.errors import (
    ClaimflowError,
    DuplicateRequest,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
)
from claimflow.models.appointment import Appointment, AppointmentStatus
from claimflow.models.assessment import Assessment, AssessmentStage
from claimflow.models.claim_request import ClaimRequest, RequestStatus, RequestType
from claimflow.models.compensation_task import CompensationKind
from claimflow.models.engineer import Engineer
from claimflow.models.inspection import Inspection, InspectionStatus
from claimflow.models.sequence_counter import SequenceKind
from claimflow.services import assessment_store
from claimflow.services.audit import append_audit_entry
from claimflow.services.outbox import enqueue_compensation
from claimflow.services.provisioner import ensure_defaults, ensure_frc, missing_defaults
from claimflow.services.sequence_allocator import allocate_and_insert
from claimflow.services.stage_controller import TransitionReason, advance, transition

logger = logging.getLogger(__name__)

REQUEST_KINDS = {
    RequestType.insurance: SequenceKind.claim_request,
    RequestType.private: SequenceKind.private_request,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_request(
    session: Session,
    actor: Actor,
    *,
    type: RequestType = RequestType.insurance,
    claim_number: Optional[str] = None,
    description: Optional[str] = None,
    owner_name: Optional[str] = None,
    vehicle_registration: Optional[str] = None,
    vehicle_make: Optional[str] = None,
    vehicle_model: Optional[str] = None,
    deadline: Optional[Deadline] = None,
) -> ClaimRequest:
    """Register a claim submission with a CLM- (insurance) or REQ- (private) number."""
    require_admin(actor, "create requests")
    type = RequestType(type)

    def build(number: str) -> ClaimRequest:
        return ClaimRequest(
            id=uuid.uuid4(),
            request_number=number,
            type=type,
            status=RequestStatus.submitted,
            claim_number=claim_number,
            description=description,
            owner_name=owner_name,
            vehicle_registration=vehicle_registration,
            vehicle_make=vehicle_make,
            vehicle_model=vehicle_model,
            created_by=actor.label,
        )

    try:
        request = allocate_and_insert(
            session,
            REQUEST_KINDS[type],
            build,
            number_column=ClaimRequest.request_number,
            deadline=deadline,
        )
        append_audit_entry(
            session,
            entity_type="request",
            entity_id=request.id,
            action="created",
            changed_by=actor.label,
            field_name="status",
            new_value=request.status,
            metadata={"request_number": request.request_number},
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    return request


def accept_request(
    session: Session,
    actor: Actor,
    request_id: uuid.UUID,
    *,
    deadline: Optional[Deadline] = None,
) -> Assessment:
    """
    Accept a submitted request: the single creation point for its assessment.

    Marks the request accepted, opens an inspection, creates the assessment
    and moves it to ``request_accepted``, all in one transaction.

    Raises:
        AccessDenied: actor is not an administrator.
        NotFound: unknown request.
        DuplicateRequest: the request was already accepted.
        PreconditionFailed: the request was cancelled.
    """
    require_admin(actor, "accept requests")
    try:
        request = session.get(ClaimRequest, request_id, populate_existing=True)
        if request is None:
            raise NotFound(f"Request {request_id} not found", request_id=request_id)

        result = session.execute(
            update(ClaimRequest)
            .where(ClaimRequest.id == request_id, ClaimRequest.status == RequestStatus.submitted)
            .values(status=RequestStatus.accepted, accepted_at=_utcnow(), accepted_by=actor.label)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.refresh(request)
            if request.status is RequestStatus.accepted:
                raise DuplicateRequest(
                    f"Request {request.request_number} was already accepted",
                    request_id=request_id,
                )
            raise PreconditionFailed(
                f"Request {request.request_number} is {request.status.value}",
                request_id=request_id,
            )
        session.refresh(request)
        append_audit_entry(
            session,
            entity_type="request",
            entity_id=request.id,
            action="status_changed",
            changed_by=actor.label,
            field_name="status",
            old_value=RequestStatus.submitted,
            new_value=RequestStatus.accepted,
        )

        inspection = allocate_and_insert(
            session,
            SequenceKind.inspection,
            lambda number: Inspection(
                id=uuid.uuid4(),
                inspection_number=number,
                request_id=request.id,
                status=InspectionStatus.pending,
            ),
            number_column=Inspection.inspection_number,
            deadline=deadline,
        )
        case = assessment_store.create_for_request(
            session, actor, request.id, inspection_id=inspection.id, deadline=deadline
        )
        case = transition(
            session,
            case.id,
            AssessmentStage.request_submitted,
            AssessmentStage.request_accepted,
            changed_by=actor.label,
            deadline=deadline,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    return case


def schedule_appointment(
    session: Session,
    actor: Actor,
    request_id: uuid.UUID,
    engineer_id: uuid.UUID,
    *,
    appointment_date: Optional[datetime] = None,
    location_address: Optional[str] = None,
    notes: Optional[str] = None,
    deadline: Optional[Deadline] = None,
) -> Appointment:
    """
    Book a site visit for an accepted request and link it to the case.

    The link is made before the case advances to ``appointment_scheduled``.
    Rescheduling after a cancellation replaces the cancelled appointment
    without moving the case.
    """
    require_admin(actor, "schedule appointments")
    try:
        request = session.get(ClaimRequest, request_id)
        if request is None:
            raise NotFound(f"Request {request_id} not found", request_id=request_id)
        if request.status is not RequestStatus.accepted:
            raise PreconditionFailed(
                f"Request {request.request_number} is {request.status.value}, not accepted",
                request_id=request_id,
            )
        engineer = session.get(Engineer, engineer_id)
        if engineer is None:
            raise NotFound(f"Engineer {engineer_id} not found", engineer_id=engineer_id)
        if not engineer.is_active:
            raise PreconditionFailed(f"Engineer {engineer.name} is inactive", engineer_id=engineer_id)

        case = assessment_store.find_by_request(session, actor, request_id)
        if case.stage not in (AssessmentStage.request_accepted, AssessmentStage.appointment_scheduled):
            raise InvalidTransition(
                f"Assessment {case.assessment_number} is {case.stage.value}; "
                "appointments can only be booked before assessment starts",
                assessment_id=case.id,
            )

        appointment = allocate_and_insert(
            session,
            SequenceKind.appointment,
            lambda number: Appointment(
                id=uuid.uuid4(),
                appointment_number=number,
                request_id=request.id,
                inspection_id=case.inspection_id,
                engineer_id=engineer.id,
                status=AppointmentStatus.scheduled,
                appointment_date=appointment_date,
                location_address=location_address,
                notes=notes,
                created_by=actor.label,
            ),
            number_column=Appointment.appointment_number,
            deadline=deadline,
        )
        append_audit_entry(
            session,
            entity_type="appointment",
            entity_id=appointment.id,
            action="created",
            changed_by=actor.label,
            field_name="status",
            new_value=appointment.status,
            metadata={
                "appointment_number": appointment.appointment_number,
                "engineer_id": engineer.id,
            },
        )
        if case.inspection_id is not None:
            session.execute(
                update(Inspection)
                .where(Inspection.id == case.inspection_id)
                .values(status=InspectionStatus.scheduled)
                .execution_options(synchronize_session=False)
            )

        assessment_store.link_appointment(session, actor, case.id, appointment.id)
        if case.stage is AssessmentStage.request_accepted:
            transition(
                session,
                case.id,
                AssessmentStage.request_accepted,
                AssessmentStage.appointment_scheduled,
                changed_by=actor.label,
                deadline=deadline,
            )
        session.commit()
    except Exception:
        session.rollback()
        raise
    return appointment


def _visible_appointment(session: Session, actor: Actor, appointment_id: uuid.UUID) -> Appointment:
    appointment = session.get(Appointment, appointment_id, populate_existing=True)
    if appointment is None or not owns_appointment(actor, appointment):
        raise NotFound(f"Appointment {appointment_id} not found", appointment_id=appointment_id)
    return appointment


def _case_for_appointment(session: Session, appointment: Appointment) -> Assessment:
    case = session.scalars(
        select(Assessment)
        .where(Assessment.request_id == appointment.request_id)
        .execution_options(populate_existing=True)
    ).one_or_none()
    if case is None:
        logger.error(
            "Data integrity: request %s (appointment %s) has no assessment",
            appointment.request_id,
            appointment.appointment_number,
        )
        raise NotFound(
            f"No assessment for appointment {appointment.appointment_number}",
            appointment_id=appointment.id,
        )
    return case


def _follow_up(session: Session, assessment_id: uuid.UUID, kind: CompensationKind, action) -> bool:
    """
    Run *action* in its own transaction after a committed stage change.

    Failure is logged and queued for retry as *kind*; it never propagates.
    """
    try:
        action(session, assessment_id)
        session.commit()
        return True
    except (ClaimflowError, SQLAlchemyError) as exc:
        session.rollback()
        logger.error("Follow-up %s for assessment %s failed: %s", kind.value, assessment_id, exc)
        enqueue_compensation(session, kind, assessment_id, error=str(exc))
        session.commit()
        return False


def provision_best_effort(session: Session, assessment_id: uuid.UUID) -> bool:
    """Provision default records; failures go to the outbox."""
    return _follow_up(
        session, assessment_id, CompensationKind.provision_defaults,
        lambda s, case_id: ensure_defaults(s, case_id),
    )


def provision_frc_best_effort(session: Session, assessment_id: uuid.UUID) -> bool:
    """Open the final repair costing record; failures go to the outbox."""
    return _follow_up(
        session, assessment_id, CompensationKind.provision_frc,
        lambda s, case_id: ensure_frc(s, case_id),
    )


def advance_assessment(
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
    Commit an actor-facing stage advance, then run its follow-ups.

    Entering ``assessment_in_progress`` provisions the default records and
    entering ``frc_in_progress`` opens the FRC record. Either follow-up
    failing leaves the new stage in place and is queued in the outbox.
    """
    try:
        case = advance(
            session, actor, assessment_id, expected, target, reason=reason, deadline=deadline
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    if case.stage is AssessmentStage.assessment_in_progress:
        provision_best_effort(session, case.id)
    elif case.stage is AssessmentStage.frc_in_progress:
        provision_frc_best_effort(session, case.id)
    return case


def start_assessment(
    session: Session,
    actor: Actor,
    appointment_id: uuid.UUID,
    *,
    deadline: Optional[Deadline] = None,
) -> Assessment:
    """
    Open the case workspace from an appointment.

    Links the appointment if needed, advances the case through
    ``appointment_scheduled`` to ``assessment_in_progress`` and provisions
    the default child records.

    Safe to repeat: once the case is in ``assessment_in_progress`` (or
    later) a call writes nothing and returns the current state, except
    that missing child records are provisioned.
    """
    appointment = _visible_appointment(session, actor, appointment_id)
    case = _case_for_appointment(session, appointment)

    if case.stage is AssessmentStage.cancelled:
        raise InvalidTransition(
            f"Assessment {case.assessment_number} is cancelled", assessment_id=case.id
        )
    if case.stage.position >= AssessmentStage.assessment_in_progress.position:
        if case.appointment_id != appointment.id:
            raise PreconditionFailed(
                f"Assessment {case.assessment_number} is linked to another appointment",
                assessment_id=case.id,
                appointment_id=appointment.id,
            )
        session.commit()
        if missing_defaults(session, case.id):
            provision_best_effort(session, case.id)
        return case

    if case.stage not in (AssessmentStage.request_accepted, AssessmentStage.appointment_scheduled):
        raise InvalidTransition(
            f"Assessment {case.assessment_number} is {case.stage.value}; accept the request first",
            assessment_id=case.id,
        )
    if appointment.status is AppointmentStatus.cancelled:
        raise PreconditionFailed(
            f"Appointment {appointment.appointment_number} is cancelled",
            appointment_id=appointment.id,
        )

    # Ownership is witnessed by the appointment the caller was allowed to load.
    witness = Assessment.appointment_id == appointment.id
    try:
        if case.appointment_id != appointment.id:
            case = assessment_store.link_appointment(session, actor, case.id, appointment.id)
        if case.stage is AssessmentStage.request_accepted:
            case = transition(
                session,
                case.id,
                AssessmentStage.request_accepted,
                AssessmentStage.appointment_scheduled,
                changed_by=actor.label,
                scope=witness,
                deadline=deadline,
            )
        case = transition(
            session,
            case.id,
            AssessmentStage.appointment_scheduled,
            AssessmentStage.assessment_in_progress,
            changed_by=actor.label,
            scope=witness,
            metadata={"appointment_number": appointment.appointment_number},
            deadline=deadline,
        )
        session.execute(
            update(Appointment)
            .where(Appointment.id == appointment.id, Appointment.status == AppointmentStatus.scheduled)
            .values(status=AppointmentStatus.in_progress)
            .execution_options(synchronize_session=False)
        )
        session.refresh(appointment)
        session.commit()
    except Exception:
        session.rollback()
        raise

    provision_best_effort(session, case.id)
    return case


@dataclass
class CancellationResult:
    appointment: Appointment
    assessment: Optional[Assessment] = None
    reverted: bool = False
    compensation_id: Optional[uuid.UUID] = None


def cancel_appointment(
    session: Session,
    actor: Actor,
    appointment_id: uuid.UUID,
    *,
    reason: Optional[str] = None,
) -> CancellationResult:
    """
    Cancel an appointment, then revert its case to ``appointment_scheduled``.

    The cancellation and its audit entry commit first. The revert is
    best-effort: it only applies to a case at ``assessment_in_progress``,
    and if it fails the failure is logged at ERROR and queued in the
    outbox. Cancelling an already-cancelled appointment writes nothing.
    """
    appointment = _visible_appointment(session, actor, appointment_id)
    if appointment.status is AppointmentStatus.cancelled:
        session.commit()
        return CancellationResult(appointment=appointment)

    try:
        old_status = appointment.status
        result = session.execute(
            update(Appointment)
            .where(Appointment.id == appointment.id, Appointment.status != AppointmentStatus.cancelled)
            .values(
                status=AppointmentStatus.cancelled,
                cancelled_at=_utcnow(),
                cancellation_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.commit()
            session.refresh(appointment)
            return CancellationResult(appointment=appointment)
        append_audit_entry(
            session,
            entity_type="appointment",
            entity_id=appointment.id,
            action="cancelled",
            changed_by=actor.label,
            field_name="status",
            old_value=old_status,
            new_value=AppointmentStatus.cancelled,
            metadata={"appointment_number": appointment.appointment_number, "reason": reason},
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(appointment)
    logger.info("Appointment %s cancelled by %s", appointment.appointment_number, actor.label)

    case = session.scalars(
        select(Assessment)
        .where(Assessment.appointment_id == appointment.id)
        .execution_options(populate_existing=True)
    ).one_or_none()
    outcome = CancellationResult(appointment=appointment, assessment=case)
    if case is None or case.stage is not AssessmentStage.assessment_in_progress:
        session.commit()
        return outcome

    try:
        outcome.assessment = transition(
            session,
            case.id,
            AssessmentStage.assessment_in_progress,
            AssessmentStage.appointment_scheduled,
            changed_by=actor.label,
            scope=Assessment.appointment_id == appointment.id,
            reason=TransitionReason.APPOINTMENT_CANCELLED,
            metadata={"appointment_number": appointment.appointment_number},
        )
        session.commit()
        outcome.reverted = True
    except (ClaimflowError, SQLAlchemyError) as exc:
        session.rollback()
        logger.error(
            "Appointment %s cancelled but assessment %s could not be reverted: %s",
            appointment.appointment_number,
            case.id,
            exc,
        )
        task = enqueue_compensation(
            session,
            CompensationKind.revert_stage,
            case.id,
            {"appointment_id": str(appointment.id)},
            error=str(exc),
        )
        session.commit()
        outcome.compensation_id = task.id
        outcome.assessment = session.get(Assessment, case.id, populate_existing=True)
    return outcome
