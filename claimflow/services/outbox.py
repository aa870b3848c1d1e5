"""
Compensation outbox.

Best-effort follow-ups that failed inline (reverting a case after its
appointment was cancelled, provisioning defaults after a start, opening
the FRC record on entering costing) are
recorded in ``compensation_tasks`` and retried later by ``drain``, from
the ``claimflow drain-outbox`` command or the Celery beat task.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from claimflow.core.config import settings
from claimflow.core.errors import ClaimflowError
from claimflow.models.appointment import Appointment, AppointmentStatus
from claimflow.models.assessment import Assessment, AssessmentStage
from claimflow.models.compensation_task import (
    CompensationKind,
    CompensationStatus,
    CompensationTask,
)
from claimflow.services.provisioner import ensure_defaults, ensure_frc, missing_defaults
from claimflow.services.stage_controller import TransitionReason, transition

logger = logging.getLogger(__name__)

OUTBOX_ACTOR = "system:outbox"


def enqueue_compensation(
    session: Session,
    kind: CompensationKind,
    assessment_id: uuid.UUID,
    payload: Optional[dict] = None,
    *,
    error: Optional[str] = None,
) -> CompensationTask:
    """Record a follow-up for later retry. The caller commits."""
    task = CompensationTask(
        id=uuid.uuid4(),
        kind=kind,
        assessment_id=assessment_id,
        payload=payload or {},
        status=CompensationStatus.pending,
        attempts=0,
        last_error=error,
    )
    session.add(task)
    session.flush()
    logger.warning("Queued %s compensation %s for assessment %s", kind.value, task.id, assessment_id)
    return task


def pending_tasks(session: Session, limit: Optional[int] = None) -> list[CompensationTask]:
    stmt = (
        select(CompensationTask)
        .where(CompensationTask.status == CompensationStatus.pending)
        .order_by(CompensationTask.created_at)
    )
    if limit:
        stmt = stmt.limit(limit)
    return list(session.scalars(stmt))


def _revert_stage(session: Session, task: CompensationTask) -> None:
    case = session.get(Assessment, task.assessment_id, populate_existing=True)
    if case is None or case.stage is not AssessmentStage.assessment_in_progress:
        logger.info("Compensation %s: nothing to revert", task.id)
        return
    appointment_id = task.payload.get("appointment_id")
    if appointment_id is None or str(case.appointment_id) != appointment_id:
        logger.info("Compensation %s: assessment has been relinked, skipping", task.id)
        return
    appointment = session.get(Appointment, case.appointment_id)
    if appointment is None or appointment.status is not AppointmentStatus.cancelled:
        logger.info("Compensation %s: appointment no longer cancelled, skipping", task.id)
        return
    transition(
        session,
        case.id,
        AssessmentStage.assessment_in_progress,
        AssessmentStage.appointment_scheduled,
        changed_by=OUTBOX_ACTOR,
        reason=TransitionReason.APPOINTMENT_CANCELLED,
        metadata={"appointment_id": appointment_id, "compensation_id": task.id},
    )


def _provision_defaults(session: Session, task: CompensationTask) -> None:
    if not missing_defaults(session, task.assessment_id):
        return
    ensure_defaults(session, task.assessment_id)


def _provision_frc(session: Session, task: CompensationTask) -> None:
    case = session.get(Assessment, task.assessment_id, populate_existing=True)
    if case is None or case.stage is AssessmentStage.cancelled:
        logger.info("Compensation %s: assessment gone or cancelled, no FRC needed", task.id)
        return
    ensure_frc(session, case.id)


HANDLERS: dict[CompensationKind, Callable[[Session, CompensationTask], None]] = {
    CompensationKind.revert_stage: _revert_stage,
    CompensationKind.provision_defaults: _provision_defaults,
    CompensationKind.provision_frc: _provision_frc,
}


@dataclass
class DrainReport:
    succeeded: list[uuid.UUID] = field(default_factory=list)
    retrying: list[uuid.UUID] = field(default_factory=list)
    failed: list[uuid.UUID] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.succeeded) + len(self.retrying) + len(self.failed)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "succeeded": [str(i) for i in self.succeeded],
            "retrying": [str(i) for i in self.retrying],
            "failed": [str(i) for i in self.failed],
        }


def run_task(session: Session, task_id: uuid.UUID) -> Optional[CompensationStatus]:
    """
    Run one pending task in its own transaction and record the outcome.

    Returns ``None`` for an unknown task id; a task that is no longer pending
    is left alone and its current status returned.
    """
    task = session.get(CompensationTask, task_id, populate_existing=True)
    if task is None:
        logger.warning("Compensation %s not found", task_id)
        return None
    if task.status is not CompensationStatus.pending:
        return task.status

    try:
        HANDLERS[task.kind](session, task)
        task.attempts += 1
        task.status = CompensationStatus.done
        task.last_error = None
        task.updated_at = datetime.now(timezone.utc)
        session.commit()
        logger.info("Compensation %s (%s) completed", task.id, task.kind.value)
        return CompensationStatus.done
    except (ClaimflowError, SQLAlchemyError) as exc:
        session.rollback()
        task = session.get(CompensationTask, task_id, populate_existing=True)
        task.attempts += 1
        task.last_error = str(exc)
        task.updated_at = datetime.now(timezone.utc)
        if task.attempts >= settings.outbox_max_attempts:
            task.status = CompensationStatus.failed
            logger.error(
                "Compensation %s (%s) for assessment %s failed permanently after %d attempts: %s",
                task.id,
                task.kind.value,
                task.assessment_id,
                task.attempts,
                exc,
            )
        else:
            logger.warning("Compensation %s attempt %d failed: %s", task.id, task.attempts, exc)
        session.commit()
        return task.status


def drain(session: Session, *, limit: Optional[int] = None) -> DrainReport:
    """Run every pending compensation once."""
    report = DrainReport()
    task_ids = [t.id for t in pending_tasks(session, limit)]
    session.commit()
    for task_id in task_ids:
        status = run_task(session, task_id)
        if status is None:
            continue
        if status is CompensationStatus.done:
            report.succeeded.append(task_id)
        elif status is CompensationStatus.failed:
            report.failed.append(task_id)
        else:
            report.retrying.append(task_id)
    if report.processed:
        logger.info("Outbox drained: %s", report.to_dict())
    return report
