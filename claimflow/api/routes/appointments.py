"""Appointments API: scheduling, starting and cancelling site visits."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from claimflow.api.deps import get_actor, get_deadline
from claimflow.api.schemas import (
    AppointmentCancelRequest,
    AppointmentCreate,
    AppointmentOut,
    AssessmentOut,
    CancellationOut,
)
from claimflow.auth.access_policy import Actor
from claimflow.core.database import get_db
from claimflow.core.deadline import Deadline
from claimflow.services import workflow

router = APIRouter(prefix="/api/v1/appointments", tags=["appointments"])


@router.post("", response_model=AppointmentOut, status_code=201)
def schedule_appointment(
    body: AppointmentCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    deadline: Deadline = Depends(get_deadline),
):
    return workflow.schedule_appointment(
        db,
        actor,
        body.request_id,
        body.engineer_id,
        appointment_date=body.appointment_date,
        location_address=body.location_address,
        notes=body.notes,
        deadline=deadline,
    )


@router.post("/{appointment_id}/start", response_model=AssessmentOut)
def start_assessment(
    appointment_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    deadline: Deadline = Depends(get_deadline),
):
    return workflow.start_assessment(db, actor, appointment_id, deadline=deadline)


@router.post("/{appointment_id}/cancel", response_model=CancellationOut)
def cancel_appointment(
    appointment_id: uuid.UUID,
    body: AppointmentCancelRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    result = workflow.cancel_appointment(db, actor, appointment_id, reason=body.reason)
    return CancellationOut(
        appointment=AppointmentOut.model_validate(result.appointment),
        assessment=AssessmentOut.model_validate(result.assessment) if result.assessment else None,
        reverted=result.reverted,
        compensation_id=result.compensation_id,
    )
