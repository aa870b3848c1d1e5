"""Assessments API: policy-filtered reads and stage changes."""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from claimflow.api.deps import get_actor, get_deadline
from claimflow.api.schemas import (
    AdvanceRequest,
    AssessmentOut,
    AuditEntryOut,
    CancelRequest,
    DefaultRecordsOut,
    TyreOut,
)
from claimflow.auth.access_policy import Actor, require_admin
from claimflow.core.database import get_db
from claimflow.core.deadline import Deadline
from claimflow.models.assessment import AssessmentStage
from claimflow.services import assessment_store, stage_controller, workflow
from claimflow.services.audit import audit_trail
from claimflow.services.provisioner import ensure_defaults

router = APIRouter(prefix="/api/v1/assessments", tags=["assessments"])


@router.get("", response_model=list[AssessmentOut])
def list_assessments(
    stage: Optional[AssessmentStage] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return assessment_store.list_visible(db, actor, stage, limit=limit, offset=offset)


@router.get("/{assessment_id}", response_model=AssessmentOut)
def get_assessment(
    assessment_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return assessment_store.get(db, actor, assessment_id)


@router.post("/{assessment_id}/advance", response_model=AssessmentOut)
def advance_assessment(
    assessment_id: uuid.UUID,
    body: AdvanceRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    deadline: Deadline = Depends(get_deadline),
):
    return workflow.advance_assessment(
        db, actor, assessment_id, body.expected, body.target, reason=body.reason, deadline=deadline
    )


@router.post("/{assessment_id}/cancel", response_model=AssessmentOut)
def cancel_assessment(
    assessment_id: uuid.UUID,
    body: CancelRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    deadline: Deadline = Depends(get_deadline),
):
    case = stage_controller.cancel_assessment(
        db, actor, assessment_id, reason=body.reason, deadline=deadline
    )
    db.commit()
    return case


@router.post("/{assessment_id}/defaults", response_model=DefaultRecordsOut)
def provision_defaults(
    assessment_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    deadline: Deadline = Depends(get_deadline),
):
    case = assessment_store.get(db, actor, assessment_id)
    records = ensure_defaults(db, case.id, deadline=deadline)
    db.commit()
    return DefaultRecordsOut(
        assessment_id=case.id,
        created=records.created,
        tyres=[TyreOut.model_validate(t) for t in records.tyres],
        damage_id=records.damage.id,
        vehicle_values_id=records.vehicle_values.id,
        pre_incident_estimate_id=records.pre_incident_estimate.id,
        estimate_id=records.estimate.id,
        vat_percentage=records.estimate.vat_percentage,
    )


@router.get("/{assessment_id}/audit", response_model=list[AuditEntryOut])
def get_audit_trail(
    assessment_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    require_admin(actor, "read audit trails")
    case = assessment_store.get(db, actor, assessment_id)
    return audit_trail(db, "assessment", case.id)
