"""Requests API: claim submissions and their acceptance."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from claimflow.api.deps import get_actor, get_deadline
from claimflow.api.schemas import AssessmentOut, RequestCreate, RequestOut
from claimflow.auth.access_policy import Actor
from claimflow.core.database import get_db
from claimflow.core.deadline import Deadline
from claimflow.services import assessment_store, workflow

router = APIRouter(prefix="/api/v1/requests", tags=["requests"])


@router.post("", response_model=RequestOut, status_code=201)
def create_request(
    body: RequestCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    deadline: Deadline = Depends(get_deadline),
):
    return workflow.create_request(db, actor, deadline=deadline, **body.model_dump())


@router.post("/{request_id}/accept", response_model=AssessmentOut, status_code=201)
def accept_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    deadline: Deadline = Depends(get_deadline),
):
    return workflow.accept_request(db, actor, request_id, deadline=deadline)


@router.get("/{request_id}/assessment", response_model=AssessmentOut)
def get_request_assessment(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return assessment_store.find_by_request(db, actor, request_id)
