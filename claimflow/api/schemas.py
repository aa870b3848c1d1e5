"""Pydantic request / response schemas for the API layer."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from claimflow.models.appointment import AppointmentStatus
from claimflow.models.assessment import AssessmentStage
from claimflow.models.claim_request import RequestStatus, RequestType


# ── Requests ─────────────────────────────────────────────────────────


class RequestCreate(BaseModel):
    type: RequestType = RequestType.insurance
    claim_number: str | None = Field(None, max_length=128)
    description: str | None = None
    owner_name: str | None = Field(None, max_length=256)
    vehicle_registration: str | None = Field(None, max_length=32)
    vehicle_make: str | None = Field(None, max_length=128)
    vehicle_model: str | None = Field(None, max_length=128)


class RequestOut(BaseModel):
    id: uuid.UUID
    request_number: str
    type: RequestType
    status: RequestStatus
    claim_number: str | None = None
    owner_name: str | None = None
    vehicle_registration: str | None = None
    accepted_at: datetime | None = None
    accepted_by: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


# ── Assessments ──────────────────────────────────────────────────────


class AssessmentOut(BaseModel):
    id: uuid.UUID
    assessment_number: str
    request_id: uuid.UUID
    appointment_id: uuid.UUID | None = None
    inspection_id: uuid.UUID | None = None
    stage: AssessmentStage
    created_by: str
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    estimate_finalized_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    class Config:
        from_attributes = True


class AdvanceRequest(BaseModel):
    expected: AssessmentStage
    target: AssessmentStage
    reason: str | None = Field(None, max_length=64)


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=2000)


class TyreOut(BaseModel):
    id: uuid.UUID
    position: str
    position_label: str | None = None

    class Config:
        from_attributes = True


class DefaultRecordsOut(BaseModel):
    assessment_id: uuid.UUID
    created: int
    tyres: list[TyreOut]
    damage_id: uuid.UUID
    vehicle_values_id: uuid.UUID
    pre_incident_estimate_id: uuid.UUID
    estimate_id: uuid.UUID
    vat_percentage: Decimal


class AuditEntryOut(BaseModel):
    id: uuid.UUID
    entity_type: str
    entity_id: str
    action: str
    field_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    changed_by: str | None = None
    metadata: dict = Field(default_factory=dict, validation_alias="meta")
    created_at: datetime

    class Config:
        from_attributes = True


# ── Appointments ─────────────────────────────────────────────────────


class AppointmentCreate(BaseModel):
    request_id: uuid.UUID
    engineer_id: uuid.UUID
    appointment_date: datetime | None = None
    location_address: str | None = Field(None, max_length=512)
    notes: str | None = None


class AppointmentOut(BaseModel):
    id: uuid.UUID
    appointment_number: str
    request_id: uuid.UUID
    engineer_id: uuid.UUID
    status: AppointmentStatus
    appointment_date: datetime | None = None
    location_address: str | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True


class AppointmentCancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=2000)


class CancellationOut(BaseModel):
    appointment: AppointmentOut
    assessment: AssessmentOut | None = None
    reverted: bool
    compensation_id: uuid.UUID | None = None
