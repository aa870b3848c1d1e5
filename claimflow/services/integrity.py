"""
Database integrity report.

Read-only checks for the invariants the engine relies on. Most of them are
also enforced by constraints; the report exists to catch data that was
imported, migrated or edited outside the engine.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from claimflow.models.assessment import (
    PRE_APPOINTMENT_STAGES,
    Assessment,
    AssessmentStage,
)
from claimflow.models.assessment_records import (
    AssessmentDamage,
    AssessmentEstimate,
    AssessmentTyre,
    AssessmentVehicleValues,
    PreIncidentEstimate,
)
from claimflow.models.claim_request import ClaimRequest, RequestStatus
from claimflow.services.provisioner import missing_defaults

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    requests_without_assessment: list[str] = field(default_factory=list)
    duplicate_assessments: list[str] = field(default_factory=list)
    duplicate_tyres: list[str] = field(default_factory=list)
    duplicate_damage: list[str] = field(default_factory=list)
    duplicate_vehicle_values: list[str] = field(default_factory=list)
    duplicate_pre_incident_estimates: list[str] = field(default_factory=list)
    duplicate_estimates: list[str] = field(default_factory=list)
    assessments_missing_appointment: list[str] = field(default_factory=list)
    assessments_missing_defaults: dict[str, list[str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not any(asdict(self).values())

    def to_dict(self) -> dict:
        return {"ok": self.ok, **asdict(self)}


def _duplicated(session: Session, *columns) -> list[str]:
    stmt = select(*columns).group_by(*columns).having(func.count() > 1)
    return [":".join(str(v) for v in row) for row in session.execute(stmt)]


def check_integrity(session: Session) -> IntegrityReport:
    report = IntegrityReport()

    # Accepted requests must have exactly one assessment.
    orphaned = (
        select(ClaimRequest.request_number)
        .outerjoin(Assessment, Assessment.request_id == ClaimRequest.id)
        .where(ClaimRequest.status == RequestStatus.accepted, Assessment.id.is_(None))
        .order_by(ClaimRequest.request_number)
    )
    report.requests_without_assessment = list(session.scalars(orphaned))
    report.duplicate_assessments = _duplicated(session, Assessment.request_id)

    report.duplicate_tyres = _duplicated(session, AssessmentTyre.assessment_id, AssessmentTyre.position)
    report.duplicate_damage = _duplicated(session, AssessmentDamage.assessment_id)
    report.duplicate_vehicle_values = _duplicated(session, AssessmentVehicleValues.assessment_id)
    report.duplicate_pre_incident_estimates = _duplicated(session, PreIncidentEstimate.assessment_id)
    report.duplicate_estimates = _duplicated(session, AssessmentEstimate.assessment_id)

    exempt = list(PRE_APPOINTMENT_STAGES | {AssessmentStage.cancelled})
    report.assessments_missing_appointment = list(
        session.scalars(
            select(Assessment.assessment_number)
            .where(Assessment.appointment_id.is_(None), Assessment.stage.not_in(exempt))
            .order_by(Assessment.assessment_number)
        )
    )

    started = [
        s for s in AssessmentStage
        if s is not AssessmentStage.cancelled
        and s.position >= AssessmentStage.assessment_in_progress.position
    ]
    for case_id, number in session.execute(
        select(Assessment.id, Assessment.assessment_number)
        .where(Assessment.stage.in_(started))
        .order_by(Assessment.assessment_number)
    ):
        missing = missing_defaults(session, case_id)
        if missing:
            report.assessments_missing_defaults[number] = missing

    if not report.ok:
        logger.warning("Integrity check found problems: %s", report.to_dict())
    return report
