"""
Child Record Provisioner
========================
Creates the fixed set of per-assessment records:

  - five tyre slots (front_left, front_right, rear_left, rear_right, spare)
  - damage record
  - vehicle valuation record
  - pre-incident estimate
  - estimate

Each insert is ``INSERT … ON CONFLICT DO NOTHING`` on the record's unique
key, so any number of calls (retries, reloads, double clicks, concurrent
workers) leaves exactly one row per key and existing rows untouched.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from claimflow.core.database import insert_ignoring_conflicts
from claimflow.core.deadline import Deadline, check_deadline
from claimflow.core.errors import NotFound, PreconditionFailed
from claimflow.models.assessment import Assessment, AssessmentStage
from claimflow.models.assessment_records import (
    AssessmentDamage,
    AssessmentEstimate,
    AssessmentFRC,
    AssessmentTyre,
    AssessmentVehicleValues,
    PreIncidentEstimate,
    TyrePosition,
)

logger = logging.getLogger(__name__)

DEFAULT_VAT_PERCENTAGE = Decimal("15.00")
DEFAULT_CURRENCY = "ZAR"

# slot key -> model for the one-per-assessment records
SINGLETON_RECORDS = {
    "damage": AssessmentDamage,
    "vehicle_values": AssessmentVehicleValues,
    "pre_incident_estimate": PreIncidentEstimate,
    "estimate": AssessmentEstimate,
}


def tyre_slot_key(position: TyrePosition | str) -> str:
    return f"tyre:{TyrePosition(position).value}"


_TYRE_VALUES = frozenset(p.value for p in TyrePosition)

ALL_SLOT_KEYS: tuple[str, ...] = tuple(tyre_slot_key(p) for p in TyrePosition) + tuple(
    SINGLETON_RECORDS
)


@dataclass
class DefaultRecords:
    """The provisioned rows of one assessment."""

    assessment_id: uuid.UUID
    tyres: list[AssessmentTyre]
    damage: AssessmentDamage
    vehicle_values: AssessmentVehicleValues
    pre_incident_estimate: PreIncidentEstimate
    estimate: AssessmentEstimate
    created: int = 0


def _require_started(session: Session, assessment_id: uuid.UUID) -> AssessmentStage:
    stage = session.scalar(select(Assessment.stage).where(Assessment.id == assessment_id))
    if stage is None:
        raise NotFound(f"Assessment {assessment_id} not found", assessment_id=assessment_id)
    if stage is AssessmentStage.cancelled or (
        stage.position < AssessmentStage.assessment_in_progress.position
    ):
        raise PreconditionFailed(
            f"Assessment {assessment_id} has not started assessment (stage {stage.value})",
            assessment_id=assessment_id,
            stage=stage,
        )
    return stage


def _estimate_defaults(assessment_id: uuid.UUID, now: datetime) -> dict:
    return {
        "id": uuid.uuid4(),
        "assessment_id": assessment_id,
        "currency": DEFAULT_CURRENCY,
        "vat_percentage": DEFAULT_VAT_PERCENTAGE,
        "line_items": [],
        "subtotal": Decimal("0"),
        "vat_amount": Decimal("0"),
        "total": Decimal("0"),
        "created_at": now,
    }


def _default_rows(assessment_id: uuid.UUID) -> dict:
    now = datetime.now(timezone.utc)
    return {
        AssessmentTyre: [
            {
                "id": uuid.uuid4(),
                "assessment_id": assessment_id,
                "position": position.value,
                "position_label": position.label,
                "created_at": now,
            }
            for position in TyrePosition
        ],
        AssessmentDamage: [{
            "id": uuid.uuid4(),
            "assessment_id": assessment_id,
            "damage_area": "non_structural",
            "damage_type": "collision",
            "created_at": now,
        }],
        AssessmentVehicleValues: [{
            "id": uuid.uuid4(),
            "assessment_id": assessment_id,
            "created_at": now,
        }],
        PreIncidentEstimate: [_estimate_defaults(assessment_id, now)],
        AssessmentEstimate: [_estimate_defaults(assessment_id, now)],
    }


def _conflict_target(model) -> list[str]:
    if model is AssessmentTyre:
        return ["assessment_id", "position"]
    return ["assessment_id"]


def ensure_defaults(
    session: Session,
    assessment_id: uuid.UUID,
    *,
    deadline: Optional[Deadline] = None,
) -> DefaultRecords:
    """
    Insert whichever default records are missing and return all of them.

    Runs in the caller's transaction. Refuses assessments that have not
    reached ``assessment_in_progress`` (and cancelled ones) with
    ``PreconditionFailed``.
    """
    _require_started(session, assessment_id)

    created = 0
    for model, rows in _default_rows(assessment_id).items():
        check_deadline(deadline, "provisioning default records")
        result = session.execute(
            insert_ignoring_conflicts(session, model, rows, index_elements=_conflict_target(model))
        )
        created += max(result.rowcount or 0, 0)

    if created:
        logger.info("Provisioned %d default records for assessment %s", created, assessment_id)

    records = load_defaults(session, assessment_id)
    records.created = created
    return records


def load_defaults(session: Session, assessment_id: uuid.UUID) -> DefaultRecords:
    """Read the provisioned records; all of them must exist."""

    def one(model):
        return session.scalars(
            select(model)
            .where(model.assessment_id == assessment_id)
            .execution_options(populate_existing=True)
        ).one()

    order = {p.value: i for i, p in enumerate(TyrePosition)}
    tyres = sorted(
        session.scalars(
            select(AssessmentTyre).where(AssessmentTyre.assessment_id == assessment_id)
        ),
        key=lambda t: order.get(t.position, len(order)),
    )
    return DefaultRecords(
        assessment_id=assessment_id,
        tyres=tyres,
        damage=one(AssessmentDamage),
        vehicle_values=one(AssessmentVehicleValues),
        pre_incident_estimate=one(PreIncidentEstimate),
        estimate=one(AssessmentEstimate),
    )


def missing_defaults(session: Session, assessment_id: uuid.UUID) -> list[str]:
    """Slot keys with no row yet, in canonical order. Read-only."""
    present = {
        tyre_slot_key(p)
        for p in session.scalars(
            select(AssessmentTyre.position).where(AssessmentTyre.assessment_id == assessment_id)
        )
        if p in _TYRE_VALUES
    }
    for key, model in SINGLETON_RECORDS.items():
        if session.scalar(select(model.id).where(model.assessment_id == assessment_id)) is not None:
            present.add(key)
    return [key for key in ALL_SLOT_KEYS if key not in present]


def ensure_frc(session: Session, assessment_id: uuid.UUID) -> AssessmentFRC:
    """
    Create the final repair costing record, snapshotting the estimate.

    Idempotent: an existing FRC row is returned unchanged.
    """
    estimate = session.scalars(
        select(AssessmentEstimate).where(AssessmentEstimate.assessment_id == assessment_id)
    ).one_or_none()
    row = {
        "id": uuid.uuid4(),
        "assessment_id": assessment_id,
        "status": "in_progress",
        "line_items": list(estimate.line_items or []) if estimate else [],
        "quoted_total": estimate.total if estimate else Decimal("0"),
        "started_at": datetime.now(timezone.utc),
    }
    result = session.execute(
        insert_ignoring_conflicts(session, AssessmentFRC, [row], index_elements=["assessment_id"])
    )
    if result.rowcount:
        logger.info("FRC opened for assessment %s", assessment_id)
    return session.scalars(
        select(AssessmentFRC).where(AssessmentFRC.assessment_id == assessment_id)
    ).one()
