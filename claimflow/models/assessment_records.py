"""
Per-assessment child records.

Each kind carries a uniqueness invariant: at most one row per
(assessment, slot-key). Singletons are unique on assessment_id; tyres are
unique on (assessment_id, position). Provisioning relies on these
constraints as ON CONFLICT targets.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from claimflow.core.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TyrePosition(str, enum.Enum):
    front_left = "front_left"
    front_right = "front_right"
    rear_left = "rear_left"
    rear_right = "rear_right"
    spare = "spare"

    @property
    def label(self) -> str:
        return TYRE_POSITION_LABELS[self]


TYRE_POSITION_LABELS = {
    TyrePosition.front_left: "Front Left",
    TyrePosition.front_right: "Front Right",
    TyrePosition.rear_left: "Rear Left",
    TyrePosition.rear_right: "Rear Right",
    TyrePosition.spare: "Spare",
}


class AssessmentTyre(Base):
    __tablename__ = "assessment_tyres"
    __table_args__ = (
        UniqueConstraint("assessment_id", "position", name="uq_assessment_tyres_position"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    assessment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("assessments.id"), nullable=False, index=True
    )
    position: Mapped[str] = mapped_column(String(32), nullable=False)
    position_label: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tyre_make: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tyre_size: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tread_depth_mm: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    condition: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class AssessmentDamage(Base):
    __tablename__ = "assessment_damage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    assessment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("assessments.id"), nullable=False, unique=True
    )
    damage_area: Mapped[str] = mapped_column(String(64), nullable=False, default="non_structural")
    damage_type: Mapped[str] = mapped_column(String(64), nullable=False, default="collision")
    severity: Mapped[str | None] = mapped_column(String(32), nullable=True)
    damage_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    affected_panels: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class AssessmentVehicleValues(Base):
    """Valuation record (trade / market / retail)."""

    __tablename__ = "assessment_vehicle_values"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    assessment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("assessments.id"), nullable=False, unique=True
    )
    trade_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    market_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    retail_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    sourced_from: Mapped[str | None] = mapped_column(String(128), nullable=True)
    extras: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class _EstimateColumns:
    """Columns shared by the estimate and pre-incident estimate."""

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZAR")
    labour_rate: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    paint_rate: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    vat_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("15.00")
    )
    line_items: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class PreIncidentEstimate(_EstimateColumns, Base):
    __tablename__ = "pre_incident_estimates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    assessment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("assessments.id"), nullable=False, unique=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class AssessmentEstimate(_EstimateColumns, Base):
    __tablename__ = "assessment_estimates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    assessment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("assessments.id"), nullable=False, unique=True
    )
    assessment_result: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class AssessmentFRC(Base):
    """Final repair costing: the finalized estimate reconciled against actuals."""

    __tablename__ = "assessment_frc"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    assessment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("assessments.id"), nullable=False, unique=True
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="in_progress")
    line_items: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    quoted_total: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    actual_total: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
