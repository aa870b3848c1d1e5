"""
Assessment model: the canonical case record for one claim investigation.

Invariants enforced by the schema (not by application code alone):
  - exactly one assessment per request   (uq on request_id)
  - at most one assessment per appointment (uq on appointment_id)
  - appointment_id is set once the stage reaches appointment_scheduled
    (ck_assessments_appointment_required; cancelled is exempt)
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from claimflow.core.database import Base


class AssessmentStage(str, enum.Enum):
    """Closed set of pipeline stages, declared in pipeline order."""

    request_submitted = "request_submitted"
    request_accepted = "request_accepted"
    appointment_scheduled = "appointment_scheduled"
    assessment_in_progress = "assessment_in_progress"
    estimate_review = "estimate_review"
    estimate_sent = "estimate_sent"
    estimate_finalized = "estimate_finalized"
    frc_in_progress = "frc_in_progress"
    frc_completed = "frc_completed"
    archived = "archived"
    cancelled = "cancelled"

    @property
    def position(self) -> int:
        """Index in the pipeline; cancelled sorts after everything."""
        return _STAGE_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES

    @property
    def requires_appointment(self) -> bool:
        return self not in PRE_APPOINTMENT_STAGES and self is not AssessmentStage.cancelled

    def __str__(self) -> str:
        return self.value


_STAGE_ORDER = list(AssessmentStage)

PIPELINE: tuple[AssessmentStage, ...] = tuple(
    s for s in AssessmentStage if s is not AssessmentStage.cancelled
)

PRE_APPOINTMENT_STAGES = frozenset({
    AssessmentStage.request_submitted,
    AssessmentStage.request_accepted,
})

TERMINAL_STAGES = frozenset({
    AssessmentStage.archived,
    AssessmentStage.cancelled,
})

_APPOINTMENT_EXEMPT = ", ".join(
    f"'{s.value}'" for s in sorted(
        PRE_APPOINTMENT_STAGES | {AssessmentStage.cancelled}, key=lambda s: s.position
    )
)


class Assessment(Base):
    __tablename__ = "assessments"
    __table_args__ = (
        CheckConstraint(
            f"appointment_id IS NOT NULL OR stage IN ({_APPOINTMENT_EXEMPT})",
            name="ck_assessments_appointment_required",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    assessment_number: Mapped[str] = mapped_column(
        String(32), nullable=False, unique=True, index=True
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("requests.id"),
        nullable=False,
        unique=True,
    )
    appointment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("appointments.id"),
        nullable=True,
        unique=True,
    )
    inspection_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("inspections.id"), nullable=True
    )
    stage: Mapped[AssessmentStage] = mapped_column(
        Enum(AssessmentStage, name="assessment_stage", create_constraint=True),
        nullable=False,
        default=AssessmentStage.request_submitted,
        index=True,
    )

    created_by: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    estimate_finalized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    request = relationship("ClaimRequest", back_populates="assessment")
    appointment = relationship("Appointment")
    inspection = relationship("Inspection")

    def __repr__(self):
        return f"<Assessment {self.assessment_number} ({self.stage.value})>"
