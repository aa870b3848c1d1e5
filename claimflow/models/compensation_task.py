"""CompensationTask model: durable outbox for best-effort follow-ups."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, Text, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from claimflow.core.database import Base


class CompensationKind(str, enum.Enum):
    revert_stage = "revert_stage"
    provision_defaults = "provision_defaults"
    provision_frc = "provision_frc"


class CompensationStatus(str, enum.Enum):
    pending = "pending"
    done = "done"
    failed = "failed"


class CompensationTask(Base):
    __tablename__ = "compensation_tasks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind: Mapped[CompensationKind] = mapped_column(
        Enum(CompensationKind, name="compensation_kind", create_constraint=True),
        nullable=False,
    )
    assessment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("assessments.id"), nullable=False, index=True
    )
    payload: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict
    )
    status: Mapped[CompensationStatus] = mapped_column(
        Enum(CompensationStatus, name="compensation_status", create_constraint=True),
        nullable=False,
        default=CompensationStatus.pending,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<CompensationTask {self.kind.value} {self.status.value} attempts={self.attempts}>"
