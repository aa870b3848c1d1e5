"""Appointment model: a scheduled site visit assigned to one engineer."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from claimflow.core.database import Base


class AppointmentStatus(str, enum.Enum):
    scheduled = "scheduled"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    appointment_number: Mapped[str] = mapped_column(
        String(32), nullable=False, unique=True, index=True
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("requests.id"), nullable=False, index=True
    )
    inspection_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("inspections.id"), nullable=True
    )
    # Ownership for the access policy is resolved through this column.
    engineer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("engineers.id"), nullable=False, index=True
    )
    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus, name="appointment_status", create_constraint=True),
        nullable=False,
        default=AppointmentStatus.scheduled,
    )
    appointment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    location_address: Mapped[str | None] = mapped_column(String(512), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )

    engineer = relationship("Engineer", back_populates="appointments")
    request = relationship("ClaimRequest")

    def __repr__(self):
        return f"<Appointment {self.appointment_number} ({self.status.value})>"
