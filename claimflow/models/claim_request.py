"""ClaimRequest model: the originating claim submission."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from claimflow.core.database import Base


class RequestType(str, enum.Enum):
    insurance = "insurance"
    private = "private"


class RequestStatus(str, enum.Enum):
    submitted = "submitted"
    accepted = "accepted"
    cancelled = "cancelled"


class ClaimRequest(Base):
    """
    A claim submission. Owns its CLM-/REQ- number.

    Immutable once an assessment references it, except for the status
    bookkeeping columns (status, accepted_at, accepted_by).
    """

    __tablename__ = "requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    type: Mapped[RequestType] = mapped_column(
        Enum(RequestType, name="request_type", create_constraint=True),
        nullable=False,
        default=RequestType.insurance,
    )
    status: Mapped[RequestStatus] = mapped_column(
        Enum(RequestStatus, name="request_status", create_constraint=True),
        nullable=False,
        default=RequestStatus.submitted,
    )
    claim_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    vehicle_registration: Mapped[str | None] = mapped_column(String(32), nullable=True)
    vehicle_make: Mapped[str | None] = mapped_column(String(128), nullable=True)
    vehicle_model: Mapped[str | None] = mapped_column(String(128), nullable=True)

    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )

    assessment = relationship("Assessment", back_populates="request", uselist=False)

    def __repr__(self):
        return f"<ClaimRequest {self.request_number} ({self.status.value})>"
