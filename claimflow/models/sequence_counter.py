"""SequenceCounter model: per (kind, year) monotonically increasing counter."""

from __future__ import annotations

import enum

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from claimflow.core.database import Base


class SequenceKind(str, enum.Enum):
    """Identifier kinds; the value is the identifier prefix."""

    claim_request = "CLM"
    private_request = "REQ"
    inspection = "INS"
    appointment = "APT"
    assessment = "ASM"

    @property
    def prefix(self) -> str:
        return self.value


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    kind: Mapped[str] = mapped_column(String(8), primary_key=True)
    year: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<SequenceCounter {self.kind}-{self.year}={self.value}>"
