"""Caller-supplied deadlines for engine operations."""

from __future__ import annotations

import time
from dataclasses import dataclass

from claimflow.core.errors import DeadlineExceeded


@dataclass(frozen=True)
class Deadline:
    """A point on the monotonic clock after which work must stop."""

    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(expires_at=time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def check(self, operation: str) -> None:
        """Raise DeadlineExceeded if the deadline has passed."""
        if self.expired():
            raise DeadlineExceeded(f"Deadline exceeded during {operation}", operation=operation)


def check_deadline(deadline: Deadline | None, operation: str) -> None:
    if deadline is not None:
        deadline.check(operation)
