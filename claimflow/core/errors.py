"""
Engine Error Taxonomy
=====================
Typed failures raised by the stage-pipeline services.

Two families:
  - Invariant violations (DuplicateRequest, NotFound, PreconditionFailed,
    InvalidTransition, AccessDenied) are never retried automatically and
    are surfaced to the initiating actor as-is.
  - Contention failures (StaleState, AllocationExhausted,
    DeadlineExceeded) are retryable.

Raw database errors are translated at the service boundary; callers only
ever see subclasses of ClaimflowError.
"""

from __future__ import annotations


class ClaimflowError(Exception):
    """Base class for all engine errors."""

    code = "claimflow_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        payload = {
            "error": self.code,
            "detail": self.message,
            "retryable": self.retryable,
        }
        if self.context:
            payload["context"] = {
                k: str(getattr(v, "value", v)) for k, v in self.context.items() if v is not None
            }
        return payload


class DuplicateRequest(ClaimflowError):
    """A second case was attempted for a request that already has one."""

    code = "duplicate_request"
    status_code = 409


class NotFound(ClaimflowError):
    """Missing row, or a row the actor is not allowed to see."""

    code = "not_found"
    status_code = 404


class PreconditionFailed(ClaimflowError):
    """A stage precondition (e.g. linked appointment) does not hold."""

    code = "precondition_failed"
    status_code = 422


class InvalidTransition(ClaimflowError):
    """The requested edge is not in the stage predecessor table."""

    code = "invalid_transition"
    status_code = 422


class AccessDenied(ClaimflowError):
    """The actor's role does not permit this write."""

    code = "access_denied"
    status_code = 403


class StaleState(ClaimflowError):
    """Compare-and-swap mismatch: the case moved on since it was read."""

    code = "stale_state"
    status_code = 409
    retryable = True

    def __init__(self, message: str, *, expected=None, actual=None, **context):
        super().__init__(message, expected=expected, actual=actual, **context)
        self.expected = expected
        self.actual = actual


class AllocationExhausted(ClaimflowError):
    """The sequence allocator ran out of attempts."""

    code = "allocation_exhausted"
    status_code = 503
    retryable = True


class DeadlineExceeded(ClaimflowError):
    """The caller's deadline passed before the operation finished."""

    code = "deadline_exceeded"
    status_code = 503
    retryable = True


class ImmutableRecord(ClaimflowError):
    """An append-only record was about to be updated or deleted."""

    code = "immutable_record"
    status_code = 500
