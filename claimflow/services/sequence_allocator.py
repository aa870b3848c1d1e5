"""
Sequence Allocator
==================
Collision-free, human-readable identifiers of the form
``PREFIX-YYYY-NNN`` (e.g. ``ASM-2025-014``).

The number comes from an atomic increment of the ``(kind, year)`` row in
``sequence_counters``, executed inside the caller's transaction. The
counter row stays locked until that transaction ends, so no two callers
can ever observe the same value.

``allocate_and_insert`` additionally guards against identifiers that were
issued outside the counter (imported or legacy rows): if the insert
collides on the identifier, the next number is tried with jittered
exponential backoff, up to ``settings.allocator_max_attempts``.
"""

from __future__ import annotations

import logging
import random
import time
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import InstrumentedAttribute, Session

from claimflow.core.config import settings
from claimflow.core.database import insert_ignoring_conflicts
from claimflow.core.deadline import Deadline, check_deadline
from claimflow.core.errors import AllocationExhausted
from claimflow.models.sequence_counter import SequenceCounter, SequenceKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


def current_year() -> int:
    return datetime.now(timezone.utc).year


def format_identifier(kind: SequenceKind, year: int, sequence: int) -> str:
    """``ASM``, 2025, 14 -> ``ASM-2025-014``. Widens past 999."""
    return f"{kind.prefix}-{year:04d}-{sequence:03d}"


def next_value(session: Session, kind: SequenceKind, year: int) -> int:
    """Atomically advance the ``(kind, year)`` counter and return the new value."""
    session.execute(
        insert_ignoring_conflicts(
            session,
            SequenceCounter,
            [{"kind": kind.prefix, "year": year, "value": 0}],
            index_elements=["kind", "year"],
        )
    )
    stmt = (
        update(SequenceCounter)
        .where(SequenceCounter.kind == kind.prefix, SequenceCounter.year == year)
        .values(value=SequenceCounter.value + 1)
        .returning(SequenceCounter.value)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).scalar_one()


def allocate(session: Session, kind: SequenceKind, year: Optional[int] = None) -> str:
    """Return the next identifier for *kind*; consumed when the caller commits."""
    year = year or current_year()
    return format_identifier(kind, year, next_value(session, kind, year))


def _identifier_taken(session: Session, column: InstrumentedAttribute, identifier: str) -> bool:
    return bool(session.scalar(select(exists().where(column == identifier))))


def _backoff(attempt: int, deadline: Optional[Deadline]) -> None:
    delay = settings.allocator_backoff_base_ms / 1000.0 * (2 ** (attempt - 1))
    delay *= random.uniform(0.5, 1.5)
    if deadline is not None:
        delay = min(delay, deadline.remaining())
    if delay > 0:
        time.sleep(delay)


def allocate_and_insert(
    session: Session,
    kind: SequenceKind,
    build: Callable[[str], T],
    *,
    number_column: InstrumentedAttribute,
    year: Optional[int] = None,
    deadline: Optional[Deadline] = None,
) -> T:
    """
    Allocate an identifier, build a row with it and flush the row.

    *build* receives the identifier and returns an unsaved ORM instance;
    *number_column* is the column the identifier is stored in. Counter
    increments are kept even when the insert is retried, so a collision
    burns exactly one number.

    Raises:
        AllocationExhausted: every attempt collided or hit a lock error.
        DeadlineExceeded: *deadline* passed between attempts.
        IntegrityError: the insert failed on anything other than the
            identifier (callers translate these).
    """
    year = year or current_year()
    attempts = settings.allocator_max_attempts
    last_error: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        check_deadline(deadline, f"allocating {kind.prefix} identifier")
        try:
            with session.begin_nested():
                identifier = allocate(session, kind, year)
        except OperationalError as exc:
            last_error = exc
            logger.warning(
                "Counter %s-%d busy (attempt %d/%d): %s", kind.prefix, year, attempt, attempts, exc
            )
        else:
            try:
                with session.begin_nested():
                    row = build(identifier)
                    session.add(row)
                    session.flush()
                return row
            except IntegrityError as exc:
                if not _identifier_taken(session, number_column, identifier):
                    raise
                last_error = exc
                logger.warning(
                    "Identifier %s already in use (attempt %d/%d)", identifier, attempt, attempts
                )

        if attempt < attempts:
            _backoff(attempt, deadline)

    raise AllocationExhausted(
        f"Could not allocate a {kind.prefix} identifier after {attempts} attempts",
        kind=kind.prefix,
        year=year,
        last_error=last_error,
    )
