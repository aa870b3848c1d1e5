"""Audit log: append-only entries for every lifecycle event."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from claimflow.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def append_audit_entry(
    db: Session,
    *,
    entity_type: str,
    entity_id: uuid.UUID | str,
    action: str,
    changed_by: Optional[str],
    field_name: Optional[str] = None,
    old_value: Any = None,
    new_value: Any = None,
    metadata: Optional[dict] = None,
) -> AuditLog:
    """
    Insert one audit row in the caller's transaction.

    The row is flushed so it is visible to the rest of the transaction and
    commits or rolls back together with the change it records.
    """
    row = AuditLog(
        id=uuid.uuid4(),
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        field_name=field_name,
        old_value=_as_text(old_value),
        new_value=_as_text(new_value),
        changed_by=changed_by,
        meta={k: _as_text(v) for k, v in (metadata or {}).items() if v is not None},
        created_at=datetime.now(timezone.utc),
    )
    db.add(row)
    db.flush()

    logger.info(
        "audit %s %s:%s %s -> %s by %s",
        action,
        entity_type,
        row.entity_id,
        row.old_value,
        row.new_value,
        changed_by,
    )
    return row


def audit_trail(db: Session, entity_type: str, entity_id: uuid.UUID | str) -> list[AuditLog]:
    """Entries for one entity, oldest first."""
    stmt = (
        select(AuditLog)
        .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
        .order_by(AuditLog.created_at, AuditLog.id)
    )
    return list(db.scalars(stmt))
