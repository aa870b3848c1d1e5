"""
Access Policy Layer
===================
Predicate builders and guards that authorise reads and writes of
assessments per actor.

Design principles:
  - Administrators are unrestricted.
  - Caseworkers see only assessments whose linked appointment is assigned
    to them. Ownership is resolved through the appointment on every query,
    never stored on the assessment and never cached between requests.
  - Before appointment_scheduled there is nothing to own, so caseworkers
    see nothing.
  - Creation is administrator-only.
  - Filtering happens in the query, so rows outside the actor's scope
    come back as zero rows rather than a 403.

Usage:
    stmt = scope_assessments(select(Assessment), actor)
    cases = session.scalars(stmt).all()
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import Select, and_, false, select, true
from sqlalchemy.sql.elements import ColumnElement

from claimflow.core.errors import AccessDenied
from claimflow.models.appointment import Appointment
from claimflow.models.assessment import PRE_APPOINTMENT_STAGES, Assessment

logger = logging.getLogger(__name__)


class ActorRole(str, enum.Enum):
    admin = "admin"
    caseworker = "caseworker"


@dataclass(frozen=True)
class Actor:
    """An already-authenticated caller."""

    role: ActorRole
    actor_id: str
    engineer_id: Optional[uuid.UUID] = None

    @property
    def is_admin(self) -> bool:
        return self.role is ActorRole.admin

    @property
    def label(self) -> str:
        """Value recorded as changed_by / created_by."""
        return f"{self.role.value}:{self.actor_id}"

    @classmethod
    def admin(cls, actor_id: str) -> "Actor":
        return cls(role=ActorRole.admin, actor_id=actor_id)

    @classmethod
    def caseworker(cls, actor_id: str, engineer_id: uuid.UUID) -> "Actor":
        return cls(role=ActorRole.caseworker, actor_id=actor_id, engineer_id=engineer_id)


def appointment_predicate(actor: Actor) -> ColumnElement[bool]:
    """Rows of ``appointments`` the actor may see."""
    if actor.is_admin:
        return true()
    if actor.engineer_id is None:
        return false()
    return Appointment.engineer_id == actor.engineer_id


def assessment_predicate(actor: Actor) -> ColumnElement[bool]:
    """Rows of ``assessments`` the actor may see and update."""
    if actor.is_admin:
        return true()
    if actor.engineer_id is None:
        return false()
    owned = select(Appointment.id).where(Appointment.engineer_id == actor.engineer_id)
    return and_(
        Assessment.appointment_id.in_(owned),
        Assessment.stage.not_in(list(PRE_APPOINTMENT_STAGES)),
    )


def scope_assessments(stmt: Select, actor: Actor) -> Select:
    """
    Apply the actor's assessment predicate to a select.

    Administrators receive the statement unmodified.
    """
    if actor.is_admin:
        return stmt
    return stmt.where(assessment_predicate(actor))


def scope_appointments(stmt: Select, actor: Actor) -> Select:
    if actor.is_admin:
        return stmt
    return stmt.where(appointment_predicate(actor))


def can_create_assessment(actor: Actor) -> bool:
    return actor.is_admin


def require_admin(actor: Actor, action: str) -> None:
    """Reject *action* unless the actor is an administrator."""
    if not actor.is_admin:
        logger.warning("Access denied: %s attempted %s", actor.label, action)
        raise AccessDenied(f"Only administrators may {action}", actor=actor.label)


def owns_appointment(actor: Actor, appointment: Appointment) -> bool:
    """True when the actor is an administrator or the assigned engineer."""
    if actor.is_admin:
        return True
    return actor.engineer_id is not None and appointment.engineer_id == actor.engineer_id
