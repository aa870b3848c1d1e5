"""FastAPI dependencies: the calling actor and the operation deadline."""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import Header, HTTPException

from claimflow.auth.access_policy import Actor, ActorRole
from claimflow.core.config import settings
from claimflow.core.deadline import Deadline


def get_actor(
    x_actor_role: str = Header(...),
    x_actor_id: str = Header(..., min_length=1),
    x_engineer_id: Optional[uuid.UUID] = Header(None),
) -> Actor:
    """
    Build the actor from headers set by the authenticating proxy.

    Authentication itself happens upstream; these headers are trusted.
    """
    try:
        role = ActorRole(x_actor_role.lower())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown actor role: {x_actor_role}")
    if role is ActorRole.caseworker and x_engineer_id is None:
        raise HTTPException(status_code=401, detail="Caseworkers must send X-Engineer-Id")
    return Actor(role=role, actor_id=x_actor_id, engineer_id=x_engineer_id)


def get_deadline() -> Deadline:
    return Deadline.after(settings.default_deadline_seconds)
