"""Pytest configuration: SQLite test databases, actors & FastAPI TestClient."""

from __future__ import annotations

import os
import uuid
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

# Override env BEFORE importing app modules so Settings picks up test values.
os.environ.update(
    {
        "DATABASE_URL": "sqlite://",
        "REDIS_URL": "redis://localhost:6379/0",
        "APP_ENV": "test",
        "LOG_JSON": "false",
        "ALLOCATOR_BACKOFF_BASE_MS": "1",
        "AUTO_MIGRATE": "false",
    }
)

from claimflow.auth.access_policy import Actor  # noqa: E402
from claimflow.core.database import Base, create_db_engine, get_db  # noqa: E402
from claimflow.main import app  # noqa: E402

# ── Force all models to register on Base.metadata ──────────────────
import claimflow.models  # noqa: E402, F401
from claimflow.models.engineer import Engineer  # noqa: E402
from claimflow.models.claim_request import RequestType  # noqa: E402
from claimflow.services import workflow  # noqa: E402

# ── In-memory SQLite engine (one shared connection) ────────────────

_engine = create_db_engine("sqlite://", poolclass=StaticPool)

_TestSession = sessionmaker(bind=_engine, class_=Session, expire_on_commit=False)


@pytest.fixture(autouse=True)
def _create_tables():
    """Create all tables before each test and drop after."""
    Base.metadata.create_all(bind=_engine)
    yield
    Base.metadata.drop_all(bind=_engine)


@pytest.fixture()
def db() -> Generator[Session, None, None]:
    """Yield a test DB session."""
    session = _TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(db: Session) -> Generator[TestClient, None, None]:
    """FastAPI TestClient wired to the in-memory DB."""

    def _override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app, raise_server_exceptions=False) as tc:
        yield tc
    app.dependency_overrides.clear()


# ── File-backed SQLite for multi-threaded tests ────────────────────


@pytest.fixture()
def session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """Sessions on a file database; every session gets its own connection."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'claimflow.db'}", poolclass=NullPool)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, class_=Session, expire_on_commit=False)
    engine.dispose()


# ── Actors & pipeline fixtures ─────────────────────────────────────


def make_engineer(db: Session, name: str) -> Engineer:
    engineer = Engineer(
        id=uuid.uuid4(),
        name=name,
        email=f"{name.lower().replace(' ', '.')}@claimflow.test",
    )
    db.add(engineer)
    db.commit()
    return engineer


def caseworker_for(engineer: Engineer) -> Actor:
    return Actor.caseworker(f"cw-{engineer.name.lower()}", engineer.id)


@pytest.fixture()
def admin() -> Actor:
    return Actor.admin("admin-1")


@pytest.fixture()
def engineer(db: Session) -> Engineer:
    return make_engineer(db, "Thandi")


@pytest.fixture()
def other_engineer(db: Session) -> Engineer:
    return make_engineer(db, "Pieter")


@pytest.fixture()
def caseworker(engineer: Engineer) -> Actor:
    return caseworker_for(engineer)


@pytest.fixture()
def other_caseworker(other_engineer: Engineer) -> Actor:
    return caseworker_for(other_engineer)


@pytest.fixture()
def claim_request(db: Session, admin: Actor):
    """A submitted insurance request."""
    return workflow.create_request(
        db,
        admin,
        type=RequestType.insurance,
        claim_number="POL-88231",
        owner_name="J. Mokoena",
        vehicle_registration="CA 123-456",
    )


@pytest.fixture()
def accepted_case(db: Session, admin: Actor, claim_request):
    """Assessment at request_accepted."""
    return workflow.accept_request(db, admin, claim_request.id)


@pytest.fixture()
def appointment(db: Session, admin: Actor, accepted_case, claim_request, engineer):
    """Appointment assigned to ``engineer``; its case is at appointment_scheduled."""
    return workflow.schedule_appointment(
        db, admin, claim_request.id, engineer.id, location_address="12 Long St, Cape Town"
    )


@pytest.fixture()
def started_case(db: Session, caseworker: Actor, appointment):
    """Assessment at assessment_in_progress with defaults provisioned."""
    return workflow.start_assessment(db, caseworker, appointment.id)
