"""Access policy: caseworker isolation via appointment ownership."""

from __future__ import annotations

import pytest
from sqlalchemy import select

from claimflow.auth.access_policy import (
    Actor,
    ActorRole,
    can_create_assessment,
    owns_appointment,
    require_admin,
    scope_appointments,
    scope_assessments,
)
from claimflow.core.errors import AccessDenied, NotFound
from claimflow.models.appointment import Appointment
from claimflow.models.assessment import Assessment, AssessmentStage as S
from claimflow.models.claim_request import RequestType
from claimflow.services import assessment_store, stage_controller, workflow

from conftest import caseworker_for, make_engineer


def _second_started_case(db, admin, engineer):
    request = workflow.create_request(
        db, admin, type=RequestType.private, owner_name="A. Naidoo"
    )
    workflow.accept_request(db, admin, request.id)
    appointment = workflow.schedule_appointment(db, admin, request.id, engineer.id)
    return workflow.start_assessment(db, caseworker_for(engineer), appointment.id)


class TestActor:
    def test_labels(self, engineer):
        assert Actor.admin("ops").label == "admin:ops"
        cw = caseworker_for(engineer)
        assert cw.role is ActorRole.caseworker
        assert cw.label == "caseworker:cw-thandi"
        assert not cw.is_admin

    def test_only_admins_create(self, admin, caseworker):
        assert can_create_assessment(admin)
        assert not can_create_assessment(caseworker)

    def test_require_admin(self, admin, caseworker):
        require_admin(admin, "do things")
        with pytest.raises(AccessDenied) as exc:
            require_admin(caseworker, "do things")
        assert exc.value.status_code == 403


class TestCaseworkerIsolation:
    def test_each_caseworker_sees_only_their_cases(
        self, db, admin, caseworker, other_caseworker, other_engineer, started_case
    ):
        theirs = _second_started_case(db, admin, other_engineer)

        mine = db.scalars(scope_assessments(select(Assessment), caseworker)).all()
        other = db.scalars(scope_assessments(select(Assessment), other_caseworker)).all()
        assert [c.id for c in mine] == [started_case.id]
        assert [c.id for c in other] == [theirs.id]
        assert len(db.scalars(scope_assessments(select(Assessment), admin)).all()) == 2

        with pytest.raises(NotFound):
            assessment_store.get(db, caseworker, theirs.id)
        with pytest.raises(NotFound):
            assessment_store.get(db, other_caseworker, started_case.id)

    def test_caseworker_cannot_advance_foreign_case(
        self, db, other_caseworker, started_case
    ):
        with pytest.raises(NotFound):
            stage_controller.advance(
                db, other_caseworker, started_case.id, S.assessment_in_progress, S.estimate_review
            )
        db.rollback()
        assert db.get(Assessment, started_case.id, populate_existing=True).stage is (
            S.assessment_in_progress
        )

    def test_pre_appointment_cases_are_invisible(self, db, caseworker, accepted_case):
        assert db.scalars(scope_assessments(select(Assessment), caseworker)).all() == []
        assert assessment_store.list_visible(db, caseworker) == []

    def test_reassignment_moves_visibility_immediately(
        self, db, caseworker, other_caseworker, other_engineer, appointment, started_case
    ):
        assessment_store.get(db, caseworker, started_case.id)

        db.get(Appointment, appointment.id).engineer_id = other_engineer.id
        db.commit()

        with pytest.raises(NotFound):
            assessment_store.get(db, caseworker, started_case.id)
        assert assessment_store.get(db, other_caseworker, started_case.id).id == started_case.id

    def test_caseworker_without_engineer_sees_nothing(self, db, started_case):
        nobody = Actor(role=ActorRole.caseworker, actor_id="cw-ghost")
        assert db.scalars(scope_assessments(select(Assessment), nobody)).all() == []
        assert db.scalars(scope_appointments(select(Appointment), nobody)).all() == []


class TestAppointmentOwnership:
    def test_owns_appointment(self, db, admin, caseworker, other_caseworker, appointment):
        assert owns_appointment(admin, appointment)
        assert owns_appointment(caseworker, appointment)
        assert not owns_appointment(other_caseworker, appointment)

    def test_scope_appointments(self, db, caseworker, other_caseworker, appointment):
        assert [a.id for a in db.scalars(scope_appointments(select(Appointment), caseworker))] == [
            appointment.id
        ]
        assert db.scalars(scope_appointments(select(Appointment), other_caseworker)).all() == []

    def test_new_engineer_starts_with_nothing(self, db, started_case):
        newcomer = caseworker_for(make_engineer(db, "Lerato"))
        assert assessment_store.list_visible(db, newcomer) == []
