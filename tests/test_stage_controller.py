"""Stage transition controller: edge table, CAS semantics, invariants."""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from claimflow.core.errors import (
    AccessDenied,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    StaleState,
)
from claimflow.models.assessment import PIPELINE, Assessment, AssessmentStage
from claimflow.models.assessment_records import AssessmentFRC
from claimflow.services import stage_controller, workflow
from claimflow.services.audit import audit_trail
from claimflow.services.stage_controller import TransitionReason, validate_transition

S = AssessmentStage


def _walk(db, actor, case_id, stages):
    case = None
    for source, target in zip(stages, stages[1:]):
        case = stage_controller.advance(db, actor, case_id, source, target)
        db.commit()
    return case


class TestTransitionTable:
    @pytest.mark.parametrize("source,target", list(zip(PIPELINE, PIPELINE[1:])))
    def test_forward_steps_allowed(self, source, target):
        validate_transition(source, target)

    @pytest.mark.parametrize(
        "source,target",
        [
            (S.request_submitted, S.appointment_scheduled),
            (S.estimate_review, S.request_accepted),
            (S.frc_in_progress, S.archived),
            (S.estimate_sent, S.estimate_review),
        ],
    )
    def test_skips_and_backward_moves_rejected(self, source, target):
        with pytest.raises(InvalidTransition):
            validate_transition(source, target)

    def test_any_open_stage_can_be_cancelled(self):
        for stage in PIPELINE[:-1]:
            validate_transition(stage, S.cancelled)

    @pytest.mark.parametrize("source", [S.archived, S.cancelled])
    def test_terminal_stages_are_final(self, source):
        with pytest.raises(InvalidTransition):
            validate_transition(source, S.cancelled)

    def test_fallback_requires_cancellation_reason(self):
        with pytest.raises(InvalidTransition):
            validate_transition(S.assessment_in_progress, S.appointment_scheduled)
        validate_transition(
            S.assessment_in_progress,
            S.appointment_scheduled,
            TransitionReason.APPOINTMENT_CANCELLED.value,
        )


class TestAdvance:
    def test_cas_writes_stage_and_one_audit_entry(self, db, admin, appointment, accepted_case):
        case = stage_controller.advance(
            db, admin, accepted_case.id, S.appointment_scheduled, S.assessment_in_progress
        )
        db.commit()

        assert case.stage is S.assessment_in_progress
        assert case.started_at is not None
        entry = audit_trail(db, "assessment", case.id)[-1]
        assert (entry.action, entry.old_value, entry.new_value) == (
            "stage_changed",
            "appointment_scheduled",
            "assessment_in_progress",
        )
        assert entry.changed_by == admin.label

    def test_stale_expected_stage(self, db, admin, appointment, accepted_case):
        with pytest.raises(StaleState) as exc_info:
            stage_controller.advance(
                db, admin, accepted_case.id, S.request_accepted, S.appointment_scheduled
            )
        assert exc_info.value.expected is S.request_accepted
        assert exc_info.value.actual is S.appointment_scheduled
        assert exc_info.value.to_dict()["context"]["actual"] == "appointment_scheduled"

    def test_unknown_case(self, db, admin):
        with pytest.raises(NotFound):
            stage_controller.advance(
                db, admin, uuid.uuid4(), S.request_accepted, S.appointment_scheduled
            )

    def test_requires_linked_appointment(self, db, admin, accepted_case):
        with pytest.raises(PreconditionFailed):
            stage_controller.advance(
                db, admin, accepted_case.id, S.request_accepted, S.appointment_scheduled
            )
        db.rollback()
        assert db.get(Assessment, accepted_case.id, populate_existing=True).stage is S.request_accepted

    def test_database_rejects_unlinked_scheduled_stage(self, db, accepted_case):
        with pytest.raises(IntegrityError):
            with db.begin_nested():
                db.execute(
                    update(Assessment)
                    .where(Assessment.id == accepted_case.id)
                    .values(stage=S.appointment_scheduled)
                    .execution_options(synchronize_session=False)
                )

    def test_cancel_via_advance_is_admin_only(self, db, caseworker, started_case):
        with pytest.raises(AccessDenied):
            stage_controller.advance(
                db, caseworker, started_case.id, S.assessment_in_progress, S.cancelled
            )

    def test_caseworker_advances_own_case(self, db, caseworker, started_case):
        case = stage_controller.advance(
            db, caseworker, started_case.id, S.assessment_in_progress, S.estimate_review
        )
        db.commit()
        assert case.stage is S.estimate_review

    def test_controller_leaves_frc_record_to_the_workflow(self, db, caseworker, started_case):
        _walk(
            db,
            caseworker,
            started_case.id,
            [S.assessment_in_progress, S.estimate_review, S.estimate_sent, S.estimate_finalized,
             S.frc_in_progress],
        )
        frc = db.scalars(
            select(AssessmentFRC).where(AssessmentFRC.assessment_id == started_case.id)
        ).one_or_none()
        assert frc is None
        case = db.get(Assessment, started_case.id)
        assert case.estimate_finalized_at is not None


class TestCancelAndArchive:
    def test_cancel_stamps_and_is_terminal(self, db, admin, started_case):
        case = stage_controller.cancel_assessment(db, admin, started_case.id, reason="claim withdrawn")
        db.commit()

        assert case.stage is S.cancelled
        assert case.cancelled_at is not None
        with pytest.raises(InvalidTransition):
            stage_controller.cancel_assessment(db, admin, started_case.id)
        with pytest.raises(InvalidTransition):
            stage_controller.advance(db, admin, started_case.id, S.cancelled, S.estimate_review)

    def test_cancel_before_appointment(self, db, admin, accepted_case):
        case = stage_controller.cancel_assessment(db, admin, accepted_case.id)
        db.commit()
        assert case.stage is S.cancelled
        assert case.appointment_id is None

    def test_caseworker_cannot_cancel(self, db, caseworker, started_case):
        with pytest.raises(AccessDenied):
            stage_controller.cancel_assessment(db, caseworker, started_case.id)

    def test_archive_after_frc_completed(self, db, admin, caseworker, started_case):
        _walk(db, caseworker, started_case.id, list(PIPELINE[3:-1]))
        case = stage_controller.archive(db, admin, started_case.id)
        db.commit()
        assert case.stage is S.archived
        assert case.completed_at is not None

    def test_archive_from_wrong_stage_is_stale(self, db, admin, started_case):
        with pytest.raises(StaleState):
            stage_controller.archive(db, admin, started_case.id)


class TestAuditMonotonicity:
    def test_stage_history_only_moves_forward(
        self, db, admin, caseworker, started_case, appointment, claim_request, engineer
    ):
        # fallback, reschedule, restart, then a cancellation side-exit
        workflow.cancel_appointment(db, admin, appointment.id, reason="client unavailable")
        second = workflow.schedule_appointment(db, admin, claim_request.id, engineer.id)
        workflow.start_assessment(db, caseworker, second.id)
        stage_controller.advance(
            db, caseworker, started_case.id, S.assessment_in_progress, S.estimate_review
        )
        stage_controller.cancel_assessment(db, admin, started_case.id)
        db.commit()

        history = [
            e for e in audit_trail(db, "assessment", started_case.id) if e.field_name == "stage"
        ]
        fallbacks = 0
        previous = None
        for entry in history:
            stage = S(entry.new_value)
            if previous is not None and stage is not S.cancelled:
                if entry.meta.get("reason") == TransitionReason.APPOINTMENT_CANCELLED.value:
                    fallbacks += 1
                else:
                    assert stage.position >= previous.position
            previous = stage
        assert fallbacks == 1
        assert [e.new_value for e in history] == [
            "request_submitted",
            "request_accepted",
            "appointment_scheduled",
            "assessment_in_progress",
            "appointment_scheduled",
            "assessment_in_progress",
            "estimate_review",
            "cancelled",
        ]
