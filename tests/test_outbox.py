"""Compensation outbox: retries, permanent failure and safe no-ops."""

from __future__ import annotations

import logging
import uuid
from types import SimpleNamespace

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from claimflow.core.config import settings
from claimflow.models.assessment import AssessmentStage as S
from claimflow.models.assessment_records import AssessmentFRC
from claimflow.models.compensation_task import (
    CompensationKind,
    CompensationStatus,
    CompensationTask,
)
from claimflow.services import outbox, stage_controller


def _failing(session, task):
    raise OperationalError("UPDATE assessments", {}, Exception("database is locked"))


def _frc(db, assessment_id):
    return db.scalars(
        select(AssessmentFRC).where(AssessmentFRC.assessment_id == assessment_id)
    ).one_or_none()


class TestEnqueue:
    def test_enqueue_records_pending_task(self, db, started_case):
        task = outbox.enqueue_compensation(
            db, CompensationKind.provision_defaults, started_case.id, error="boom"
        )
        db.commit()

        assert task.status is CompensationStatus.pending
        assert task.attempts == 0
        assert task.last_error == "boom"
        assert [t.id for t in outbox.pending_tasks(db)] == [task.id]


class TestDrain:
    def test_empty_outbox(self, db):
        report = outbox.drain(db)
        assert report.processed == 0
        assert report.to_dict() == {"processed": 0, "succeeded": [], "retrying": [], "failed": []}

    def test_failing_task_retries_then_fails(self, db, started_case, monkeypatch, caplog):
        monkeypatch.setattr(settings, "outbox_max_attempts", 2)
        monkeypatch.setitem(outbox.HANDLERS, CompensationKind.provision_defaults, _failing)
        task = outbox.enqueue_compensation(db, CompensationKind.provision_defaults, started_case.id)
        db.commit()

        first = outbox.drain(db)
        assert first.retrying == [task.id]
        assert db.get(CompensationTask, task.id).attempts == 1

        with caplog.at_level(logging.ERROR, logger="claimflow.services.outbox"):
            second = outbox.drain(db)
        assert second.failed == [task.id]
        stored = db.get(CompensationTask, task.id)
        assert stored.status is CompensationStatus.failed
        assert "database is locked" in stored.last_error
        assert any("failed permanently" in r.getMessage() for r in caplog.records)

        assert outbox.drain(db).processed == 0

    def test_revert_skips_relinked_case(self, db, started_case):
        task = outbox.enqueue_compensation(
            db,
            CompensationKind.revert_stage,
            started_case.id,
            {"appointment_id": str(uuid.uuid4())},
        )
        db.commit()

        report = outbox.drain(db)

        assert report.succeeded == [task.id]
        assert db.get(type(started_case), started_case.id, populate_existing=True).stage is (
            S.assessment_in_progress
        )

    def test_revert_skips_live_appointment(self, db, started_case, appointment):
        outbox.enqueue_compensation(
            db,
            CompensationKind.revert_stage,
            started_case.id,
            {"appointment_id": str(appointment.id)},
        )
        db.commit()

        outbox.drain(db)

        assert db.get(type(started_case), started_case.id, populate_existing=True).stage is (
            S.assessment_in_progress
        )

    def test_unknown_task_is_not_reported(self, db, monkeypatch, caplog):
        vanished = uuid.uuid4()
        monkeypatch.setattr(
            outbox, "pending_tasks", lambda session, limit=None: [SimpleNamespace(id=vanished)]
        )

        with caplog.at_level(logging.WARNING, logger="claimflow.services.outbox"):
            report = outbox.drain(db)

        assert outbox.run_task(db, vanished) is None
        assert report.processed == 0
        assert report.succeeded == []
        assert any(str(vanished) in r.getMessage() for r in caplog.records)

    def test_finished_task_keeps_its_status(self, db, started_case):
        task = outbox.enqueue_compensation(db, CompensationKind.provision_defaults, started_case.id)
        db.commit()
        outbox.drain(db)

        assert outbox.run_task(db, task.id) is CompensationStatus.done
        assert db.get(CompensationTask, task.id).attempts == 1

    def test_provision_frc_opens_record(self, db, started_case):
        task = outbox.enqueue_compensation(db, CompensationKind.provision_frc, started_case.id)
        db.commit()

        report = outbox.drain(db)

        assert report.succeeded == [task.id]
        assert _frc(db, started_case.id).status == "in_progress"

    def test_provision_frc_skips_cancelled_case(self, db, admin, started_case):
        stage_controller.cancel_assessment(db, admin, started_case.id)
        outbox.enqueue_compensation(db, CompensationKind.provision_frc, started_case.id)
        db.commit()

        report = outbox.drain(db)

        assert len(report.succeeded) == 1
        assert _frc(db, started_case.id) is None

    def test_limit(self, db, started_case):
        for _ in range(3):
            outbox.enqueue_compensation(db, CompensationKind.provision_defaults, started_case.id)
        db.commit()

        assert outbox.drain(db, limit=2).processed == 2
        assert len(outbox.pending_tasks(db)) == 1


class TestCeleryTask:
    def test_beat_schedule(self):
        from claimflow.workers.celery_app import celery_app

        entry = celery_app.conf.beat_schedule["drain-compensations"]
        assert entry["task"] == "claimflow.drain_compensations"
        assert entry["schedule"] == settings.outbox_drain_interval_seconds

    def test_task_drains_outbox(self, db, started_case, monkeypatch):
        from sqlalchemy.orm import Session

        from claimflow.workers import celery_app as worker

        monkeypatch.setattr(worker, "_get_db", lambda: Session(bind=db.get_bind()))
        outbox.enqueue_compensation(db, CompensationKind.provision_defaults, started_case.id)
        db.commit()

        result = worker.drain_compensations()

        assert result["processed"] == 1
        assert len(result["succeeded"]) == 1
