"""Child record provisioner: exactly one row per slot, any number of calls."""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from claimflow.core.errors import PreconditionFailed
from claimflow.models.assessment import AssessmentStage
from claimflow.models.assessment_records import (
    AssessmentDamage,
    AssessmentEstimate,
    AssessmentTyre,
    AssessmentVehicleValues,
    PreIncidentEstimate,
)
from claimflow.services import stage_controller
from claimflow.services.provisioner import ALL_SLOT_KEYS, ensure_defaults, missing_defaults

CHILD_MODELS = (
    AssessmentTyre,
    AssessmentDamage,
    AssessmentVehicleValues,
    PreIncidentEstimate,
    AssessmentEstimate,
)


def _counts(db, assessment_id) -> dict:
    return {
        model.__tablename__: db.scalar(
            select(func.count()).select_from(model).where(model.assessment_id == assessment_id)
        )
        for model in CHILD_MODELS
    }


@pytest.fixture()
def unprovisioned_case(db, admin, appointment, accepted_case):
    """A case moved to assessment_in_progress without running the provisioner."""
    case = stage_controller.advance(
        db,
        admin,
        accepted_case.id,
        AssessmentStage.appointment_scheduled,
        AssessmentStage.assessment_in_progress,
    )
    db.commit()
    return case


class TestEnsureDefaults:
    def test_creates_full_set(self, db, unprovisioned_case):
        records = ensure_defaults(db, unprovisioned_case.id)
        db.commit()

        assert records.created == 9
        assert [t.position for t in records.tyres] == [
            "front_left", "front_right", "rear_left", "rear_right", "spare",
        ]
        assert [t.position_label for t in records.tyres] == [
            "Front Left", "Front Right", "Rear Left", "Rear Right", "Spare",
        ]
        assert records.estimate.vat_percentage == Decimal("15")
        assert records.estimate.currency == "ZAR"
        assert records.estimate.line_items == []
        assert records.damage.damage_area == "non_structural"

    def test_repeated_calls_keep_one_row_per_key(self, db, unprovisioned_case):
        first = ensure_defaults(db, unprovisioned_case.id)
        db.commit()
        for _ in range(3):
            again = ensure_defaults(db, unprovisioned_case.id)
            db.commit()
            assert again.created == 0

        assert _counts(db, unprovisioned_case.id) == {
            "assessment_tyres": 5,
            "assessment_damage": 1,
            "assessment_vehicle_values": 1,
            "pre_incident_estimates": 1,
            "assessment_estimates": 1,
        }
        assert [t.id for t in again.tyres] == [t.id for t in first.tyres]
        assert again.estimate.id == first.estimate.id

    def test_existing_rows_are_left_unchanged(self, db, unprovisioned_case):
        records = ensure_defaults(db, unprovisioned_case.id)
        records.tyres[0].tyre_make = "Bridgestone"
        records.damage.severity = "moderate"
        db.commit()

        again = ensure_defaults(db, unprovisioned_case.id)
        assert again.tyres[0].tyre_make == "Bridgestone"
        assert again.damage.severity == "moderate"

    def test_only_missing_rows_are_recreated(self, db, unprovisioned_case):
        records = ensure_defaults(db, unprovisioned_case.id)
        spare = records.tyres[-1]
        db.delete(spare)
        db.delete(records.vehicle_values)
        db.commit()

        assert missing_defaults(db, unprovisioned_case.id) == ["tyre:spare", "vehicle_values"]
        again = ensure_defaults(db, unprovisioned_case.id)
        db.commit()
        assert again.created == 2
        assert missing_defaults(db, unprovisioned_case.id) == []

    @pytest.mark.parametrize("fixture_name", ["accepted_case", "appointment"])
    def test_refuses_cases_that_have_not_started(self, db, request, accepted_case, fixture_name):
        request.getfixturevalue(fixture_name)
        with pytest.raises(PreconditionFailed):
            ensure_defaults(db, accepted_case.id)
        assert _counts(db, accepted_case.id)["assessment_tyres"] == 0

    def test_refuses_cancelled_cases(self, db, admin, unprovisioned_case):
        stage_controller.cancel_assessment(db, admin, unprovisioned_case.id)
        db.commit()
        with pytest.raises(PreconditionFailed):
            ensure_defaults(db, unprovisioned_case.id)


class TestMissingDefaults:
    def test_reports_everything_before_provisioning(self, db, unprovisioned_case):
        assert missing_defaults(db, unprovisioned_case.id) == list(ALL_SLOT_KEYS)

    def test_started_case_is_complete(self, db, started_case):
        assert missing_defaults(db, started_case.id) == []
