"""HTTP API: the pipeline over FastAPI, error mapping and middleware."""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest

from claimflow.core.errors import AllocationExhausted
from claimflow.services.provisioner import missing_defaults

ADMIN = {"X-Actor-Role": "admin", "X-Actor-Id": "admin-1"}


def caseworker_headers(engineer) -> dict:
    return {
        "X-Actor-Role": "caseworker",
        "X-Actor-Id": f"cw-{engineer.name.lower()}",
        "X-Engineer-Id": str(engineer.id),
    }


@pytest.fixture()
def started(client, engineer):
    """Drive a request through to assessment_in_progress over HTTP."""
    request = client.post(
        "/api/v1/requests", json={"claim_number": "POL-1", "owner_name": "S. Dlamini"}, headers=ADMIN
    ).json()
    case = client.post(f"/api/v1/requests/{request['id']}/accept", headers=ADMIN).json()
    appointment = client.post(
        "/api/v1/appointments",
        json={"request_id": request["id"], "engineer_id": str(engineer.id)},
        headers=ADMIN,
    ).json()
    client.post(
        f"/api/v1/appointments/{appointment['id']}/start", headers=caseworker_headers(engineer)
    )
    return {"request": request, "case": case, "appointment": appointment}


class TestHealth:
    def test_health(self, client, monkeypatch):
        class FakeRedis:
            @classmethod
            def from_url(cls, url, **kwargs):
                return cls()

            def ping(self):
                return True

        monkeypatch.setattr("claimflow.main.Redis", FakeRedis)
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["redis"] == "connected"

    def test_health_degraded_without_redis(self, client, monkeypatch):
        class DownRedis:
            @classmethod
            def from_url(cls, url, **kwargs):
                raise ConnectionError("redis down")

        monkeypatch.setattr("claimflow.main.Redis", DownRedis)
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["redis"] == "disconnected"

    def test_request_id_is_echoed(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "req-abc-123"})
        assert resp.headers["X-Request-ID"] == "req-abc-123"

    def test_request_id_is_generated(self, client):
        assert client.get("/health").headers.get("X-Request-ID")


class TestActorHeaders:
    def test_missing_headers(self, client):
        assert client.get("/api/v1/assessments").status_code == 422

    def test_unknown_role(self, client):
        resp = client.get(
            "/api/v1/assessments", headers={"X-Actor-Role": "root", "X-Actor-Id": "x"}
        )
        assert resp.status_code == 401

    def test_caseworker_needs_engineer_id(self, client):
        resp = client.get(
            "/api/v1/assessments", headers={"X-Actor-Role": "caseworker", "X-Actor-Id": "cw"}
        )
        assert resp.status_code == 401


class TestPipelineFlow:
    def test_full_flow(self, client, engineer, started):
        case_id = started["case"]["id"]
        assert started["request"]["request_number"].startswith("CLM-")
        assert started["case"]["stage"] == "request_accepted"
        assert started["appointment"]["appointment_number"].startswith("APT-")

        cw = caseworker_headers(engineer)
        listed = client.get("/api/v1/assessments", headers=cw).json()
        assert [c["id"] for c in listed] == [case_id]
        assert listed[0]["stage"] == "assessment_in_progress"
        assert listed[0]["appointment_id"] == started["appointment"]["id"]

        resp = client.post(
            f"/api/v1/assessments/{case_id}/advance",
            json={"expected": "assessment_in_progress", "target": "estimate_review"},
            headers=cw,
        )
        assert resp.status_code == 200
        assert resp.json()["stage"] == "estimate_review"

        by_request = client.get(
            f"/api/v1/requests/{started['request']['id']}/assessment", headers=ADMIN
        ).json()
        assert by_request["id"] == case_id

    def test_filter_by_stage(self, client, started):
        assert len(client.get("/api/v1/assessments?stage=estimate_review", headers=ADMIN).json()) == 0
        assert len(
            client.get("/api/v1/assessments?stage=assessment_in_progress", headers=ADMIN).json()
        ) == 1

    def test_defaults_endpoint_is_idempotent(self, client, engineer, started):
        resp = client.post(
            f"/api/v1/assessments/{started['case']['id']}/defaults",
            headers=caseworker_headers(engineer),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["created"] == 0
        assert [t["position_label"] for t in body["tyres"]] == [
            "Front Left", "Front Right", "Rear Left", "Rear Right", "Spare",
        ]
        assert Decimal(str(body["vat_percentage"])) == Decimal("15")

    def test_audit_trail(self, client, engineer, started):
        case_id = started["case"]["id"]
        resp = client.get(f"/api/v1/assessments/{case_id}/audit", headers=ADMIN)
        assert resp.status_code == 200
        stages = [e["new_value"] for e in resp.json() if e["field_name"] == "stage"]
        assert stages == [
            "request_submitted",
            "request_accepted",
            "appointment_scheduled",
            "assessment_in_progress",
        ]
        denied = client.get(
            f"/api/v1/assessments/{case_id}/audit", headers=caseworker_headers(engineer)
        )
        assert denied.status_code == 403

    def test_cancel_appointment_reverts_case(self, client, started):
        resp = client.post(
            f"/api/v1/appointments/{started['appointment']['id']}/cancel",
            json={"reason": "vehicle moved"},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["reverted"] is True
        assert body["appointment"]["status"] == "cancelled"
        assert body["assessment"]["stage"] == "appointment_scheduled"

    def test_advance_into_assessment_provisions_defaults(
        self, client, db, engineer, accepted_case, appointment
    ):
        resp = client.post(
            f"/api/v1/assessments/{accepted_case.id}/advance",
            json={"expected": "appointment_scheduled", "target": "assessment_in_progress"},
            headers=caseworker_headers(engineer),
        )
        assert resp.status_code == 200
        assert resp.json()["stage"] == "assessment_in_progress"
        assert missing_defaults(db, accepted_case.id) == []


class TestErrorMapping:
    def test_duplicate_accept_is_409(self, client, started):
        resp = client.post(f"/api/v1/requests/{started['request']['id']}/accept", headers=ADMIN)
        assert resp.status_code == 409
        assert resp.json()["error"] == "duplicate_request"
        assert resp.json()["retryable"] is False

    def test_stale_advance_is_409_with_actual_stage(self, client, started):
        resp = client.post(
            f"/api/v1/assessments/{started['case']['id']}/advance",
            json={"expected": "appointment_scheduled", "target": "assessment_in_progress"},
            headers=ADMIN,
        )
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "stale_state"
        assert body["retryable"] is True
        assert body["context"]["actual"] == "assessment_in_progress"

    def test_skipping_a_stage_is_422(self, client, started):
        resp = client.post(
            f"/api/v1/assessments/{started['case']['id']}/advance",
            json={"expected": "assessment_in_progress", "target": "estimate_sent"},
            headers=ADMIN,
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "invalid_transition"

    def test_foreign_case_is_404(self, client, other_engineer, started):
        resp = client.get(
            f"/api/v1/assessments/{started['case']['id']}", headers=caseworker_headers(other_engineer)
        )
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_caseworker_cancel_is_403(self, client, engineer, started):
        resp = client.post(
            f"/api/v1/assessments/{started['case']['id']}/cancel",
            json={},
            headers=caseworker_headers(engineer),
        )
        assert resp.status_code == 403
        assert resp.json()["error"] == "access_denied"

    def test_unknown_request_is_404(self, client):
        resp = client.post(f"/api/v1/requests/{uuid.uuid4()}/accept", headers=ADMIN)
        assert resp.status_code == 404

    def test_allocation_exhausted_is_503(self, client, monkeypatch):
        def exhausted(session, kind, build, **kwargs):
            raise AllocationExhausted("no identifier after 3 attempts", kind=kind)

        monkeypatch.setattr("claimflow.services.workflow.allocate_and_insert", exhausted)
        resp = client.post("/api/v1/requests", json={}, headers=ADMIN)
        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == "1"
        assert resp.json()["retryable"] is True
