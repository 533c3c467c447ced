"""HTTP surface over the orchestrator."""

import pytest
from fastapi.testclient import TestClient

from clinic_migrate.api.main import create_app

from conftest import ACTOR, CLINIC

HEADERS = {"X-Actor-Id": ACTOR, "X-Clinic-Id": CLINIC}


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator)) as test_client:
        yield test_client


@pytest.fixture
def run_id(client):
    response = client.post("/api/runs", json={"vendor": "csv_upload"}, headers=HEADERS)
    assert response.status_code == 200
    return response.json()["id"]


def post_phase(client, run_id, phase):
    return client.post(f"/api/runs/{run_id}/phases/{phase}", headers=HEADERS)


class TestPermissionGuard:

    def test_health_needs_no_actor(self, client):
        assert client.get("/api/health").json() == {"status": "healthy"}

    def test_actor_header_required(self, client, run_id):
        response = client.get(f"/api/runs/{run_id}")

        assert response.status_code == 403
        assert response.json()["code"] == "authorization_error"

    def test_creating_a_run_needs_a_clinic(self, client):
        response = client.post("/api/runs", json={"vendor": "mock"}, headers={"X-Actor-Id": ACTOR})
        assert response.status_code == 403

    def test_runs_are_scoped_to_the_clinic(self, client, run_id):
        other = {"X-Actor-Id": "ops@clinic-2", "X-Clinic-Id": "clinic-2"}

        assert client.get(f"/api/runs/{run_id}", headers=other).status_code == 404
        assert client.get("/api/runs", headers=other).json() == {"runs": [], "total": 0}


class TestRunEndpoints:

    def test_create_and_get(self, client, run_id):
        body = client.get(f"/api/runs/{run_id}", headers=HEADERS).json()

        assert body["status"] == "Connecting"
        assert body["ingest_strategy"] == "upload"
        assert body["started_by"] == ACTOR
        assert client.get("/api/runs", headers=HEADERS).json()["total"] == 1

    def test_unknown_run(self, client):
        response = client.get("/api/runs/nope", headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_phase_out_of_order_conflicts(self, client, run_id):
        response = post_phase(client, run_id, "promote")

        assert response.status_code == 409
        assert response.json()["code"] == "precondition_failed"

    def test_unknown_phase_is_rejected(self, client, run_id):
        assert post_phase(client, run_id, "teleport").status_code == 422

    def test_full_flow(self, client, run_id):
        for phase in ("connect", "discover", "generateMapping"):
            body = post_phase(client, run_id, phase).json()
            assert body["succeeded"], body["error"]

        mapping = client.get(f"/api/runs/{run_id}/mapping", headers=HEADERS).json()
        assert mapping["version"] == 1
        assert set(mapping["entity_mappings"]) == {"patient", "appointment"}

        approval = client.post(f"/api/runs/{run_id}/mapping/approve", headers=HEADERS)
        assert approval.status_code == 200
        assert approval.json()["version"] == 1
        assert client.post(f"/api/runs/{run_id}/mapping/approve", headers=HEADERS).status_code == 409

        for phase in ("transform", "validate", "promote"):
            body = post_phase(client, run_id, phase).json()
            assert body["succeeded"], body["error"]
        assert body["status"] == "Completed"

        report = client.get(f"/api/runs/{run_id}/report", headers=HEADERS).json()
        assert report["ledger"] == {"appointment": {"promoted": 1}, "patient": {"promoted": 2}}
        assert report["reconciliation"]["status"] == "complete"
        assert report["auditTrail"][0]["action"] == "run_started"

    def test_failed_validation_is_a_handled_outcome(self, client, run_id, fake_source):
        fake_source.datasets["appointment"].append(
            {"id": "a2", "patientId": "p9", "provider": "Dr. Smith", "startTime": "2024-03-02T10:00:00", "status": "Booked"}
        )
        for phase in ("connect", "discover", "generateMapping"):
            post_phase(client, run_id, phase)
        client.post(f"/api/runs/{run_id}/mapping/approve", headers=HEADERS)
        post_phase(client, run_id, "transform")

        response = post_phase(client, run_id, "validate")
        body = response.json()

        assert response.status_code == 200
        assert body["succeeded"] is False
        assert body["status"] == "Migrating"
        assert body["error"]["code"] == "validation_failure"

        rejected = client.post(
            f"/api/runs/{run_id}/records/reject",
            json={"entity_type": "appointment", "source_id": "a2", "reason": "orphan"},
            headers=HEADERS,
        )
        assert rejected.json()["status"] == "rejected"
        assert post_phase(client, run_id, "validate").json()["status"] == "Verifying"

    def test_propose_mapping(self, client, run_id):
        for phase in ("connect", "discover", "generateMapping"):
            post_phase(client, run_id, phase)
        proposal = {
            "entity_mappings": {
                "patient": {
                    "source_entity": "patients",
                    "target_entity": "patient",
                    "field_mappings": [
                        {"source_field": "firstName", "target_field": "firstName"},
                        {"source_field": "lastName", "target_field": "lastName", "confidence": 0.5},
                    ],
                },
            },
        }

        response = client.put(f"/api/runs/{run_id}/mapping", json=proposal, headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["version"] == 2
        assert response.json()["requires_approval"] == {"patient": ["lastName"]}

    def test_invalid_proposal_conflicts(self, client, run_id):
        for phase in ("connect", "discover", "generateMapping"):
            post_phase(client, run_id, phase)
        proposal = {
            "entity_mappings": {
                "patient": {
                    "source_entity": "patients",
                    "target_entity": "patient",
                    "field_mappings": [{"source_field": "shoe", "target_field": "shoeSize"}],
                },
            },
        }
        response = client.put(f"/api/runs/{run_id}/mapping", json=proposal, headers=HEADERS)
        assert response.status_code == 409

    def test_pause_resume_and_cleanup(self, client, run_id):
        paused = client.post(f"/api/runs/{run_id}/pause", headers=HEADERS).json()
        assert paused["status"] == "Paused"
        assert paused["paused_from"] == "Connecting"

        assert client.post(f"/api/runs/{run_id}/pause", headers=HEADERS).status_code == 409
        assert client.post(f"/api/runs/{run_id}/resume", headers=HEADERS).json()["status"] == "Connecting"

        deleted = client.delete(f"/api/runs/{run_id}", headers=HEADERS).json()
        assert deleted["status"] == "deleted"
        assert client.get(f"/api/runs/{run_id}", headers=HEADERS).status_code == 404

    def test_vendor_failure_is_reported_not_raised(self, client, run_id, fake_source):
        fake_source.login_error = RuntimeError("password=hunter2")

        body = post_phase(client, run_id, "connect").json()

        assert body["succeeded"] is False
        assert body["status"] == "Failed"
        assert "hunter2" not in str(body)
