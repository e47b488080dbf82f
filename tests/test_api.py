"""
HTTP API tests for ingestion, passes, the worklist and escalations
"""

import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

from careintel.database import get_db, get_session_factory
from careintel.main import app

from conftest import TENANT, HEART_RATE_WEEK, HEART_RATE_SPIKE


@pytest.fixture
def client(session_factory):
    """Test client bound to the per-test database"""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def observation_payload(value, recorded_at, metric_type="heart_rate", unit="bpm", subject_id="r-1"):
    return {
        "tenant_id": TENANT,
        "subject_id": subject_id,
        "subject_type": "RESIDENT",
        "metric_type": metric_type,
        "value": value,
        "unit": unit,
        "recorded_at": recorded_at.isoformat(),
        "source_confidence": "HIGH",
        "source": "ehr",
    }


@pytest.fixture
def spike_pass(client, base_time):
    """Register r-1, ingest the heart rate spike over HTTP and run one pass"""
    client.post("/api/v1/subjects", json={
        "tenant_id": TENANT, "subject_id": "r-1", "subject_type": "RESIDENT"
    })
    values = HEART_RATE_WEEK + [HEART_RATE_SPIKE]
    response = client.post("/api/v1/observations/batch", json={"observations": [
        observation_payload(value, base_time + timedelta(days=i)) for i, value in enumerate(values)
    ]})
    assert response.json()["accepted"] == 8

    as_of = base_time + timedelta(days=7, hours=1)
    response = client.post(f"/api/v1/intelligence/{TENANT}/passes", json={"as_of": as_of.isoformat()})
    assert response.status_code == 200
    return response.json()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        assert client.get("/").json()["status"] == "operational"


class TestIngestionAPI:
    """Subject registration and observation ingestion"""

    @pytest.fixture(autouse=True)
    def resident(self, client):
        response = client.post("/api/v1/subjects", json={
            "tenant_id": TENANT,
            "subject_id": "r-1",
            "subject_type": "RESIDENT",
            "display_label": "Room 12",
            "context_flags": ["fall_history", "cardiac_condition"],
        })
        assert response.status_code == 201
        assert response.json()["context_flags"] == ["cardiac_condition", "fall_history"]

    def test_submit_is_idempotent(self, client, base_time):
        first = client.post("/api/v1/observations", json=observation_payload(72, base_time))
        second = client.post("/api/v1/observations", json=observation_payload(72, base_time))

        assert first.status_code == 201
        assert first.json()["observation_id"] == second.json()["observation_id"]

    def test_invalid_observation_returns_reasons(self, client, base_time):
        response = client.post("/api/v1/observations", json=observation_payload(300, base_time, unit="bps"))

        assert response.status_code == 422
        body = response.json()
        assert body["type"] == "invalid_observation"
        assert len(body["reasons"]) == 2

    def test_batch_reports_each_item(self, client, base_time):
        response = client.post("/api/v1/observations/batch", json={"observations": [
            observation_payload(72, base_time),
            observation_payload(-5, base_time + timedelta(days=1)),
        ]})

        body = response.json()
        assert response.status_code == 200
        assert body["accepted"] == 1
        assert body["rejected"] == 1
        assert [r["index"] for r in body["results"]] == [0, 1]
        assert body["results"][1]["accepted"] is False

    def test_unknown_subject_type(self, client):
        response = client.post("/api/v1/subjects", json={
            "tenant_id": TENANT, "subject_id": "v-1", "subject_type": "VISITOR"
        })

        assert response.status_code == 422


class TestIntelligenceAPI:
    """Pass, worklist, explanation, scores and baselines"""

    def test_pass_counts(self, spike_pass):
        assert spike_pass["status"] == "COMPLETED"
        assert spike_pass["baselines_updated"] == 8
        assert spike_pass["anomalies_detected"] == 1
        assert spike_pass["scores_updated"] == 1
        assert spike_pass["escalations_created"] == 1

    def test_worklist(self, client, spike_pass):
        ranked = client.get(f"/api/v1/intelligence/{TENANT}/issues").json()

        assert len(ranked) == 1
        assert ranked[0]["rank"] == 1
        assert ranked[0]["status"] == "NEW"
        assert ranked[0]["issue"]["priority"] == pytest.approx(68.4)
        assert ranked[0]["issue"]["risk_category"] == "RESIDENT_HEALTH"

        assert client.get(f"/api/v1/intelligence/{TENANT}/issues", params={"status": "DISMISSED"}).json() == []
        assert client.get("/api/v1/intelligence/agency-b/issues").json() == []

    def test_issue_status(self, client, spike_pass):
        issue_id = client.get(f"/api/v1/intelligence/{TENANT}/issues").json()[0]["issue"]["id"]
        url = f"/api/v1/intelligence/{TENANT}/issues/{issue_id}/status"

        response = client.post(url, json={"status": "ACKNOWLEDGED", "actor": "nurse-1"})
        assert response.status_code == 200
        assert response.json()["status"] == "ACKNOWLEDGED"

        response = client.post(url, json={"status": "RESOLVED", "actor": "nurse-1"})
        assert response.status_code == 409
        assert response.json()["type"] == "invalid_transition"

        other_tenant = client.post(
            f"/api/v1/intelligence/agency-b/issues/{issue_id}/status",
            json={"status": "DISMISSED", "actor": "nurse-1"}
        )
        assert other_tenant.status_code == 404

    def test_explanation(self, client, spike_pass):
        issue_id = client.get(f"/api/v1/intelligence/{TENANT}/issues").json()[0]["issue"]["id"]

        response = client.get(f"/api/v1/intelligence/{TENANT}/issues/{issue_id}/explanation")

        body = response.json()
        assert response.status_code == 200
        assert body["version"] == 1
        assert body["reasoning_steps"][0]["factor"] == "heart_rate_deviation"
        assert [e["kind"] for e in body["evidence"]] == ["anomaly", "observation"]
        assert body["cannot_determine"]

        missing = client.get(f"/api/v1/intelligence/{TENANT}/issues/missing/explanation")
        assert missing.status_code == 404
        assert missing.json()["type"] == "not_found"

    def test_risk_scores(self, client, spike_pass):
        scores = client.get(f"/api/v1/intelligence/{TENANT}/risk-scores", params={"subject_id": "r-1"}).json()

        assert len(scores) == 1
        assert scores[0]["score"] == 80
        assert scores[0]["risk_level"] == "CRITICAL"

    def test_baseline(self, client, spike_pass, base_time):
        anchor = base_time + timedelta(days=7)
        response = client.get(
            f"/api/v1/intelligence/{TENANT}/subjects/r-1/baselines/heart_rate",
            params={"as_of": anchor.isoformat()}
        )

        body = response.json()
        assert response.status_code == 200
        assert body["mean"] == pytest.approx(72.0)
        assert body["std_dev"] == pytest.approx(4.0)
        assert body["status"] == "VALID"

        missing = client.get(f"/api/v1/intelligence/{TENANT}/subjects/r-1/baselines/blood_glucose")
        assert missing.status_code == 404


class TestConfigAPI:
    """Per-tenant configuration overrides"""

    def test_update_read_and_reset(self, client):
        url = f"/api/v1/intelligence/{TENANT}/config"

        response = client.put(url, json={"updates": {"sla_hours": {"CRITICAL": 0.5}}, "updated_by": "admin-1"})
        assert response.status_code == 200
        assert response.json()["config"]["sla_hours"]["CRITICAL"] == 0.5
        assert response.json()["config"]["sla_hours"]["HIGH"] == 2.0

        assert client.get(url).json()["overrides"] == {"sla_hours": {"CRITICAL": 0.5}}

        response = client.delete(url, params={"updated_by": "admin-1"})
        assert response.json()["overrides"] == {}
        assert client.get(url).json()["config"]["sla_hours"]["CRITICAL"] == 0.25

    def test_invalid_update_rejected(self, client):
        response = client.put(
            f"/api/v1/intelligence/{TENANT}/config",
            json={"updates": {"z_critical_threshold": 1.0}}
        )

        assert response.status_code == 422
        assert response.json()["type"] == "invalid_configuration"


class TestEscalationAPI:
    """Supervisor workflow over HTTP"""

    @pytest.fixture
    def escalation_id(self, client, spike_pass):
        return client.get(f"/api/v1/escalations/{TENANT}").json()[0]["id"]

    def test_listing(self, client, escalation_id):
        escalations = client.get(f"/api/v1/escalations/{TENANT}").json()

        assert len(escalations) == 1
        assert escalations[0]["priority_tier"] == "CRITICAL"
        assert escalations[0]["status"] == "PENDING"
        assert escalations[0]["version"] == 1
        # The pass ran days ago and nobody acknowledged
        assert escalations[0]["is_breached"] is True

        single = client.get(f"/api/v1/escalations/{TENANT}/{escalation_id}")
        assert single.json()["id"] == escalation_id

    def test_workflow_with_versions(self, client, escalation_id):
        base = f"/api/v1/escalations/{TENANT}/{escalation_id}"

        response = client.post(f"{base}/acknowledge", json={"actor": "sup-1", "expected_version": 1})
        assert response.status_code == 200
        assert response.json()["status"] == "ACKNOWLEDGED"
        assert response.json()["version"] == 2

        stale = client.post(f"{base}/start", json={"actor": "sup-2", "expected_version": 1})
        assert stale.status_code == 409
        assert stale.json()["type"] == "stale_state"

        assert client.post(f"{base}/start", json={"actor": "sup-1", "expected_version": 2}).status_code == 200
        response = client.post(f"{base}/resolve", json={
            "actor": "sup-1", "expected_version": 3, "notes": "Repeat observations normal"
        })
        assert response.json()["status"] == "RESOLVED"
        assert response.json()["resolution_notes"] == "Repeat observations normal"

        again = client.post(f"{base}/acknowledge", json={"actor": "sup-1", "expected_version": 4})
        assert again.status_code == 409
        assert again.json()["type"] == "invalid_transition"

        audit = client.get(f"{base}/audit").json()
        assert [entry["action"] for entry in audit] == ["created", "acknowledged", "in_progress", "resolved"]

        assert client.get(f"/api/v1/escalations/{TENANT}").json() == []
        assert len(client.get(f"/api/v1/escalations/{TENANT}", params={"include_resolved": True}).json()) == 1

    def test_assign(self, client, escalation_id):
        response = client.post(
            f"/api/v1/escalations/{TENANT}/{escalation_id}/assign",
            json={"assignee": "sup-2", "actor": "sup-1"}
        )

        assert response.status_code == 200
        assert response.json()["assigned_to"] == "sup-2"
        assert response.json()["version"] == 2

    def test_sla_metrics(self, client, escalation_id):
        metrics = client.get(f"/api/v1/escalations/{TENANT}/sla-metrics").json()

        assert metrics["total"] == 1
        assert metrics["critical_pending"] == 1
        assert metrics["breached"] == 1
        assert metrics["acknowledged_late"] == 0

    def test_version_must_be_positive(self, client, escalation_id):
        response = client.post(
            f"/api/v1/escalations/{TENANT}/{escalation_id}/acknowledge",
            json={"actor": "sup-1", "expected_version": 0}
        )

        assert response.status_code == 422

    def test_other_tenant_not_found(self, client, escalation_id):
        assert client.get(f"/api/v1/escalations/agency-b/{escalation_id}").status_code == 404
        response = client.post(
            f"/api/v1/escalations/agency-b/{escalation_id}/acknowledge",
            json={"actor": "sup-1", "expected_version": 1}
        )
        assert response.status_code == 404
