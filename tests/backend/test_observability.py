from __future__ import annotations

from fastapi.testclient import TestClient

from backend.app.main import create_app


def test_metrics_endpoint_exposes_counters(client) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "recruit_caller_requests_total" in body
    assert "recruit_caller_requests_5xx_total" in body
    assert 'recruit_caller_route_requests_total{route="/health",status="200"} 1' in body


def test_metrics_track_call_outcomes_and_webhooks(client, make_candidate) -> None:
    candidate = make_candidate()
    call = client.post("/api/calls", json={"candidateId": candidate["id"]}).json()
    client.patch(f"/api/calls/{call['id']}", json={"outcome": "interested"})

    payload = {"id": "evt_metrics", "message": {"type": "status-update"}}
    client.post("/api/webhooks/vapi", json=payload)
    client.post("/api/webhooks/vapi", json=payload)

    body = client.get("/metrics").text
    assert 'recruit_caller_call_outcomes_total{outcome="interested"} 1' in body
    assert 'recruit_caller_webhooks_total{source="vapi"} 2' in body
    assert "recruit_caller_webhooks_duplicate_total 1" in body


def test_readiness_endpoint(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"


def test_integration_health_reports_unconfigured_services(client) -> None:
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {
        "database": False,
        "openai": False,
        "vapi": False,
        "twilio": False,
        "ghl": False,
    }


def test_integration_health_reflects_configured_keys(monkeypatch) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("VAPI_API_KEY", "vapi-key")
    monkeypatch.setenv("GHL_API_KEY", "")
    client = TestClient(create_app())

    body = client.get("/api/health").json()
    assert body["vapi"] is True
    assert body["ghl"] is False


def test_connector_check_lists_configured_credentials(monkeypatch) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("VAPI_API_KEY", "vapi-key")
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "")
    monkeypatch.setenv("GHL_API_KEY", "")
    client = TestClient(create_app())

    response = client.get("/api/connectors/test")
    assert response.status_code == 200
    assert response.json() == {"openai": False, "vapi": True, "twilio": False, "ghl": False}
