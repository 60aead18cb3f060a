from __future__ import annotations

import hashlib
import hmac
import json

from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.persistence import StorePersistenceError
from backend.app.services.webhooks import extract_event_id, parse_webhook_body


def test_duplicate_vapi_event_is_recorded_once(client) -> None:
    payload = {"id": "evt_123", "message": {"type": "status-update"}}
    first = client.post("/api/webhooks/vapi", json=payload)
    assert first.status_code == 200
    assert first.json()["duplicate"] is False
    assert first.json()["eventId"] == "evt_123"

    second = client.post("/api/webhooks/vapi", json=payload)
    assert second.status_code == 200
    assert second.json()["duplicate"] is True

    ledger = client.app.state.store.webhook_events
    assert list(ledger) == ["evt_123"]
    assert ledger["evt_123"].processed is True
    assert ledger["evt_123"].event_type == "status-update"


def test_events_without_id_fall_back_to_body_digest(client) -> None:
    body = b'{"type": "ContactCreate", "contact": {"phone": "+14155550001"}}'
    headers = {"content-type": "application/json"}
    first = client.post("/api/webhooks/ghl", content=body, headers=headers)
    second = client.post("/api/webhooks/ghl", content=body, headers=headers)

    expected = "ghl-" + hashlib.sha256(body).hexdigest()[:24]
    assert first.json()["eventId"] == expected
    assert first.json()["detail"] == "stored"
    assert second.json()["duplicate"] is True


def test_twilio_form_callback_maps_status_to_outcome(client, make_candidate, make_campaign) -> None:
    candidate = make_candidate()
    campaign = make_campaign(candidateIds=[candidate["id"]], retryLimit=0)
    call = client.post(
        "/api/calls",
        json={
            "candidateId": candidate["id"],
            "campaignId": campaign["id"],
            "twilioCallSid": "CA0001",
        },
    ).json()

    response = client.post(
        "/api/webhooks/twilio",
        content=b"CallSid=CA0001&CallStatus=failed",
        headers={"content-type": "application/x-www-form-urlencoded"},
    )
    assert response.status_code == 200
    assert response.json()["eventId"] == "CA0001:failed"

    updated = client.get(f"/api/calls/{call['id']}").json()
    assert updated["outcome"] == "error"
    assert updated["errorMessage"] == "twilio call status failed"
    assert client.get(f"/api/campaigns/{campaign['id']}").json()["failedCalls"] == 1


def test_vapi_end_of_call_report_updates_call_once(client, make_candidate) -> None:
    candidate = make_candidate()
    call = client.post(
        "/api/calls",
        json={"candidateId": candidate["id"], "providerCallId": "call-abc"},
    ).json()
    report = {
        "message": {
            "type": "end-of-call-report",
            "call": {"id": "call-abc"},
            "transcript": "Agent: Hello\nCandidate: Hi",
            "durationSeconds": 95,
            "analysis": {
                "summary": "Keen on the role.",
                "structuredData": {"outcome": "interested", "noticePeriod": "4 weeks"},
            },
        }
    }
    first = client.post("/api/webhooks/vapi", json=report)
    assert first.status_code == 200
    assert first.json()["eventId"] == "call-abc:end-of-call-report"
    assert first.json()["detail"] == f"call_updated:{call['id']}:outcome=interested"

    updated = client.get(f"/api/calls/{call['id']}").json()
    assert updated["outcome"] == "interested"
    assert updated["summary"] == "Keen on the role."
    assert updated["duration"] == 95
    assert updated["extractedData"]["noticePeriod"] == "4 weeks"

    replay = client.post("/api/webhooks/vapi", json=report)
    assert replay.json()["duplicate"] is True


def test_event_that_failed_to_apply_is_applied_on_redelivery(
    client, make_candidate, make_campaign
) -> None:
    store = client.app.state.store
    candidate = make_candidate()
    campaign = make_campaign(candidateIds=[candidate["id"]])
    call = client.post(
        "/api/calls",
        json={
            "candidateId": candidate["id"],
            "campaignId": campaign["id"],
            "providerCallId": "call-retry",
        },
    ).json()

    finalize = store.finalize_contact
    attempts = []

    def flaky_finalize(**kwargs):
        attempts.append(kwargs)
        if len(attempts) == 1:
            raise StorePersistenceError("database is locked")
        return finalize(**kwargs)

    store.finalize_contact = flaky_finalize
    report = {
        "id": "evt_retry",
        "message": {
            "type": "end-of-call-report",
            "call": {"id": "call-retry"},
            "analysis": {"structuredData": {"outcome": "interested"}},
        },
    }

    failed = client.post("/api/webhooks/vapi", json=report)
    assert failed.status_code == 500
    assert store.webhook_events["evt_retry"].processed is False
    assert client.get(f"/api/calls/{call['id']}").json()["outcome"] is None

    redelivered = client.post("/api/webhooks/vapi", json=report)
    assert redelivered.status_code == 200
    assert redelivered.json()["duplicate"] is False
    assert redelivered.json()["detail"] == f"call_updated:{call['id']}:outcome=interested"

    updated = client.get(f"/api/calls/{call['id']}").json()
    assert updated["outcome"] == "interested"
    assert updated["countedInCampaign"] is True
    assert client.get(f"/api/campaigns/{campaign['id']}").json()["completedCalls"] == 1
    assert store.webhook_events["evt_retry"].processed is True

    replay = client.post("/api/webhooks/vapi", json=report)
    assert replay.json()["duplicate"] is True
    assert len(attempts) == 2

def test_unknown_outcome_is_stored_with_error(client, make_candidate) -> None:
    candidate = make_candidate()
    client.post("/api/calls", json={"candidateId": candidate["id"], "providerCallId": "call-x"})
    report = {
        "id": "evt_bad_outcome",
        "message": {
            "type": "end-of-call-report",
            "call": {"id": "call-x"},
            "outcome": "ecstatic",
        },
    }
    response = client.post("/api/webhooks/vapi", json=report)
    assert response.status_code == 200
    assert response.json()["success"] is False

    event = client.app.state.store.webhook_events["evt_bad_outcome"]
    assert event.processed is False
    assert "ecstatic" in event.error_message


def test_malformed_body_is_rejected(client) -> None:
    response = client.post(
        "/api/webhooks/vapi",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 400


def test_signature_is_enforced_when_secret_configured(monkeypatch) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("VAPI_WEBHOOK_SECRET", "whsec-test")
    client = TestClient(create_app())
    body = json.dumps({"id": "evt_signed"}).encode("utf-8")

    unsigned = client.post(
        "/api/webhooks/vapi", content=body, headers={"content-type": "application/json"}
    )
    assert unsigned.status_code == 403

    signature = hmac.new(b"whsec-test", body, hashlib.sha256).hexdigest()
    signed = client.post(
        "/api/webhooks/vapi",
        content=body,
        headers={"content-type": "application/json", "x-vapi-signature": f"sha256={signature}"},
    )
    assert signed.status_code == 200
    assert signed.json()["eventId"] == "evt_signed"


def test_event_id_extraction_rules() -> None:
    raw = b"{}"
    assert extract_event_id("vapi", {"id": "v1"}, raw) == "v1"
    assert extract_event_id("twilio", {"CallSid": "CA9", "CallStatus": "completed"}, raw) == (
        "CA9:completed"
    )
    assert extract_event_id("ghl", {"id": "g1"}, raw) == "g1"
    assert extract_event_id("twilio", {}, raw).startswith("twilio-")
    assert parse_webhook_body(b"", "application/json") == {}
