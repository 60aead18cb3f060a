from __future__ import annotations

from threading import Lock
from typing import Callable

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.services.voice_provider import (
    OutboundCallRequest,
    OutboundCallResult,
    VoiceProviderError,
)

_PROVIDER_ENV = (
    "VAPI_API_KEY",
    "VAPI_ASSISTANT_ID",
    "VAPI_PHONE_NUMBER_ID",
    "VAPI_WEBHOOK_SECRET",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_WEBHOOK_SECRET",
    "GHL_API_KEY",
    "GHL_WEBHOOK_SECRET",
    "OPENAI_API_KEY",
)


class FakeVoiceProvider:
    def __init__(self) -> None:
        self._lock = Lock()
        self.requests: list[OutboundCallRequest] = []
        self.failing_phones: set[str] = set()

    def place_call(self, call: OutboundCallRequest) -> OutboundCallResult:
        with self._lock:
            self.requests.append(call)
            sequence = len(self.requests)
        if call.phone in self.failing_phones:
            raise VoiceProviderError("simulated provider outage")
        return OutboundCallResult(provider_call_id=f"vapi-call-{sequence}", status="queued")


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("CALL_WINDOW_TIMEZONE", "UTC")
    for name in _PROVIDER_ENV:
        monkeypatch.setenv(name, "")
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def fake_provider(client: TestClient) -> FakeVoiceProvider:
    provider = FakeVoiceProvider()
    client.app.state.voice_provider = provider
    return provider


@pytest.fixture()
def make_candidate(client: TestClient) -> Callable[..., dict]:
    counter = {"value": 0}

    def factory(**overrides) -> dict:
        counter["value"] += 1
        index = counter["value"]
        payload = {
            "name": f"Candidate {index}",
            "email": f"candidate{index}@example.com",
            "phone": f"+1415555{index:04d}",
            "consentStatus": "granted",
        }
        payload.update(overrides)
        response = client.post("/api/candidates", json=payload)
        assert response.status_code == 201, response.text
        return response.json()

    return factory


@pytest.fixture()
def make_vacancy(client: TestClient) -> Callable[..., dict]:
    def factory(**overrides) -> dict:
        payload = {
            "title": "Senior Backend Engineer",
            "department": "Engineering",
            "location": "Remote",
            "status": "active",
        }
        payload.update(overrides)
        response = client.post("/api/vacancies", json=payload)
        assert response.status_code == 201, response.text
        return response.json()

    return factory


@pytest.fixture()
def make_campaign(client: TestClient) -> Callable[..., dict]:
    def factory(**overrides) -> dict:
        payload = {
            "name": "Spring outreach",
            "scriptTemplate": "Hi {{candidate_name}}, calling about {{vacancy_title}}.",
        }
        payload.update(overrides)
        response = client.post("/api/campaigns", json=payload)
        assert response.status_code == 201, response.text
        return response.json()

    return factory
