from __future__ import annotations

import pytest

from backend.app.services import voice_provider
from backend.app.services.voice_provider import (
    OutboundCallRequest,
    VapiVoiceProvider,
    VoiceProviderError,
)


class _Reply:
    def __init__(self, body: bytes) -> None:
        self.body = body

    def __enter__(self) -> "_Reply":
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def read(self) -> bytes:
        return self.body


def _provider() -> VapiVoiceProvider:
    return VapiVoiceProvider(api_key="key", assistant_id="asst_1", phone_number_id="pn_1")


def _outbound() -> OutboundCallRequest:
    return OutboundCallRequest(
        phone="+14155550001",
        candidate_name="Candidate",
        script="Hi Candidate",
        campaign_id="cmp_1",
        candidate_id="cand_1",
    )


def test_place_call_returns_provider_call_id(monkeypatch) -> None:
    sent = []

    def urlopen(req, timeout):
        sent.append(req)
        return _Reply(b'{"id": "call_123", "status": "queued"}')

    monkeypatch.setattr(voice_provider.request, "urlopen", urlopen)
    result = _provider().place_call(_outbound())

    assert result.provider_call_id == "call_123"
    assert result.status == "queued"
    assert sent[0].full_url == "https://api.vapi.ai/call"
    assert sent[0].get_header("Authorization") == "Bearer key"


@pytest.mark.parametrize("body", [b"[]", b"not json", b"\xff\xfe", b'{"status": "queued"}'])
def test_malformed_reply_raises_provider_error(monkeypatch, body) -> None:
    monkeypatch.setattr(voice_provider.request, "urlopen", lambda req, timeout: _Reply(body))
    with pytest.raises(VoiceProviderError):
        _provider().place_call(_outbound())


def test_read_timeout_raises_provider_error(monkeypatch) -> None:
    def urlopen(req, timeout):
        raise TimeoutError("timed out")

    monkeypatch.setattr(voice_provider.request, "urlopen", urlopen)
    with pytest.raises(VoiceProviderError, match="timed out"):
        _provider().place_call(_outbound())
