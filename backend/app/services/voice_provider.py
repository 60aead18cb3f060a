from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Optional
from urllib import request
from urllib.error import HTTPError, URLError

from backend.app.settings import Settings


class VoiceProviderError(Exception):
    pass


@dataclass(frozen=True)
class OutboundCallRequest:
    phone: str
    candidate_name: str
    script: str
    campaign_id: str
    candidate_id: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OutboundCallResult:
    provider_call_id: str
    status: str


class VapiVoiceProvider:
    """Places outbound calls through the Vapi REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        assistant_id: str,
        phone_number_id: str,
        base_url: str = "https://api.vapi.ai",
        timeout_seconds: int = 15,
    ) -> None:
        self.api_key = api_key
        self.assistant_id = assistant_id
        self.phone_number_id = phone_number_id
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def place_call(self, call: OutboundCallRequest) -> OutboundCallResult:
        body = {
            "assistantId": self.assistant_id,
            "phoneNumberId": self.phone_number_id,
            "customer": {"number": call.phone, "name": call.candidate_name},
            "assistantOverrides": {"firstMessage": call.script},
            "metadata": {
                "campaignId": call.campaign_id,
                "candidateId": call.candidate_id,
                **call.metadata,
            },
        }
        req = request.Request(
            f"{self.base_url}/call",
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                raw = response.read()
        except HTTPError as exc:
            raise VoiceProviderError(f"voice provider rejected call: http {exc.code}") from exc
        except URLError as exc:
            raise VoiceProviderError("voice provider request failed") from exc
        except OSError as exc:
            raise VoiceProviderError(f"voice provider request failed: {exc}") from exc

        try:
            decoded = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise VoiceProviderError("voice provider response was not valid json") from exc
        if not isinstance(decoded, dict):
            raise VoiceProviderError("voice provider response was not a json object")

        provider_call_id = decoded.get("id")
        if not isinstance(provider_call_id, str) or not provider_call_id:
            raise VoiceProviderError("voice provider response missing call id")
        return OutboundCallResult(
            provider_call_id=provider_call_id,
            status=str(decoded.get("status") or "queued"),
        )


def build_voice_provider(settings: Settings) -> Optional[VapiVoiceProvider]:
    if not (settings.vapi_api_key and settings.vapi_assistant_id and settings.vapi_phone_number_id):
        return None
    return VapiVoiceProvider(
        api_key=settings.vapi_api_key,
        assistant_id=settings.vapi_assistant_id,
        phone_number_id=settings.vapi_phone_number_id,
        base_url=settings.vapi_base_url,
        timeout_seconds=settings.provider_timeout_seconds,
    )
