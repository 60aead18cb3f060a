from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Optional
from urllib.parse import parse_qsl

from starlette.datastructures import Headers

from backend.app.settings import Settings

_SIGNATURE_HEADERS = {
    "vapi": ["x-vapi-signature", "x-webhook-signature"],
    "twilio": ["x-twilio-signature-256", "x-webhook-signature"],
    "ghl": ["x-ghl-signature", "x-wh-signature", "x-webhook-signature"],
}


class SignatureVerificationError(Exception):
    pass


class WebhookPayloadError(Exception):
    pass


def _header_value(headers: Headers, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def _verify_hmac_sha256(raw_body: bytes, secret: str, incoming_signature: str) -> bool:
    provided = incoming_signature.strip()
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided)


def webhook_secret(settings: Settings, source: str) -> str:
    return {
        "vapi": settings.vapi_webhook_secret,
        "twilio": settings.twilio_webhook_secret,
        "ghl": settings.ghl_webhook_secret,
    }.get(source, "")


def verify_provider_signature(
    source: str, headers: Headers, raw_body: bytes, secret: str
) -> None:
    if not secret:
        return
    signature = _header_value(headers, _SIGNATURE_HEADERS[source])
    if not signature:
        raise SignatureVerificationError(f"missing {source} signature header")
    if not _verify_hmac_sha256(raw_body, secret, signature):
        raise SignatureVerificationError(f"invalid {source} signature")


def parse_webhook_body(raw_body: bytes, content_type: str) -> dict[str, Any]:
    """Decode a JSON or form-encoded webhook body into a dict."""
    if not raw_body.strip():
        return {}
    text = raw_body.decode("utf-8", errors="replace")
    if "application/x-www-form-urlencoded" in (content_type or "").lower():
        return dict(parse_qsl(text, keep_blank_values=True))
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise WebhookPayloadError("webhook body is neither json nor form data") from exc
    if not isinstance(decoded, dict):
        raise WebhookPayloadError("webhook body must be a json object")
    return decoded


def _vapi_message(payload: dict[str, Any]) -> dict[str, Any]:
    message = payload.get("message")
    return message if isinstance(message, dict) else payload


def _vapi_call_id(payload: dict[str, Any]) -> Optional[str]:
    call = _vapi_message(payload).get("call")
    if isinstance(call, dict) and call.get("id"):
        return str(call["id"])
    return None


def extract_event_type(source: str, payload: dict[str, Any]) -> str:
    if source == "vapi":
        value = _vapi_message(payload).get("type")
    elif source == "twilio":
        value = payload.get("CallStatus")
    else:
        value = payload.get("type")
    return str(value) if value else "unknown"


def extract_event_id(source: str, payload: dict[str, Any], raw_body: bytes) -> str:
    """Provider event id, or a body digest so replays of one body stay idempotent."""
    event_id: Optional[str] = None
    if source == "vapi":
        if payload.get("id"):
            event_id = str(payload["id"])
        elif _vapi_call_id(payload):
            event_id = f"{_vapi_call_id(payload)}:{extract_event_type(source, payload)}"
    elif source == "twilio":
        if payload.get("CallSid"):
            event_id = f"{payload['CallSid']}:{payload.get('CallStatus') or 'unknown'}"
    elif payload.get("id"):
        event_id = str(payload["id"])
    if event_id:
        return event_id
    return f"{source}-{hashlib.sha256(raw_body).hexdigest()[:24]}"
