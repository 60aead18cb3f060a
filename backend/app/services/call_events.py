from __future__ import annotations

from typing import Any, Optional

from backend.app.models import CallOutcome, CallUpdateRequest
from backend.app.observability import MetricsRegistry
from backend.app.services.lifecycle import record_call_outcome
from backend.app.store import InMemoryStore

VAPI_ENDED_REASONS = {
    "customer-did-not-answer": CallOutcome.no_answer,
    "silence-timed-out": CallOutcome.no_answer,
    "customer-busy": CallOutcome.busy,
    "voicemail": CallOutcome.voicemail,
    "error": CallOutcome.error,
}
# A report that ends a conversation without a classified outcome still closes the attempt.
VAPI_UNCLASSIFIED_OUTCOME = CallOutcome.not_interested

TWILIO_STATUSES = {
    "no-answer": CallOutcome.no_answer,
    "busy": CallOutcome.busy,
    "failed": CallOutcome.error,
}


class PermanentWebhookError(Exception):
    pass


def _vapi_outcome(message: dict[str, Any]) -> CallOutcome:
    analysis = message.get("analysis") if isinstance(message.get("analysis"), dict) else {}
    structured = analysis.get("structuredData") if isinstance(analysis, dict) else None
    raw = None
    if isinstance(structured, dict):
        raw = structured.get("outcome")
    raw = raw or message.get("outcome")
    if raw:
        try:
            return CallOutcome(str(raw).strip().lower())
        except ValueError as exc:
            raise PermanentWebhookError(f"unknown call outcome: {raw}") from exc
    ended_reason = str(message.get("endedReason") or "").strip().lower()
    if ended_reason in VAPI_ENDED_REASONS:
        return VAPI_ENDED_REASONS[ended_reason]
    if "error" in ended_reason or "failed" in ended_reason:
        return CallOutcome.error
    return VAPI_UNCLASSIFIED_OUTCOME


def _vapi_update(message: dict[str, Any]) -> CallUpdateRequest:
    analysis = message.get("analysis") if isinstance(message.get("analysis"), dict) else {}
    artifact = message.get("artifact") if isinstance(message.get("artifact"), dict) else {}
    outcome = _vapi_outcome(message)
    fields: dict[str, Any] = {"outcome": outcome}
    transcript = message.get("transcript") or artifact.get("transcript")
    if transcript:
        fields["transcript"] = str(transcript)
    summary = analysis.get("summary") or message.get("summary")
    if summary:
        fields["summary"] = str(summary)
    audio_url = message.get("recordingUrl") or artifact.get("recordingUrl")
    if audio_url:
        fields["audio_url"] = str(audio_url)
    duration = message.get("durationSeconds")
    if isinstance(duration, (int, float)) and duration >= 0:
        fields["duration"] = int(duration)
    structured = analysis.get("structuredData")
    if isinstance(structured, dict):
        fields["extracted_data"] = structured
    if outcome == CallOutcome.error:
        fields["error_message"] = str(message.get("endedReason") or "provider error")
    return CallUpdateRequest(**fields)


def apply_call_event(
    *,
    store: InMemoryStore,
    source: str,
    payload: dict[str, Any],
    metrics: Optional[MetricsRegistry] = None,
) -> str:
    """Apply a recorded provider event to the call log. Returns a short detail string."""
    if source == "vapi":
        message = payload.get("message") if isinstance(payload.get("message"), dict) else payload
        if message.get("type") != "end-of-call-report":
            return "ignored_event_type"
        call_info = message.get("call") if isinstance(message.get("call"), dict) else {}
        provider_call_id = call_info.get("id")
        if not provider_call_id:
            raise PermanentWebhookError("end-of-call-report missing call id")
        call = store.find_call_by_provider_id(str(provider_call_id))
        if call is None:
            return "call_not_found"
        update = _vapi_update(message)
        record_call_outcome(store, call.id, update, metrics=metrics)
        return f"call_updated:{call.id}:outcome={update.outcome.value}"

    if source == "twilio":
        call_sid = payload.get("CallSid")
        call_status = str(payload.get("CallStatus") or "").strip().lower()
        if not call_sid:
            raise PermanentWebhookError("twilio status callback missing CallSid")
        call = store.find_call_by_provider_id(str(call_sid))
        if call is None:
            return "call_not_found"
        outcome = TWILIO_STATUSES.get(call_status)
        if outcome is None:
            return "ignored_call_status"
        fields: dict[str, Any] = {"outcome": outcome}
        if outcome == CallOutcome.error:
            fields["error_message"] = f"twilio call status {call_status}"
        record_call_outcome(store, call.id, CallUpdateRequest(**fields), metrics=metrics)
        return f"call_updated:{call.id}:outcome={outcome.value}"

    return "stored"
