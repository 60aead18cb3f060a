from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import urllib.error
import urllib.request
from urllib.parse import urlencode

SIGNATURE_HEADERS = {
    "vapi": "X-Vapi-Signature",
    "twilio": "X-Twilio-Signature-256",
    "ghl": "X-GHL-Signature",
}
OUTCOMES = ("interested", "not_interested", "no_answer", "callback")


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def post_body(url: str, body: bytes, content_type: str, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", content_type)
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def build_event(source: str, call_id: str, index: int) -> tuple[bytes, str]:
    if source == "twilio":
        form = {"CallSid": call_id, "CallStatus": "completed", "CallDuration": str(30 + index)}
        return urlencode(form).encode("utf-8"), "application/x-www-form-urlencoded"
    if source == "ghl":
        payload = {"id": f"ghl_mock_{index}", "type": "ContactUpdate", "contactId": call_id}
    else:
        outcome = OUTCOMES[index % len(OUTCOMES)]
        payload = {
            "message": {
                "type": "end-of-call-report",
                "call": {"id": call_id},
                "endedReason": "customer-ended-call",
                "durationSeconds": 60 + index,
                "transcript": "Agent: Hello, is now a good time?\nCandidate: Sure.",
                "analysis": {
                    "summary": f"Mock report {index}: candidate was {outcome}.",
                    "structuredData": {"outcome": outcome},
                },
            }
        }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8"), "application/json"


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock provider callbacks to a local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--source", choices=sorted(SIGNATURE_HEADERS), default="vapi")
    parser.add_argument(
        "--call-id",
        action="append",
        default=[],
        help="provider call id (vapi) or call sid (twilio); repeatable",
    )
    parser.add_argument("--count", type=int, default=3)
    parser.add_argument("--secret", default="")
    parser.add_argument("--repeat", action="store_true", help="send every event twice")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/api/webhooks/{args.source}"
    call_ids = args.call_id or [f"mock-call-{index}" for index in range(1, args.count + 1)]
    for index, call_id in enumerate(call_ids, start=1):
        body, content_type = build_event(args.source, call_id, index)
        headers: dict[str, str] = {}
        if args.secret:
            headers[SIGNATURE_HEADERS[args.source]] = sign_payload(args.secret, body)
        for _ in range(2 if args.repeat else 1):
            status_code, response = post_body(endpoint, body, content_type, headers)
            print(f"{status_code} {args.source} {call_id} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
