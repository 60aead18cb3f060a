from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock

from fastapi import Request

logger = logging.getLogger("recruit_caller")


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float
    calls_placed: int
    webhooks_duplicate: int


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._calls_placed = 0
        self._webhooks_duplicate = 0
        self._by_route_status: dict[tuple[str, int], int] = {}
        self._by_outcome: dict[str, int] = {}
        self._by_webhook_source: dict[str, int] = {}

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def record_call_placed(self) -> None:
        with self._lock:
            self._calls_placed += 1

    def record_call_outcome(self, outcome: str) -> None:
        with self._lock:
            self._by_outcome[outcome] = self._by_outcome.get(outcome, 0) + 1

    def record_webhook(self, *, source: str, duplicate: bool) -> None:
        with self._lock:
            self._by_webhook_source[source] = self._by_webhook_source.get(source, 0) + 1
            if duplicate:
                self._webhooks_duplicate += 1

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
                calls_placed=self._calls_placed,
                webhooks_duplicate=self._webhooks_duplicate,
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        avg_latency = (
            snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        )
        lines = [
            "# HELP recruit_caller_requests_total Total HTTP requests",
            "# TYPE recruit_caller_requests_total counter",
            f"recruit_caller_requests_total {snap.requests_total}",
            "# HELP recruit_caller_requests_5xx_total Total 5xx HTTP requests",
            "# TYPE recruit_caller_requests_5xx_total counter",
            f"recruit_caller_requests_5xx_total {snap.requests_5xx}",
            "# HELP recruit_caller_request_avg_latency_ms Average request latency ms",
            "# TYPE recruit_caller_request_avg_latency_ms gauge",
            f"recruit_caller_request_avg_latency_ms {avg_latency:.2f}",
            "# HELP recruit_caller_calls_placed_total Outbound calls handed to a provider",
            "# TYPE recruit_caller_calls_placed_total counter",
            f"recruit_caller_calls_placed_total {snap.calls_placed}",
            "# HELP recruit_caller_webhooks_duplicate_total Webhook deliveries already seen",
            "# TYPE recruit_caller_webhooks_duplicate_total counter",
            f"recruit_caller_webhooks_duplicate_total {snap.webhooks_duplicate}",
        ]
        with self._lock:
            for (route, status_code), count in sorted(self._by_route_status.items()):
                lines.append(
                    'recruit_caller_route_requests_total'
                    f'{{route="{route}",status="{status_code}"}} {count}'
                )
            for outcome, count in sorted(self._by_outcome.items()):
                lines.append(f'recruit_caller_call_outcomes_total{{outcome="{outcome}"}} {count}')
            for source, count in sorted(self._by_webhook_source.items()):
                lines.append(f'recruit_caller_webhooks_total{{source="{source}"}} {count}')
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    path = request.url.path
    try:
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=response.status_code, latency_ms=latency_ms)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            path,
            response.status_code,
            latency_ms,
        )
        return response
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            path,
            latency_ms,
        )
        raise
