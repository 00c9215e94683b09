from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock

from fastapi import Request

logger = logging.getLogger("charterdesk")


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_4xx: int
    requests_5xx: int
    total_latency_ms: float
    status_changes_total: int


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_4xx = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._by_route_status: dict[tuple[str, int], int] = {}
        self._status_changes: dict[tuple[str, str], int] = {}

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if 400 <= status_code < 500:
                self._requests_4xx += 1
            elif status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def record_status_change(self, *, entity_kind: str, status: str, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            key = (entity_kind, status)
            self._status_changes[key] = self._status_changes.get(key, 0) + count

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_4xx=self._requests_4xx,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
                status_changes_total=sum(self._status_changes.values()),
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        avg_latency = (
            snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        )
        lines = [
            "# HELP charterdesk_requests_total Total HTTP requests",
            "# TYPE charterdesk_requests_total counter",
            f"charterdesk_requests_total {snap.requests_total}",
            "# HELP charterdesk_requests_4xx_total Total 4xx HTTP requests",
            "# TYPE charterdesk_requests_4xx_total counter",
            f"charterdesk_requests_4xx_total {snap.requests_4xx}",
            "# HELP charterdesk_requests_5xx_total Total 5xx HTTP requests",
            "# TYPE charterdesk_requests_5xx_total counter",
            f"charterdesk_requests_5xx_total {snap.requests_5xx}",
            "# HELP charterdesk_request_avg_latency_ms Average request latency ms",
            "# TYPE charterdesk_request_avg_latency_ms gauge",
            f"charterdesk_request_avg_latency_ms {avg_latency:.2f}",
            "# HELP charterdesk_status_changes_total Status records appended",
            "# TYPE charterdesk_status_changes_total counter",
        ]
        with self._lock:
            for (route, status_code), count in sorted(self._by_route_status.items()):
                lines.append(
                    'charterdesk_route_requests_total'
                    f'{{route="{route}",status="{status_code}"}} {count}'
                )
            for (entity_kind, status), count in sorted(self._status_changes.items()):
                lines.append(
                    'charterdesk_status_changes_total'
                    f'{{kind="{entity_kind}",status="{status}"}} {count}'
                )
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
