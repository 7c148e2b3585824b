"""Prometheus-compatible metrics for dispatch monitoring."""

import time
import logging
from typing import Dict, List, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)


class MetricsCollector:
    """Collects request and dispatch metrics in Prometheus exposition format."""

    def __init__(self):
        self.request_count: Dict[str, int] = {}
        self.request_duration: Dict[str, List[float]] = {}
        self.error_count: Dict[int, int] = {}
        self.active_requests: int = 0
        # Dispatch counters
        self.transitions: Dict[Tuple[str, str], int] = {}
        self.noop_events: Dict[str, int] = {}
        self.state_conflicts: Dict[str, int] = {}
        self.provider_calls: Dict[Tuple[str, str, str], int] = {}
        self.task_retries: Dict[str, int] = {}
        self.task_failures: Dict[str, int] = {}
        self.webhooks_rejected: Dict[str, int] = {}

    def record_request(self, method: str, path: str, status: int, duration: float):
        # Normalize path to avoid cardinality explosion
        normalized = self._normalize_path(path)
        key = f"{method} {normalized}"
        self.request_count[key] = self.request_count.get(key, 0) + 1
        if key not in self.request_duration:
            self.request_duration[key] = []
        durations = self.request_duration[key]
        durations.append(duration)
        if len(durations) > 1000:
            self.request_duration[key] = durations[-1000:]
        if status >= 400:
            self.error_count[status] = self.error_count.get(status, 0) + 1

    @staticmethod
    def _incr(counter: dict, key) -> None:
        counter[key] = counter.get(key, 0) + 1

    def record_transition(self, from_status: str, to_status: str) -> None:
        self._incr(self.transitions, (from_status, to_status))

    def record_noop(self, event: str) -> None:
        self._incr(self.noop_events, event)

    def record_conflict(self, event: str) -> None:
        self._incr(self.state_conflicts, event)

    def record_provider_call(self, platform: str, operation: str, outcome: str) -> None:
        self._incr(self.provider_calls, (platform, operation, outcome))

    def record_task_retry(self, kind: str) -> None:
        self._incr(self.task_retries, kind)

    def record_task_failure(self, kind: str) -> None:
        self._incr(self.task_failures, kind)

    def record_webhook_rejected(self, platform: str) -> None:
        self._incr(self.webhooks_rejected, platform)

    @staticmethod
    def _normalize_path(path: str) -> str:
        """Replace numeric IDs with :id to limit cardinality."""
        parts = path.split("/")
        return "/".join(":id" if p.isdigit() else p for p in parts)

    def get_prometheus_metrics(self) -> str:
        lines: List[str] = []
        lines.append("# HELP http_requests_total Total HTTP requests")
        lines.append("# TYPE http_requests_total counter")
        for key, count in sorted(self.request_count.items()):
            method, path = key.split(" ", 1)
            lines.append(f'http_requests_total{{method="{method}",path="{path}"}} {count}')

        lines.append("# HELP http_errors_total Total HTTP errors by status code")
        lines.append("# TYPE http_errors_total counter")
        for code, count in sorted(self.error_count.items()):
            lines.append(f'http_errors_total{{status="{code}"}} {count}')

        lines.append("# HELP http_active_requests Current active requests")
        lines.append("# TYPE http_active_requests gauge")
        lines.append(f"http_active_requests {self.active_requests}")

        lines.append("# HELP http_request_duration_seconds Request duration histogram")
        lines.append("# TYPE http_request_duration_seconds summary")
        for key, durations in sorted(self.request_duration.items()):
            if durations:
                method, path = key.split(" ", 1)
                avg = sum(durations) / len(durations)
                p99 = sorted(durations)[int(len(durations) * 0.99)] if len(durations) > 1 else durations[0]
                lines.append(f'http_request_duration_seconds{{method="{method}",path="{path}",quantile="0.99"}} {p99:.4f}')
                lines.append(f'http_request_duration_seconds{{method="{method}",path="{path}",quantile="0.5"}} {avg:.4f}')

        lines.append("# HELP delivery_transitions_total Applied delivery status transitions")
        lines.append("# TYPE delivery_transitions_total counter")
        for (src, dst), count in sorted(self.transitions.items()):
            lines.append(f'delivery_transitions_total{{from="{src}",to="{dst}"}} {count}')

        lines.append("# HELP delivery_noop_events_total Events ignored as already applied")
        lines.append("# TYPE delivery_noop_events_total counter")
        for event, count in sorted(self.noop_events.items()):
            lines.append(f'delivery_noop_events_total{{event="{event}"}} {count}')

        lines.append("# HELP delivery_state_conflicts_total Events rejected as illegal transitions")
        lines.append("# TYPE delivery_state_conflicts_total counter")
        for event, count in sorted(self.state_conflicts.items()):
            lines.append(f'delivery_state_conflicts_total{{event="{event}"}} {count}')

        lines.append("# HELP provider_calls_total Outbound provider calls by outcome")
        lines.append("# TYPE provider_calls_total counter")
        for (platform, operation, outcome), count in sorted(self.provider_calls.items()):
            lines.append(
                f'provider_calls_total{{platform="{platform}",operation="{operation}",outcome="{outcome}"}} {count}'
            )

        lines.append("# HELP scheduled_task_retries_total Scheduled tasks rescheduled after a transient error")
        lines.append("# TYPE scheduled_task_retries_total counter")
        for kind, count in sorted(self.task_retries.items()):
            lines.append(f'scheduled_task_retries_total{{kind="{kind}"}} {count}')

        lines.append("# HELP scheduled_task_failures_total Scheduled tasks failed terminally")
        lines.append("# TYPE scheduled_task_failures_total counter")
        for kind, count in sorted(self.task_failures.items()):
            lines.append(f'scheduled_task_failures_total{{kind="{kind}"}} {count}')

        lines.append("# HELP webhooks_rejected_total Inbound webhooks rejected before normalization")
        lines.append("# TYPE webhooks_rejected_total counter")
        for platform, count in sorted(self.webhooks_rejected.items()):
            lines.append(f'webhooks_rejected_total{{platform="{platform}"}} {count}')

        return "\n".join(lines) + "\n"


metrics = MetricsCollector()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware that records request metrics."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        metrics.active_requests += 1
        start = time.time()
        try:
            response = await call_next(request)
            duration = time.time() - start
            metrics.record_request(
                request.method,
                request.url.path,
                response.status_code,
                duration,
            )
            return response
        except Exception:
            duration = time.time() - start
            metrics.record_request(request.method, request.url.path, 500, duration)
            raise
        finally:
            metrics.active_requests -= 1
