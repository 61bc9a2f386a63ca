"""Lightweight observability helpers (logging + metrics)."""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections import defaultdict, deque
from threading import Lock
from typing import Iterable, Protocol

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from christy.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    """Configure root logging from settings.

    Adds a file handler when ``log_file`` is set so provider retries and
    retrieval fallbacks are kept for later diagnosis.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    if settings.log_file:
        from pathlib import Path

        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        root = logging.getLogger()
        already_attached = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path.resolve())
            for h in root.handlers
        )
        if not already_attached:
            handler = logging.FileHandler(log_path, encoding="utf-8")
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(handler)


class MetricsBackend(Protocol):
    """Metrics backend interface."""

    def observe_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        ...

    def observe_external_api(
        self,
        provider: str,
        operation: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        ...

    def observe_provider_retry(
        self,
        provider: str,
        operation: str,
        attempt: int,
        delay_seconds: float,
    ) -> None:
        ...

    def observe_retrieval(self, mode: str, reason: str | None, duration_ms: float) -> None:
        ...

    def render_prometheus(self) -> str:
        ...


Labels = tuple[tuple[str, str], ...]

COUNTERS = {
    "http_requests_total": "Total HTTP requests",
    "external_api_requests_total": "External API requests",
    "provider_retries_total": "Provider call retries",
    "provider_retry_delay_seconds_total": "Total backoff time spent before provider retries",
    "retrievals_total": "Retrieval calls by scoring mode",
}

HISTOGRAMS = {
    "http_request_duration_ms": "Request duration in milliseconds",
    "external_api_duration_ms": "External API duration in milliseconds",
    "retrieval_duration_ms": "Retrieval duration in milliseconds",
}

METRIC_LABELS = {
    "http_requests_total": ["method", "path", "status"],
    "http_request_duration_ms": ["method", "path"],
    "external_api_requests_total": ["provider", "operation", "status"],
    "external_api_duration_ms": ["provider", "operation"],
    "provider_retries_total": ["provider", "operation"],
    "provider_retry_delay_seconds_total": ["provider", "operation"],
    "retrievals_total": ["mode", "reason"],
    "retrieval_duration_ms": ["mode"],
}

DEFAULT_BUCKETS_MS = [50, 100, 250, 500, 1000, 2500, 5000, 10000]


def _format_labels(labels: Labels) -> str:
    return "{" + ",".join(f'{key}="{value}"' for key, value in labels) + "}"


def _format_value(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


class _Histogram:
    def __init__(self, bounds: list[int]) -> None:
        self.bounds = bounds
        self.counts = [0] * (len(bounds) + 1)  # last slot is +Inf
        self.total = 0.0
        self.count = 0

    def observe(self, value: float) -> None:
        index = next((i for i, bound in enumerate(self.bounds) if value <= bound), len(self.bounds))
        self.counts[index] += 1
        self.total += value
        self.count += 1


class MetricsCollector:
    """In-process metrics collector with Prometheus text output."""

    def __init__(self, buckets_ms: Iterable[int] | None = None) -> None:
        self._lock = Lock()
        self._buckets_ms = list(buckets_ms or DEFAULT_BUCKETS_MS)
        self._counters: dict[str, dict[Labels, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[Labels, _Histogram]] = defaultdict(dict)
        self._recent_retries: deque[dict[str, object]] = deque(maxlen=100)

    @property
    def recent_retries(self) -> list[dict[str, object]]:
        """Most recent retry events, oldest first."""
        with self._lock:
            return list(self._recent_retries)

    def _inc(self, name: str, labels: Labels, amount: float = 1.0) -> None:
        self._counters[name][labels] += amount

    def _observe(self, name: str, labels: Labels, value: float) -> None:
        series = self._histograms[name]
        if labels not in series:
            series[labels] = _Histogram(self._buckets_ms)
        series[labels].observe(value)

    def observe_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        """Record a single request observation."""
        route = (("method", method), ("path", path))
        with self._lock:
            self._inc("http_requests_total", route + (("status", str(status_code)),))
            self._observe("http_request_duration_ms", route, duration_ms)

    def observe_external_api(
        self,
        provider: str,
        operation: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        """Record an external API call observation."""
        call = (("provider", provider), ("operation", operation))
        with self._lock:
            self._inc("external_api_requests_total", call + (("status", str(status_code)),))
            self._observe("external_api_duration_ms", call, duration_ms)

    def observe_provider_retry(
        self,
        provider: str,
        operation: str,
        attempt: int,
        delay_seconds: float,
    ) -> None:
        """Record one retry of a provider call."""
        call = (("provider", provider), ("operation", operation))
        with self._lock:
            self._inc("provider_retries_total", call)
            self._inc("provider_retry_delay_seconds_total", call, delay_seconds)
            self._recent_retries.append(
                {
                    "provider": provider,
                    "operation": operation,
                    "attempt": attempt,
                    "delay_seconds": delay_seconds,
                }
            )

    def observe_retrieval(self, mode: str, reason: str | None, duration_ms: float) -> None:
        """Record which path a retrieval call took."""
        with self._lock:
            self._inc("retrievals_total", (("mode", mode), ("reason", reason or "none")))
            self._observe("retrieval_duration_ms", (("mode", mode),), duration_ms)

    def render_prometheus(self) -> str:
        """Render metrics in Prometheus text format."""
        lines: list[str] = []
        with self._lock:
            for name, help_text in COUNTERS.items():
                lines.append(f"# HELP {name} {help_text}")
                lines.append(f"# TYPE {name} counter")
                for labels, value in sorted(self._counters[name].items()):
                    lines.append(f"{name}{_format_labels(labels)} {_format_value(value)}")

            for name, help_text in HISTOGRAMS.items():
                lines.append(f"# HELP {name} {help_text}")
                lines.append(f"# TYPE {name} histogram")
                for labels, histogram in sorted(self._histograms[name].items()):
                    cumulative = 0
                    bounds = [str(b) for b in histogram.bounds] + ["+Inf"]
                    for bound, count in zip(bounds, histogram.counts):
                        cumulative += count
                        lines.append(f"{name}_bucket{_format_labels(labels + (('le', bound),))} {cumulative}")
                    lines.append(f"{name}_sum{_format_labels(labels)} {histogram.total:.2f}")
                    lines.append(f"{name}_count{_format_labels(labels)} {histogram.count}")
        return "\n".join(lines) + "\n"


class PrometheusMetrics:
    """Prometheus client-based metrics backend."""

    def __init__(self, buckets_ms: Iterable[int]) -> None:
        from prometheus_client import CollectorRegistry, Counter, Histogram

        self._registry = CollectorRegistry()
        buckets = list(buckets_ms)
        self._counters = {
            name: Counter(name, help_text, METRIC_LABELS[name], registry=self._registry)
            for name, help_text in COUNTERS.items()
        }
        self._histograms = {
            name: Histogram(
                name,
                help_text,
                METRIC_LABELS[name],
                buckets=buckets,
                registry=self._registry,
            )
            for name, help_text in HISTOGRAMS.items()
        }

    def observe_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        self._counters["http_requests_total"].labels(method, path, str(status_code)).inc()
        self._histograms["http_request_duration_ms"].labels(method, path).observe(duration_ms)

    def observe_external_api(
        self,
        provider: str,
        operation: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        self._counters["external_api_requests_total"].labels(
            provider, operation, str(status_code)
        ).inc()
        self._histograms["external_api_duration_ms"].labels(provider, operation).observe(duration_ms)

    def observe_provider_retry(
        self,
        provider: str,
        operation: str,
        attempt: int,
        delay_seconds: float,
    ) -> None:
        self._counters["provider_retries_total"].labels(provider, operation).inc()
        self._counters["provider_retry_delay_seconds_total"].labels(provider, operation).inc(
            delay_seconds
        )

    def observe_retrieval(self, mode: str, reason: str | None, duration_ms: float) -> None:
        self._counters["retrievals_total"].labels(mode, reason or "none").inc()
        self._histograms["retrieval_duration_ms"].labels(mode).observe(duration_ms)

    def render_prometheus(self) -> str:
        from prometheus_client import generate_latest

        return generate_latest(self._registry).decode("utf-8")


_metrics_backend: MetricsBackend | None = None


def get_metrics_backend() -> MetricsBackend:
    """Return a cached metrics backend instance."""
    global _metrics_backend
    if _metrics_backend is None:
        settings = get_settings()
        _metrics_backend = _build_metrics_backend(settings.metrics_backend)
    return _metrics_backend


def _build_metrics_backend(backend: str) -> MetricsBackend:
    if backend == "prometheus":
        try:
            from prometheus_client import Counter  # noqa: F401

            return PrometheusMetrics(DEFAULT_BUCKETS_MS)
        except ImportError:
            logger.warning(
                "Prometheus backend requested but prometheus_client is not available. "
                "Falling back to in-memory metrics."
            )
    return MetricsCollector(DEFAULT_BUCKETS_MS)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Attach request_id, log request/response, and emit metrics."""

    def __init__(
        self,
        app: ASGIApp,
        metrics: MetricsBackend | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(app)
        self.metrics = metrics or get_metrics_backend()
        self.logger = logger or logging.getLogger("christy.request")

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            status_code = response.status_code if response else 500

            if response is not None:
                response.headers["X-Request-ID"] = request_id

            route = request.scope.get("route")
            route_path = getattr(route, "path", None)
            # Normalize unmatched paths to avoid label cardinality explosion
            path = route_path or "/__unknown__"

            if self.metrics:
                self.metrics.observe_request(
                    request.method,
                    path,
                    status_code,
                    duration_ms,
                )

            log_payload = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "route": route_path,
                "status_code": status_code,
                "elapsed_ms": round(duration_ms, 2),
                "client": request.client.host if request.client else None,
            }
            self.logger.info(json.dumps(log_payload))
