"""
Prometheus metrics for booktainer.

Metrics Exposed:
    booktainer_uploads_total              - uploads by format and resulting status
    booktainer_conversions_total          - converter runs by outcome
    booktainer_conversion_duration_seconds - converter wall time
    booktainer_tts_requests_total         - speak requests by mode, status and cache outcome
    booktainer_tts_request_duration_seconds - time to first response object
    booktainer_tts_cache_writes_total     - cache population outcomes
    booktainer_tts_tokens_issued_total    - playback tokens issued
    booktainer_tts_tokens_live            - tokens currently held

Usage:
    from booktainer.core.metrics import metrics

    metrics.record_upload("mobi", "ready")
    metrics.record_tts_request("offline", "success", 0.2, cache_status="hit")
    content, content_type = metrics.get_metrics_response()
"""
from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class BooktainerMetrics:
    """
    Metric collection on a private registry.

    A private CollectorRegistry keeps repeated instantiation (tests, app
    factories) from colliding with the process-wide default registry.
    """

    def __init__(self) -> None:
        self._registry = CollectorRegistry()

        self._uploads_total = Counter(
            "booktainer_uploads_total",
            "Uploaded books",
            ["format", "status"],
            registry=self._registry,
        )
        self._conversions_total = Counter(
            "booktainer_conversions_total",
            "Converter runs",
            ["format", "outcome"],
            registry=self._registry,
        )
        self._conversion_duration = Histogram(
            "booktainer_conversion_duration_seconds",
            "Converter wall time in seconds",
            ["format"],
            buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0),
            registry=self._registry,
        )
        self._tts_requests_total = Counter(
            "booktainer_tts_requests_total",
            "Speak requests",
            ["mode", "status", "cache_status"],
            registry=self._registry,
        )
        self._tts_request_duration = Histogram(
            "booktainer_tts_request_duration_seconds",
            "Time until audio is ready to be delivered",
            ["mode", "cache_status"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self._registry,
        )
        self._cache_writes_total = Counter(
            "booktainer_tts_cache_writes_total",
            "TTS cache population outcomes",
            ["outcome"],
            registry=self._registry,
        )
        self._tokens_issued_total = Counter(
            "booktainer_tts_tokens_issued_total",
            "Playback tokens issued",
            registry=self._registry,
        )
        self._tokens_live = Gauge(
            "booktainer_tts_tokens_live",
            "Playback tokens currently held",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_upload(self, fmt: str, status: str) -> None:
        self._uploads_total.labels(format=fmt, status=status).inc()

    def record_conversion(self, fmt: str, outcome: str, duration: float) -> None:
        self._conversions_total.labels(format=fmt, outcome=outcome).inc()
        self._conversion_duration.labels(format=fmt).observe(duration)

    def record_tts_request(
        self,
        mode: str,
        status: str,
        duration: float,
        cache_status: str = "miss",
    ) -> None:
        """
        Args:
            mode: "online" or "offline"
            status: "success" or "error"
            duration: seconds until the audio result was available
            cache_status: "hit", "miss" or "bypass"
        """
        self._tts_requests_total.labels(mode=mode, status=status, cache_status=cache_status).inc()
        self._tts_request_duration.labels(mode=mode, cache_status=cache_status).observe(duration)

    def record_cache_write(self, outcome: str) -> None:
        """outcome: "stored", "skipped" or "failed"."""
        self._cache_writes_total.labels(outcome=outcome).inc()

    def record_token_issued(self, live: int) -> None:
        self._tokens_issued_total.inc()
        self._tokens_live.set(live)

    def set_tokens_live(self, live: int) -> None:
        self._tokens_live.set(live)

    def get_metrics_response(self) -> tuple[bytes, str]:
        return generate_latest(self._registry), CONTENT_TYPE_LATEST


metrics = BooktainerMetrics()
