"""Prometheus metrics for takeoff jobs, batches and model providers.

Job, batch and provider events share one counter keyed by ``stage``, ``name``
and ``provider``. Model tokens go to a separate counter keyed by provider and
model.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, ClassVar, Dict, Iterator

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import PlainTextResponse

from .interfaces import MetricsClient

LOG = logging.getLogger(__name__)

UNLABELLED = "none"
# Model calls over plan pages run from a few seconds up to the 120s batch timeout.
MODEL_LATENCY_BUCKETS = (0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 90.0, 120.0, 180.0)
TOKEN_EVENTS = frozenset({"tokens_total"})


def _label(labels: Dict[str, str], key: str) -> str:
    value = labels.get(key)
    return str(value) if value else UNLABELLED


class PrometheusMetrics(MetricsClient):
    """Prometheus-backed metrics client."""

    _EVENTS = Counter(
        "takeoff_events_total",
        "Takeoff job, batch and provider events",
        ["stage", "name", "provider"],
    )
    _TOKENS = Counter(
        "takeoff_model_tokens_total",
        "Model tokens consumed by completed batches",
        ["provider", "model"],
    )
    _LATENCY = Histogram(
        "takeoff_latency_seconds",
        "Batch stage and model call latency in seconds",
        ["stage", "name", "provider"],
        buckets=MODEL_LATENCY_BUCKETS,
    )
    _DEFAULT_INSTANCE: ClassVar["PrometheusMetrics | None"] = None

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        PrometheusMetrics._LATENCY.labels(
            stage=_label(labels, "stage"), name=name, provider=_label(labels, "provider")
        ).observe(value)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        if name in TOKEN_EVENTS:
            PrometheusMetrics._TOKENS.labels(
                provider=_label(labels, "provider"), model=_label(labels, "model")
            ).inc(amount)
            return
        PrometheusMetrics._EVENTS.labels(
            stage=_label(labels, "stage"), name=name, provider=_label(labels, "provider")
        ).inc(amount)

    @contextmanager
    def time(self, name: str, **labels: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe_latency(name, time.perf_counter() - start, **labels)

    @classmethod
    def default(cls) -> "PrometheusMetrics":
        if cls._DEFAULT_INSTANCE is None:
            cls._DEFAULT_INSTANCE = cls()
        return cls._DEFAULT_INSTANCE

    @classmethod
    def instrument_app(cls, app: Any) -> "PrometheusMetrics":
        """Mount /metrics on the app once."""
        metrics = cls.default()
        if getattr(app.state, "_prometheus_instrumented", False):
            return metrics

        @app.get("/metrics", include_in_schema=False)
        async def _metrics_endpoint():
            return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

        app.state._prometheus_instrumented = True
        app.state.metrics = metrics
        return metrics


class NullMetrics(MetricsClient):
    """Used when ENABLE_METRICS is off."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        LOG.debug("Metric ignored: %s=%s labels=%s", name, value, labels)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        LOG.debug("Counter ignored: %s+=%s labels=%s", name, amount, labels)


__all__ = ["PrometheusMetrics", "NullMetrics", "MODEL_LATENCY_BUCKETS"]
