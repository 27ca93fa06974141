"""Shared interfaces used across takeoff orchestrator services."""

from __future__ import annotations

from typing import Protocol


class DocumentStore(Protocol):
    """Abstraction over plan PDF retrieval (object storage key or direct URL)."""

    async def download(self, ref: str) -> bytes: ...


class MetricsClient(Protocol):
    """Interface for emitting metrics to Prometheus or Cloud Monitoring."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None: ...

    def increment(self, name: str, amount: int = 1, **labels: str) -> None: ...


__all__ = ["DocumentStore", "MetricsClient"]
