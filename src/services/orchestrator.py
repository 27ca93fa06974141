"""Takeoff orchestrator facade.

Wires the job manager, page loader, batch worker, provider rate limiter and
result merger over one state store and exposes the operations the HTTP layer
and the CLI drive.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

from src.config import AppConfig, get_config
from src.errors import NoCompletedBatchesError
from src.models.takeoff import BatchStatus, TakeoffBatch, TakeoffJob, TakeoffJobCreate
from src.services.batch_worker import BatchWorker, ProcessResult
from src.services.document_store import PlanDocumentStore
from src.services.interfaces import DocumentStore, MetricsClient
from src.services.job_manager import JobManager
from src.services.metrics import NullMetrics
from src.services.page_loader import PageLoader, PdfExtractor, PdfPageExtractor
from src.services.providers import ProviderRegistry, build_default_registry
from src.services.rate_limiter import ProviderRateLimiter
from src.services.result_merger import ResultMerger
from src.services.state_store import TakeoffStateStore, create_state_store_from_env

LOG = logging.getLogger("takeoff.orchestrator")


class TakeoffOrchestrator:
    def __init__(
        self,
        *,
        store: TakeoffStateStore,
        document_store: DocumentStore,
        registry: ProviderRegistry,
        config: AppConfig | None = None,
        extractor: PdfExtractor | None = None,
        metrics: MetricsClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter_ms: Callable[[], float] | None = None,
    ) -> None:
        self.config = config or get_config()
        self.store = store
        self.metrics = metrics or NullMetrics()
        self.page_loader = PageLoader(
            document_store,
            extractor=extractor
            or PdfPageExtractor(dpi=self.config.render_dpi, max_image_bytes=self.config.max_image_bytes),
            fallback_page_count=self.config.page_count_fallback,
        )
        self.job_manager = JobManager(store, self.page_loader, config=self.config, metrics=self.metrics)
        limiter_kwargs: Dict[str, Any] = {"sleep": sleep, "metrics": self.metrics}
        worker_kwargs: Dict[str, Any] = {"sleep": sleep, "metrics": self.metrics}
        if jitter_ms is not None:
            limiter_kwargs["jitter_ms"] = jitter_ms
            worker_kwargs["jitter_ms"] = jitter_ms
        self.rate_limiter = ProviderRateLimiter(store, **limiter_kwargs)
        self.worker = BatchWorker(
            store, self.job_manager, self.page_loader, registry, self.rate_limiter, **worker_kwargs
        )
        self.merger = ResultMerger(store, config=self.config, metrics=self.metrics)

    async def create_job(self, payload: TakeoffJobCreate) -> TakeoffJob:
        return await self.job_manager.create_job(payload)

    async def process_batches(
        self,
        job_id: str,
        max_batches: int | None = None,
        timeout_ms: int | None = None,
    ) -> ProcessResult:
        return await self.worker.process_batches(
            job_id,
            max_batches=self.config.process_max_batches if max_batches is None else max_batches,
            timeout_ms=self.config.process_timeout_ms if timeout_ms is None else timeout_ms,
        )

    def merge_job_results(self, job_id: str, require_full_coverage: bool | None = None) -> Dict[str, Any]:
        return self.merger.merge_job_results(job_id, require_full_coverage=require_full_coverage)

    def get_job_status(self, job_id: str) -> TakeoffJob | None:
        return self.job_manager.get_job_status(job_id)

    def get_job_result(self, job_id: str) -> Dict[str, Any] | None:
        return self.job_manager.get_job_result(job_id)

    def list_batches(self, job_id: str) -> list[TakeoffBatch]:
        return self.job_manager.list_batches(job_id)

    def list_active_jobs(self, user_id: str) -> list[TakeoffJob]:
        return self.job_manager.list_active_jobs(user_id)

    def reset_failed_batches(self, job_id: str) -> int:
        return self.job_manager.reset_failed_batches(job_id)

    async def run_until_complete(
        self,
        job_id: str,
        *,
        max_passes: int = 100,
        max_batches: int | None = None,
        timeout_ms: int | None = None,
        merge: bool = True,
    ) -> TakeoffJob:
        """Drive processing passes until nothing is pending, then merge.

        A pass that claims nothing while batches are still pending means
        another worker holds them; the loop stops at ``max_passes`` either way.
        """
        for _ in range(max_passes):
            result = await self.process_batches(job_id, max_batches=max_batches, timeout_ms=timeout_ms)
            if result.remaining == 0:
                break
        if merge and await asyncio.to_thread(self.is_drained, job_id):
            try:
                await asyncio.to_thread(self.merge_job_results, job_id)
            except NoCompletedBatchesError as exc:
                await asyncio.to_thread(self.job_manager.mark_job_failed, job_id, str(exc))
        return await asyncio.to_thread(self.job_manager.require_job, job_id)

    def is_drained(self, job_id: str) -> bool:
        """True once no batch of the job is pending or in flight."""
        for status in (BatchStatus.PENDING, BatchStatus.PROCESSING):
            if self.store.list_batches(job_id, status=status):
                return False
        return True


def build_orchestrator(cfg: AppConfig | None = None, *, metrics: MetricsClient | None = None) -> TakeoffOrchestrator:
    cfg = cfg or get_config()
    document_store = PlanDocumentStore(
        default_bucket=cfg.document_bucket,
        timeout_s=cfg.download_timeout_s,
    )
    registry = build_default_registry(
        openai_api_key=cfg.openai_api_key,
        anthropic_api_key=cfg.anthropic_api_key,
    )
    LOG.info(
        "takeoff_orchestrator_configured",
        extra={
            "state_backend": cfg.state_backend,
            "primary_model": cfg.primary_model,
            "fallback_models": cfg.fallback_models,
        },
    )
    return TakeoffOrchestrator(
        store=create_state_store_from_env(cfg),
        document_store=document_store,
        registry=registry,
        config=cfg,
        metrics=metrics,
    )


__all__ = ["TakeoffOrchestrator", "build_orchestrator"]
