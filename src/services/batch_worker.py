"""Claims pending batches and runs them through the model with retries.

One `process_batches` call is a bounded slice of work: it claims up to
``min(max_batches, concurrency)`` batches, processes them concurrently and
returns. Any number of invocations, threads or processes may run side by side
because the store hands each pending batch to exactly one claimant.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from src.errors import (
    BatchProcessingError,
    DocumentLoadError,
    JobNotFoundError,
    ProviderError,
    is_rate_limit_error,
)
from src.logging_setup import job_context
from src.models.takeoff import BatchStatus, JobStatus, TakeoffBatch, TakeoffJob
from src.services.interfaces import MetricsClient
from src.services.job_manager import JobManager, job_error
from src.services.metrics import NullMetrics
from src.services.page_loader import PageContent, PageLoader
from src.services.prompts import build_system_prompt, build_user_prompt
from src.services.providers import GenerateRequest, GenerateResult, ProviderRegistry
from src.services.rate_limiter import (
    RATE_LIMIT_BASE_MS,
    RATE_LIMIT_JITTER_MS,
    RATE_LIMIT_MAX_MS,
    ProviderRateLimiter,
)
from src.services.schema_repair import extract_analysis_payload
from src.services.state_store import TakeoffStateStore
from src.utils.logging_utils import log_stage_skipped, stage_marker, structured_log

LOG = logging.getLogger("takeoff.worker")

RETRY_BASE_MS = 1_000
RETRY_MAX_MS = 30_000

COST_PER_TOKEN: Dict[str, float] = {
    "openai": 0.00001,
    "anthropic": 0.000015,
    "claude": 0.000015,
    "gemini": 0.000005,
}
DEFAULT_COST_PER_TOKEN = 0.00001


def estimate_cost(provider: str, tokens: int) -> float:
    return tokens * COST_PER_TOKEN.get((provider or "").lower(), DEFAULT_COST_PER_TOKEN)


def retry_delay_ms(attempt: int) -> float:
    return min(RETRY_BASE_MS * (2 ** attempt), RETRY_MAX_MS)


def rate_limit_delay_ms(attempt: int, jitter_ms: float) -> float:
    return min(RATE_LIMIT_BASE_MS * (2 ** attempt) + jitter_ms, RATE_LIMIT_MAX_MS)


def _default_jitter_ms() -> float:
    return random.uniform(0, RATE_LIMIT_JITTER_MS)


def _is_finished(job: TakeoffJob) -> bool:
    # A complete job without a merged result may still hold pending batches.
    if job.status == JobStatus.FAILED:
        return True
    return job.status == JobStatus.COMPLETE and job.final_result is not None


@dataclass(slots=True)
class ProcessResult:
    processed: int
    remaining: int

    def to_dict(self) -> Dict[str, int]:
        return {"processed": self.processed, "remaining": self.remaining}


class BatchWorker:
    """Executes batches for a job; safe to run from many invocations at once."""

    def __init__(
        self,
        store: TakeoffStateStore,
        job_manager: JobManager,
        page_loader: PageLoader,
        registry: ProviderRegistry,
        rate_limiter: ProviderRateLimiter,
        *,
        metrics: MetricsClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter_ms: Callable[[], float] = _default_jitter_ms,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.job_manager = job_manager
        self.page_loader = page_loader
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.metrics = metrics or NullMetrics()
        self._sleep = sleep
        self._jitter_ms = jitter_ms
        self._clock = clock

    async def process_batches(
        self, job_id: str, max_batches: int = 3, timeout_ms: int = 10_000
    ) -> ProcessResult:
        job = await asyncio.to_thread(self.store.get_job, job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        with job_context(job_id):
            if job.status == JobStatus.QUEUED:
                job = await asyncio.to_thread(
                    self.store.update_job, job_id, status=JobStatus.RUNNING, started_at=time.time()
                )

            started = self._clock()
            budget_s = max(timeout_ms, 0) / 1000.0
            slots = max(0, min(max_batches, job.batch_config.concurrency))

            async def _slot() -> bool:
                if self._clock() - started > budget_s:
                    return False
                return await self._process_next_batch(job)

            outcomes: list[Any] = []
            if _is_finished(job):
                log_stage_skipped(LOG, stage="process_pass", reason=f"job_{job.status.value}", job_id=job_id)
            elif slots:
                outcomes = await asyncio.gather(*(_slot() for _ in range(slots)), return_exceptions=True)
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    LOG.error(
                        "takeoff_batch_slot_failed",
                        extra={"job_id": job_id, "error": str(outcome), "error_type": type(outcome).__name__},
                    )
            processed = sum(1 for outcome in outcomes if outcome is True)

            pending = await asyncio.to_thread(self.store.list_batches, job_id, status=BatchStatus.PENDING)
            remaining = len(pending)
            await asyncio.to_thread(self.job_manager.update_job_progress, job_id)
            structured_log(
                LOG,
                logging.INFO,
                "takeoff_process_pass",
                job_id=job_id,
                max_batches=max_batches,
                processed=processed,
                remaining=remaining,
            )
            return ProcessResult(processed=processed, remaining=remaining)

    async def _process_next_batch(self, job: TakeoffJob) -> bool:
        """Claim one batch and run it; True when a batch was claimed."""
        batch = await asyncio.to_thread(self.store.claim_next_batch, job.job_id)
        if batch is None:
            return False
        try:
            await self.process_batch_with_retries(job, batch)
        except BatchProcessingError as exc:
            LOG.warning(
                "takeoff_batch_isolated",
                extra={"job_id": job.job_id, "batch_index": exc.batch_index, "error": str(exc)},
            )
        return True

    async def process_batch_with_retries(self, job: TakeoffJob, batch: TakeoffBatch) -> TakeoffBatch:
        max_retries = max(job.batch_config.max_retries, 1)
        primary = job.model_policy.primary
        primary_provider = self.registry.provider_name(primary)
        last_error: BaseException | None = None

        if batch.status != BatchStatus.PROCESSING:
            batch = await asyncio.to_thread(
                self.store.update_batch,
                job.job_id,
                batch.batch_id,
                status=BatchStatus.PROCESSING,
                started_at=time.time(),
            )

        for attempt in range(max_retries):
            try:
                async with stage_marker(
                    LOG,
                    stage="batch_attempt",
                    job_id=job.job_id,
                    batch_index=batch.batch_index,
                    page_start=batch.page_start,
                    page_end=batch.page_end,
                    attempt=attempt + 1,
                    model=primary,
                ) as marker:
                    await self.rate_limiter.check_backpressure(primary_provider)
                    pages = await self._load_pages(job, batch)
                    result = await self._call_model(job, batch, pages, primary)
                    saved = await self._complete_batch(job, batch, result, attempt, used_fallback=False)
                    marker.add_completion_fields(
                        provider=result.provider, tokens=result.tokens_used, items=_item_count(saved)
                    )
                    return saved
            except Exception as exc:  # noqa: BLE001
                last_error = exc

            if is_rate_limit_error(last_error):
                saved = await self._handle_rate_limit(job, batch, attempt, primary_provider)
                if saved is not None:
                    return saved

            if attempt < max_retries - 1:
                delay_ms = retry_delay_ms(attempt)
                structured_log(
                    LOG,
                    logging.INFO,
                    "takeoff_batch_retry",
                    job_id=job.job_id,
                    batch_index=batch.batch_index,
                    attempt=attempt + 1,
                    backoff_ms=int(delay_ms),
                    error=str(last_error),
                )
                await self._sleep(delay_ms / 1000.0)

        message = str(last_error) if last_error is not None else "Batch processing failed after all retries"
        await asyncio.to_thread(
            self.store.update_batch,
            job.job_id,
            batch.batch_id,
            status=BatchStatus.FAILED,
            error_message=message,
            retry_count=max_retries,
            completed_at=None,
        )
        await asyncio.to_thread(
            self.store.append_job_error,
            job.job_id,
            job_error(f"Batch {batch.batch_index} failed: {message}", batch.batch_index),
        )
        self.metrics.increment("batches_failed_total", stage="batch_worker")
        LOG.error(
            "takeoff_batch_failed",
            extra={
                "job_id": job.job_id,
                "batch_index": batch.batch_index,
                "retry_count": max_retries,
                "error": message,
            },
        )
        raise BatchProcessingError(message, job_id=job.job_id, batch_index=batch.batch_index) from last_error

    async def _handle_rate_limit(
        self, job: TakeoffJob, batch: TakeoffBatch, attempt: int, primary_provider: str
    ) -> TakeoffBatch | None:
        await asyncio.to_thread(self.rate_limiter.record_rate_limit, primary_provider)
        delay_ms = rate_limit_delay_ms(attempt, self._jitter_ms())
        structured_log(
            LOG,
            logging.WARNING,
            "takeoff_batch_rate_limited",
            job_id=job.job_id,
            batch_index=batch.batch_index,
            provider=primary_provider,
            attempt=attempt + 1,
            backoff_ms=int(delay_ms),
        )
        await self._sleep(delay_ms / 1000.0)

        if not job.model_policy.fallbacks:
            return None
        fallback_model = job.model_policy.fallbacks[0]
        try:
            pages = await self._load_pages(job, batch)
            result = await self._call_model(job, batch, pages, fallback_model)
        except Exception as exc:  # noqa: BLE001
            structured_log(
                LOG,
                logging.WARNING,
                "takeoff_fallback_failed",
                job_id=job.job_id,
                batch_index=batch.batch_index,
                fallback_model=fallback_model,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None
        self.metrics.increment("fallback_used_total", stage="batch_worker", provider=result.provider)
        return await self._complete_batch(job, batch, result, attempt, used_fallback=True)

    async def _load_pages(self, job: TakeoffJob, batch: TakeoffBatch) -> list[PageContent]:
        pages = await self.page_loader.load_pages_for_batch(job.pdf_ref, batch.page_start, batch.page_end)
        if not any(page.image_url for page in pages):
            raise DocumentLoadError("No images provided for batch")
        return pages

    async def _call_model(
        self, job: TakeoffJob, batch: TakeoffBatch, pages: list[PageContent], model: str
    ) -> GenerateResult:
        images = [page.image_url for page in pages if page.image_url]
        text = "\n\n".join(f"--- Page {page.page} ---\n{page.text}" for page in pages if page.text)
        request = GenerateRequest(
            model=model,
            system_prompt=build_system_prompt(job.mode, job.job_type),
            user_prompt=build_user_prompt(len(images), batch.page_start, batch.page_end, text or None),
            images=images,
            max_tokens=job.model_policy.max_tokens,
            temperature=job.model_policy.temperature,
            timeout_s=job.batch_config.timeout_s,
        )
        try:
            return await self.registry.generate(request)
        except ProviderError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ProviderError(str(exc), status_code=getattr(exc, "status_code", None)) from exc

    async def _complete_batch(
        self,
        job: TakeoffJob,
        batch: TakeoffBatch,
        result: GenerateResult,
        attempt: int,
        *,
        used_fallback: bool,
    ) -> TakeoffBatch:
        repair = extract_analysis_payload(result.content)
        tokens = result.tokens_used
        metrics: Dict[str, Any] = {
            "tokens": tokens,
            "cost": estimate_cost(result.provider, tokens),
            "latency_ms": result.processing_time_ms,
            "provider": result.provider,
            "model": result.model,
            "attempt": attempt + 1,
            "used_fallback": used_fallback,
            "repair_stage": repair.stage.value,
        }
        saved = await asyncio.to_thread(
            self.store.update_batch,
            job.job_id,
            batch.batch_id,
            status=BatchStatus.COMPLETED,
            result=repair.payload,
            metrics=metrics,
            error_message=None,
            completed_at=time.time(),
        )
        await asyncio.to_thread(self.rate_limiter.record_success, result.provider)
        self.metrics.increment("batches_completed_total", stage="batch_worker", provider=result.provider)
        self.metrics.increment(
            "tokens_total", amount=tokens, stage="batch_worker", provider=result.provider, model=result.model
        )
        self.metrics.observe_latency(
            "batch_model_latency",
            result.processing_time_ms / 1000.0,
            stage="batch_worker",
            provider=result.provider,
        )
        structured_log(
            LOG,
            logging.INFO,
            "takeoff_batch_completed",
            job_id=job.job_id,
            batch_index=batch.batch_index,
            provider=result.provider,
            model=result.model,
            tokens=tokens,
            cost=metrics["cost"],
            items=len(repair.payload.get("items", [])),
            repaired=repair.repaired,
            used_fallback=used_fallback,
        )
        return saved


def _item_count(batch: TakeoffBatch) -> int:
    return len((batch.result or {}).get("items", []))


__all__ = [
    "BatchWorker",
    "ProcessResult",
    "estimate_cost",
    "retry_delay_ms",
    "rate_limit_delay_ms",
]
