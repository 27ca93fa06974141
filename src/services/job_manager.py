"""Job lifecycle: creation, batch planning, progress and result access."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Dict

from src.config import AppConfig, get_config
from src.errors import JobNotFoundError, PersistenceError, ValidationError
from src.models.takeoff import (
    ACTIVE_JOB_STATUSES,
    AnalysisMode,
    BatchConfig,
    BatchStatus,
    JobErrorEntry,
    JobStatus,
    ModelPolicy,
    PageRange,
    TakeoffBatch,
    TakeoffJob,
    TakeoffJobCreate,
    new_batch_id,
    new_job_id,
)
from src.services.interfaces import MetricsClient
from src.services.metrics import NullMetrics
from src.services.page_loader import PageLoader
from src.services.state_store import TakeoffStateStore

LOG = logging.getLogger("takeoff.jobs")


def compute_progress_percent(completed: int, total: int) -> int:
    """Whole-number percentage, halves rounded up."""
    if total <= 0:
        return 0
    return int(math.floor(100.0 * completed / total + 0.5))


def plan_batches(job_id: str, page_start: int, page_end: int, batch_size: int) -> list[TakeoffBatch]:
    """Split ``[page_start, page_end]`` into contiguous chunks of at most ``batch_size`` pages."""
    if batch_size < 1:
        raise ValidationError("batch_size must be at least 1")
    if page_start < 1 or page_end < page_start:
        raise ValidationError(f"Invalid page range {page_start}-{page_end}")
    batches: list[TakeoffBatch] = []
    for index, start in enumerate(range(page_start, page_end + 1, batch_size)):
        batches.append(
            TakeoffBatch(
                batch_id=new_batch_id(),
                job_id=job_id,
                batch_index=index,
                page_start=start,
                page_end=min(start + batch_size - 1, page_end),
            )
        )
    return batches


def job_error(message: str, batch_index: int | None = None) -> JobErrorEntry:
    entry = JobErrorEntry(message=message, at=time.time())
    if batch_index is not None:
        entry["batch_index"] = batch_index
    return entry


class JobManager:
    """Creates jobs, keeps their progress in step with batch rows, serves results."""

    def __init__(
        self,
        store: TakeoffStateStore,
        page_loader: PageLoader,
        *,
        config: AppConfig | None = None,
        metrics: MetricsClient | None = None,
    ) -> None:
        self.store = store
        self.page_loader = page_loader
        self.config = config or get_config()
        self.metrics = metrics or NullMetrics()

    # Defaults --------------------------------------------------------------
    def default_model_policy(self) -> ModelPolicy:
        return ModelPolicy(
            primary=self.config.primary_model,
            fallbacks=list(self.config.fallback_models),
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )

    def default_batch_config(self) -> BatchConfig:
        return BatchConfig(
            batch_size=self.config.batch_size,
            concurrency=self.config.concurrency,
            max_retries=self.config.max_retries,
            timeout_s=self.config.timeout_s,
        )

    def _validate_request(self, payload: TakeoffJobCreate) -> None:
        if not payload.pdf_ref or not payload.pdf_ref.strip():
            raise ValidationError("pdf_ref is required")
        pages = payload.pages
        max_pages = self.config.max_pages_per_job
        if pages is not None:
            if pages.start < 1:
                raise ValidationError("pages.start must be >= 1")
            if pages.end is not None:
                if pages.end < pages.start:
                    raise ValidationError("pages.end must be >= pages.start")
                if pages.end > max_pages:
                    raise ValidationError(f"Maximum {max_pages} pages per job")
        config = payload.batch_config
        if config is not None:
            if config.batch_size < 1 or config.concurrency < 1 or config.max_retries < 1:
                raise ValidationError("batch_size, concurrency and max_retries must be >= 1")
            if config.timeout_s < 1:
                raise ValidationError("timeout_s must be >= 1")
        policy = payload.model_policy
        if policy is not None and not policy.primary:
            raise ValidationError("model_policy.primary is required")

    # Operations ------------------------------------------------------------
    async def create_job(self, payload: TakeoffJobCreate) -> TakeoffJob:
        self._validate_request(payload)
        pdf_ref = payload.pdf_ref.strip()
        count = await self.page_loader.discover_page_count(pdf_ref, payload.pages)

        range_start = payload.pages.start if payload.pages else 1
        range_end = (
            payload.pages.end
            if payload.pages is not None and payload.pages.end is not None
            else count.total_pages
        )
        if range_end > self.config.max_pages_per_job:
            raise ValidationError(
                f"Document has {range_end} pages; maximum {self.config.max_pages_per_job} pages per job"
            )
        if range_start > range_end:
            raise ValidationError(
                f"pages.start {range_start} is beyond the last page {range_end}"
            )

        job_id = payload.job_id or new_job_id()
        batch_config = payload.batch_config or self.default_batch_config()
        batches = plan_batches(job_id, range_start, range_end, batch_config.batch_size)
        errors: list[JobErrorEntry] = []
        if count.estimated:
            errors.append(
                job_error(
                    f"Page count could not be determined; assumed {count.total_pages} pages"
                )
            )
        job = TakeoffJob(
            job_id=job_id,
            pdf_ref=pdf_ref,
            project_job_id=payload.project_job_id,
            plan_id=payload.plan_id,
            user_id=payload.user_id,
            model_policy=payload.model_policy or self.default_model_policy(),
            batch_config=batch_config,
            mode=payload.mode or AnalysisMode(self.config.default_mode),
            job_type=payload.job_type or self.config.default_job_type,
            pages=PageRange(start=range_start, end=payload.pages.end) if payload.pages else None,
            status=JobStatus.QUEUED,
            total_pages=count.total_pages,
            total_batches=len(batches),
            errors=errors,
            page_count_estimated=count.estimated,
        )

        try:
            job = await asyncio.to_thread(self.store.create_job, job)
        except PersistenceError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError(f"Failed to create job: {exc}") from exc

        try:
            await asyncio.to_thread(self.store.insert_batches, batches)
        except Exception as exc:  # noqa: BLE001
            message = f"Failed to create batches: {exc}"
            LOG.error("takeoff_batch_insert_failed", extra={"job_id": job_id, "error": str(exc)})
            await asyncio.to_thread(self.store.update_job, job_id, status=JobStatus.FAILED)
            await asyncio.to_thread(self.store.append_job_error, job_id, job_error(message))
            raise PersistenceError(message) from exc

        self.metrics.increment("jobs_created_total", stage="job_manager")
        LOG.info(
            "takeoff_job_created",
            extra={
                "job_id": job_id,
                "total_pages": job.total_pages,
                "total_batches": job.total_batches,
                "page_start": range_start,
                "page_end": range_end,
                "mode": job.mode.value,
                "page_count_estimated": count.estimated,
            },
        )
        return job

    def get_job_status(self, job_id: str) -> TakeoffJob | None:
        return self.store.get_job(job_id)

    def require_job(self, job_id: str) -> TakeoffJob:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_job_result(self, job_id: str) -> Dict[str, Any] | None:
        job = self.store.get_job(job_id)
        if job is None or job.status != JobStatus.COMPLETE:
            return None
        return job.final_result

    def list_batches(self, job_id: str) -> list[TakeoffBatch]:
        self.require_job(job_id)
        return self.store.list_batches(job_id)

    def list_active_jobs(self, user_id: str) -> list[TakeoffJob]:
        return self.store.list_jobs(user_id=user_id, statuses=ACTIVE_JOB_STATUSES)

    def update_job_progress(self, job_id: str) -> TakeoffJob:
        job = self.require_job(job_id)
        if job.status == JobStatus.FAILED:
            return job
        if job.status == JobStatus.COMPLETE and job.final_result is not None:
            return job

        batches = self.store.list_batches(job_id)
        total = job.total_batches or len(batches)
        completed = sum(1 for b in batches if b.status == BatchStatus.COMPLETED)
        progress = compute_progress_percent(completed, total)
        untouched = all(b.status == BatchStatus.PENDING for b in batches)

        if total and completed >= total:
            status = JobStatus.COMPLETE
        elif job.status == JobStatus.QUEUED and untouched:
            status = JobStatus.QUEUED
        elif progress > 0:
            status = JobStatus.PARTIAL
        else:
            status = JobStatus.RUNNING

        if (
            job.completed_batches == completed
            and job.progress_percent == progress
            and job.status == status
        ):
            return job
        updated = self.store.update_job(
            job_id,
            completed_batches=completed,
            progress_percent=progress,
            status=status,
        )
        LOG.info(
            "takeoff_job_progress",
            extra={
                "job_id": job_id,
                "completed_batches": completed,
                "total_batches": total,
                "progress_percent": progress,
                "status": status.value,
            },
        )
        return updated

    def record_job_error(self, job_id: str, message: str, batch_index: int | None = None) -> TakeoffJob:
        return self.store.append_job_error(job_id, job_error(message, batch_index))

    def mark_job_failed(self, job_id: str, message: str) -> TakeoffJob:
        self.require_job(job_id)
        self.store.append_job_error(job_id, job_error(message))
        job = self.store.update_job(job_id, status=JobStatus.FAILED, completed_at=time.time())
        self.metrics.increment("jobs_failed_total", stage="job_manager")
        LOG.error("takeoff_job_failed", extra={"job_id": job_id, "error": message})
        return job

    def reset_failed_batches(self, job_id: str) -> int:
        """Return failed batches to pending and reopen the job so processing can resume."""
        job = self.require_job(job_id)
        reset = self.store.reset_failed_batches(job_id)
        if reset:
            reopened = JobStatus.PARTIAL if job.completed_batches else JobStatus.RUNNING
            self.store.update_job(job_id, status=reopened, completed_at=None)
            LOG.info("takeoff_batches_reset", extra={"job_id": job_id, "batches": reset})
        return reset


__all__ = [
    "JobManager",
    "plan_batches",
    "compute_progress_percent",
    "job_error",
]
