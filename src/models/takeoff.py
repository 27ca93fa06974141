"""Job, batch and provider rate-limit records for the takeoff orchestrator.

A `TakeoffJob` covers one plan PDF and fans out into contiguous
`TakeoffBatch` rows of at most `batch_size` pages. Batches move
pending -> processing -> completed|failed; the job aggregates their progress
and, once merged, carries the final result. `ProviderRateLimitState` is shared
by every worker talking to a given provider.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, TypedDict


class JobStatus(str, Enum):
    """Job lifecycle; terminal states are COMPLETE and FAILED."""

    QUEUED = "queued"
    RUNNING = "running"
    PARTIAL = "partial"
    COMPLETE = "complete"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.PARTIAL})


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AnalysisMode(str, Enum):
    TAKEOFF = "takeoff"
    QUALITY_ANALYSIS = "quality_analysis"
    BOTH = "both"


class JobErrorEntry(TypedDict, total=False):
    message: str
    batch_index: int
    at: float


def _now_ts() -> float:
    return time.time()


def _generate_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class ModelPolicy:
    primary: str = "gpt-4o"
    fallbacks: list[str] = field(default_factory=lambda: ["claude-sonnet-4-20250514"])
    max_tokens: int = 4096
    temperature: float = 0.2

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "ModelPolicy":
        if not payload:
            return cls()
        default = cls()
        temperature = payload.get("temperature")
        return cls(
            primary=str(payload.get("primary") or default.primary),
            fallbacks=[str(m) for m in payload.get("fallbacks", default.fallbacks) or []],
            max_tokens=int(payload.get("max_tokens") or default.max_tokens),
            temperature=default.temperature if temperature is None else float(temperature),
        )


@dataclass(slots=True)
class BatchConfig:
    batch_size: int = 5
    concurrency: int = 3
    max_retries: int = 3
    timeout_s: int = 120

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "BatchConfig":
        if not payload:
            return cls()
        default = cls()
        return cls(
            batch_size=int(payload.get("batch_size") or default.batch_size),
            concurrency=int(payload.get("concurrency") or default.concurrency),
            max_retries=int(payload.get("max_retries") or default.max_retries),
            timeout_s=int(payload.get("timeout_s") or default.timeout_s),
        )


@dataclass(slots=True)
class PageRange:
    """1-indexed inclusive page selection; ``end`` None means "to the last page"."""

    start: int = 1
    end: int | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "PageRange | None":
        if not payload:
            return None
        end = payload.get("end")
        return cls(
            start=int(payload.get("start") or 1),
            end=None if end is None else int(end),
        )


@dataclass(slots=True)
class TakeoffJobCreate:
    pdf_ref: str
    project_job_id: str | None = None
    plan_id: str | None = None
    user_id: str | None = None
    model_policy: ModelPolicy | None = None
    batch_config: BatchConfig | None = None
    mode: AnalysisMode | None = None
    job_type: str | None = None
    pages: PageRange | None = None
    job_id: str | None = None


@dataclass(slots=True)
class TakeoffJob:
    job_id: str
    pdf_ref: str
    project_job_id: str | None = None
    plan_id: str | None = None
    user_id: str | None = None
    model_policy: ModelPolicy = field(default_factory=ModelPolicy)
    batch_config: BatchConfig = field(default_factory=BatchConfig)
    mode: AnalysisMode = AnalysisMode.BOTH
    job_type: str = "residential"
    pages: PageRange | None = None
    status: JobStatus = JobStatus.QUEUED
    total_pages: int = 0
    total_batches: int = 0
    completed_batches: int = 0
    progress_percent: int = 0
    final_result: Dict[str, Any] | None = None
    errors: list[JobErrorEntry] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    page_count_estimated: bool = False
    created_at: float = field(default_factory=_now_ts)
    started_at: float | None = None
    completed_at: float | None = None
    updated_at: float = field(default_factory=_now_ts)


@dataclass(slots=True)
class TakeoffBatch:
    batch_id: str
    job_id: str
    batch_index: int
    page_start: int
    page_end: int
    status: BatchStatus = BatchStatus.PENDING
    retry_count: int = 0
    result: Dict[str, Any] | None = None
    metrics: Dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    created_at: float = field(default_factory=_now_ts)
    started_at: float | None = None
    completed_at: float | None = None
    updated_at: float = field(default_factory=_now_ts)

    @property
    def page_count(self) -> int:
        return self.page_end - self.page_start + 1


@dataclass(slots=True)
class ProviderRateLimitState:
    provider: str
    consecutive_429s: int = 0
    backoff_until: float | None = None
    last_429_at: float | None = None
    updated_at: float = field(default_factory=_now_ts)


def new_job_id() -> str:
    return _generate_id()


def new_batch_id() -> str:
    return _generate_id()


def job_to_dict(job: TakeoffJob) -> Dict[str, Any]:
    data = asdict(job)
    data["status"] = job.status.value
    data["mode"] = job.mode.value
    return data


def job_from_dict(payload: Mapping[str, Any]) -> TakeoffJob:
    return TakeoffJob(
        job_id=payload["job_id"],
        pdf_ref=payload["pdf_ref"],
        project_job_id=payload.get("project_job_id"),
        plan_id=payload.get("plan_id"),
        user_id=payload.get("user_id"),
        model_policy=ModelPolicy.from_mapping(payload.get("model_policy")),
        batch_config=BatchConfig.from_mapping(payload.get("batch_config")),
        mode=AnalysisMode(payload.get("mode", AnalysisMode.BOTH.value)),
        job_type=payload.get("job_type") or "residential",
        pages=PageRange.from_mapping(payload.get("pages")),
        status=JobStatus(payload.get("status", JobStatus.QUEUED.value)),
        total_pages=int(payload.get("total_pages", 0)),
        total_batches=int(payload.get("total_batches", 0)),
        completed_batches=int(payload.get("completed_batches", 0)),
        progress_percent=int(payload.get("progress_percent", 0)),
        final_result=payload.get("final_result"),
        errors=[JobErrorEntry(**entry) for entry in payload.get("errors") or []],
        metrics=dict(payload.get("metrics") or {}),
        page_count_estimated=bool(payload.get("page_count_estimated", False)),
        created_at=float(payload.get("created_at", _now_ts())),
        started_at=payload.get("started_at"),
        completed_at=payload.get("completed_at"),
        updated_at=float(payload.get("updated_at", _now_ts())),
    )


def batch_to_dict(batch: TakeoffBatch) -> Dict[str, Any]:
    data = asdict(batch)
    data["status"] = batch.status.value
    return data


def batch_from_dict(payload: Mapping[str, Any]) -> TakeoffBatch:
    return TakeoffBatch(
        batch_id=payload["batch_id"],
        job_id=payload["job_id"],
        batch_index=int(payload["batch_index"]),
        page_start=int(payload["page_start"]),
        page_end=int(payload["page_end"]),
        status=BatchStatus(payload.get("status", BatchStatus.PENDING.value)),
        retry_count=int(payload.get("retry_count", 0)),
        result=payload.get("result"),
        metrics=dict(payload.get("metrics") or {}),
        error_message=payload.get("error_message"),
        created_at=float(payload.get("created_at", _now_ts())),
        started_at=payload.get("started_at"),
        completed_at=payload.get("completed_at"),
        updated_at=float(payload.get("updated_at", _now_ts())),
    )


def rate_limit_to_dict(state: ProviderRateLimitState) -> Dict[str, Any]:
    return asdict(state)


def rate_limit_from_dict(payload: Mapping[str, Any]) -> ProviderRateLimitState:
    return ProviderRateLimitState(
        provider=payload["provider"],
        consecutive_429s=int(payload.get("consecutive_429s", 0)),
        backoff_until=payload.get("backoff_until"),
        last_429_at=payload.get("last_429_at"),
        updated_at=float(payload.get("updated_at", _now_ts())),
    )


def job_public_view(job: TakeoffJob) -> Dict[str, Any]:
    """Shape job data for public API responses."""

    return {
        "job_id": job.job_id,
        "project_job_id": job.project_job_id,
        "plan_id": job.plan_id,
        "status": job.status.value,
        "mode": job.mode.value,
        "total_pages": job.total_pages,
        "total_batches": job.total_batches,
        "completed_batches": job.completed_batches,
        "progress_percent": job.progress_percent,
        "page_count_estimated": job.page_count_estimated,
        "errors": [dict(entry) for entry in job.errors],
        "metrics": dict(job.metrics),
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "updated_at": job.updated_at,
    }


def batch_public_view(batch: TakeoffBatch) -> Dict[str, Any]:
    return {
        "batch_id": batch.batch_id,
        "batch_index": batch.batch_index,
        "page_start": batch.page_start,
        "page_end": batch.page_end,
        "status": batch.status.value,
        "retry_count": batch.retry_count,
        "error_message": batch.error_message,
        "metrics": dict(batch.metrics),
        "started_at": batch.started_at,
        "completed_at": batch.completed_at,
    }


__all__ = [
    "JobStatus",
    "BatchStatus",
    "AnalysisMode",
    "ACTIVE_JOB_STATUSES",
    "JobErrorEntry",
    "ModelPolicy",
    "BatchConfig",
    "PageRange",
    "TakeoffJobCreate",
    "TakeoffJob",
    "TakeoffBatch",
    "ProviderRateLimitState",
    "new_job_id",
    "new_batch_id",
    "job_to_dict",
    "job_from_dict",
    "batch_to_dict",
    "batch_from_dict",
    "rate_limit_to_dict",
    "rate_limit_from_dict",
    "job_public_view",
    "batch_public_view",
]
