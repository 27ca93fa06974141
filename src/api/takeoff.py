"""Takeoff job routes."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from pydantic import AliasChoices, BaseModel, Field

from src.errors import IncompleteJobError, JobNotFoundError, NoCompletedBatchesError
from src.models.takeoff import (
    AnalysisMode,
    BatchConfig,
    ModelPolicy,
    PageRange,
    TakeoffJobCreate,
    batch_public_view,
    job_public_view,
)
from src.services.orchestrator import TakeoffOrchestrator
from src.utils.logging_utils import structured_log

router = APIRouter()

_API_LOG = logging.getLogger("api")
_COMPONENT = "takeoff_api"
MINUTES_PER_BATCH = 0.5


class ModelPolicyIn(BaseModel):
    primary: str | None = None
    fallbacks: list[str] | None = None
    max_tokens: int | None = Field(None, ge=1)
    temperature: float | None = Field(None, ge=0, le=2)


class BatchConfigIn(BaseModel):
    batch_size: int | None = Field(None, ge=1)
    concurrency: int | None = Field(None, ge=1)
    max_retries: int | None = Field(None, ge=1)
    timeout_s: int | None = Field(None, ge=1)


class PagesIn(BaseModel):
    start: int = Field(1, ge=1)
    end: int | None = Field(None, ge=1)


class StartTakeoffRequest(BaseModel):
    model_config = {"populate_by_name": True, "protected_namespaces": ()}

    pdf_ref: str = Field(..., min_length=1)
    project_job_id: str | None = Field(
        None, validation_alias=AliasChoices("project_job_id", "job_id")
    )
    plan_id: str | None = None
    user_id: str | None = None
    model_policy: ModelPolicyIn | None = None
    batch_config: BatchConfigIn | None = None
    pages: PagesIn | None = None
    mode: AnalysisMode | None = None
    job_type: str | None = None


class ProcessRequest(BaseModel):
    job_id: str = Field(..., min_length=1)
    max_batches: int | None = Field(None, ge=1)
    timeout_ms: int | None = Field(None, ge=0)


class MergeRequest(BaseModel):
    require_full_coverage: bool | None = None


def _orchestrator(request: Request) -> TakeoffOrchestrator:
    return request.app.state.orchestrator


def _to_job_create(body: StartTakeoffRequest, orchestrator: TakeoffOrchestrator) -> TakeoffJobCreate:
    manager = orchestrator.job_manager
    model_policy = None
    if body.model_policy is not None:
        model_policy = ModelPolicy.from_mapping(
            {**asdict(manager.default_model_policy()), **body.model_policy.model_dump(exclude_none=True)}
        )
    batch_config = None
    if body.batch_config is not None:
        batch_config = BatchConfig.from_mapping(
            {**asdict(manager.default_batch_config()), **body.batch_config.model_dump(exclude_none=True)}
        )
    pages = PageRange(start=body.pages.start, end=body.pages.end) if body.pages else None
    return TakeoffJobCreate(
        pdf_ref=body.pdf_ref,
        project_job_id=body.project_job_id,
        plan_id=body.plan_id,
        user_id=body.user_id,
        model_policy=model_policy,
        batch_config=batch_config,
        mode=body.mode,
        job_type=body.job_type,
        pages=pages,
    )


async def _first_pass(orchestrator: TakeoffOrchestrator, job_id: str) -> None:
    try:
        await orchestrator.process_batches(job_id)
    except Exception as exc:  # noqa: BLE001
        structured_log(
            _API_LOG,
            logging.ERROR,
            "takeoff_first_pass_failed",
            job_id=job_id,
            component=_COMPONENT,
            error=str(exc),
            error_type=type(exc).__name__,
        )


@router.post("/start")
async def start_takeoff(
    body: StartTakeoffRequest, request: Request, background: BackgroundTasks
) -> Dict[str, Any]:
    orchestrator = _orchestrator(request)
    cfg = orchestrator.config
    if body.pages and body.pages.end and body.pages.end > cfg.max_pages_per_job:
        raise HTTPException(
            status_code=400,
            detail=f"Page limit exceeded. Maximum {cfg.max_pages_per_job} pages allowed.",
        )
    if body.user_id:
        active = await asyncio.to_thread(orchestrator.list_active_jobs, body.user_id)
        if len(active) >= cfg.max_active_jobs_per_user:
            raise HTTPException(
                status_code=429,
                detail=(
                    f"Too many active jobs. Maximum {cfg.max_active_jobs_per_user} "
                    "concurrent jobs allowed."
                ),
            )

    job = await orchestrator.create_job(_to_job_create(body, orchestrator))
    background.add_task(_first_pass, orchestrator, job.job_id)
    structured_log(
        _API_LOG,
        logging.INFO,
        "takeoff_job_started",
        job_id=job.job_id,
        component=_COMPONENT,
        pages=job.total_pages,
        batches=job.total_batches,
    )
    return {
        "success": True,
        "job_id": job.job_id,
        "status": job.status.value,
        "total_batches": job.total_batches,
        "total_pages": job.total_pages,
        "page_count_estimated": job.page_count_estimated,
        "estimated_time_minutes": math.ceil(job.total_batches * MINUTES_PER_BATCH),
    }


@router.post("/process")
async def process_takeoff(body: ProcessRequest, request: Request) -> Dict[str, Any]:
    orchestrator = _orchestrator(request)
    result = await orchestrator.process_batches(
        body.job_id, max_batches=body.max_batches, timeout_ms=body.timeout_ms
    )
    if result.remaining == 0 and await asyncio.to_thread(orchestrator.is_drained, body.job_id):
        try:
            await asyncio.to_thread(orchestrator.merge_job_results, body.job_id)
        except (NoCompletedBatchesError, IncompleteJobError) as exc:
            structured_log(
                _API_LOG,
                logging.WARNING,
                "takeoff_merge_deferred",
                job_id=body.job_id,
                component=_COMPONENT,
                error=str(exc),
                error_type=type(exc).__name__,
            )
    job = await asyncio.to_thread(orchestrator.get_job_status, body.job_id)
    if result.remaining > 0:
        message = (
            f"Processed {result.processed} batches. {result.remaining} remaining. "
            "Call this endpoint again to continue."
        )
    else:
        message = "All batches processed."
    return {
        "success": True,
        "job_id": body.job_id,
        "processed": result.processed,
        "remaining": result.remaining,
        "status": job.status.value if job else None,
        "progress_percent": job.progress_percent if job else 0,
        "message": message,
    }


@router.get("/{job_id}")
def get_takeoff_job(job_id: str, request: Request) -> Dict[str, Any]:
    job = _orchestrator(request).get_job_status(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job_public_view(job)


@router.get("/{job_id}/result")
def get_takeoff_result(job_id: str, request: Request) -> Dict[str, Any]:
    orchestrator = _orchestrator(request)
    job = orchestrator.get_job_status(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    result = orchestrator.get_job_result(job_id)
    if result is None:
        raise HTTPException(
            status_code=409,
            detail={
                "message": "Result not ready",
                "status": job.status.value,
                "progress_percent": job.progress_percent,
            },
        )
    return {"job_id": job_id, "status": job.status.value, "result": result}


@router.get("/{job_id}/batches")
def list_takeoff_batches(job_id: str, request: Request) -> Dict[str, Any]:
    batches = _orchestrator(request).list_batches(job_id)
    return {"job_id": job_id, "batches": [batch_public_view(b) for b in batches]}


@router.post("/{job_id}/merge")
def merge_takeoff(
    job_id: str, request: Request, body: MergeRequest | None = None
) -> Dict[str, Any]:
    require = body.require_full_coverage if body else None
    result = _orchestrator(request).merge_job_results(job_id, require_full_coverage=require)
    return {"job_id": job_id, "status": "complete", "result": result}


@router.post("/{job_id}/retry-failed")
def retry_failed_batches(job_id: str, request: Request) -> Dict[str, Any]:
    orchestrator = _orchestrator(request)
    reset = orchestrator.reset_failed_batches(job_id)
    job = orchestrator.get_job_status(job_id)
    return {
        "job_id": job_id,
        "reset_batches": reset,
        "status": job.status.value if job else None,
    }


__all__ = ["router"]
