"""Combine completed batch results into the job's final takeoff payload."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, List, Mapping

from src.config import AppConfig, get_config
from src.errors import IncompleteJobError, JobNotFoundError, NoCompletedBatchesError
from src.models.takeoff import BatchStatus, JobStatus, TakeoffBatch
from src.services.interfaces import MetricsClient
from src.services.metrics import NullMetrics
from src.services.state_store import TakeoffStateStore
from src.utils.logging_utils import stage_marker

LOG = logging.getLogger("takeoff.merge")

DEFAULT_CONFIDENCE = 0.5


def _item_key(item: Mapping[str, Any]) -> tuple[Any, ...]:
    bbox = item.get("bounding_box") or {}
    return (
        bbox.get("page") or 0,
        bbox.get("x"),
        bbox.get("y"),
        bbox.get("width"),
        bbox.get("height"),
        item.get("name") or "",
    )


def _sort_key(item: Mapping[str, Any]) -> tuple[float, float]:
    bbox = item.get("bounding_box") or {}
    return (bbox.get("page") or 0, bbox.get("y") or 0)


def _unique(values: Iterable[Any]) -> List[Any]:
    seen: set[Any] = set()
    ordered: List[Any] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def overall_confidence(items: List[Mapping[str, Any]]) -> float:
    if not items:
        return 0.0
    scores = [float(item.get("confidence") or 0) for item in items]
    scores = [score for score in scores if score > 0]
    if not scores:
        return DEFAULT_CONFIDENCE
    return sum(scores) / len(scores)


def summarise(risk_count: int, missing_count: int) -> str:
    if risk_count == 0 and missing_count == 0:
        return "Analysis complete. No major issues or missing information detected."
    risks = "risk" if risk_count == 1 else "risks"
    missing = "item" if missing_count == 1 else "items"
    return (
        f"Analysis complete. Found {risk_count} {risks} and "
        f"{missing_count} missing information {missing}."
    )


def merge_batch_payloads(batches: List[TakeoffBatch]) -> Dict[str, Any]:
    """Merge batch results in ``batch_index`` order.

    Items are de-duplicated on page, bounding box and name (first occurrence
    wins) and then ordered top-to-bottom per page. Risks are concatenated;
    missing info, assumptions and code references keep first-seen order.
    """
    items: List[Dict[str, Any]] = []
    seen: set[tuple[Any, ...]] = set()
    risks: List[Any] = []
    missing: List[str] = []
    assumptions: List[str] = []
    code_refs: List[str] = []

    for batch in sorted(batches, key=lambda b: b.batch_index):
        result = batch.result or {}
        for item in result.get("items") or []:
            if not isinstance(item, Mapping):
                continue
            key = _item_key(item)
            if key in seen:
                continue
            seen.add(key)
            items.append(dict(item))
        quality = result.get("quality_analysis") or {}
        risks.extend(quality.get("risks") or [])
        missing.extend(quality.get("missing_info") or [])
        assumptions.extend(quality.get("assumptions") or [])
        code_refs.extend(quality.get("code_refs") or [])

    items.sort(key=_sort_key)
    # The summary counts every reported note; the list itself is de-duplicated.
    summary = summarise(len(risks), len(missing))
    return {
        "items": items,
        "quality_analysis": {
            "summary": summary,
            "risks": risks,
            "missing_info": _unique(missing),
            "assumptions": _unique(assumptions),
            "code_refs": _unique(code_refs),
            "confidence": overall_confidence(items),
        },
    }


def job_totals(completed: List[TakeoffBatch], failed_count: int) -> Dict[str, Any]:
    providers: List[str] = _unique(
        str(batch.metrics.get("provider")) for batch in completed if batch.metrics.get("provider")
    )
    return {
        "total_tokens": sum(int(batch.metrics.get("tokens") or 0) for batch in completed),
        "total_cost": sum(float(batch.metrics.get("cost") or 0) for batch in completed),
        "total_latency_ms": sum(int(batch.metrics.get("latency_ms") or 0) for batch in completed),
        "batches_merged": len(completed),
        "batches_failed": failed_count,
        "fallback_batches": sum(1 for batch in completed if batch.metrics.get("used_fallback")),
        "providers": providers,
    }


class ResultMerger:
    def __init__(
        self,
        store: TakeoffStateStore,
        *,
        config: AppConfig | None = None,
        metrics: MetricsClient | None = None,
    ) -> None:
        self.store = store
        self.config = config or get_config()
        self.metrics = metrics or NullMetrics()

    def merge_job_results(
        self, job_id: str, require_full_coverage: bool | None = None
    ) -> Dict[str, Any]:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if require_full_coverage is None:
            require_full_coverage = self.config.merge_require_full_coverage

        with stage_marker(LOG, stage="merge", job_id=job_id) as marker:
            batches = self.store.list_batches(job_id)
            completed = [b for b in batches if b.status == BatchStatus.COMPLETED]
            if not completed:
                raise NoCompletedBatchesError(f"No completed batches to merge for job {job_id}")
            if require_full_coverage and len(completed) < len(batches):
                raise IncompleteJobError(
                    f"Job {job_id} has {len(batches) - len(completed)} unfinished batches"
                )

            final_result = merge_batch_payloads(completed)
            failed = sum(1 for b in batches if b.status == BatchStatus.FAILED)
            metrics = dict(job.metrics)
            metrics.update(job_totals(completed, failed))
            self.store.update_job(
                job_id,
                status=JobStatus.COMPLETE,
                final_result=final_result,
                completed_batches=len(completed),
                progress_percent=100,
                completed_at=time.time(),
                metrics=metrics,
            )
            marker.add_completion_fields(
                batches=len(completed),
                items=len(final_result["items"]),
                tokens=metrics["total_tokens"],
                cost=metrics["total_cost"],
            )
        self.metrics.increment("jobs_merged_total", stage="merge")
        return final_result


__all__ = [
    "ResultMerger",
    "merge_batch_payloads",
    "overall_confidence",
    "summarise",
    "job_totals",
]
