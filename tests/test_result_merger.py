from __future__ import annotations

import json

import pytest

from src.errors import IncompleteJobError, JobNotFoundError, NoCompletedBatchesError
from src.models.takeoff import BatchStatus, JobStatus, TakeoffBatch, TakeoffJob
from src.services.result_merger import (
    ResultMerger,
    job_totals,
    merge_batch_payloads,
    overall_confidence,
    summarise,
)
from src.services.schema_repair import validate_analysis
from src.services.state_store import InMemoryStateStore
from tests.stubs.takeoff_fakes import analysis_json, make_config


def _batch(index: int, payload: dict | None, status: BatchStatus = BatchStatus.COMPLETED, **metrics) -> TakeoffBatch:
    return TakeoffBatch(
        batch_id=f"b{index}",
        job_id="job-1",
        batch_index=index,
        page_start=index * 5 + 1,
        page_end=index * 5 + 5,
        status=status,
        result=payload,
        metrics=dict(metrics),
    )


def _payload(page: int, *names: str, **kwargs) -> dict:
    return validate_analysis(json.loads(analysis_json(page, *names, **kwargs)))


def test_summary_wording():
    assert summarise(0, 0) == "Analysis complete. No major issues or missing information detected."
    assert summarise(1, 1) == "Analysis complete. Found 1 risk and 1 missing information item."
    assert summarise(2, 0) == "Analysis complete. Found 2 risks and 0 missing information items."


def test_overall_confidence():
    assert overall_confidence([]) == 0.0
    assert overall_confidence([{"confidence": 0}, {"confidence": 0}]) == 0.5
    assert overall_confidence([{"confidence": 0.8}, {"confidence": 0.4}, {"confidence": 0}]) == pytest.approx(0.6)


def test_merge_dedupes_identical_items_across_batches():
    duplicate = _payload(5, "Header")
    batches = [_batch(0, duplicate), _batch(1, duplicate), _batch(2, _payload(5, "Header", y=0.5))]

    merged = merge_batch_payloads(batches)

    assert len(merged["items"]) == 2
    assert [item["bounding_box"]["y"] for item in merged["items"]] == [0.1, 0.5]


def test_merge_orders_items_by_page_then_vertical_position():
    batches = [
        _batch(1, _payload(7, "Low", y=0.8)),
        _batch(0, _payload(2, "Second")),
        _batch(2, _payload(7, "High", y=0.05)),
    ]

    merged = merge_batch_payloads(batches)

    assert [item["name"] for item in merged["items"]] == ["Second", "High", "Low"]


def test_merge_combines_quality_analysis():
    batches = [
        _batch(
            0,
            _payload(
                1,
                "Slab",
                risks=[{"severity": "warning", "description": "No soils report"}],
                missing_info=["Sheet S-2"],
                assumptions=["Slab is 4in"],
                code_refs=["IRC R506"],
            ),
        ),
        _batch(
            1,
            _payload(
                6,
                "Roof",
                risks=["Truss spacing unclear"],
                missing_info=["Sheet S-2", "Roof pitch"],
                assumptions=["Slab is 4in"],
                code_refs=["IRC R802", "IRC R506"],
            ),
        ),
    ]

    merged = merge_batch_payloads(batches)
    quality = merged["quality_analysis"]

    assert quality["risks"] == [
        {"severity": "warning", "description": "No soils report"},
        "Truss spacing unclear",
    ]
    assert quality["missing_info"] == ["Sheet S-2", "Roof pitch"]
    assert quality["assumptions"] == ["Slab is 4in"]
    assert quality["code_refs"] == ["IRC R506", "IRC R802"]
    assert quality["summary"] == "Analysis complete. Found 2 risks and 3 missing information items."
    assert quality["confidence"] == pytest.approx(0.9)


def test_job_totals_sum_batch_metrics():
    completed = [
        _batch(0, {}, tokens=150, cost=0.0015, latency_ms=30, provider="openai"),
        _batch(1, {}, tokens=100, cost=0.0015, latency_ms=20, provider="anthropic", used_fallback=True),
    ]

    totals = job_totals(completed, failed_count=1)

    assert totals["total_tokens"] == 250
    assert totals["total_cost"] == pytest.approx(0.003)
    assert totals["total_latency_ms"] == 50
    assert totals["batches_merged"] == 2
    assert totals["batches_failed"] == 1
    assert totals["fallback_batches"] == 1
    assert totals["providers"] == ["openai", "anthropic"]


def _seed(store: InMemoryStateStore, batches: list[TakeoffBatch]) -> None:
    store.create_job(TakeoffJob(job_id="job-1", pdf_ref="gs://plans/a.pdf", total_batches=len(batches)))
    store.insert_batches(batches)


def test_merge_job_results_completes_job():
    store = InMemoryStateStore()
    _seed(store, [_batch(0, _payload(1, "Slab"), tokens=10), _batch(1, None, BatchStatus.FAILED)])
    merger = ResultMerger(store, config=make_config())

    result = merger.merge_job_results("job-1")

    job = store.get_job("job-1")
    assert job.status == JobStatus.COMPLETE
    assert job.progress_percent == 100
    assert job.completed_batches == 1
    assert job.completed_at is not None
    assert job.final_result == result
    assert job.metrics["batches_failed"] == 1
    assert job.metrics["total_tokens"] == 10


def test_merge_without_completed_batches_fails():
    store = InMemoryStateStore()
    _seed(store, [_batch(0, None, BatchStatus.FAILED), _batch(1, None, BatchStatus.PENDING)])
    merger = ResultMerger(store, config=make_config())

    with pytest.raises(NoCompletedBatchesError):
        merger.merge_job_results("job-1")
    assert store.get_job("job-1").status == JobStatus.QUEUED


def test_full_coverage_merge_rejects_unfinished_batches():
    store = InMemoryStateStore()
    _seed(store, [_batch(0, _payload(1, "Slab")), _batch(1, None, BatchStatus.FAILED)])

    strict = ResultMerger(store, config=make_config(MERGE_REQUIRE_FULL_COVERAGE="true"))
    with pytest.raises(IncompleteJobError):
        strict.merge_job_results("job-1")

    lenient = ResultMerger(store, config=make_config())
    with pytest.raises(IncompleteJobError):
        lenient.merge_job_results("job-1", require_full_coverage=True)
    assert lenient.merge_job_results("job-1")["items"][0]["name"] == "Slab"


def test_merge_unknown_job():
    merger = ResultMerger(InMemoryStateStore(), config=make_config())
    with pytest.raises(JobNotFoundError):
        merger.merge_job_results("nope")
