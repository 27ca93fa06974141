from __future__ import annotations

import pytest

from src.errors import ProviderError
from src.models.takeoff import BatchConfig, BatchStatus, JobStatus, PageRange, TakeoffJobCreate
from src.services import state_store as state_store_module
from src.services.orchestrator import TakeoffOrchestrator, build_orchestrator
from src.services.providers import AnthropicProvider, OpenAIProvider, ProviderRegistry
from src.services.state_store import GCSStateStore, InMemoryStateStore
from tests.stubs.takeoff_fakes import PLAN_REF, FakeExtractor, FakeGCSClient, first_page, make_config


def _always_fails(request):
    raise ProviderError("model unavailable", status_code=503, provider="openai")


@pytest.mark.asyncio
async def test_job_with_no_successful_batch_is_marked_failed(orchestrator, openai_provider):
    openai_provider.responder = _always_fails
    job = await orchestrator.create_job(TakeoffJobCreate(pdf_ref=PLAN_REF, pages=PageRange(start=1, end=10)))

    done = await orchestrator.run_until_complete(job.job_id)

    assert done.status == JobStatus.FAILED
    assert done.final_result is None
    assert done.completed_at is not None
    assert "No completed batches" in done.errors[-1]["message"]
    assert orchestrator.get_job_result(job.job_id) is None


@pytest.mark.asyncio
async def test_run_without_merge_leaves_job_open(orchestrator):
    job = await orchestrator.create_job(TakeoffJobCreate(pdf_ref=PLAN_REF))

    done = await orchestrator.run_until_complete(job.job_id, merge=False)

    assert done.status == JobStatus.COMPLETE
    assert done.final_result is None
    merged = orchestrator.merge_job_results(job.job_id)
    assert len(merged["items"]) == 5
    assert orchestrator.get_job_result(job.job_id) == merged


@pytest.mark.asyncio
async def test_max_passes_bounds_the_run(orchestrator):
    job = await orchestrator.create_job(TakeoffJobCreate(pdf_ref=PLAN_REF))

    done = await orchestrator.run_until_complete(job.job_id, max_passes=1, max_batches=1)

    assert done.completed_batches == 1
    assert done.status == JobStatus.PARTIAL


def test_build_orchestrator_wires_real_adapters():
    orchestrator = build_orchestrator(make_config())

    assert isinstance(orchestrator.store, InMemoryStateStore)
    assert isinstance(orchestrator.worker.registry.resolve("gpt-4o"), OpenAIProvider)
    assert isinstance(orchestrator.worker.registry.resolve("claude-sonnet-4-20250514"), AnthropicProvider)
    assert orchestrator.page_loader.fallback_page_count == 100


def test_build_orchestrator_uses_state_backend_from_config(monkeypatch):
    monkeypatch.setenv("TAKEOFF_STATE_BACKEND", "memory")
    monkeypatch.setattr(state_store_module.storage, "Client", FakeGCSClient)

    orchestrator = build_orchestrator(
        make_config(TAKEOFF_STATE_BACKEND="gcs", TAKEOFF_STATE_BUCKET="state-bucket")
    )

    assert isinstance(orchestrator.store, GCSStateStore)


@pytest.mark.asyncio
async def test_last_of_200_single_page_batches_is_processed_and_merged(
    config, store, document_store, openai_provider, sleeper
):
    orchestrator = TakeoffOrchestrator(
        store=store,
        document_store=document_store,
        registry=ProviderRegistry([openai_provider]),
        config=config,
        extractor=FakeExtractor(total_pages=200),
        sleep=sleeper,
    )
    job = await orchestrator.create_job(
        TakeoffJobCreate(pdf_ref=PLAN_REF, batch_config=BatchConfig(batch_size=1))
    )
    batches = store.list_batches(job.job_id)
    for batch in batches[:-1]:
        store.update_batch(
            job.job_id,
            batch.batch_id,
            status=BatchStatus.COMPLETED,
            result={"items": [], "quality_analysis": {}},
        )
    orchestrator.job_manager.update_job_progress(job.job_id)

    done = await orchestrator.run_until_complete(job.job_id, max_passes=3)

    assert [first_page(request) for request in openai_provider.requests] == [200]
    assert store.get_batch(job.job_id, batches[-1].batch_id).status == BatchStatus.COMPLETED
    assert done.status == JobStatus.COMPLETE
    assert done.completed_batches == 200
    assert [item["name"] for item in done.final_result["items"]] == ["Wall 200"]


@pytest.mark.asyncio
async def test_complete_job_without_merged_result_still_claims_pending_batches(orchestrator, store, openai_provider):
    job = await orchestrator.create_job(TakeoffJobCreate(pdf_ref=PLAN_REF, pages=PageRange(start=1, end=10)))
    store.update_job(job.job_id, status=JobStatus.COMPLETE, progress_percent=100)

    result = await orchestrator.process_batches(job.job_id)

    assert result.processed == 2
    assert result.remaining == 0
    assert len(openai_provider.requests) == 2
