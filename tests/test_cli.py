from __future__ import annotations

import json

import pytest

from src.cli import run_cli
from tests.stubs.takeoff_fakes import PLAN_REF


def _run(capsys, orchestrator, *argv: str) -> tuple[int, dict]:
    code = run_cli(list(argv), orchestrator=orchestrator)
    out = capsys.readouterr().out
    return code, json.loads(out)


def test_create_without_run_only_plans_batches(capsys, orchestrator, openai_provider):
    code, payload = _run(capsys, orchestrator, "create", PLAN_REF, "--batch-size", "10", "--plan-id", "p-1")

    assert code == 0
    assert payload["status"] == "queued"
    assert payload["plan_id"] == "p-1"
    assert payload["total_batches"] == 3
    assert openai_provider.requests == []


def test_create_with_run_completes_job(capsys, orchestrator):
    code, payload = _run(capsys, orchestrator, "create", PLAN_REF, "--run", "--mode", "takeoff")

    assert code == 0
    assert payload["status"] == "complete"
    assert payload["mode"] == "takeoff"
    assert payload["completed_batches"] == 5
    assert payload["progress_percent"] == 100
    assert payload["metrics"]["batches_merged"] == 5


def test_process_status_and_merge(capsys, orchestrator):
    _, created = _run(capsys, orchestrator, "create", PLAN_REF, "--page-start", "1", "--page-end", "10")
    job_id = created["job_id"]

    code, processed = _run(capsys, orchestrator, "process", job_id, "--max-batches", "1", "--no-merge")
    assert code == 0
    assert processed["completed_batches"] == 1
    assert processed["status"] == "partial"

    code, status = _run(capsys, orchestrator, "status", job_id, "--batches")
    assert code == 0
    assert [row["status"] for row in status["batches"]] == ["completed", "pending"]

    code, merged = _run(capsys, orchestrator, "merge", job_id)
    assert code == 0
    assert merged["status"] == "complete"
    assert len(merged["result"]["items"]) == 1

    code, _ = _run(capsys, orchestrator, "merge", job_id, "--require-full-coverage")
    assert code == 1


def test_retry_failed_reports_reset_count(capsys, orchestrator):
    _, created = _run(capsys, orchestrator, "create", PLAN_REF)

    code, payload = _run(capsys, orchestrator, "retry-failed", created["job_id"])

    assert code == 0
    assert payload == {"job_id": created["job_id"], "reset_batches": 0}


def test_errors_exit_non_zero_with_json(capsys, orchestrator):
    code, payload = _run(capsys, orchestrator, "status", "missing-job")

    assert code == 1
    assert payload["error_type"] == "JobNotFoundError"
    assert "missing-job" in payload["error"]


def test_invalid_arguments_exit_via_argparse(orchestrator):
    with pytest.raises(SystemExit) as excinfo:
        run_cli(["create", PLAN_REF, "--mode", "sketch"], orchestrator=orchestrator)
    assert excinfo.value.code == 2
