"""Command line driver for takeoff jobs.

Meant for cron or a scheduler: each invocation performs a bounded amount of
work against the configured state store. With the default in-memory backend
nothing outlives the process, so use ``create --run`` or set
``TAKEOFF_STATE_BACKEND=gcs``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Iterable, Optional

from src.config import get_config
from src.errors import TakeoffError
from src.logging_setup import configure_logging
from src.models.takeoff import (
    AnalysisMode,
    BatchConfig,
    ModelPolicy,
    PageRange,
    TakeoffJobCreate,
    batch_public_view,
    job_public_view,
)
from src.services.orchestrator import TakeoffOrchestrator, build_orchestrator

_LOG = logging.getLogger("takeoff.cli")


def _emit(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _build_parser() -> argparse.ArgumentParser:
    cfg = get_config()
    parser = argparse.ArgumentParser(
        prog="takeoff-orchestrator",
        description="Create, process and merge batched plan takeoff jobs.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a job for a plan PDF.")
    create.add_argument("pdf_ref", help="gs://bucket/key, bucket-relative key or http(s) URL.")
    create.add_argument("--project-job-id")
    create.add_argument("--plan-id")
    create.add_argument("--user-id")
    create.add_argument("--mode", choices=[m.value for m in AnalysisMode], default=cfg.default_mode)
    create.add_argument("--job-type", default=cfg.default_job_type)
    create.add_argument("--page-start", type=int, default=None)
    create.add_argument("--page-end", type=int, default=None)
    create.add_argument("--batch-size", type=int, default=cfg.batch_size)
    create.add_argument("--concurrency", type=int, default=cfg.concurrency)
    create.add_argument("--max-retries", type=int, default=cfg.max_retries)
    create.add_argument("--primary-model", default=cfg.primary_model)
    create.add_argument(
        "--fallback-model",
        action="append",
        dest="fallback_models",
        help="Fallback model; repeat to add more (defaults to TAKEOFF_FALLBACK_MODELS).",
    )
    create.add_argument(
        "--run", action="store_true", help="Process every batch and merge before exiting."
    )

    process = sub.add_parser("process", help="Run processing passes for a job.")
    process.add_argument("job_id")
    process.add_argument("--max-batches", type=int, default=cfg.process_max_batches)
    process.add_argument("--timeout-ms", type=int, default=cfg.process_timeout_ms)
    process.add_argument("--max-passes", type=int, default=1)
    process.add_argument("--no-merge", action="store_true", help="Skip the merge once drained.")

    merge = sub.add_parser("merge", help="Merge completed batch results.")
    merge.add_argument("job_id")
    merge.add_argument(
        "--require-full-coverage",
        action="store_true",
        default=None,
        help="Refuse to merge while any batch is unfinished.",
    )

    status = sub.add_parser("status", help="Show job status.")
    status.add_argument("job_id")
    status.add_argument("--batches", action="store_true", help="Include batch rows.")

    retry = sub.add_parser("retry-failed", help="Reset failed batches to pending.")
    retry.add_argument("job_id")
    return parser


def _job_create_from_args(args: argparse.Namespace) -> TakeoffJobCreate:
    pages = None
    if args.page_start is not None or args.page_end is not None:
        pages = PageRange(start=args.page_start or 1, end=args.page_end)
    cfg = get_config()
    return TakeoffJobCreate(
        pdf_ref=args.pdf_ref,
        project_job_id=args.project_job_id,
        plan_id=args.plan_id,
        user_id=args.user_id,
        model_policy=ModelPolicy(
            primary=args.primary_model,
            fallbacks=list(args.fallback_models or cfg.fallback_models),
            max_tokens=cfg.max_tokens,
            temperature=cfg.temperature,
        ),
        batch_config=BatchConfig(
            batch_size=args.batch_size,
            concurrency=args.concurrency,
            max_retries=args.max_retries,
            timeout_s=cfg.timeout_s,
        ),
        mode=AnalysisMode(args.mode),
        job_type=args.job_type,
        pages=pages,
    )


async def _dispatch(args: argparse.Namespace, orchestrator: TakeoffOrchestrator) -> Dict[str, Any]:
    if args.command == "create":
        job = await orchestrator.create_job(_job_create_from_args(args))
        if args.run:
            job = await orchestrator.run_until_complete(job.job_id, max_passes=job.total_batches + 1)
        return job_public_view(job)

    if args.command == "process":
        job = await orchestrator.run_until_complete(
            args.job_id,
            max_passes=max(args.max_passes, 1),
            max_batches=args.max_batches,
            timeout_ms=args.timeout_ms,
            merge=not args.no_merge,
        )
        return job_public_view(job)

    if args.command == "merge":
        result = orchestrator.merge_job_results(
            args.job_id, require_full_coverage=args.require_full_coverage
        )
        return {"job_id": args.job_id, "status": "complete", "result": result}

    if args.command == "status":
        job = orchestrator.job_manager.require_job(args.job_id)
        payload = job_public_view(job)
        if args.batches:
            payload["batches"] = [batch_public_view(b) for b in orchestrator.list_batches(args.job_id)]
        return payload

    if args.command == "retry-failed":
        reset = orchestrator.reset_failed_batches(args.job_id)
        return {"job_id": args.job_id, "reset_batches": reset}

    raise ValueError(f"Unknown command: {args.command}")


def run_cli(
    argv: Optional[Iterable[str]] = None,
    *,
    orchestrator: TakeoffOrchestrator | None = None,
) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(level=logging.DEBUG if args.debug else logging.INFO, stream=sys.stderr)

    if orchestrator is None:
        cfg = get_config()
        try:
            cfg.validate_required()
        except RuntimeError as exc:
            parser.error(str(exc))
        orchestrator = build_orchestrator(cfg)

    try:
        payload = asyncio.run(_dispatch(args, orchestrator))
    except TakeoffError as exc:
        _LOG.error(
            "takeoff_cli_failed",
            extra={"command": args.command, "error": str(exc), "error_type": type(exc).__name__},
        )
        _emit({"error": str(exc), "error_type": type(exc).__name__})
        return 1
    _emit(payload)
    return 0


def main() -> None:
    sys.exit(run_cli())


__all__ = ["run_cli", "main"]


if __name__ == "__main__":  # pragma: no cover
    main()
