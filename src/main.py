"""FastAPI application entrypoint for the takeoff orchestrator."""

from __future__ import annotations

import logging
import os
import sys
import uuid
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.api import build_api_router
from src.config import get_config
from src.errors import (
    DocumentLoadError,
    IncompleteJobError,
    JobNotFoundError,
    NoCompletedBatchesError,
    PersistenceError,
    ValidationError,
)
from src.logging_setup import configure_logging, set_request_id
from src.services.metrics import NullMetrics, PrometheusMetrics
from src.services.orchestrator import TakeoffOrchestrator, build_orchestrator
from src.utils.logging_utils import structured_log

DEBUG_ENABLED = any(arg == "--debug" for arg in sys.argv) or os.getenv(
    "DEBUG", "false"
).strip().lower() in {"1", "true", "yes", "on"}
LOG_LEVEL = logging.DEBUG if DEBUG_ENABLED else logging.INFO

_API_LOG = logging.getLogger("api")


def _health_payload() -> dict[str, str]:
    return {"status": "ok"}


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


def create_app(orchestrator: TakeoffOrchestrator | None = None) -> FastAPI:
    configure_logging(level=LOG_LEVEL)
    if orchestrator is None:
        get_config.cache_clear()
    cfg = orchestrator.config if orchestrator is not None else get_config()

    app = FastAPI(title="Takeoff Orchestrator API", version="1.0.0")
    app.state.config = cfg

    if cfg.enable_metrics:
        metrics: Any = PrometheusMetrics.instrument_app(app)
    else:
        metrics = NullMetrics()
    app.state.metrics = metrics

    if orchestrator is None:
        cfg.validate_required()
        orchestrator = build_orchestrator(cfg, metrics=metrics)
    app.state.orchestrator = orchestrator

    @app.exception_handler(ValidationError)
    async def _val_handler(_r: Request, exc: ValidationError):
        return _error(400, exc)

    @app.exception_handler(JobNotFoundError)
    async def _not_found_handler(_r: Request, exc: JobNotFoundError):
        return _error(404, exc)

    @app.exception_handler(NoCompletedBatchesError)
    async def _no_batches_handler(_r: Request, exc: NoCompletedBatchesError):
        return _error(409, exc)

    @app.exception_handler(IncompleteJobError)
    async def _incomplete_handler(_r: Request, exc: IncompleteJobError):
        return _error(409, exc)

    @app.exception_handler(DocumentLoadError)
    async def _document_handler(_r: Request, exc: DocumentLoadError):
        return _error(502, exc)

    @app.exception_handler(PersistenceError)
    async def _persistence_handler(_r: Request, exc: PersistenceError):
        structured_log(_API_LOG, logging.ERROR, "persistence_failure", error=str(exc))
        return _error(503, exc)

    # Health endpoints ---------------------------------------------------------
    @app.get("/healthz", summary="Healthz")
    async def healthz():
        return _health_payload()

    @app.get("/health", include_in_schema=False)
    async def health_alias():
        return _health_payload()

    @app.get("/readyz", include_in_schema=False)
    async def readyz():
        return _health_payload()

    app.include_router(build_api_router(), prefix="/takeoff", tags=["takeoff"])

    @app.middleware("http")
    async def _request_context(request: Request, call_next: Callable[[Request], Any]):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            set_request_id(None)
        response.headers["X-Request-ID"] = request_id
        return response

    structured_log(
        _API_LOG,
        logging.INFO,
        "service_bootstrap",
        component="takeoff-orchestrator",
        status="ready",
    )
    return app


__all__ = ["create_app"]
