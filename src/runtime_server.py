"""Uvicorn launcher for the takeoff orchestrator API."""

from __future__ import annotations

import os

import uvicorn

DEFAULT_APP = "src.main:create_app"


def worker_count() -> int:
    """UVICORN_WORKERS when set to a positive integer, otherwise one worker.

    The in-memory state store is per process, so more than one worker only
    makes sense with TAKEOFF_STATE_BACKEND=gcs.
    """
    explicit = os.getenv("UVICORN_WORKERS", "").strip()
    if explicit.isdigit() and int(explicit) > 0:
        return int(explicit)
    return 1


def main() -> None:
    uvicorn.run(
        os.getenv("FASTAPI_APP", DEFAULT_APP),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        factory=True,
        workers=worker_count(),
        lifespan="on",
    )


if __name__ == "__main__":  # pragma: no cover - exercised in runtime
    main()
