"""Routers for the takeoff orchestrator FastAPI application."""

from __future__ import annotations

from fastapi import APIRouter

from .takeoff import router as takeoff_router


def build_api_router() -> APIRouter:
    """Combine all API routers for inclusion in the FastAPI app."""
    router = APIRouter()
    router.include_router(takeoff_router)
    return router


__all__ = ["build_api_router"]
