"""Custom exception hierarchy for the takeoff orchestrator.

These errors give typed failure modes across job creation, batch processing
and merging so FastAPI exception handlers can map them to HTTP status codes
and logs stay structured consistently.
"""
from __future__ import annotations


class TakeoffError(Exception):
    """Base class for orchestrator failures."""


class ValidationError(TakeoffError):
    """Raised when user supplied input (page range, pdf ref, config) is invalid."""


class PersistenceError(TakeoffError):
    """Raised when the state store rejects or fails a write."""


class JobNotFoundError(TakeoffError):
    """Raised when a job id does not resolve to a stored job."""

    def __init__(self, job_id: str):
        super().__init__(f"Takeoff job not found: {job_id}")
        self.job_id = job_id


class DocumentLoadError(TakeoffError):
    """Raised when the source PDF cannot be downloaded or opened."""


class ProviderError(TakeoffError):
    """Raised when a model provider call fails.

    ``status_code`` carries the upstream HTTP status when known so retry logic
    can tell rate limits apart from other failures.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider

    @property
    def is_rate_limit(self) -> bool:
        return is_rate_limit_error(self)


class BatchProcessingError(TakeoffError):
    """Raised when a batch exhausts its retries."""

    def __init__(self, message: str, *, job_id: str, batch_index: int):
        super().__init__(message)
        self.job_id = job_id
        self.batch_index = batch_index


class NoCompletedBatchesError(TakeoffError):
    """Raised when a merge is requested before any batch completed."""


class IncompleteJobError(TakeoffError):
    """Raised when a merge requiring full coverage finds unfinished batches."""


def is_rate_limit_error(exc: BaseException) -> bool:
    """True for HTTP 429 style failures, by status code or message text."""
    status = getattr(exc, "status_code", None)
    if status == 429:
        return True
    return "rate limit" in str(exc).lower()


__all__ = [
    "TakeoffError",
    "ValidationError",
    "PersistenceError",
    "JobNotFoundError",
    "DocumentLoadError",
    "ProviderError",
    "BatchProcessingError",
    "NoCompletedBatchesError",
    "IncompleteJobError",
    "is_rate_limit_error",
]
