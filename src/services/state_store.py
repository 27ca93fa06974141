"""Persistence for takeoff jobs, batches and provider rate-limit state.

Two implementations sit behind the `TakeoffStateStore` protocol:

* `InMemoryStateStore` guards every mutation with one re-entrant lock and
  hands out copies, so callers never share mutable records. Used for tests,
  local development and single-process CLI runs.
* `GCSStateStore` keeps one JSON object per job, per batch and per provider.
  Job and batch writes use ``if_generation_match`` so a batch claim is a
  compare-and-swap: of two workers racing for the same pending batch, exactly
  one upload succeeds. Rate-limit records are plain upserts.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Protocol

from google.api_core import exceptions as gexc
from google.cloud import storage

from src.config import AppConfig, get_config
from src.errors import JobNotFoundError, PersistenceError
from src.models.takeoff import (
    BatchStatus,
    JobErrorEntry,
    JobStatus,
    ProviderRateLimitState,
    TakeoffBatch,
    TakeoffJob,
    batch_from_dict,
    batch_to_dict,
    job_from_dict,
    job_to_dict,
    rate_limit_from_dict,
    rate_limit_to_dict,
)

LOG = logging.getLogger("takeoff.state")

_CAS_ATTEMPTS = 5


class TakeoffStateStore(Protocol):
    """Abstract persistence interface for takeoff job state."""

    def create_job(self, job: TakeoffJob) -> TakeoffJob:
        ...

    def get_job(self, job_id: str) -> TakeoffJob | None:
        ...

    def update_job(self, job_id: str, **fields: Any) -> TakeoffJob:
        ...

    def append_job_error(self, job_id: str, entry: JobErrorEntry) -> TakeoffJob:
        ...

    def list_jobs(
        self, *, user_id: str | None = None, statuses: Iterable[JobStatus] | None = None
    ) -> list[TakeoffJob]:
        ...

    def insert_batches(self, batches: list[TakeoffBatch]) -> None:
        ...

    def list_batches(self, job_id: str, status: BatchStatus | None = None) -> list[TakeoffBatch]:
        ...

    def get_batch(self, job_id: str, batch_id: str) -> TakeoffBatch | None:
        ...

    def update_batch(self, job_id: str, batch_id: str, **fields: Any) -> TakeoffBatch:
        ...

    def claim_next_batch(self, job_id: str) -> TakeoffBatch | None:
        ...

    def reset_failed_batches(self, job_id: str) -> int:
        ...

    def get_rate_limit(self, provider: str) -> ProviderRateLimitState | None:
        ...

    def upsert_rate_limit(self, state: ProviderRateLimitState) -> ProviderRateLimitState:
        ...


def _now_ts() -> float:
    return time.time()


def _clone_job(job: TakeoffJob) -> TakeoffJob:
    return job_from_dict(job_to_dict(job))


def _clone_batch(batch: TakeoffBatch) -> TakeoffBatch:
    return batch_from_dict(batch_to_dict(batch))


def _apply_fields(record: Any, fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        setattr(record, key, value)
    record.updated_at = _now_ts()


def _mark_claimed(batch: TakeoffBatch) -> None:
    now = _now_ts()
    batch.status = BatchStatus.PROCESSING
    batch.started_at = now
    batch.updated_at = now


def _mark_reset(batch: TakeoffBatch) -> None:
    batch.status = BatchStatus.PENDING
    batch.error_message = None
    batch.completed_at = None
    batch.updated_at = _now_ts()


class InMemoryStateStore(TakeoffStateStore):
    """Thread-safe in-memory store used for tests and local development."""

    def __init__(self) -> None:
        self._jobs: Dict[str, TakeoffJob] = {}
        self._batches: Dict[str, Dict[str, TakeoffBatch]] = {}
        self._rate_limits: Dict[str, ProviderRateLimitState] = {}
        self._lock = threading.RLock()

    def create_job(self, job: TakeoffJob) -> TakeoffJob:
        with self._lock:
            if job.job_id in self._jobs:
                raise PersistenceError(f"Takeoff job already exists: {job.job_id}")
            self._jobs[job.job_id] = _clone_job(job)
            self._batches.setdefault(job.job_id, {})
            LOG.info(
                "takeoff_job_persisted",
                extra={"job_id": job.job_id, "total_batches": job.total_batches},
            )
            return _clone_job(job)

    def get_job(self, job_id: str) -> TakeoffJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return None if job is None else _clone_job(job)

    def update_job(self, job_id: str, **fields: Any) -> TakeoffJob:
        with self._lock:
            job = self._require_job(job_id)
            _apply_fields(job, fields)
            return _clone_job(job)

    def append_job_error(self, job_id: str, entry: JobErrorEntry) -> TakeoffJob:
        with self._lock:
            job = self._require_job(job_id)
            job.errors.append(JobErrorEntry(**entry))
            job.updated_at = _now_ts()
            return _clone_job(job)

    def list_jobs(
        self, *, user_id: str | None = None, statuses: Iterable[JobStatus] | None = None
    ) -> list[TakeoffJob]:
        wanted = None if statuses is None else set(statuses)
        with self._lock:
            jobs = [
                _clone_job(job)
                for job in self._jobs.values()
                if (user_id is None or job.user_id == user_id)
                and (wanted is None or job.status in wanted)
            ]
        jobs.sort(key=lambda job: job.created_at)
        return jobs

    def insert_batches(self, batches: list[TakeoffBatch]) -> None:
        with self._lock:
            for batch in batches:
                if batch.job_id not in self._jobs:
                    raise PersistenceError(f"Cannot insert batch for unknown job {batch.job_id}")
            for batch in batches:
                self._batches.setdefault(batch.job_id, {})[batch.batch_id] = _clone_batch(batch)

    def list_batches(self, job_id: str, status: BatchStatus | None = None) -> list[TakeoffBatch]:
        with self._lock:
            batches = [
                _clone_batch(batch)
                for batch in self._batches.get(job_id, {}).values()
                if status is None or batch.status == status
            ]
        batches.sort(key=lambda batch: batch.batch_index)
        return batches

    def get_batch(self, job_id: str, batch_id: str) -> TakeoffBatch | None:
        with self._lock:
            batch = self._batches.get(job_id, {}).get(batch_id)
            return None if batch is None else _clone_batch(batch)

    def update_batch(self, job_id: str, batch_id: str, **fields: Any) -> TakeoffBatch:
        with self._lock:
            batch = self._batches.get(job_id, {}).get(batch_id)
            if batch is None:
                raise PersistenceError(f"Unknown batch {batch_id} for job {job_id}")
            _apply_fields(batch, fields)
            return _clone_batch(batch)

    def claim_next_batch(self, job_id: str) -> TakeoffBatch | None:
        with self._lock:
            pending = [
                batch
                for batch in self._batches.get(job_id, {}).values()
                if batch.status == BatchStatus.PENDING
            ]
            if not pending:
                return None
            batch = min(pending, key=lambda candidate: candidate.batch_index)
            _mark_claimed(batch)
            return _clone_batch(batch)

    def reset_failed_batches(self, job_id: str) -> int:
        with self._lock:
            reset = 0
            for batch in self._batches.get(job_id, {}).values():
                if batch.status == BatchStatus.FAILED:
                    _mark_reset(batch)
                    reset += 1
            return reset

    def get_rate_limit(self, provider: str) -> ProviderRateLimitState | None:
        with self._lock:
            state = self._rate_limits.get(provider)
            return None if state is None else rate_limit_from_dict(rate_limit_to_dict(state))

    def upsert_rate_limit(self, state: ProviderRateLimitState) -> ProviderRateLimitState:
        with self._lock:
            state.updated_at = _now_ts()
            self._rate_limits[state.provider] = rate_limit_from_dict(rate_limit_to_dict(state))
            return rate_limit_from_dict(rate_limit_to_dict(state))

    def _require_job(self, job_id: str) -> TakeoffJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job


class GCSStateStore(TakeoffStateStore):
    """GCS-backed state store with generation-matched writes."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "takeoff-state",
        *,
        client: Any | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client or storage.Client()
        self._bucket_name = bucket
        self._bucket = self._client.bucket(bucket)
        self._prefix = prefix.rstrip("/")
        self._sleep = sleep_fn

    # Jobs ----------------------------------------------------------------
    def create_job(self, job: TakeoffJob) -> TakeoffJob:
        try:
            self._upload(self._job_path(job.job_id), job_to_dict(job), if_generation_match=0)
        except gexc.PreconditionFailed as exc:
            raise PersistenceError(f"Takeoff job already exists: {job.job_id}") from exc
        except gexc.GoogleAPICallError as exc:
            raise PersistenceError(f"Failed to persist job {job.job_id}: {exc}") from exc
        LOG.info(
            "takeoff_job_persisted",
            extra={"job_id": job.job_id, "total_batches": job.total_batches, "backend": "gcs"},
        )
        return _clone_job(job)

    def get_job(self, job_id: str) -> TakeoffJob | None:
        loaded = self._download(self._job_path(job_id))
        return None if loaded is None else job_from_dict(loaded[0])

    def update_job(self, job_id: str, **fields: Any) -> TakeoffJob:
        def _mutate(job: TakeoffJob) -> None:
            _apply_fields(job, fields)

        return self._mutate_job(job_id, _mutate)

    def append_job_error(self, job_id: str, entry: JobErrorEntry) -> TakeoffJob:
        def _mutate(job: TakeoffJob) -> None:
            job.errors.append(JobErrorEntry(**entry))
            job.updated_at = _now_ts()

        return self._mutate_job(job_id, _mutate)

    def list_jobs(
        self, *, user_id: str | None = None, statuses: Iterable[JobStatus] | None = None
    ) -> list[TakeoffJob]:
        wanted = None if statuses is None else set(statuses)
        jobs: list[TakeoffJob] = []
        for blob in self._client.list_blobs(self._bucket_name, prefix=f"{self._prefix}/jobs/"):
            if not blob.name.endswith("/job.json"):
                continue
            job = job_from_dict(json.loads(blob.download_as_bytes().decode("utf-8")))
            if user_id is not None and job.user_id != user_id:
                continue
            if wanted is not None and job.status not in wanted:
                continue
            jobs.append(job)
        jobs.sort(key=lambda job: job.created_at)
        return jobs

    # Batches -------------------------------------------------------------
    def insert_batches(self, batches: list[TakeoffBatch]) -> None:
        for batch in batches:
            try:
                self._upload(
                    self._batch_path(batch.job_id, batch.batch_id),
                    batch_to_dict(batch),
                    if_generation_match=0,
                )
            except gexc.GoogleAPICallError as exc:
                raise PersistenceError(
                    f"Failed to persist batch {batch.batch_index} for job {batch.job_id}: {exc}"
                ) from exc

    def list_batches(self, job_id: str, status: BatchStatus | None = None) -> list[TakeoffBatch]:
        return [batch for batch, _generation in self._list_batches_with_generation(job_id, status)]

    def get_batch(self, job_id: str, batch_id: str) -> TakeoffBatch | None:
        loaded = self._download(self._batch_path(job_id, batch_id))
        return None if loaded is None else batch_from_dict(loaded[0])

    def update_batch(self, job_id: str, batch_id: str, **fields: Any) -> TakeoffBatch:
        path = self._batch_path(job_id, batch_id)
        for attempt in range(_CAS_ATTEMPTS):
            loaded = self._download(path)
            if loaded is None:
                raise PersistenceError(f"Unknown batch {batch_id} for job {job_id}")
            batch = batch_from_dict(loaded[0])
            _apply_fields(batch, fields)
            try:
                self._upload(path, batch_to_dict(batch), if_generation_match=loaded[1])
                return batch
            except gexc.PreconditionFailed:
                self._sleep(0.1 * (attempt + 1))
        raise PersistenceError(f"Failed to update batch {batch_id} after multiple attempts")

    def claim_next_batch(self, job_id: str) -> TakeoffBatch | None:
        for _round in range(_CAS_ATTEMPTS):
            candidates = self._list_batches_with_generation(job_id, BatchStatus.PENDING)
            if not candidates:
                return None
            for batch, generation in candidates:
                _mark_claimed(batch)
                try:
                    self._upload(
                        self._batch_path(job_id, batch.batch_id),
                        batch_to_dict(batch),
                        if_generation_match=generation,
                    )
                except gexc.PreconditionFailed:
                    # Another worker changed this batch first; try the next one.
                    continue
                LOG.debug(
                    "takeoff_batch_claimed",
                    extra={"job_id": job_id, "batch_index": batch.batch_index},
                )
                return batch
        return None

    def reset_failed_batches(self, job_id: str) -> int:
        reset = 0
        for batch, generation in self._list_batches_with_generation(job_id, BatchStatus.FAILED):
            _mark_reset(batch)
            try:
                self._upload(
                    self._batch_path(job_id, batch.batch_id),
                    batch_to_dict(batch),
                    if_generation_match=generation,
                )
            except gexc.PreconditionFailed:
                continue
            reset += 1
        return reset

    # Provider rate limits ------------------------------------------------
    def get_rate_limit(self, provider: str) -> ProviderRateLimitState | None:
        loaded = self._download(self._rate_limit_path(provider))
        return None if loaded is None else rate_limit_from_dict(loaded[0])

    def upsert_rate_limit(self, state: ProviderRateLimitState) -> ProviderRateLimitState:
        state.updated_at = _now_ts()
        self._upload(self._rate_limit_path(state.provider), rate_limit_to_dict(state))
        return state

    # Helpers -------------------------------------------------------------
    def _mutate_job(self, job_id: str, mutate: Callable[[TakeoffJob], None]) -> TakeoffJob:
        path = self._job_path(job_id)
        for attempt in range(_CAS_ATTEMPTS):
            loaded = self._download(path)
            if loaded is None:
                raise JobNotFoundError(job_id)
            job = job_from_dict(loaded[0])
            mutate(job)
            try:
                self._upload(path, job_to_dict(job), if_generation_match=loaded[1])
                return job
            except gexc.PreconditionFailed:
                self._sleep(0.1 * (attempt + 1))
        raise PersistenceError(f"Failed to update job {job_id} after multiple attempts")

    def _list_batches_with_generation(
        self, job_id: str, status: BatchStatus | None
    ) -> list[tuple[TakeoffBatch, int]]:
        found: list[tuple[TakeoffBatch, int]] = []
        prefix = f"{self._prefix}/jobs/{job_id}/batches/"
        for blob in self._client.list_blobs(self._bucket_name, prefix=prefix):
            loaded = self._download(blob.name)
            if loaded is None:
                continue
            batch = batch_from_dict(loaded[0])
            if status is None or batch.status == status:
                found.append((batch, loaded[1]))
        found.sort(key=lambda entry: entry[0].batch_index)
        return found

    def _download(self, path: str) -> tuple[Dict[str, Any], int] | None:
        blob = self._bucket.blob(path)
        for _attempt in range(_CAS_ATTEMPTS):
            try:
                blob.reload()
                generation = blob.generation
                data = blob.download_as_bytes(if_generation_match=generation)
            except gexc.NotFound:
                return None
            except gexc.PreconditionFailed:
                # Rewritten between reload and download; read again.
                continue
            return json.loads(data.decode("utf-8")), generation
        raise PersistenceError(f"Object {path} kept changing while being read")

    def _upload(
        self,
        path: str,
        payload: Dict[str, Any],
        *,
        if_generation_match: int | None = None,
    ) -> None:
        blob = self._bucket.blob(path)
        body = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        kwargs: Dict[str, Any] = {"content_type": "application/json"}
        if if_generation_match is not None:
            kwargs["if_generation_match"] = if_generation_match
        blob.upload_from_string(body, **kwargs)

    def _job_path(self, job_id: str) -> str:
        return f"{self._prefix}/jobs/{job_id}/job.json"

    def _batch_path(self, job_id: str, batch_id: str) -> str:
        return f"{self._prefix}/jobs/{job_id}/batches/{batch_id}.json"

    def _rate_limit_path(self, provider: str) -> str:
        return f"{self._prefix}/rate-limits/{provider}.json"


def create_state_store_from_env(cfg: AppConfig | None = None) -> TakeoffStateStore:
    """Instantiate the state store named by TAKEOFF_STATE_BACKEND in the app config."""

    cfg = cfg or get_config()
    backend = (cfg.state_backend or "memory").strip().lower()
    if backend == "gcs":
        bucket = cfg.state_bucket
        if not bucket:
            raise RuntimeError("TAKEOFF_STATE_BUCKET required when TAKEOFF_STATE_BACKEND=gcs")
        prefix = cfg.state_prefix or "takeoff-state"
        LOG.info("state_store_backend", extra={"backend": "gcs", "bucket": bucket, "prefix": prefix})
        return GCSStateStore(bucket=bucket, prefix=prefix)
    if backend != "memory":
        raise RuntimeError(f"Unsupported TAKEOFF_STATE_BACKEND: {backend}")
    LOG.info("state_store_backend", extra={"backend": "memory"})
    return InMemoryStateStore()


__all__ = [
    "TakeoffStateStore",
    "InMemoryStateStore",
    "GCSStateStore",
    "create_state_store_from_env",
]
