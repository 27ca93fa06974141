"""Plan PDF retrieval from object storage or a direct URL."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from google.api_core import exceptions as gexc
from google.cloud import storage
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from src.errors import DocumentLoadError
from src.services.interfaces import DocumentStore

LOG = logging.getLogger("takeoff.documents")


def parse_storage_ref(ref: str, default_bucket: str | None = None) -> tuple[str, str]:
    """Split ``gs://bucket/key`` or a bucket-relative key into (bucket, key)."""
    cleaned = (ref or "").strip()
    if not cleaned:
        raise DocumentLoadError("Document reference is empty")
    if cleaned.startswith("gs://"):
        bucket, _, key = cleaned[5:].partition("/")
        if not bucket or not key:
            raise DocumentLoadError(f"Invalid storage URI; expected gs://bucket/object: {ref}")
        return bucket, key
    if "://" in cleaned:
        raise DocumentLoadError(f"Unsupported document reference scheme: {ref}")
    if not default_bucket:
        raise DocumentLoadError(
            f"Document reference {ref!r} is bucket-relative but no DOCUMENT_BUCKET is configured"
        )
    return default_bucket, cleaned.lstrip("/")


def _is_retryable_http_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


class PlanDocumentStore(DocumentStore):
    """Downloads plan PDFs from GCS (``gs://`` or bucket-relative keys) or HTTP(S)."""

    def __init__(
        self,
        *,
        default_bucket: str | None = None,
        storage_client: Any | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float = 60.0,
        max_attempts: int = 3,
    ) -> None:
        self._default_bucket = default_bucket
        self._storage_client = storage_client
        self._http_transport = http_transport
        self._timeout_s = timeout_s
        self._max_attempts = max_attempts

    async def download(self, ref: str) -> bytes:
        cleaned = (ref or "").strip()
        if cleaned.startswith(("http://", "https://")):
            data = await self._download_http(cleaned)
        else:
            bucket, key = parse_storage_ref(cleaned, self._default_bucket)
            data = await asyncio.to_thread(self._download_gcs, bucket, key)
        if not data:
            raise DocumentLoadError(f"Document {ref} is empty")
        LOG.debug("document_downloaded", extra={"ref": ref, "bytes": len(data)})
        return data

    async def _download_http(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(
                transport=self._http_transport,
                timeout=self._timeout_s,
                follow_redirects=True,
            ) as client:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self._max_attempts),
                    wait=wait_random_exponential(multiplier=0.5, max=10),
                    retry=retry_if_exception(_is_retryable_http_error),
                    reraise=True,
                ):
                    with attempt:
                        response = await client.get(url)
                        response.raise_for_status()
                        return response.content
        except httpx.HTTPStatusError as exc:
            raise DocumentLoadError(
                f"Document download failed with HTTP {exc.response.status_code}: {url}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DocumentLoadError(f"Document download failed: {exc}") from exc
        raise DocumentLoadError(f"Document download retries exhausted: {url}")

    def _download_gcs(self, bucket: str, key: str) -> bytes:
        if self._storage_client is None:
            self._storage_client = storage.Client()
        blob = self._storage_client.bucket(bucket).blob(key)
        try:
            return blob.download_as_bytes()
        except gexc.NotFound as exc:
            raise DocumentLoadError(f"Document not found: gs://{bucket}/{key}") from exc
        except gexc.GoogleAPICallError as exc:
            raise DocumentLoadError(f"Document download failed for gs://{bucket}/{key}: {exc}") from exc


__all__ = ["PlanDocumentStore", "parse_storage_ref"]
