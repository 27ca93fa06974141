"""In-process stand-ins for documents, PDF extraction, providers and GCS."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from google.api_core import exceptions as gexc

from src.config import AppConfig
from src.errors import DocumentLoadError, ProviderError
from src.services.page_loader import PageContent
from src.services.providers import GenerateRequest, GenerateResult

FAKE_IMAGE = "data:image/png;base64,iVBORw0KGgo="
PLAN_REF = "gs://plans/plan.pdf"


def analysis_json(page: int, *names: str, y: float = 0.1, confidence: float = 0.9, **quality: Any) -> str:
    """Model output for one batch: one item per name on ``page``."""
    items = [
        {
            "name": name,
            "quantity": 10,
            "unit": "LF",
            "category": "structural",
            "confidence": confidence,
            "bounding_box": {"page": page, "x": 0.1, "y": y + 0.1 * idx, "width": 0.2, "height": 0.05},
        }
        for idx, name in enumerate(names)
    ]
    qa = {"summary": f"page {page}", "risks": [], "missing_info": [], "assumptions": [], "code_refs": []}
    qa.update(quality)
    return json.dumps({"items": items, "quality_analysis": qa})


class FakeDocumentStore:
    def __init__(self, documents: Dict[str, bytes] | None = None) -> None:
        self.documents = documents if documents is not None else {PLAN_REF: b"%PDF-1.7 fake"}
        self.calls: List[str] = []

    async def download(self, ref: str) -> bytes:
        self.calls.append(ref)
        if ref not in self.documents:
            raise DocumentLoadError(f"Document not found: {ref}")
        return self.documents[ref]


class FakeExtractor:
    def __init__(self, total_pages: int = 23, blank_pages: set[int] | None = None) -> None:
        self.total_pages = total_pages
        self.blank_pages = blank_pages or set()

    def page_count(self, data: bytes) -> int:
        return self.total_pages

    def extract_pages(self, data: bytes, page_start: int, page_end: int) -> list[PageContent]:
        return [
            PageContent(
                page=page,
                image_url=None if page in self.blank_pages or page > self.total_pages else FAKE_IMAGE,
                text=f"Sheet A-{page}",
            )
            for page in range(page_start, page_end + 1)
        ]


Responder = Callable[[GenerateRequest], str]


def first_page(request: GenerateRequest) -> int:
    marker = "(pages "
    prompt = request.user_prompt
    if marker in prompt:
        return int(prompt.split(marker, 1)[1].split("-", 1)[0])
    return 1


@dataclass
class FakeProvider:
    """Scripted provider; ``responder`` returns content or raises."""

    name: str
    responder: Responder | None = None
    requests: List[GenerateRequest] = field(default_factory=list)
    tokens: int = 100

    async def generate(self, request: GenerateRequest) -> GenerateResult:
        self.requests.append(request)
        if self.responder is None:
            page = first_page(request)
            content = analysis_json(page, f"Wall {page}")
        else:
            content = self.responder(request)
        return GenerateResult(
            content=content,
            provider=self.name,
            model=request.model,
            prompt_tokens=self.tokens,
            completion_tokens=self.tokens // 2,
            processing_time_ms=25,
        )


def rate_limited(request: GenerateRequest) -> str:
    raise ProviderError("429 Too Many Requests", status_code=429, provider="openai")


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_config(**env: Any) -> AppConfig:
    values: Dict[str, Any] = {
        "OPENAI_API_KEY": "sk-test",
        "ANTHROPIC_API_KEY": "anthropic-test",
        "TAKEOFF_STATE_BACKEND": "memory",
        "ENABLE_METRICS": "false",
    }
    values.update(env)
    return AppConfig(_env_file=None, **values)


class FakeGCSBlob:
    def __init__(self, bucket: "FakeGCSBucket", name: str) -> None:
        self._bucket = bucket
        self.name = name
        self.generation: int | None = None

    def reload(self) -> None:
        with self._bucket.lock:
            entry = self._bucket.objects.get(self.name)
            if entry is None:
                raise gexc.NotFound(f"{self.name} not found")
            self.generation = entry[1]

    def download_as_bytes(self, if_generation_match: int | None = None) -> bytes:
        with self._bucket.lock:
            entry = self._bucket.objects.get(self.name)
            if entry is None:
                raise gexc.NotFound(f"{self.name} not found")
            if if_generation_match is not None and entry[1] != if_generation_match:
                raise gexc.PreconditionFailed("generation mismatch")
            return entry[0]

    def upload_from_string(
        self, data: str, *, content_type: str | None = None, if_generation_match: int | None = None
    ) -> None:
        with self._bucket.lock:
            current = self._bucket.objects.get(self.name)
            current_generation = current[1] if current else 0
            if if_generation_match is not None and if_generation_match != current_generation:
                raise gexc.PreconditionFailed("generation mismatch")
            self._bucket.objects[self.name] = (data.encode("utf-8"), current_generation + 1)
            self._bucket.uploads.append(self.name)


class FakeGCSBucket:
    def __init__(self) -> None:
        self.objects: Dict[str, tuple[bytes, int]] = {}
        self.uploads: List[str] = []
        self.lock = threading.RLock()

    def blob(self, name: str) -> FakeGCSBlob:
        return FakeGCSBlob(self, name)


class FakeGCSClient:
    def __init__(self) -> None:
        self.buckets: Dict[str, FakeGCSBucket] = {}

    def bucket(self, name: str) -> FakeGCSBucket:
        return self.buckets.setdefault(name, FakeGCSBucket())

    def list_blobs(self, bucket_name: str, prefix: str = "") -> list[FakeGCSBlob]:
        bucket = self.bucket(bucket_name)
        with bucket.lock:
            names = sorted(name for name in bucket.objects if name.startswith(prefix))
        return [FakeGCSBlob(bucket, name) for name in names]
