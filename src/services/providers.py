"""Vision model providers used by the batch worker.

Each provider turns a `GenerateRequest` (system prompt, user prompt, page
images) into raw text plus token usage. SDK failures are normalised into
`ProviderError` carrying the upstream HTTP status so the worker can tell a
429 from anything else. SDK-level retries are disabled; the batch worker owns
retry and fallback.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Protocol

import anthropic
import openai

from src.errors import ProviderError

LOG = logging.getLogger("takeoff.providers")

_DATA_URL_PREFIX = "data:"


@dataclass(slots=True)
class GenerateRequest:
    model: str
    system_prompt: str
    user_prompt: str
    images: list[str] = field(default_factory=list)
    max_tokens: int = 4096
    temperature: float = 0.2
    timeout_s: float | None = None


@dataclass(slots=True)
class GenerateResult:
    content: str
    provider: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    processing_time_ms: int = 0

    @property
    def tokens_used(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def usage(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
        }


class ModelProvider(Protocol):
    name: str

    async def generate(self, request: GenerateRequest) -> GenerateResult: ...


def provider_name_for(model: str) -> str:
    """Map a model identifier onto the provider key used for rate limiting."""
    lowered = (model or "").strip().lower()
    if lowered.startswith("gpt") or (lowered[:1] == "o" and lowered[1:2].isdigit()):
        return "openai"
    if lowered.startswith("claude"):
        return "anthropic"
    if lowered.startswith("gemini"):
        return "gemini"
    return lowered.split("-", 1)[0] or "unknown"


def split_data_url(url: str) -> tuple[str, str] | None:
    """Return (media_type, base64 payload) for ``data:`` URLs, else None."""
    if not url.startswith(_DATA_URL_PREFIX):
        return None
    header, _, payload = url.partition(",")
    media_type = header[len(_DATA_URL_PREFIX):].split(";", 1)[0] or "image/png"
    return media_type, payload


class OpenAIProvider(ModelProvider):
    """Chat Completions with image parts and JSON response mode."""

    name = "openai"

    def __init__(self, *, api_key: str | None = None, client: Any | None = None) -> None:
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=self._api_key, max_retries=0)
        return self._client

    async def generate(self, request: GenerateRequest) -> GenerateResult:
        content: list[Dict[str, Any]] = [{"type": "text", "text": request.user_prompt}]
        content.extend(
            {"type": "image_url", "image_url": {"url": url, "detail": "high"}}
            for url in request.images
        )
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": content},
            ],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "response_format": {"type": "json_object"},
        }
        if request.timeout_s:
            kwargs["timeout"] = request.timeout_s
        started = time.perf_counter()
        try:
            completion = await self.client.chat.completions.create(**kwargs)
        except openai.APIStatusError as exc:
            raise ProviderError(
                f"OpenAI request failed: {exc}", status_code=exc.status_code, provider=self.name
            ) from exc
        except openai.APIError as exc:
            raise ProviderError(f"OpenAI request failed: {exc}", provider=self.name) from exc
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        text = completion.choices[0].message.content if completion.choices else None
        if not text:
            raise ProviderError("OpenAI returned empty content", provider=self.name)
        usage = getattr(completion, "usage", None)
        return GenerateResult(
            content=text,
            provider=self.name,
            model=request.model,
            prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            processing_time_ms=elapsed_ms,
        )


class AnthropicProvider(ModelProvider):
    """Messages API with base64 image blocks."""

    name = "anthropic"

    def __init__(self, *, api_key: str | None = None, client: Any | None = None) -> None:
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key, max_retries=0)
        return self._client

    @staticmethod
    def _image_block(url: str) -> Dict[str, Any]:
        parsed = split_data_url(url)
        if parsed is None:
            return {"type": "image", "source": {"type": "url", "url": url}}
        media_type, data = parsed
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": data},
        }

    async def generate(self, request: GenerateRequest) -> GenerateResult:
        content: list[Dict[str, Any]] = [self._image_block(url) for url in request.images]
        content.append({"type": "text", "text": request.user_prompt})
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "system": request.system_prompt,
            "messages": [{"role": "user", "content": content}],
        }
        if request.timeout_s:
            kwargs["timeout"] = request.timeout_s
        started = time.perf_counter()
        try:
            message = await self.client.messages.create(**kwargs)
        except anthropic.APIStatusError as exc:
            raise ProviderError(
                f"Anthropic request failed: {exc}", status_code=exc.status_code, provider=self.name
            ) from exc
        except anthropic.APIError as exc:
            raise ProviderError(f"Anthropic request failed: {exc}", provider=self.name) from exc
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        text = "".join(
            getattr(block, "text", "") for block in message.content if getattr(block, "type", "") == "text"
        )
        if not text:
            raise ProviderError("Anthropic returned empty content", provider=self.name)
        usage = getattr(message, "usage", None)
        return GenerateResult(
            content=text,
            provider=self.name,
            model=request.model,
            prompt_tokens=int(getattr(usage, "input_tokens", 0) or 0),
            completion_tokens=int(getattr(usage, "output_tokens", 0) or 0),
            processing_time_ms=elapsed_ms,
        )


class ProviderRegistry:
    """Routes model identifiers to the provider that serves them."""

    def __init__(self, providers: Iterable[ModelProvider] = ()) -> None:
        self._providers: Dict[str, ModelProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: ModelProvider) -> None:
        self._providers[provider.name] = provider

    def provider_name(self, model: str) -> str:
        return provider_name_for(model)

    def resolve(self, model: str) -> ModelProvider:
        name = provider_name_for(model)
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderError(f"No provider configured for model {model!r}", provider=name)
        return provider

    async def generate(self, request: GenerateRequest) -> GenerateResult:
        return await self.resolve(request.model).generate(request)


def build_default_registry(
    *, openai_api_key: str | None = None, anthropic_api_key: str | None = None
) -> ProviderRegistry:
    return ProviderRegistry(
        [
            OpenAIProvider(api_key=openai_api_key),
            AnthropicProvider(api_key=anthropic_api_key),
        ]
    )


__all__ = [
    "GenerateRequest",
    "GenerateResult",
    "ModelProvider",
    "OpenAIProvider",
    "AnthropicProvider",
    "ProviderRegistry",
    "build_default_registry",
    "provider_name_for",
    "split_data_url",
]
