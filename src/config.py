"""Runtime configuration for the takeoff orchestrator.

Environment variables (names in parentheses) feed the defaults applied to new
jobs, the per-request limits enforced at the API edge, and the adapters used
for persistence, document download and model providers:

 - Provider credentials (OPENAI_API_KEY, ANTHROPIC_API_KEY)
 - Default model policy (TAKEOFF_PRIMARY_MODEL, TAKEOFF_FALLBACK_MODELS,
   TAKEOFF_MAX_TOKENS, TAKEOFF_TEMPERATURE)
 - Default batch config (TAKEOFF_BATCH_SIZE, TAKEOFF_CONCURRENCY,
   TAKEOFF_MAX_RETRIES, TAKEOFF_TIMEOUT_S)
 - Storage (DOCUMENT_BUCKET, TAKEOFF_STATE_BACKEND, TAKEOFF_STATE_BUCKET,
   TAKEOFF_STATE_PREFIX)
"""
from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in str(raw).split(",") if part.strip()]


class AppConfig(BaseSettings):
    openai_api_key: str | None = Field(None, validation_alias='OPENAI_API_KEY')
    anthropic_api_key: str | None = Field(
        None,
        validation_alias=AliasChoices('ANTHROPIC_API_KEY', 'CLAUDE_API_KEY'),
    )

    primary_model: str = Field('gpt-4o', validation_alias='TAKEOFF_PRIMARY_MODEL')
    # Comma separated; order is the fallback order.
    fallback_models_raw: str = Field(
        'claude-sonnet-4-20250514', validation_alias='TAKEOFF_FALLBACK_MODELS'
    )
    max_tokens: int = Field(4096, validation_alias='TAKEOFF_MAX_TOKENS')
    temperature: float = Field(0.2, validation_alias='TAKEOFF_TEMPERATURE')

    batch_size: int = Field(5, validation_alias='TAKEOFF_BATCH_SIZE')
    concurrency: int = Field(3, validation_alias='TAKEOFF_CONCURRENCY')
    max_retries: int = Field(3, validation_alias='TAKEOFF_MAX_RETRIES')
    timeout_s: int = Field(120, validation_alias='TAKEOFF_TIMEOUT_S')
    default_mode: str = Field('both', validation_alias='TAKEOFF_DEFAULT_MODE')
    default_job_type: str = Field('residential', validation_alias='TAKEOFF_DEFAULT_JOB_TYPE')

    document_bucket: str | None = Field(
        None, validation_alias=AliasChoices('DOCUMENT_BUCKET', 'PLANS_BUCKET')
    )
    state_backend: str = Field('memory', validation_alias='TAKEOFF_STATE_BACKEND')
    state_bucket: str | None = Field(None, validation_alias='TAKEOFF_STATE_BUCKET')
    state_prefix: str = Field('takeoff-state', validation_alias='TAKEOFF_STATE_PREFIX')

    max_pages_per_job: int = Field(200, validation_alias='MAX_PAGES_PER_JOB')
    max_active_jobs_per_user: int = Field(3, validation_alias='MAX_ACTIVE_JOBS_PER_USER')
    page_count_fallback: int = Field(100, validation_alias='PAGE_COUNT_FALLBACK')
    render_dpi: int = Field(144, validation_alias='RENDER_DPI')
    max_image_bytes: int = Field(4 * 1024 * 1024, validation_alias='MAX_IMAGE_BYTES')
    download_timeout_s: float = Field(60.0, validation_alias='DOCUMENT_DOWNLOAD_TIMEOUT_S')

    process_max_batches: int = Field(3, validation_alias='PROCESS_MAX_BATCHES')
    process_timeout_ms: int = Field(10000, validation_alias='PROCESS_TIMEOUT_MS')
    merge_require_full_coverage_raw: str | bool | None = Field(
        False, validation_alias='MERGE_REQUIRE_FULL_COVERAGE'
    )
    enable_metrics_raw: str | bool | None = Field(True, validation_alias='ENABLE_METRICS')

    model_config = SettingsConfigDict(env_file='.env', extra='ignore', case_sensitive=False)

    def model_post_init(self, __context: Any) -> None:  # pylint: disable=W0221
        self.default_mode = (self.default_mode or 'both').strip().lower()
        self.state_backend = (self.state_backend or 'memory').strip().lower()

    @property
    def fallback_models(self) -> list[str]:
        return _split_csv(self.fallback_models_raw)

    @property
    def merge_require_full_coverage(self) -> bool:
        raw = self.merge_require_full_coverage_raw
        if isinstance(raw, bool):
            return raw
        return parse_bool(str(raw))

    @property
    def enable_metrics(self) -> bool:
        raw = self.enable_metrics_raw
        if isinstance(raw, bool):
            return raw
        return parse_bool(str(raw))

    def validate_required(self) -> None:
        missing: list[str] = []
        models = [self.primary_model, *self.fallback_models]
        if any(_is_openai_model(m) for m in models) and not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if any(m.lower().startswith("claude") for m in models) and not self.anthropic_api_key:
            missing.append("ANTHROPIC_API_KEY")
        if self.state_backend == "gcs" and not self.state_bucket:
            missing.append("TAKEOFF_STATE_BUCKET")
        if missing:
            raise RuntimeError("Missing required configuration values: " + ", ".join(sorted(set(missing))))

        if self.batch_size < 1:
            raise RuntimeError("TAKEOFF_BATCH_SIZE must be at least 1")
        if self.concurrency < 1:
            raise RuntimeError("TAKEOFF_CONCURRENCY must be at least 1")
        if self.max_retries < 1:
            raise RuntimeError("TAKEOFF_MAX_RETRIES must be at least 1")
        if self.default_mode not in {"takeoff", "quality_analysis", "both"}:
            raise RuntimeError(f"Unsupported TAKEOFF_DEFAULT_MODE: {self.default_mode}")


def _is_openai_model(model: str) -> bool:
    lowered = model.lower()
    return lowered.startswith("gpt") or (lowered.startswith("o") and lowered[1:2].isdigit())


@lru_cache
def get_config() -> AppConfig:
    return AppConfig()  # type: ignore[call-arg]


__all__ = ["AppConfig", "get_config", "parse_bool"]
