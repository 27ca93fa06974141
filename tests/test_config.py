import pytest

from src.config import AppConfig, get_config, parse_bool
from tests.stubs.takeoff_fakes import make_config

TAKEOFF_ENV = [
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "CLAUDE_API_KEY",
    "TAKEOFF_PRIMARY_MODEL",
    "TAKEOFF_FALLBACK_MODELS",
    "TAKEOFF_BATCH_SIZE",
    "TAKEOFF_STATE_BACKEND",
    "TAKEOFF_STATE_BUCKET",
    "TAKEOFF_DEFAULT_MODE",
    "MERGE_REQUIRE_FULL_COVERAGE",
    "ENABLE_METRICS",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in TAKEOFF_ENV:
        monkeypatch.delenv(key, raising=False)
    get_config.cache_clear()
    yield monkeypatch
    get_config.cache_clear()


def test_defaults(clean_env):
    cfg = AppConfig(_env_file=None)

    assert cfg.primary_model == "gpt-4o"
    assert cfg.fallback_models == ["claude-sonnet-4-20250514"]
    assert (cfg.batch_size, cfg.concurrency, cfg.max_retries, cfg.timeout_s) == (5, 3, 3, 120)
    assert cfg.max_pages_per_job == 200
    assert cfg.max_active_jobs_per_user == 3
    assert cfg.page_count_fallback == 100
    assert cfg.state_backend == "memory"
    assert cfg.merge_require_full_coverage is False
    assert cfg.enable_metrics is True


def test_env_overrides(clean_env):
    clean_env.setenv("TAKEOFF_FALLBACK_MODELS", "claude-3-5-sonnet, gpt-4o-mini ,")
    clean_env.setenv("TAKEOFF_BATCH_SIZE", "8")
    clean_env.setenv("TAKEOFF_DEFAULT_MODE", " Takeoff ")
    clean_env.setenv("CLAUDE_API_KEY", "legacy-key")
    clean_env.setenv("MERGE_REQUIRE_FULL_COVERAGE", "yes")
    clean_env.setenv("ENABLE_METRICS", "0")

    cfg = get_config()

    assert cfg.fallback_models == ["claude-3-5-sonnet", "gpt-4o-mini"]
    assert cfg.batch_size == 8
    assert cfg.default_mode == "takeoff"
    assert cfg.anthropic_api_key == "legacy-key"
    assert cfg.merge_require_full_coverage is True
    assert cfg.enable_metrics is False
    assert get_config() is cfg


def test_validate_required_names_missing_keys(clean_env):
    cfg = AppConfig(_env_file=None)
    with pytest.raises(RuntimeError) as excinfo:
        cfg.validate_required()
    assert "ANTHROPIC_API_KEY" in str(excinfo.value)
    assert "OPENAI_API_KEY" in str(excinfo.value)

    make_config().validate_required()


def test_validate_required_checks_backend_and_limits(clean_env):
    with pytest.raises(RuntimeError, match="TAKEOFF_STATE_BUCKET"):
        make_config(TAKEOFF_STATE_BACKEND="gcs").validate_required()
    make_config(TAKEOFF_STATE_BACKEND="GCS", TAKEOFF_STATE_BUCKET="state").validate_required()

    with pytest.raises(RuntimeError, match="TAKEOFF_BATCH_SIZE"):
        make_config(TAKEOFF_BATCH_SIZE=0).validate_required()
    with pytest.raises(RuntimeError, match="TAKEOFF_DEFAULT_MODE"):
        make_config(TAKEOFF_DEFAULT_MODE="estimate").validate_required()


def test_anthropic_only_policy_needs_no_openai_key(clean_env):
    cfg = AppConfig(
        _env_file=None,
        ANTHROPIC_API_KEY="ak",
        TAKEOFF_PRIMARY_MODEL="claude-sonnet-4-20250514",
        TAKEOFF_FALLBACK_MODELS="",
    )
    cfg.validate_required()
    assert cfg.fallback_models == []


@pytest.mark.parametrize(
    "raw,expected",
    [("1", True), ("TRUE", True), (" on ", True), ("no", False), ("", False), (None, False)],
)
def test_parse_bool(raw, expected):
    assert parse_bool(raw) is expected
