from __future__ import annotations

import pytest

from src.config import AppConfig
from src.services.orchestrator import TakeoffOrchestrator
from src.services.providers import ProviderRegistry
from src.services.state_store import InMemoryStateStore
from tests.stubs.takeoff_fakes import (
    FakeDocumentStore,
    FakeExtractor,
    FakeGCSClient,
    FakeProvider,
    RecordingSleep,
    make_config,
)


@pytest.fixture
def config() -> AppConfig:
    return make_config()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def openai_provider() -> FakeProvider:
    return FakeProvider(name="openai")


@pytest.fixture
def anthropic_provider() -> FakeProvider:
    return FakeProvider(name="anthropic")


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor(total_pages=23)


@pytest.fixture
def document_store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def orchestrator(
    config, store, document_store, openai_provider, anthropic_provider, sleeper, extractor
) -> TakeoffOrchestrator:
    return TakeoffOrchestrator(
        store=store,
        document_store=document_store,
        registry=ProviderRegistry([openai_provider, anthropic_provider]),
        config=config,
        extractor=extractor,
        sleep=sleeper,
        jitter_ms=lambda: 0.0,
    )


@pytest.fixture
def gcs_client() -> FakeGCSClient:
    return FakeGCSClient()
