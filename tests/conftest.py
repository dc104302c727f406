"""Shared pytest fixtures for the Rate Extract API test suite."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from rate_extract.core import metrics
from rate_extract.core.config import Settings, get_settings
from rate_extract.schemas import Contract, RecordKind, TaskSection
from rate_extract.services.active_jobs import ActiveJobRegistry
from rate_extract.services.assistant_client import AssistantOutcome, AssistantReply
from rate_extract.services.orchestrator import ExtractionOrchestrator
from rate_extract.services.schema_registry import SchemaRegistry, get_schema_registry
from rate_extract.stores.artifacts import LocalArtifactStore
from rate_extract.stores.contracts import InMemoryContractStore
from rate_extract.stores.jobs import InMemoryJobStore

TENANT = "tenant-1"
USER = "user-1"
CALLER_HEADERS = {"X-Tenant-ID": TENANT, "X-User-ID": USER}


# ── Environment ─────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _memory_backend(monkeypatch, tmp_path):
    """Run every test against the in-process stores and counters."""
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("EXTRACTION_OUTPUT_DIR", str(tmp_path / "extraction-output"))
    get_settings.cache_clear()
    metrics.reset_local_counters()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with no inter-section delay and a default assistant."""
    return Settings(
        _env_file=None,
        STORE_BACKEND="memory",
        EXTRACTION_OUTPUT_DIR=str(tmp_path / "extraction-output"),
        DEFAULT_ASSISTANT_ID="asst-default",
        SECTION_DELAY_SECONDS=0.0,
        SECTION_DELAY_HEAVY_SECONDS=0.0,
        SECTION_TIMEOUTS={"BaseRates": 600},
    )


@pytest.fixture
def schema_registry() -> SchemaRegistry:
    """The bundled nine-section schema."""
    return get_schema_registry()


# ── Assistant stand-in ──────────────────────────────────────────────────────


def good_reply_for(section: TaskSection) -> str:
    """A fenced JSON reply filling every required field of *section*."""
    record = {name: f"{name}-value" for name in section.required_fields}
    payload: dict[str, Any] = (
        {"rows": [record]} if section.record_type == RecordKind.ROWS else record
    )
    return f"Here is the result:\n```json\n{json.dumps(payload)}\n```"


@dataclass
class FakeAssistant:
    """Stand-in for ``AssistantClient`` returning canned outcomes per section."""

    schema: SchemaRegistry
    outcomes: dict[str, AssistantOutcome] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    tokens_per_section: int = 100
    calls: list[dict[str, Any]] = field(default_factory=list)
    on_query: Any = None

    async def query(
        self,
        assistant_id: str | None,
        prompt: str,
        section: str,
        timeout_s: float,
    ) -> AssistantOutcome:
        self.calls.append(
            {
                "assistant_id": assistant_id,
                "prompt": prompt,
                "section": section,
                "timeout_s": timeout_s,
            }
        )
        if self.on_query is not None:
            self.on_query(section)
        if section in self.errors:
            raise self.errors[section]
        if section in self.outcomes:
            return self.outcomes[section]
        task = self.schema.get_section(section)
        return AssistantReply(content=good_reply_for(task), tokens_used=self.tokens_per_section)


# ── Orchestrator wiring ─────────────────────────────────────────────────────


@pytest.fixture
def contract() -> Contract:
    return Contract(
        id="contract-1",
        tenant_id=TENANT,
        carrier_name="MAERSK",
        contract_number="SC123456",
        file_name="maersk-2025.pdf",
    )


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def contract_store(contract) -> InMemoryContractStore:
    store = InMemoryContractStore()
    store.save_contract(contract)
    return store


@pytest.fixture
def artifact_store(settings) -> LocalArtifactStore:
    return LocalArtifactStore(Path(settings.EXTRACTION_OUTPUT_DIR))


@pytest.fixture
def fake_assistant(schema_registry) -> FakeAssistant:
    return FakeAssistant(schema=schema_registry)


@pytest.fixture
def dispatched() -> list[str]:
    """Job IDs handed to the dispatcher."""
    return []


@pytest.fixture
def sleeps() -> list[float]:
    """Inter-section delays requested by the orchestrator."""
    return []


@pytest.fixture
def orchestrator(
    settings,
    schema_registry,
    job_store,
    contract_store,
    artifact_store,
    fake_assistant,
    dispatched,
    sleeps,
) -> ExtractionOrchestrator:
    """Orchestrator on in-memory stores with a fake assistant and no real sleeping."""

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return ExtractionOrchestrator(
        jobs=job_store,
        contracts=contract_store,
        artifacts=artifact_store,
        schema=schema_registry,
        assistant=fake_assistant,
        settings=settings,
        dispatch=dispatched.append,
        active=ActiveJobRegistry(),
        sleep=_sleep,
        notify=AsyncMock(return_value=True),
    )


# ── HTTP client ─────────────────────────────────────────────────────────────


@pytest.fixture
async def client(orchestrator) -> AsyncClient:  # type: ignore[misc]
    """
    Yield an async HTTP client bound to the FastAPI app, with the
    orchestrator dependency replaced by the in-memory one.

    Usage::

        async def test_something(client: AsyncClient):
            response = await client.get("/api/v1/health")
    """
    from rate_extract.api.deps import get_orchestrator
    from rate_extract.main import app

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(
            transport=transport,
            base_url="http://test",
        ) as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()
