"""Wiring of the orchestrator from settings, shared by the API and workers."""

from __future__ import annotations

from rate_extract.core.config import Settings
from rate_extract.services.active_jobs import ActiveJobRegistry
from rate_extract.services.assistant_client import AssistantClient
from rate_extract.services.orchestrator import Dispatch, ExtractionOrchestrator
from rate_extract.services.schema_registry import get_schema_registry
from rate_extract.stores.artifacts import LocalArtifactStore
from rate_extract.stores.contracts import ContractStore, build_contract_store
from rate_extract.stores.jobs import JobStore, build_job_store


def build_orchestrator(
    settings: Settings,
    *,
    dispatch: Dispatch | None = None,
    jobs: JobStore | None = None,
    contracts: ContractStore | None = None,
) -> ExtractionOrchestrator:
    """Build an orchestrator on the stores selected by ``STORE_BACKEND``.

    Each call gets its own ``ActiveJobRegistry``; callers keep the
    instance for the life of the process.
    """
    return ExtractionOrchestrator(
        jobs=jobs if jobs is not None else build_job_store(settings.STORE_BACKEND),
        contracts=(
            contracts
            if contracts is not None
            else build_contract_store(settings.STORE_BACKEND)
        ),
        artifacts=LocalArtifactStore(settings.EXTRACTION_OUTPUT_DIR),
        schema=get_schema_registry(),
        assistant=AssistantClient.from_settings(settings),
        settings=settings,
        dispatch=dispatch,
        active=ActiveJobRegistry(),
    )
