"""
FastAPI dependency-injection helpers.

Provides ``Depends()``-compatible accessors for the caller's
identity and for the process-wide orchestrator.  Tests swap the
orchestrator through ``app.dependency_overrides[get_orchestrator]``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from fastapi import Header

from rate_extract.core.config import get_settings
from rate_extract.services.factory import build_orchestrator
from rate_extract.services.orchestrator import ExtractionOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    """Tenant and user on whose behalf a request is made."""

    tenant_id: str
    user_id: str


def get_caller(
    x_tenant_id: str = Header(..., min_length=1, description="Caller's tenant"),
    x_user_id: str = Header(..., min_length=1, description="Caller's user"),
) -> Caller:
    """Caller identity from the gateway-set ``X-Tenant-ID`` / ``X-User-ID`` headers."""
    return Caller(tenant_id=x_tenant_id, user_id=x_user_id)


def _celery_dispatch(job_id: str) -> None:
    from rate_extract.workers.extraction_task import process_extraction_job

    process_extraction_job.delay(job_id)


@lru_cache
def get_orchestrator() -> ExtractionOrchestrator:
    """Process-wide orchestrator for the API.

    With the ``redis`` store, jobs are handed to the Celery worker.
    With the ``memory`` store there is no dispatcher and the start
    route runs the job as a background task in this process.
    """
    settings = get_settings()
    dispatch = _celery_dispatch if settings.STORE_BACKEND == "redis" else None
    logger.info(
        "Building orchestrator (store=%s, dispatch=%s)",
        settings.STORE_BACKEND,
        "celery" if dispatch else "in-process",
    )
    return build_orchestrator(settings, dispatch=dispatch)
