"""Extraction-job Celery task and worker shutdown hooks."""

from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any

from celery.signals import worker_process_shutdown, worker_shutting_down

from rate_extract.core.config import get_settings
from rate_extract.services.factory import build_orchestrator
from rate_extract.services.orchestrator import ExtractionOrchestrator
from rate_extract.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@lru_cache
def get_worker_orchestrator() -> ExtractionOrchestrator:
    """The worker process's orchestrator (and its active-job registry)."""
    return build_orchestrator(get_settings())


@celery_app.task(
    bind=True,
    name="tasks.process_extraction_job",
)
def process_extraction_job(self, job_id: str) -> dict[str, Any]:
    """Run every section of extraction job *job_id*.

    The orchestrator records all outcomes on the job itself, so
    the task is never retried: a redelivered job that is no longer
    ``pending`` is skipped.

    Args:
        job_id: ID of a job created by ``ExtractionOrchestrator.start``.

    Returns:
        The job ID and the status it ended in.
    """
    logger.info("Worker picked up extraction job %s (task %s)", job_id, self.request.id)
    # ``asyncio.run()`` is safe here because Celery worker threads
    # do not have a running event loop.
    job = asyncio.run(get_worker_orchestrator().process(job_id))
    return {
        "job_id": job_id,
        "status": str(job.status) if job is not None else "missing",
    }


def _cancel_running_jobs(**_kwargs: Any) -> None:
    if get_worker_orchestrator.cache_info().currsize == 0:
        return
    cancelled = get_worker_orchestrator().shutdown()
    if cancelled:
        logger.info("Marked %d running job(s) cancelled on shutdown", len(cancelled))


# The main process fires ``worker_shutting_down``; prefork children,
# where tasks actually run, fire ``worker_process_shutdown``.
worker_shutting_down.connect(_cancel_running_jobs, weak=False)
worker_process_shutdown.connect(_cancel_running_jobs, weak=False)
