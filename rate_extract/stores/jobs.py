"""
Extraction-job persistence.

Two backends share one interface:

===============  ==============================================
``redis``        Default.  Shared by the API and every worker.
``memory``       Single-process; local development and tests.
===============  ==============================================

Select via the ``STORE_BACKEND`` env-var.

Both backends enforce the same rules so callers never have to:

- at most one ``pending``/``processing`` job per contract, claimed
  atomically at creation (``ActiveJobExistsError`` otherwise);
- status moves forward only (``set_status`` returns ``False`` for
  an illegal move and leaves the job untouched);
- progress never goes backwards, never exceeds the section count
  and is frozen once the job is terminal.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

import redis

from rate_extract.core.constants import (
    REDIS_PREFIX_ACTIVE_JOB,
    REDIS_PREFIX_CONTRACT_JOBS,
    REDIS_PREFIX_JOB,
)
from rate_extract.core.redis import get_redis_client
from rate_extract.schemas.enums import JobStatus, SectionStatus, can_transition
from rate_extract.schemas.jobs import ExtractionJob, utcnow

logger = logging.getLogger(__name__)

# Optimistic-lock retries before giving up on a contended job key.
_MAX_WATCH_RETRIES: int = 10

# Attempts to claim a contract's active marker (stale markers are cleared).
_CLAIM_ATTEMPTS: int = 3


class ActiveJobExistsError(Exception):
    """The contract already has a pending or processing job."""

    def __init__(self, contract_id: str, job: ExtractionJob | None) -> None:
        self.contract_id = contract_id
        self.job = job
        holder = job.id if job is not None else "unknown"
        super().__init__(
            f"Contract {contract_id} already has an active extraction job ({holder})"
        )


class JobStore(Protocol):
    """Interface implemented by every job-store backend."""

    def create_job(self, job: ExtractionJob) -> ExtractionJob: ...

    def get_job(self, job_id: str) -> ExtractionJob | None: ...

    def update_progress(
        self,
        job_id: str,
        *,
        completed_sections: int,
        current_section: str | None,
        sections_status: dict[str, SectionStatus],
        tokens_used: int,
    ) -> ExtractionJob | None: ...

    def set_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error_message: str | None = None,
    ) -> bool: ...

    def list_jobs_for_contract(self, contract_id: str) -> list[ExtractionJob]: ...

    def find_active_job_for_contract(self, contract_id: str) -> ExtractionJob | None: ...


# ── Shared state rules ──────────────────────────────────────


def apply_progress(
    job: ExtractionJob,
    *,
    completed_sections: int,
    current_section: str | None,
    sections_status: dict[str, SectionStatus],
    tokens_used: int,
) -> ExtractionJob | None:
    """Return *job* with progress merged in, or ``None`` if frozen.

    Counters only move forward and ``completed_sections`` is capped
    at ``total_sections``.
    """
    if job.status.is_terminal:
        return None
    merged_status = dict(job.sections_status)
    merged_status.update(sections_status)
    return job.model_copy(
        update={
            "completed_sections": min(
                job.total_sections,
                max(job.completed_sections, completed_sections),
            ),
            "current_section": current_section,
            "sections_status": merged_status,
            "tokens_used": max(job.tokens_used, tokens_used),
        }
    )


def apply_status(
    job: ExtractionJob,
    status: JobStatus,
    error_message: str | None,
) -> ExtractionJob | None:
    """Return *job* moved to *status*, or ``None`` for an illegal move.

    Stamps ``started_at`` on entering ``processing`` and
    ``completed_at`` on entering any terminal state.
    """
    if not can_transition(job.status, status):
        return None
    update: dict[str, object] = {"status": status}
    if error_message is not None:
        update["error_message"] = error_message
    if status == JobStatus.PROCESSING:
        update["started_at"] = utcnow()
    if status.is_terminal:
        update["completed_at"] = utcnow()
        update["current_section"] = None
    return job.model_copy(update=update)


# ── In-memory backend ───────────────────────────────────────


class InMemoryJobStore:
    """Thread-safe, process-local job store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, ExtractionJob] = {}
        self._active: dict[str, str] = {}

    def create_job(self, job: ExtractionJob) -> ExtractionJob:
        """Persist a new job, claiming its contract's active slot.

        Raises:
            ActiveJobExistsError: If the contract already has a
                pending or processing job.
        """
        with self._lock:
            holder_id = self._active.get(job.contract_id)
            if holder_id is not None:
                holder = self._jobs.get(holder_id)
                if holder is not None and holder.status.is_active:
                    raise ActiveJobExistsError(job.contract_id, holder.model_copy(deep=True))
            self._jobs[job.id] = job.model_copy(deep=True)
            if job.status.is_active:
                self._active[job.contract_id] = job.id
        logger.debug("Created job %s for contract %s", job.id, job.contract_id)
        return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> ExtractionJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def _mutate(
        self,
        job_id: str,
        change: Callable[[ExtractionJob], ExtractionJob | None],
    ) -> ExtractionJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            updated = change(job)
            if updated is None:
                return None
            self._jobs[job_id] = updated
            if updated.status.is_terminal and self._active.get(updated.contract_id) == job_id:
                del self._active[updated.contract_id]
            return updated.model_copy(deep=True)

    def update_progress(
        self,
        job_id: str,
        *,
        completed_sections: int,
        current_section: str | None,
        sections_status: dict[str, SectionStatus],
        tokens_used: int,
    ) -> ExtractionJob | None:
        return self._mutate(
            job_id,
            lambda job: apply_progress(
                job,
                completed_sections=completed_sections,
                current_section=current_section,
                sections_status=sections_status,
                tokens_used=tokens_used,
            ),
        )

    def set_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error_message: str | None = None,
    ) -> bool:
        updated = self._mutate(job_id, lambda job: apply_status(job, status, error_message))
        if updated is None:
            logger.warning("Rejected status change of job %s to %s", job_id, status)
            return False
        return True

    def list_jobs_for_contract(self, contract_id: str) -> list[ExtractionJob]:
        """Jobs for *contract_id*, newest first."""
        with self._lock:
            jobs = [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if job.contract_id == contract_id
            ]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    def find_active_job_for_contract(self, contract_id: str) -> ExtractionJob | None:
        with self._lock:
            holder_id = self._active.get(contract_id)
            job = self._jobs.get(holder_id) if holder_id else None
            if job is None or not job.status.is_active:
                return None
            return job.model_copy(deep=True)


# ── Redis backend ───────────────────────────────────────────


class RedisJobStore:
    """Redis-backed job store shared by the API and the workers.

    Layout::

        extraction_job:{id}              JSON document
        contract_jobs:{contract_id}      sorted set of job IDs by created_at
        contract_active_job:{contract}   ID of the single active job

    The job document is written first and the active marker is then
    claimed with ``SET NX``, so the marker never names a missing
    document. Job updates use ``WATCH``/``MULTI`` so concurrent
    writers never lose an update.
    """

    def __init__(self, client_factory: Callable[[], redis.Redis] | None = None) -> None:
        self._client_factory = client_factory or get_redis_client

    @staticmethod
    def _job_key(job_id: str) -> str:
        return f"{REDIS_PREFIX_JOB}{job_id}"

    @staticmethod
    def _marker_key(contract_id: str) -> str:
        return f"{REDIS_PREFIX_ACTIVE_JOB}{contract_id}"

    @staticmethod
    def _index_key(contract_id: str) -> str:
        return f"{REDIS_PREFIX_CONTRACT_JOBS}{contract_id}"

    def _load(self, client: redis.Redis, job_id: str) -> ExtractionJob | None:
        raw = client.get(self._job_key(job_id))
        if raw is None:
            return None
        return ExtractionJob.model_validate_json(raw)

    def _release_marker(self, client: redis.Redis, contract_id: str, job_id: str) -> None:
        """Delete the contract's active marker if *job_id* still holds it."""
        marker = self._marker_key(contract_id)
        with client.pipeline() as pipe:
            try:
                pipe.watch(marker)
                if pipe.get(marker) != job_id:
                    pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(marker)
                pipe.execute()
            except redis.WatchError:
                logger.debug("Active marker for %s changed during release", contract_id)

    def _claim_marker(self, client: redis.Redis, job: ExtractionJob) -> None:
        marker = self._marker_key(job.contract_id)
        holder: ExtractionJob | None = None
        for _ in range(_CLAIM_ATTEMPTS):
            if client.set(marker, job.id, nx=True):
                return
            holder_id = client.get(marker)
            if holder_id is None:
                continue
            holder = self._load(client, holder_id)
            if holder is not None and holder.status.is_active:
                raise ActiveJobExistsError(job.contract_id, holder)
            logger.warning(
                "Clearing stale active marker %s -> %s",
                marker,
                holder_id,
            )
            self._release_marker(client, job.contract_id, holder_id)
        raise ActiveJobExistsError(job.contract_id, holder)

    def create_job(self, job: ExtractionJob) -> ExtractionJob:
        """Persist a new job, claiming its contract's active slot.

        Raises:
            ActiveJobExistsError: If the contract already has a
                pending or processing job.
        """
        client = self._client_factory()
        try:
            # The document must exist before the marker names it, so a
            # concurrent creator never mistakes a fresh claim for a stale one.
            client.set(self._job_key(job.id), job.model_dump_json())
            if job.status.is_active:
                try:
                    self._claim_marker(client, job)
                except ActiveJobExistsError:
                    client.delete(self._job_key(job.id))
                    raise
            client.zadd(
                self._index_key(job.contract_id),
                {job.id: job.created_at.timestamp()},
            )
            logger.debug("Created job %s for contract %s", job.id, job.contract_id)
            return job
        finally:
            client.close()

    def get_job(self, job_id: str) -> ExtractionJob | None:
        client = self._client_factory()
        try:
            return self._load(client, job_id)
        finally:
            client.close()

    def _mutate(
        self,
        job_id: str,
        change: Callable[[ExtractionJob], ExtractionJob | None],
    ) -> ExtractionJob | None:
        key = self._job_key(job_id)
        client = self._client_factory()
        try:
            for _ in range(_MAX_WATCH_RETRIES):
                with client.pipeline() as pipe:
                    try:
                        pipe.watch(key)
                        raw = pipe.get(key)
                        if raw is None:
                            pipe.unwatch()
                            return None
                        updated = change(ExtractionJob.model_validate_json(raw))
                        if updated is None:
                            pipe.unwatch()
                            return None
                        pipe.multi()
                        pipe.set(key, updated.model_dump_json())
                        pipe.execute()
                    except redis.WatchError:
                        logger.debug("Job %s changed concurrently; retrying", job_id)
                        continue
                if updated.status.is_terminal:
                    self._release_marker(client, updated.contract_id, job_id)
                return updated
            raise RuntimeError(f"Job {job_id} is too contended to update")
        finally:
            client.close()

    def update_progress(
        self,
        job_id: str,
        *,
        completed_sections: int,
        current_section: str | None,
        sections_status: dict[str, SectionStatus],
        tokens_used: int,
    ) -> ExtractionJob | None:
        return self._mutate(
            job_id,
            lambda job: apply_progress(
                job,
                completed_sections=completed_sections,
                current_section=current_section,
                sections_status=sections_status,
                tokens_used=tokens_used,
            ),
        )

    def set_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error_message: str | None = None,
    ) -> bool:
        updated = self._mutate(job_id, lambda job: apply_status(job, status, error_message))
        if updated is None:
            logger.warning("Rejected status change of job %s to %s", job_id, status)
            return False
        return True

    def list_jobs_for_contract(self, contract_id: str) -> list[ExtractionJob]:
        """Jobs for *contract_id*, newest first."""
        client = self._client_factory()
        try:
            job_ids = client.zrevrange(self._index_key(contract_id), 0, -1)
            if not job_ids:
                return []
            raws = client.mget([self._job_key(job_id) for job_id in job_ids])
            return [ExtractionJob.model_validate_json(raw) for raw in raws if raw is not None]
        finally:
            client.close()

    def find_active_job_for_contract(self, contract_id: str) -> ExtractionJob | None:
        client = self._client_factory()
        try:
            holder_id = client.get(self._marker_key(contract_id))
            if holder_id is None:
                return None
            job = self._load(client, holder_id)
            if job is None or not job.status.is_active:
                return None
            return job
        finally:
            client.close()


def build_job_store(backend: str) -> JobStore:
    """Return the job store for *backend* (``redis`` or ``memory``)."""
    if backend == "memory":
        return InMemoryJobStore()
    return RedisJobStore()
