"""
Extraction job orchestration.

``ExtractionOrchestrator`` owns the job lifecycle::

    start()    -> job created (pending), handed to ``dispatch``
    process()  -> pending -> processing -> completed | failed
    cancel()   -> pending | processing -> cancelled
    shutdown() -> every job still running here -> cancelled

Sections are processed strictly one after another in schema order.
A section that times out or returns unusable output is recorded
inside its own artifact and counted as completed; only an
unexpected fault outside the per-section handling fails the job.
Cancellation is cooperative: the job is re-read before every
section and processing stops as soon as it is no longer
``processing``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from rate_extract.core import metrics
from rate_extract.core.config import Settings
from rate_extract.core.constants import (
    COMPLETE_EXTRACTION_FILENAME,
    CONTRACT_STATUS_CANCELLED,
    CONTRACT_STATUS_COMPLETED,
    CONTRACT_STATUS_FAILED,
    CONTRACT_STATUS_PROCESSING,
    EXTRACTION_SUMMARY_FILENAME,
    SHUTDOWN_CANCEL_NOTE,
)
from rate_extract.logging_config import job_context
from rate_extract.schemas.enums import JobStatus, SectionStatus
from rate_extract.schemas.jobs import Contract, ExtractionJob, utcnow
from rate_extract.services.active_jobs import ActiveJobRegistry
from rate_extract.services.assistant_client import AssistantClient, outcome_content
from rate_extract.services.prompt_builder import build_prompt
from rate_extract.services.response_parser import parse_response
from rate_extract.services.schema_registry import SchemaRegistry
from rate_extract.services.webhook import notify_job_finished
from rate_extract.stores.artifacts import ArtifactInfo, LocalArtifactStore
from rate_extract.stores.contracts import ContractStore
from rate_extract.stores.jobs import ActiveJobExistsError, JobStore

logger = logging.getLogger(__name__)

Dispatch = Callable[[str], None]
Sleep = Callable[[float], Awaitable[None]]
Notify = Callable[[ExtractionJob], Awaitable[Any]]


# ── Errors ──────────────────────────────────────────────────


class ExtractionError(Exception):
    """Base class for errors reported back to API callers."""


class ContractNotFoundError(ExtractionError):
    def __init__(self, contract_id: str) -> None:
        self.contract_id = contract_id
        super().__init__(f"Contract {contract_id} not found")


class ExtractionConflictError(ExtractionError):
    """The contract already has an active job."""

    def __init__(self, contract_id: str, job_id: str | None, status: JobStatus | None) -> None:
        self.contract_id = contract_id
        self.job_id = job_id
        self.status = status
        super().__init__("Extraction already in progress for this contract")


class JobNotFoundError(ExtractionError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Extraction job {job_id} not found")


class JobNotCancellableError(ExtractionError):
    def __init__(self, job_id: str, status: JobStatus) -> None:
        self.job_id = job_id
        self.status = status
        super().__init__(f"Cannot cancel a {status} job")


class JobNotCompletedError(ExtractionError):
    """Artifacts were requested before the job completed."""

    def __init__(self, job_id: str, status: JobStatus) -> None:
        self.job_id = job_id
        self.status = status
        super().__init__("Extraction not completed")


class ArtifactNotFoundError(ExtractionError):
    def __init__(self, job_id: str, file_name: str) -> None:
        self.job_id = job_id
        self.file_name = file_name
        super().__init__("File not found")


# ── Orchestrator ────────────────────────────────────────────


def _run_stamp(now: datetime) -> str:
    """Filesystem-safe timestamp, e.g. ``2025-03-01T09-30-00-123Z``."""
    return now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"


class ExtractionOrchestrator:
    """Runs extraction jobs against the tenant's hosted assistant.

    Args:
        jobs: Job persistence backend.
        contracts: Contract / tenant-assistant lookups.
        artifacts: Durable output store.
        schema: Section registry; its order is the processing order.
        assistant: Client for the hosted assistant.
        settings: Timeouts, inter-section delays and defaults.
        dispatch: Hands a freshly created job ID to whatever will
            call :meth:`process` (a Celery task, an event-loop task).
        active: Registry of jobs executing in this process.
        sleep: Awaitable used for the inter-section delay.
        clock: Source of the current UTC time.
        notify: Completion callback sender.
    """

    def __init__(
        self,
        *,
        jobs: JobStore,
        contracts: ContractStore,
        artifacts: LocalArtifactStore,
        schema: SchemaRegistry,
        assistant: AssistantClient,
        settings: Settings,
        dispatch: Dispatch | None = None,
        active: ActiveJobRegistry | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
        notify: Notify = notify_job_finished,
    ) -> None:
        self.jobs = jobs
        self.contracts = contracts
        self.artifacts = artifacts
        self.schema = schema
        self.assistant = assistant
        self.settings = settings
        self.dispatch = dispatch
        self.active = active if active is not None else ActiveJobRegistry()
        self._sleep = sleep
        self._clock = clock
        self._notify = notify

    # ── Start ───────────────────────────────────────────────

    def _owned_contract(self, contract_id: str, tenant_id: str) -> Contract:
        contract = self.contracts.get_contract(contract_id)
        if contract is None or contract.tenant_id != tenant_id:
            raise ContractNotFoundError(contract_id)
        return contract

    def start(
        self,
        contract_id: str,
        tenant_id: str,
        user_id: str,
        *,
        callback_url: str | None = None,
        callback_headers: dict[str, str] | None = None,
    ) -> ExtractionJob:
        """Create a pending job for *contract_id* and dispatch it.

        Raises:
            ContractNotFoundError: Unknown contract, or one owned by
                another tenant.
            ExtractionConflictError: The contract already has a
                pending or processing job.
        """
        contract = self._owned_contract(contract_id, tenant_id)
        sections = self.schema.get_sections()
        output_dir = self.artifacts.job_directory(
            tenant_id,
            contract_id,
            _run_stamp(self._clock()),
        )

        job = ExtractionJob(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            contract_id=contract.id,
            user_id=user_id,
            total_sections=len(sections),
            sections_status={s.section: SectionStatus.PENDING for s in sections},
            output_directory=str(output_dir),
            created_at=self._clock(),
            callback_url=callback_url,
            callback_headers=callback_headers,
        )
        try:
            self.jobs.create_job(job)
        except ActiveJobExistsError as exc:
            holder = exc.job
            logger.info(
                "Refused extraction for contract %s: job %s is %s",
                contract_id,
                holder.id if holder else "?",
                holder.status if holder else "active",
            )
            raise ExtractionConflictError(
                contract_id,
                holder.id if holder else None,
                holder.status if holder else None,
            ) from exc

        self.contracts.update_extraction_status(
            contract_id,
            CONTRACT_STATUS_PROCESSING,
            job_id=job.id,
        )

        if self.dispatch is not None:
            try:
                self.dispatch(job.id)
            except Exception as exc:
                logger.exception("Failed to dispatch extraction job %s", job.id)
                self._fail(job, f"Failed to dispatch job: {exc}")
                raise

        metrics.record_job_submitted()
        logger.info(
            "Started extraction job %s for contract %s (%d sections)",
            job.id,
            contract_id,
            job.total_sections,
        )
        return job

    # ── Process ─────────────────────────────────────────────

    async def process(self, job_id: str) -> ExtractionJob | None:
        """Run every section of a pending job, then finalise it.

        Never raises: an orchestration-level fault marks the job
        ``failed`` and the contract with it.

        Returns:
            The job as last stored, or ``None`` if it does not exist.
        """
        with job_context(job_id):
            return await self._process(job_id)

    async def _process(self, job_id: str) -> ExtractionJob | None:
        job = self.jobs.get_job(job_id)
        if job is None:
            logger.warning("Extraction job %s not found; nothing to process", job_id)
            return None
        if job.status == JobStatus.CANCELLED:
            logger.info("Extraction job %s was cancelled before it started", job_id)
            await self._finish_cancelled(job, started_s=None)
            return self.jobs.get_job(job_id)
        if job.status != JobStatus.PENDING:
            logger.warning("Extraction job %s is already %s; skipping", job_id, job.status)
            return job

        self.active.register(job_id)
        started_s = time.monotonic()
        try:
            await self._run(job, started_s)
        except Exception as exc:
            logger.exception("Extraction job %s failed", job_id)
            self._fail(job, str(exc) or exc.__class__.__name__, started_s=started_s)
        finally:
            self.active.unregister(job_id)

        final = self.jobs.get_job(job_id)
        if final is None:
            return None
        if final.status == JobStatus.CANCELLED:
            await self._finish_cancelled(final, started_s=started_s)
        elif final.status.is_terminal:
            await self._notify_safely(final)
        return final

    async def _run(self, job: ExtractionJob, started_s: float) -> None:
        if not self.jobs.set_status(job.id, JobStatus.PROCESSING):
            logger.info("Extraction job %s left pending before it started", job.id)
            return

        contract = self.contracts.get_contract(job.contract_id)
        if contract is None:
            raise ContractNotFoundError(job.contract_id)

        output_dir = self.artifacts.ensure_dir(job.output_directory)
        assistant_id = (
            self.contracts.get_assistant_id(job.tenant_id)
            or self.settings.DEFAULT_ASSISTANT_ID
            or None
        )

        sections = self.schema.get_sections()
        consolidated: dict[str, Any] = {
            "metadata": {
                "extractionJobId": job.id,
                "contractId": contract.id,
                "contractNumber": contract.contract_number,
                "carrierName": contract.carrier_name,
                "fileName": contract.file_name,
                "extractionDate": self._clock().isoformat(),
                "schemaVersion": self.schema.version,
            },
            "sections": {},
        }
        sections_status = dict(job.sections_status)
        completed = 0
        tokens = 0
        errored = 0

        for index, section in enumerate(sections):
            current = self.jobs.get_job(job.id)
            if current is None or current.status != JobStatus.PROCESSING:
                logger.info(
                    "Extraction job %s stopped before %s (status %s)",
                    job.id,
                    section.section,
                    current.status if current else "missing",
                )
                return

            logger.info("Processing section: %s", section.section)
            self.jobs.update_progress(
                job.id,
                completed_sections=completed,
                current_section=section.section,
                sections_status=sections_status,
                tokens_used=tokens,
            )

            try:
                outcome = await self.assistant.query(
                    assistant_id,
                    build_prompt(section, contract),
                    section.section,
                    self.settings.section_timeout(section.section),
                )
                content, used = outcome_content(outcome, section.section)
                result = parse_response(content, section)
                payload = result.to_artifact()
                self.artifacts.write_json(output_dir, section.artifact_name, payload)
                consolidated["sections"][section.section] = payload

                completed += 1
                tokens += used
                sections_status[section.section] = SectionStatus.COMPLETED
                if result.has_error or not outcome.ok:
                    errored += 1
                    logger.warning("Section %s recorded an error payload", section.section)
            except Exception as exc:
                logger.exception("Failed to process section %s", section.section)
                errored += 1
                sections_status[section.section] = SectionStatus.FAILED
                consolidated["sections"][section.section] = {
                    "error": str(exc),
                    "status": "failed",
                }

            self.jobs.update_progress(
                job.id,
                completed_sections=completed,
                current_section=section.section,
                sections_status=sections_status,
                tokens_used=tokens,
            )

            if index < len(sections) - 1:
                delay = (
                    self.settings.SECTION_DELAY_HEAVY_SECONDS
                    if tokens > self.settings.HEAVY_TOKEN_THRESHOLD
                    else self.settings.SECTION_DELAY_SECONDS
                )
                logger.info("Waiting %gs before next section...", delay)
                await self._sleep(delay)

        self.artifacts.write_json(output_dir, COMPLETE_EXTRACTION_FILENAME, consolidated)
        failed = [name for name, status in sections_status.items() if status == SectionStatus.FAILED]
        summary = {
            "jobId": job.id,
            "contractId": contract.id,
            "contractNumber": contract.contract_number,
            "totalSections": len(sections),
            "completedSections": completed,
            "failedSections": failed,
            "totalTokensUsed": tokens,
            "outputFiles": [info.name for info in self.artifacts.list_artifacts(output_dir)],
            "completedAt": self._clock().isoformat(),
        }
        self.artifacts.write_json(output_dir, EXTRACTION_SUMMARY_FILENAME, summary)

        if not self.jobs.set_status(job.id, JobStatus.COMPLETED):
            logger.info("Extraction job %s was cancelled while finalising", job.id)
            return

        self.contracts.update_extraction_status(
            contract.id,
            CONTRACT_STATUS_COMPLETED,
            output_path=str(output_dir),
        )
        metrics.record_job_finished(
            JobStatus.COMPLETED,
            duration_s=time.monotonic() - started_s,
            tokens_used=tokens,
            section_errors=errored,
        )
        logger.info(
            "Extraction job %s completed: %d/%d sections, %d tokens",
            job.id,
            completed,
            len(sections),
            tokens,
        )

    def _fail(
        self,
        job: ExtractionJob,
        message: str,
        *,
        started_s: float | None = None,
    ) -> None:
        """Mark *job* failed and propagate to its contract; never raises."""
        try:
            if not self.jobs.set_status(job.id, JobStatus.FAILED, error_message=message):
                return
            self.contracts.update_extraction_status(job.contract_id, CONTRACT_STATUS_FAILED)
        except Exception:
            logger.exception("Could not record failure of extraction job %s", job.id)
            return
        metrics.record_job_finished(
            JobStatus.FAILED,
            duration_s=time.monotonic() - started_s if started_s is not None else 0.0,
            tokens_used=0,
            section_errors=0,
        )

    def _mark_contract_cancelled(self, contract_id: str) -> None:
        try:
            self.contracts.update_extraction_status(contract_id, CONTRACT_STATUS_CANCELLED)
        except Exception:
            logger.exception("Could not mark contract %s cancelled", contract_id)

    async def _finish_cancelled(self, job: ExtractionJob, *, started_s: float | None) -> None:
        self._mark_contract_cancelled(job.contract_id)
        metrics.record_job_finished(
            JobStatus.CANCELLED,
            duration_s=time.monotonic() - started_s if started_s is not None else 0.0,
            tokens_used=job.tokens_used,
            section_errors=0,
        )
        await self._notify_safely(job)

    async def _notify_safely(self, job: ExtractionJob) -> None:
        if not job.callback_url:
            return
        try:
            await self._notify(job)
        except Exception:
            logger.exception("Completion callback for job %s raised", job.id)

    # ── Cancel / shutdown ───────────────────────────────────

    def cancel(self, job_id: str, tenant_id: str) -> ExtractionJob:
        """Cancel a pending or processing job.

        The running worker notices at its next section boundary; an
        assistant call already in flight is allowed to finish.

        Raises:
            JobNotFoundError: Unknown job, or another tenant's.
            JobNotCancellableError: The job is already terminal.
        """
        job = self.get_job(job_id, tenant_id)
        if not job.status.is_active:
            raise JobNotCancellableError(job_id, job.status)
        if not self.jobs.set_status(job_id, JobStatus.CANCELLED):
            current = self.jobs.get_job(job_id)
            raise JobNotCancellableError(job_id, current.status if current else job.status)

        self.contracts.update_extraction_status(job.contract_id, CONTRACT_STATUS_CANCELLED)
        logger.info("Extraction job %s cancelled", job_id)
        cancelled = self.jobs.get_job(job_id)
        return cancelled if cancelled is not None else job

    def shutdown(self) -> list[str]:
        """Cancel every job still registered as running here.

        Best effort: each job is handled independently and errors
        are logged.

        Returns:
            IDs of the jobs that were moved to ``cancelled``.
        """
        job_ids = self.active.snapshot()
        if not job_ids:
            return []
        logger.info("Cleaning up %d active extractions...", len(job_ids))
        cancelled: list[str] = []
        for job_id in job_ids:
            try:
                job = self.jobs.get_job(job_id)
                if job is None:
                    continue
                if self.jobs.set_status(
                    job_id,
                    JobStatus.CANCELLED,
                    error_message=SHUTDOWN_CANCEL_NOTE,
                ):
                    self._mark_contract_cancelled(job.contract_id)
                    cancelled.append(job_id)
            except Exception:
                logger.exception("Failed to cancel job %s on shutdown", job_id)
            finally:
                self.active.unregister(job_id)
        return cancelled

    # ── Queries ─────────────────────────────────────────────

    def get_job(self, job_id: str, tenant_id: str) -> ExtractionJob:
        """Return the tenant's job.

        Raises:
            JobNotFoundError: Unknown job, or another tenant's.
        """
        job = self.jobs.get_job(job_id)
        if job is None or job.tenant_id != tenant_id:
            raise JobNotFoundError(job_id)
        return job

    def get_contract(self, contract_id: str) -> Contract | None:
        return self.contracts.get_contract(contract_id)

    def list_jobs(self, contract_id: str, tenant_id: str) -> list[ExtractionJob]:
        """Jobs for a contract the tenant owns, newest first."""
        self._owned_contract(contract_id, tenant_id)
        return [
            job
            for job in self.jobs.list_jobs_for_contract(contract_id)
            if job.tenant_id == tenant_id
        ]

    def _completed_job(self, job_id: str, tenant_id: str) -> ExtractionJob:
        job = self.get_job(job_id, tenant_id)
        if job.status != JobStatus.COMPLETED:
            raise JobNotCompletedError(job_id, job.status)
        return job

    def list_artifacts(self, job_id: str, tenant_id: str) -> tuple[ExtractionJob, list[ArtifactInfo]]:
        """Files produced by a completed job.

        Raises:
            JobNotFoundError: Unknown job, or another tenant's.
            JobNotCompletedError: The job has not completed.
        """
        job = self._completed_job(job_id, tenant_id)
        return job, self.artifacts.list_artifacts(job.output_directory)

    def resolve_artifact(
        self,
        job_id: str,
        tenant_id: str,
        file_name: str = COMPLETE_EXTRACTION_FILENAME,
    ) -> Path:
        """Path of one output file of a completed job.

        Raises:
            JobNotFoundError: Unknown job, or another tenant's.
            JobNotCompletedError: The job has not completed.
            ArtifactNotFoundError: The name is unsafe or the file
                does not exist.
        """
        job = self._completed_job(job_id, tenant_id)
        try:
            path = self.artifacts.resolve(job.output_directory, file_name)
        except ValueError as exc:
            raise ArtifactNotFoundError(job_id, file_name) from exc
        if path is None:
            raise ArtifactNotFoundError(job_id, file_name)
        return path
