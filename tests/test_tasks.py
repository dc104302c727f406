"""Tests for the extraction Celery task and worker shutdown hooks."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rate_extract.schemas import ExtractionJob, JobStatus


def _job(status: JobStatus) -> ExtractionJob:
    return ExtractionJob(
        id="job-1",
        tenant_id="tenant-1",
        contract_id="contract-1",
        user_id="user-1",
        status=status,
        total_sections=9,
        output_directory="/out/job-1",
    )


class TestProcessExtractionJob:
    """Tests for the ``process_extraction_job`` task."""

    def test_runs_orchestrator_and_reports_status(self):
        from rate_extract.workers.extraction_task import process_extraction_job

        orchestrator = MagicMock()
        orchestrator.process = AsyncMock(return_value=_job(JobStatus.COMPLETED))

        with patch(
            "rate_extract.workers.extraction_task.get_worker_orchestrator",
            return_value=orchestrator,
        ):
            result = process_extraction_job.run("job-1")

        orchestrator.process.assert_awaited_once_with("job-1")
        assert result == {"job_id": "job-1", "status": "completed"}

    def test_missing_job(self):
        from rate_extract.workers.extraction_task import process_extraction_job

        orchestrator = MagicMock()
        orchestrator.process = AsyncMock(return_value=None)

        with patch(
            "rate_extract.workers.extraction_task.get_worker_orchestrator",
            return_value=orchestrator,
        ):
            result = process_extraction_job.run("job-404")

        assert result == {"job_id": "job-404", "status": "missing"}

    def test_registered_task_name(self):
        from rate_extract.workers.celery_app import celery_app
        from rate_extract.workers.extraction_task import process_extraction_job

        assert process_extraction_job.name == "tasks.process_extraction_job"
        assert "tasks.process_extraction_job" in celery_app.tasks


class TestShutdownHooks:
    @pytest.fixture(autouse=True)
    def _fresh_orchestrator_cache(self):
        from rate_extract.workers.extraction_task import get_worker_orchestrator

        get_worker_orchestrator.cache_clear()
        yield
        get_worker_orchestrator.cache_clear()

    def test_no_orchestrator_built_means_nothing_to_cancel(self):
        from rate_extract.workers import extraction_task

        with patch.object(extraction_task, "build_orchestrator") as build:
            extraction_task._cancel_running_jobs()
        build.assert_not_called()

    def test_running_jobs_cancelled(self):
        from rate_extract.workers import extraction_task

        orchestrator = MagicMock()
        orchestrator.shutdown.return_value = ["job-1", "job-2"]

        with patch.object(extraction_task, "build_orchestrator", return_value=orchestrator):
            extraction_task.get_worker_orchestrator()
            extraction_task._cancel_running_jobs(sig="SIGTERM", how="warm", exitcode=0)

        orchestrator.shutdown.assert_called_once_with()

    def test_hooks_connected_to_both_signals(self):
        from celery.signals import worker_process_shutdown, worker_shutting_down

        from rate_extract.workers import extraction_task

        for signal in (worker_shutting_down, worker_process_shutdown):
            assert any(
                extraction_task._cancel_running_jobs in entry for entry in signal.receivers
            )
