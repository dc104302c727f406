"""
Registry of jobs currently executing in this process.

Owned by the orchestrator and consulted on shutdown, so every job
still running when the process stops can be marked cancelled.

A job is registered when ``ExtractionOrchestrator.process`` begins,
not when ``start`` creates it: with the Redis backend ``start``
runs in the API process while the job executes in a Celery worker,
and only the executing process can cancel it on shutdown. Pending
jobs that never reached a worker stay queued.
"""

from __future__ import annotations

import threading


class ActiveJobRegistry:
    """Thread-safe set of in-flight job IDs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._job_ids: set[str] = set()

    def register(self, job_id: str) -> None:
        with self._lock:
            self._job_ids.add(job_id)

    def unregister(self, job_id: str) -> None:
        """Forget *job_id*; unknown IDs are ignored."""
        with self._lock:
            self._job_ids.discard(job_id)

    def snapshot(self) -> list[str]:
        """Sorted copy of the registered IDs."""
        with self._lock:
            return sorted(self._job_ids)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._job_ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._job_ids)
