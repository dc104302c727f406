"""
Prometheus metrics backed by cross-process counters.

The API and the Celery workers run in separate processes, so
counters are kept in Redis and read back by a custom
``Collector`` on every scrape of ``GET /metrics``.  With
``STORE_BACKEND=memory`` everything runs in one process and the
counters live in a local dict instead.

Recording is best effort: a failure to update a counter is
logged and never reaches the caller.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric

from rate_extract.core.config import get_settings
from rate_extract.core.constants import REDIS_PREFIX_METRICS
from rate_extract.core.redis import get_redis_client
from rate_extract.schemas.enums import JobStatus

logger = logging.getLogger(__name__)

JOBS_SUBMITTED = "jobs_submitted_total"
JOBS_COMPLETED = "jobs_completed_total"
JOBS_FAILED = "jobs_failed_total"
JOBS_CANCELLED = "jobs_cancelled_total"
SECTION_ERRORS = "section_errors_total"
TOKENS_USED = "tokens_used_total"
JOB_DURATION = "job_duration_seconds_sum"

_COUNTERS: tuple[str, ...] = (
    JOBS_SUBMITTED,
    JOBS_COMPLETED,
    JOBS_FAILED,
    JOBS_CANCELLED,
    SECTION_ERRORS,
    TOKENS_USED,
    JOB_DURATION,
)

_TERMINAL_COUNTER: dict[JobStatus, str] = {
    JobStatus.COMPLETED: JOBS_COMPLETED,
    JobStatus.FAILED: JOBS_FAILED,
    JobStatus.CANCELLED: JOBS_CANCELLED,
}

_local_lock = threading.Lock()
_local: dict[str, float] = {}


def _use_redis() -> bool:
    return get_settings().STORE_BACKEND == "redis"


def _increment(increments: dict[str, float]) -> None:
    if not _use_redis():
        with _local_lock:
            for name, amount in increments.items():
                _local[name] = _local.get(name, 0) + amount
        return

    client = get_redis_client()
    try:
        pipe = client.pipeline()
        for name, amount in increments.items():
            key = f"{REDIS_PREFIX_METRICS}{name}"
            if isinstance(amount, float):
                pipe.incrbyfloat(key, amount)
            else:
                pipe.incrby(key, amount)
        pipe.execute()
    finally:
        client.close()


def read_counters() -> dict[str, float]:
    """Current value of every counter (``0`` when never written)."""
    if not _use_redis():
        with _local_lock:
            return {name: _local.get(name, 0) for name in _COUNTERS}

    client = get_redis_client()
    try:
        values = client.mget([f"{REDIS_PREFIX_METRICS}{name}" for name in _COUNTERS])
    finally:
        client.close()
    return {name: float(value or 0) for name, value in zip(_COUNTERS, values, strict=True)}


def reset_local_counters() -> None:
    """Zero the in-process counters."""
    with _local_lock:
        _local.clear()


# ── Record helpers (called from any process) ────────────────


def record_job_submitted() -> None:
    try:
        _increment({JOBS_SUBMITTED: 1})
    except Exception:
        logger.warning("Failed to record job_submitted metric", exc_info=True)


def record_job_finished(
    status: JobStatus,
    *,
    duration_s: float,
    tokens_used: int,
    section_errors: int,
) -> None:
    """Record a job reaching *status*.

    Args:
        status: The terminal status.
        duration_s: Wall-clock processing time in seconds.
        tokens_used: Tokens consumed by the job.
        section_errors: Sections that failed or carry an error payload.
    """
    counter = _TERMINAL_COUNTER.get(status)
    if counter is None:
        return
    try:
        _increment(
            {
                counter: 1,
                JOB_DURATION: float(duration_s),
                TOKENS_USED: int(tokens_used),
                SECTION_ERRORS: int(section_errors),
            }
        )
    except Exception:
        logger.warning("Failed to record job_finished metric", exc_info=True)


# ── Prometheus custom collector ─────────────────────────────


class ExtractionJobCollector:
    """Render the counters as Prometheus metric families on scrape."""

    _HELP: dict[str, str] = {
        JOBS_SUBMITTED: "Extraction jobs submitted.",
        JOBS_COMPLETED: "Extraction jobs that completed.",
        JOBS_FAILED: "Extraction jobs that failed.",
        JOBS_CANCELLED: "Extraction jobs that were cancelled.",
        SECTION_ERRORS: "Sections that ended with an error payload.",
        TOKENS_USED: "Assistant tokens consumed.",
    }

    def collect(self) -> Iterator[Metric]:
        try:
            values = read_counters()
        except Exception:
            logger.warning("Failed to read metrics", exc_info=True)
            values = dict.fromkeys(_COUNTERS, 0)

        for name, help_text in self._HELP.items():
            family = CounterMetricFamily(
                f"rate_extract_{name.removesuffix('_total')}",
                help_text,
            )
            family.add_metric([], values[name])
            yield family

        duration = GaugeMetricFamily(
            f"rate_extract_{JOB_DURATION}",
            "Cumulative job processing time in seconds.",
        )
        duration.add_metric([], values[JOB_DURATION])
        yield duration


REGISTRY = CollectorRegistry()
REGISTRY.register(ExtractionJobCollector())


def generate_metrics() -> bytes:
    """Prometheus exposition text for ``/metrics``."""
    return generate_latest(REGISTRY)
