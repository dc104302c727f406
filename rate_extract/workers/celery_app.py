"""
Celery application for extraction workers.

The API process imports ``celery_app`` only to enqueue
``process_extraction_job``; the worker process runs it::

    celery -A rate_extract.workers.celery_app worker -Q extractions --loglevel=info

Each job walks every section of a contract and can hold a worker
slot for tens of minutes, so workers prefetch a single message and
acknowledge it only once the job has returned.
"""

from __future__ import annotations

from celery import Celery

from rate_extract.core.config import get_settings
from rate_extract.logging_config import setup_logging

settings = get_settings()
setup_logging(level=settings.LOG_LEVEL, json_format=not settings.DEBUG)

celery_app = Celery(
    "rate-extract-worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["rate_extract.workers.extraction_task"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_default_queue=settings.EXTRACTION_QUEUE,
    task_routes={
        "tasks.process_extraction_job": {"queue": settings.EXTRACTION_QUEUE},
    },
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Hard limit must cover nine sections at their longest timeout.
    task_time_limit=settings.TASK_TIME_LIMIT,
    task_soft_time_limit=settings.TASK_SOFT_TIME_LIMIT,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=settings.WORKER_MAX_TASKS_PER_CHILD,
    result_expires=settings.RESULT_EXPIRES,
    broker_connection_retry_on_startup=True,
)
