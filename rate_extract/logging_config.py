"""
Process-wide logging setup for the API and the extraction workers.

Every record is tagged with two correlation fields:

* ``request_id``: set by ``RequestIDMiddleware`` for HTTP requests.
* ``job_id``: set by :func:`job_context` while a worker runs a job.

Either is ``"-"`` when not applicable. ``json_format=True`` emits
one JSON object per line for log shippers; otherwise lines are
pipe-separated for terminals.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from rate_extract.core.middleware import get_request_id

_job_id: ContextVar[str] = ContextVar("job_id", default="-")

_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | [%(request_id)s %(job_id)s] %(message)s"

_QUIET_LOGGERS = (
    "httpx",
    "httpcore",
    "urllib3",
    "celery.redirected",
    "celery.worker.strategy",
)


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with *job_id*."""
    token = _job_id.set(job_id)
    try:
        yield
    finally:
        _job_id.reset(token)


class _CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = get_request_id()  # type: ignore[attr-defined]
        if not hasattr(record, "job_id"):
            record.job_id = _job_id.get()  # type: ignore[attr-defined]
        return True


class _JsonFormatter(logging.Formatter):
    """One JSON object per record, with the message safely escaped."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", "-"),
            "job_id": getattr(record, "job_id", "-"),
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(level: str = "INFO", *, json_format: bool = False) -> None:
    """Replace the root handlers with a single stdout handler.

    Safe to call more than once; each call resets the handlers.

    Args:
        level: Level name such as ``"INFO"``; unknown names mean INFO.
        json_format: Emit JSON lines instead of text.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else logging.Formatter(_TEXT_FORMAT))
    handler.addFilter(_CorrelationFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))
