"""Status and record-kind enumerations used across the application."""

from __future__ import annotations

from enum import StrEnum


class JobStatus(StrEnum):
    """Lifecycle states of an extraction job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """``True`` for states that never change again."""
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """``True`` while the job may still be cancelled."""
        return self in ACTIVE_STATUSES


class SectionStatus(StrEnum):
    """Per-section progress recorded in a job's status map."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RecordKind(StrEnum):
    """Shape of a section's payload: one object or a list of rows."""

    SINGLE = "single"
    ROWS = "rows"


ACTIVE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.PENDING, JobStatus.PROCESSING}
)
TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

# Forward-only state machine.  A job may fail before it starts
# processing (e.g. the worker cannot create its output directory).
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.PROCESSING: TERMINAL_STATUSES,
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Return whether *current* → *target* is a legal move."""
    return target in ALLOWED_TRANSITIONS[current]
