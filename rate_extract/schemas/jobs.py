"""
Domain records persisted by the stores.

These models are serialised verbatim (``model_dump_json``) into the
job / contract stores and into per-section artifacts, so field names
here are the storage format.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from rate_extract.schemas.enums import JobStatus, RecordKind, SectionStatus


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(UTC)


def compute_progress(completed: int, total: int) -> int:
    """Percentage of completed sections, rounded half up.

    ``3 / 9`` → ``33``; ``1 / 8`` → ``13``; ``0`` when *total* is ``0``.
    """
    if total <= 0:
        return 0
    return (200 * completed + total) // (2 * total)


class Contract(BaseModel):
    """A tenant's uploaded rate contract, as consumed by the pipeline."""

    id: str
    tenant_id: str
    carrier_name: str | None = None
    contract_number: str | None = None
    file_name: str | None = None
    extraction_status: str | None = None
    extraction_output_path: str | None = None
    last_extraction_job_id: str | None = None


class ExtractionJob(BaseModel):
    """One extraction run against one contract."""

    id: str
    tenant_id: str
    contract_id: str
    user_id: str
    status: JobStatus = JobStatus.PENDING

    total_sections: int = Field(..., ge=0)
    completed_sections: int = Field(default=0, ge=0)
    current_section: str | None = None
    sections_status: dict[str, SectionStatus] = Field(default_factory=dict)
    tokens_used: int = Field(default=0, ge=0)

    output_directory: str
    error_message: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    callback_url: str | None = None
    callback_headers: dict[str, str] | None = None

    @property
    def progress(self) -> int:
        """Completion percentage (0-100)."""
        return compute_progress(self.completed_sections, self.total_sections)

    @property
    def failed_sections(self) -> list[str]:
        """Sections whose status map entry is ``failed``."""
        return [
            name
            for name, status in self.sections_status.items()
            if status == SectionStatus.FAILED
        ]


class ExtractedSection(BaseModel):
    """A schema section's result for one job.

    Exactly one of ``data`` (parsed payload, possibly carrying
    ``validation_warnings.missing_required``) or ``error`` (plus a
    ``raw_response`` excerpt) is populated.
    """

    section: str
    sheet: str
    record_type: RecordKind
    data: dict[str, Any] | None = None
    extracted_at: datetime | None = None
    error: str | None = None
    raw_response: str | None = None

    @property
    def has_error(self) -> bool:
        """``True`` when the payload is unusable (hard parse failure)."""
        return self.error is not None

    @property
    def missing_required(self) -> list[str]:
        """Required fields absent from the payload (non-fatal)."""
        if not self.data:
            return []
        warnings = self.data.get("validation_warnings") or {}
        return list(warnings.get("missing_required") or [])

    def to_artifact(self) -> dict[str, Any]:
        """JSON-ready dict written to the section's artifact file."""
        return self.model_dump(mode="json", exclude_none=True)
