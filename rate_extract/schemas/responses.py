"""
Response models for extraction endpoints.

Serialised with camelCase keys (``jobId``, ``completedSections``)
for the web client; Python code uses the snake_case field names.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from rate_extract.schemas.enums import JobStatus, SectionStatus
from rate_extract.schemas.jobs import Contract, ExtractionJob
from rate_extract.stores.artifacts import ArtifactInfo


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartExtractionResponse(_CamelModel):
    """Returned immediately when extraction is started."""

    job_id: str = Field(..., description="Extraction job identifier")
    status: JobStatus = Field(
        default=JobStatus.PENDING,
        description="Initial job status",
    )
    message: str = Field(
        default="Extraction started",
        description="Human-readable status message",
    )


class ExtractionConflictResponse(_CamelModel):
    """Body of the 400 returned when a job is already active."""

    error: str = "Extraction already in progress for this contract"
    job_id: str | None = None
    status: JobStatus | None = None


class ExtractionJobResponse(_CamelModel):
    """A job's state as seen by a polling client."""

    id: str
    contract_id: str
    user_id: str
    status: JobStatus
    total_sections: int
    completed_sections: int
    current_section: str | None = None
    sections_status: dict[str, SectionStatus] = Field(default_factory=dict)
    tokens_used: int = 0
    progress: int = Field(..., ge=0, le=100, description="Completion percentage")
    output_directory: str
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    carrier_name: str | None = None
    contract_number: str | None = None
    file_name: str | None = None

    @classmethod
    def from_job(
        cls,
        job: ExtractionJob,
        contract: Contract | None = None,
    ) -> ExtractionJobResponse:
        """Build the response from a stored job and its contract."""
        return cls(
            id=job.id,
            contract_id=job.contract_id,
            user_id=job.user_id,
            status=job.status,
            total_sections=job.total_sections,
            completed_sections=job.completed_sections,
            current_section=job.current_section,
            sections_status=job.sections_status,
            tokens_used=job.tokens_used,
            progress=job.progress,
            output_directory=job.output_directory,
            error_message=job.error_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            carrier_name=contract.carrier_name if contract else None,
            contract_number=contract.contract_number if contract else None,
            file_name=contract.file_name if contract else None,
        )


class ExtractionJobListResponse(_CamelModel):
    """All jobs for one contract, newest first."""

    contract_id: str
    jobs: list[ExtractionJobResponse] = Field(default_factory=list)


class CancelExtractionResponse(_CamelModel):
    """Returned after a successful cancellation."""

    job_id: str
    status: JobStatus = JobStatus.CANCELLED
    message: str = "Extraction job cancelled"


class ArtifactInfoResponse(_CamelModel):
    name: str
    size: int
    created_at: datetime
    modified_at: datetime

    @classmethod
    def from_info(cls, info: ArtifactInfo) -> ArtifactInfoResponse:
        return cls(
            name=info.name,
            size=info.size,
            created_at=info.created_at,
            modified_at=info.modified_at,
        )


class ArtifactListResponse(_CamelModel):
    """Files produced by a completed job."""

    job_id: str
    output_directory: str
    files: list[ArtifactInfoResponse] = Field(default_factory=list)


class ExtractionSchemaResponse(_CamelModel):
    """The active extraction schema, for clients rendering results."""

    version: str
    sections: list[dict[str, Any]] = Field(default_factory=list)
