"""
Pydantic models shared by routes, workers and services.

Every public model is re-exported here so that
``from rate_extract.schemas import ExtractionJob`` works.
"""

from rate_extract.schemas.enums import JobStatus, RecordKind, SectionStatus
from rate_extract.schemas.extraction_schema import (
    ExtractionSchema,
    FieldSpec,
    TaskSection,
)
from rate_extract.schemas.health import CeleryHealthResponse, HealthResponse
from rate_extract.schemas.jobs import Contract, ExtractedSection, ExtractionJob
from rate_extract.schemas.requests import StartExtractionRequest
from rate_extract.schemas.responses import (
    ArtifactInfoResponse,
    ArtifactListResponse,
    CancelExtractionResponse,
    ExtractionConflictResponse,
    ExtractionJobListResponse,
    ExtractionJobResponse,
    ExtractionSchemaResponse,
    StartExtractionResponse,
)

__all__ = [
    "ArtifactInfoResponse",
    "ArtifactListResponse",
    "CancelExtractionResponse",
    "CeleryHealthResponse",
    "Contract",
    "ExtractedSection",
    "ExtractionConflictResponse",
    "ExtractionJob",
    "ExtractionJobListResponse",
    "ExtractionJobResponse",
    "ExtractionSchema",
    "ExtractionSchemaResponse",
    "FieldSpec",
    "HealthResponse",
    "JobStatus",
    "RecordKind",
    "SectionStatus",
    "StartExtractionRequest",
    "TaskSection",
]
