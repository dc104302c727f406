"""
Declarative description of the extraction tasks.

The schema is data, not code: it is loaded from
``rate_extract/data/extraction_schema.json`` (or a file named by
``EXTRACTION_SCHEMA_PATH``) and validated once by these models.
Adding a section therefore needs no orchestration change.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from rate_extract.schemas.enums import RecordKind


class FieldSpec(BaseModel):
    """One field the assistant is asked to extract."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    type: str = Field(
        default="string",
        pattern=r"^(string|number|date|boolean)$",
    )
    required: bool = False
    pattern: str | None = None
    enum: tuple[str, ...] | None = None
    aliases: tuple[str, ...] | None = None
    example: Any = None
    default: Any = None
    min: float | None = None
    note: str | None = None


class TaskSection(BaseModel):
    """A single extraction task (one assistant query per job)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    section: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_]+$")
    sheet: str
    record_type: RecordKind
    keys: tuple[str, ...] = ()
    instruction: str = Field(..., min_length=1)
    fields: tuple[FieldSpec, ...] = Field(..., min_length=1)
    extra_rules: tuple[str, ...] = ()

    @property
    def required_fields(self) -> list[str]:
        """Names of required fields in declaration order."""
        return [f.name for f in self.fields if f.required]

    @property
    def artifact_name(self) -> str:
        """File name of this section's per-job artifact."""
        return f"{self.section}.json"


class ExtractionSchema(BaseModel):
    """Versioned, ordered collection of extraction tasks."""

    model_config = ConfigDict(frozen=True)

    version: str
    date_format: str = "YYYY-MM-DD"
    currency_format: str = "ISO-4217"
    unlocode_format: str = "^[A-Z]{5}$"
    extraction_tasks: tuple[TaskSection, ...] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _unique_sections(self) -> ExtractionSchema:
        """Reject schemas that declare the same section twice."""
        seen: set[str] = set()
        for task in self.extraction_tasks:
            if task.section in seen:
                raise ValueError(f"Duplicate section '{task.section}' in schema")
            seen.add(task.section)
        return self
