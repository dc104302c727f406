"""
Extraction schema registry.

Loads the declarative extraction schema once per process and
exposes the ordered section list.  Processing order is the
declaration order in the schema file; nothing reorders it.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from importlib import resources
from pathlib import Path

from rate_extract.core.config import get_settings
from rate_extract.schemas.extraction_schema import ExtractionSchema, TaskSection

logger = logging.getLogger(__name__)

_BUNDLED_SCHEMA: str = "extraction_schema.json"


class SchemaRegistry:
    """Immutable view over a validated :class:`ExtractionSchema`."""

    def __init__(self, schema: ExtractionSchema) -> None:
        self._schema = schema
        self._by_name = {task.section: task for task in schema.extraction_tasks}

    @classmethod
    def from_json(cls, raw: str) -> SchemaRegistry:
        """Validate *raw* JSON text and wrap it.

        Raises:
            pydantic.ValidationError: If the document does not
                describe a valid schema.
        """
        return cls(ExtractionSchema.model_validate_json(raw))

    @classmethod
    def from_path(cls, path: str | Path) -> SchemaRegistry:
        """Load and validate a schema file from disk."""
        return cls.from_json(Path(path).read_text(encoding="utf-8"))

    @property
    def version(self) -> str:
        """Schema version string recorded in consolidated output."""
        return self._schema.version

    @property
    def schema(self) -> ExtractionSchema:
        """The underlying validated schema."""
        return self._schema

    def get_sections(self) -> tuple[TaskSection, ...]:
        """Return the sections in processing order."""
        return self._schema.extraction_tasks

    def get_section(self, name: str) -> TaskSection | None:
        """Look up a section by name."""
        return self._by_name.get(name)

    def __len__(self) -> int:
        return len(self._schema.extraction_tasks)


def _read_bundled_schema() -> str:
    return (
        resources.files("rate_extract.data")
        .joinpath(_BUNDLED_SCHEMA)
        .read_text(encoding="utf-8")
    )


@lru_cache
def get_schema_registry() -> SchemaRegistry:
    """Return the process-wide registry, validated on first use.

    ``EXTRACTION_SCHEMA_PATH`` overrides the bundled schema file.
    """
    path = get_settings().EXTRACTION_SCHEMA_PATH
    if path:
        registry = SchemaRegistry.from_path(path)
        source = path
    else:
        registry = SchemaRegistry.from_json(_read_bundled_schema())
        source = f"<bundled {_BUNDLED_SCHEMA}>"
    logger.info(
        "Loaded extraction schema %s from %s (%d sections)",
        registry.version,
        source,
        len(registry),
    )
    return registry

