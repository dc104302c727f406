"""
Assistant reply parsing and required-field validation.

The assistant answers in free-form text that usually, but not
always, wraps the JSON payload in a fenced code block.
``parse_response`` locates the payload, decodes it and annotates
(without failing) any required fields the reply left out.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from rate_extract.core.constants import RAW_RESPONSE_EXCERPT_CHARS
from rate_extract.schemas.enums import RecordKind
from rate_extract.schemas.extraction_schema import TaskSection
from rate_extract.schemas.jobs import ExtractedSection, utcnow

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```json\n?([\s\S]*?)\n?```")
_BARE_OBJECT = re.compile(r"\{[\s\S]*\}")

NO_JSON_ERROR: str = "No valid JSON found in response"


def locate_json(raw: str) -> str | None:
    """Return the JSON text embedded in *raw*, or ``None``.

    A ```` ```json ```` fenced block wins; otherwise the span from
    the first ``{`` to the last ``}`` is used.
    """
    match = _FENCED_JSON.search(raw)
    if match:
        return match.group(1)
    match = _BARE_OBJECT.search(raw)
    if match:
        return match.group(0)
    return None


def _is_missing(record: dict[str, Any], name: str) -> bool:
    value = record.get(name)
    return value is None or value == "" or value == [] or value == {}


def find_missing_required(section: TaskSection, payload: dict[str, Any]) -> list[str]:
    """Required fields absent from *payload*.

    ``single`` sections are checked at the top level.  ``rows``
    sections are sampled on the first row only; an empty or absent
    ``rows`` list yields no warnings.
    """
    if section.record_type == RecordKind.SINGLE:
        record = payload
    else:
        rows = payload.get("rows")
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            return []
        record = rows[0]
    return [name for name in section.required_fields if _is_missing(record, name)]


def _failed(section: TaskSection, error: str, raw: str) -> ExtractedSection:
    return ExtractedSection(
        section=section.section,
        sheet=section.sheet,
        record_type=section.record_type,
        error=error,
        raw_response=raw[:RAW_RESPONSE_EXCERPT_CHARS],
    )


def parse_response(raw: str, section: TaskSection) -> ExtractedSection:
    """Turn the assistant's reply for *section* into an ``ExtractedSection``.

    Never raises.  A reply with no decodable JSON object yields an
    error-tagged section carrying the first 500 characters of the
    reply; missing required fields only add a
    ``validation_warnings.missing_required`` list to the payload.

    Args:
        raw: The assistant's reply text (or a fallback payload).
        section: The schema task the reply answers.

    Returns:
        The parsed section result.
    """
    candidate = locate_json(raw)
    if candidate is None:
        logger.warning("No JSON found in reply for %s", section.section)
        return _failed(section, NO_JSON_ERROR, raw)

    try:
        payload = json.loads(candidate)
    except ValueError as exc:
        logger.error("Failed to parse extraction response for %s: %s", section.section, exc)
        return _failed(section, str(exc), raw)

    if not isinstance(payload, dict):
        logger.error("Reply for %s is not a JSON object", section.section)
        return _failed(section, "Parsed payload is not a JSON object", raw)

    missing = find_missing_required(section, payload)
    if missing:
        logger.info(
            "%s reply is missing required fields: %s",
            section.section,
            ", ".join(missing),
        )
        payload["validation_warnings"] = {"missing_required": missing}

    return ExtractedSection(
        section=section.section,
        sheet=section.sheet,
        record_type=section.record_type,
        data=payload,
        extracted_at=utcnow(),
    )
