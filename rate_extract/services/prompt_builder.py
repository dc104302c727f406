"""
Per-section prompt construction.

The assistant already holds the uploaded contract in its own
knowledge base, so prompts carry only the task instruction, the
expected JSON shape, and normalisation rules, plus a short pointer
to the source document.
"""

from __future__ import annotations

from rate_extract.schemas.enums import RecordKind
from rate_extract.schemas.extraction_schema import TaskSection
from rate_extract.schemas.jobs import Contract

# Normalisation rules applied to every section.
BASE_RULES: tuple[str, ...] = (
    "Dates: YYYY-MM-DD",
    "Currency: 3-letter codes",
    "UN/LOCODEs: 5-letter codes",
)

_SHAPES: dict[RecordKind, str] = {
    RecordKind.ROWS: 'Return JSON: {"rows": [{...}]}',
    RecordKind.SINGLE: "Return JSON: {...}",
}

_CLOSING: str = "Extract and return valid JSON only."


def _document_reference(contract: Contract | None) -> str | None:
    if contract is None:
        return None
    parts = []
    if contract.file_name:
        parts.append(f"file {contract.file_name}")
    if contract.carrier_name:
        parts.append(f"carrier {contract.carrier_name}")
    if contract.contract_number:
        parts.append(f"contract number {contract.contract_number}")
    if not parts:
        return None
    return "Source document: " + ", ".join(parts)


def build_prompt(section: TaskSection, contract: Contract | None = None) -> str:
    """Build the instruction sent to the assistant for *section*.

    Layout::

        <instruction>
        [Source document: ...]

        Return JSON: {"rows": [{...}]}   (or {...} for single records)
        Required fields: A, B, C

        Rules:
        - Dates: YYYY-MM-DD
        - Currency: 3-letter codes
        - UN/LOCODEs: 5-letter codes
        - <section-specific rules>

        Extract and return valid JSON only.

    Args:
        section: The schema task being extracted.
        contract: Lightweight metadata for the source contract.

    Returns:
        The prompt text.  Pure function of its inputs.
    """
    lines: list[str] = [section.instruction]
    reference = _document_reference(contract)
    if reference:
        lines.append(reference)

    lines.append("")
    lines.append(_SHAPES[section.record_type])
    lines.append(f"Required fields: {', '.join(section.required_fields)}")

    lines.append("")
    lines.append("Rules:")
    lines.extend(f"- {rule}" for rule in (*BASE_RULES, *section.extra_rules))

    lines.append("")
    lines.append(_CLOSING)
    return "\n".join(lines)
