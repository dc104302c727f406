"""
Centralised constants used across the application.

Keeping magic strings in one place makes it easy to rename keys,
avoids silent typos, and keeps ``grep`` useful when debugging.
"""

from __future__ import annotations

# ── Redis key prefixes ──────────────────────────────────────────────────────
# Every Redis key written by the application starts with one of
# these prefixes so the keyspace stays organised and collisions
# are impossible.

REDIS_PREFIX_JOB: str = "extraction_job:"
"""Prefix for serialised extraction-job documents."""

REDIS_PREFIX_CONTRACT_JOBS: str = "contract_jobs:"
"""Prefix for per-contract sorted sets of job IDs (scored by creation time)."""

REDIS_PREFIX_ACTIVE_JOB: str = "contract_active_job:"
"""Prefix for the per-contract marker naming the single active job."""

REDIS_PREFIX_CONTRACT: str = "contract:"
"""Prefix for serialised contract documents."""

REDIS_PREFIX_TENANT_ASSISTANT: str = "tenant_assistant:"
"""Prefix for tenant → hosted-assistant ID mappings."""

REDIS_PREFIX_METRICS: str = "metrics:"
"""Prefix for atomic metric counters."""


# ── Artifact file names ─────────────────────────────────────────────────────

COMPLETE_EXTRACTION_FILENAME: str = "complete_extraction.json"
"""Consolidated artifact holding metadata plus every section payload."""

EXTRACTION_SUMMARY_FILENAME: str = "extraction_summary.json"
"""Summary artifact (counts, failed sections, tokens, file list)."""


# ── Contract extraction status strings ──────────────────────────────────────

CONTRACT_STATUS_PROCESSING: str = "processing"
CONTRACT_STATUS_COMPLETED: str = "completed"
CONTRACT_STATUS_FAILED: str = "failed"
CONTRACT_STATUS_CANCELLED: str = "cancelled"


# ── Misc ────────────────────────────────────────────────────────────────────

RAW_RESPONSE_EXCERPT_CHARS: int = 500
"""Maximum characters of an unparsable reply kept for diagnostics."""

SHUTDOWN_CANCEL_NOTE: str = "Server shutdown"
"""Error note recorded on jobs cancelled by a graceful shutdown."""
