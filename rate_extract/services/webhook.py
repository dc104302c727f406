"""
Job completion notifications.

When a job that was started with a ``callback_url`` reaches a
terminal state, its final document is POSTed to that URL.
Delivery is best effort: failures are logged and never touch
the job.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from rate_extract.core.config import get_settings
from rate_extract.core.security import sign_payload, validate_url
from rate_extract.schemas.jobs import ExtractionJob

logger = logging.getLogger(__name__)

_DELIVERY_TIMEOUT_S: float = 30.0


def build_notification(job: ExtractionJob) -> dict[str, Any]:
    """Payload describing a finished job."""
    return {
        "event": f"extraction.{job.status}",
        "jobId": job.id,
        "contractId": job.contract_id,
        "status": str(job.status),
        "progress": job.progress,
        "totalSections": job.total_sections,
        "completedSections": job.completed_sections,
        "failedSections": job.failed_sections,
        "tokensUsed": job.tokens_used,
        "outputDirectory": job.output_directory,
        "errorMessage": job.error_message,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


async def notify_job_finished(
    job: ExtractionJob,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """POST *job*'s notification to its callback URL, if it has one.

    The URL passes SSRF validation first.  With ``WEBHOOK_SECRET``
    set, ``X-Webhook-Signature`` / ``X-Webhook-Timestamp`` headers
    carry an HMAC of the body.  Headers supplied with the start
    request are merged in last.

    Returns:
        ``True`` when the receiver answered 2xx.
    """
    if not job.callback_url:
        return False

    try:
        validate_url(job.callback_url, purpose="callback_url")
    except ValueError as exc:
        logger.error("Callback for job %s blocked: %s", job.id, exc)
        return False

    body = json.dumps(build_notification(job)).encode()
    headers = {"Content-Type": "application/json"}
    secret = get_settings().WEBHOOK_SECRET
    if secret:
        signature, timestamp = sign_payload(body, secret)
        headers["X-Webhook-Signature"] = signature
        headers["X-Webhook-Timestamp"] = str(timestamp)
    headers.update(job.callback_headers or {})

    try:
        async with httpx.AsyncClient(
            transport=transport,
            timeout=_DELIVERY_TIMEOUT_S,
        ) as client:
            response = await client.post(job.callback_url, content=body, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.error("Callback delivery for job %s failed: %s", job.id, exc)
        return False

    logger.info(
        "Callback for job %s delivered (status %s)",
        job.id,
        response.status_code,
    )
    return True
