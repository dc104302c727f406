"""
Hosted assistant client.

Sends one chat-style request per extraction section to the tenant's
hosted assistant.  ``AssistantClient.query`` never raises: every
outcome (success, timeout, HTTP/transport error, malformed body,
missing assistant) is returned as a value so the orchestrator can
record it against the section and move on.

Transient failures (connection errors, ``429`` and ``5xx`` gateway
responses) are retried with ``tenacity`` inside the section's time
budget; a timeout is final for the section.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, ClassVar

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from rate_extract.core.config import Settings

logger = logging.getLogger(__name__)

# Status codes worth another attempt.
_RETRYABLE_STATUS: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

# Upper bound on the error body kept in an ``AssistantHttpError``.
_MAX_ERROR_BODY_CHARS: int = 1000


# ── Outcomes ────────────────────────────────────────────────


@dataclass(frozen=True)
class AssistantReply:
    """Successful reply: the assistant's text, verbatim."""

    content: str
    tokens_used: int = 0

    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class AssistantTimeout:
    """No reply within the section's time budget."""

    timeout_s: float

    ok: ClassVar[bool] = False

    def describe(self, section: str) -> tuple[str, str]:
        return (
            "Request timeout",
            f"Request timed out after {self.timeout_s:g} seconds",
        )


@dataclass(frozen=True)
class AssistantHttpError:
    """Non-2xx response, or a transport failure (``status_code`` is ``None``)."""

    status_code: int | None
    body: str

    ok: ClassVar[bool] = False

    def describe(self, section: str) -> tuple[str, str]:
        if self.status_code is None:
            return f"Failed to extract {section}", self.body
        return (
            f"Failed to extract {section}",
            f"API error {self.status_code}: {self.body}",
        )


@dataclass(frozen=True)
class AssistantMalformed:
    """2xx response whose body carries no usable reply."""

    reason: str

    ok: ClassVar[bool] = False

    def describe(self, section: str) -> tuple[str, str]:
        return f"Failed to extract {section}", self.reason


@dataclass(frozen=True)
class AssistantUnavailable:
    """The tenant has no hosted assistant to query."""

    reason: str = "No assistant configured for tenant"

    ok: ClassVar[bool] = False

    def describe(self, section: str) -> tuple[str, str]:
        return self.reason, f"Section {section} was not sent to any assistant"


AssistantFailure = AssistantTimeout | AssistantHttpError | AssistantMalformed | AssistantUnavailable
AssistantOutcome = AssistantReply | AssistantFailure


def outcome_content(outcome: AssistantOutcome, section: str) -> tuple[str, int]:
    """Flatten *outcome* into ``(content, tokens_used)``.

    Failures become a synthetic JSON payload tagged with the error
    and an empty ``rows`` list, so they flow through the normal
    parser and land in the section artifact.
    """
    if isinstance(outcome, AssistantReply):
        return outcome.content, outcome.tokens_used
    error, message = outcome.describe(section)
    payload = {
        "error": error,
        "section": section,
        "rows": [],
        "message": message,
    }
    return json.dumps(payload), 0


# ── Response envelope handling ──────────────────────────────


def extract_reply_text(body: Any) -> str:
    """Pull the reply text out of any supported envelope.

    Accepted shapes, in order of preference::

        {"message": {"content": "..."}}
        {"choices": [{"message": {"content": "..."}}]}
        {"content": "..."}

    Returns:
        The reply text, or ``""`` when none of the shapes match.
    """
    if not isinstance(body, dict):
        return ""

    message = body.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        if message["content"]:
            return message["content"]

    choices = body.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        choice_message = choices[0].get("message")
        if isinstance(choice_message, dict):
            content = choice_message.get("content")
            if isinstance(content, str) and content:
                return content

    content = body.get("content")
    if isinstance(content, str):
        return content
    return ""


def extract_token_usage(body: Any) -> int:
    """Return ``usage.total_tokens`` (or prompt + completion), else ``0``."""
    if not isinstance(body, dict):
        return 0
    usage = body.get("usage")
    if not isinstance(usage, dict):
        return 0
    total = usage.get("total_tokens")
    if isinstance(total, int) and total >= 0:
        return total
    prompt = usage.get("prompt_tokens")
    completion = usage.get("completion_tokens")
    if isinstance(prompt, int) and isinstance(completion, int):
        return max(0, prompt + completion)
    return 0


# ── Client ──────────────────────────────────────────────────


class _RetryableStatusError(Exception):
    """Internal signal: the response status is worth retrying."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"retryable status {response.status_code}")
        self.response = response


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, _RetryableStatusError):
        return True
    return isinstance(exc, httpx.TransportError) and not isinstance(
        exc, httpx.TimeoutException
    )


class AssistantClient:
    """Async client for the hosted chat-completion endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        api_version: str | None = None,
        max_retries: int = 1,
        retry_wait: wait_base | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.api_version = api_version
        self.max_retries = max(0, int(max_retries))
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, max=6)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> AssistantClient:
        """Build a client from application settings."""
        return cls(
            base_url=settings.ASSISTANT_BASE_URL,
            api_key=settings.ASSISTANT_API_KEY,
            model=settings.ASSISTANT_MODEL,
            api_version=settings.ASSISTANT_API_VERSION or None,
            max_retries=settings.ASSISTANT_MAX_RETRIES,
        )

    def _headers(self) -> dict[str, str]:
        headers = {
            "Api-Key": self.api_key,
            "Content-Type": "application/json",
        }
        if self.api_version:
            headers["X-Pinecone-API-Version"] = self.api_version
        return headers

    async def _post(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: dict[str, Any],
    ) -> httpx.Response:
        """POST with retries on transient failures.

        Returns the final response, retryable or not, once the
        attempt budget is exhausted.
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_transient),
                stop=stop_after_attempt(self.max_retries + 1),
                wait=self._retry_wait,
                reraise=True,
            ):
                with attempt:
                    response = await client.post(url, json=payload, headers=self._headers())
                    if response.status_code in _RETRYABLE_STATUS:
                        raise _RetryableStatusError(response)
                    return response
        except _RetryableStatusError as exc:
            return exc.response
        raise RuntimeError("unreachable: retry loop exited without a result")

    async def query(
        self,
        assistant_id: str | None,
        prompt: str,
        section: str,
        timeout_s: float,
    ) -> AssistantOutcome:
        """Send *prompt* for *section* and return a typed outcome.

        The whole exchange, retries included, is bounded by
        *timeout_s*; on expiry the in-flight request is cancelled
        and :class:`AssistantTimeout` is returned.

        Args:
            assistant_id: The tenant's hosted assistant, or
                ``None`` when the tenant has none.
            prompt: Text built by ``build_prompt``.
            section: Section name (for logs and fallbacks).
            timeout_s: Time budget in seconds.

        Returns:
            One of the ``Assistant*`` outcome dataclasses.
        """
        if not assistant_id:
            logger.warning("No assistant available for section %s", section)
            return AssistantUnavailable()

        url = f"{self.base_url}/{assistant_id}"
        payload = {
            "messages": [{"role": "user", "content": prompt}],
            "model": self.model,
            "stream": False,
        }

        logger.info(
            "Querying assistant for %s (timeout=%gs)",
            section,
            timeout_s,
        )
        start_s = time.monotonic()
        try:
            async with asyncio.timeout(timeout_s):
                async with httpx.AsyncClient(
                    transport=self._transport,
                    timeout=httpx.Timeout(timeout_s),
                ) as client:
                    response = await self._post(client, url, payload)
        except (TimeoutError, httpx.TimeoutException):
            logger.warning("Timeout after %gs for section %s", timeout_s, section)
            return AssistantTimeout(timeout_s=timeout_s)
        except httpx.HTTPError as exc:
            logger.error("Assistant transport error for %s: %s", section, exc)
            return AssistantHttpError(status_code=None, body=str(exc))

        elapsed_s = time.monotonic() - start_s

        if not response.is_success:
            body = response.text[:_MAX_ERROR_BODY_CHARS]
            logger.error(
                "Assistant API error for %s: %s %s",
                section,
                response.status_code,
                body,
            )
            return AssistantHttpError(status_code=response.status_code, body=body)

        try:
            body = response.json()
        except ValueError:
            logger.error("Assistant returned a non-JSON body for %s", section)
            return AssistantMalformed(reason="Response body is not valid JSON")

        content = extract_reply_text(body)
        if not content:
            return AssistantMalformed(reason="No content in response")

        tokens = extract_token_usage(body)
        logger.info(
            "%s extraction completed in %.1fs, tokens: %d",
            section,
            elapsed_s,
            tokens,
        )
        return AssistantReply(content=content, tokens_used=tokens)
