"""Tests for the hosted assistant client."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from tenacity import wait_none

from rate_extract.core.config import Settings
from rate_extract.services.assistant_client import (
    AssistantClient,
    AssistantHttpError,
    AssistantMalformed,
    AssistantReply,
    AssistantTimeout,
    AssistantUnavailable,
    extract_reply_text,
    extract_token_usage,
    outcome_content,
)


def _client(handler, *, max_retries: int = 1) -> AssistantClient:
    return AssistantClient(
        base_url="https://assistant.test/chat/",
        api_key="secret-key",
        model="test-model",
        api_version="2025-04",
        max_retries=max_retries,
        retry_wait=wait_none(),
        transport=httpx.MockTransport(handler),
    )


class TestReplyEnvelopes:
    def test_message_envelope(self):
        assert extract_reply_text({"message": {"content": "hello"}}) == "hello"

    def test_choices_envelope(self):
        body = {"choices": [{"message": {"content": "from choices"}}]}
        assert extract_reply_text(body) == "from choices"

    def test_flat_content(self):
        assert extract_reply_text({"content": "flat"}) == "flat"

    def test_message_preferred_over_choices(self):
        body = {
            "message": {"content": "first"},
            "choices": [{"message": {"content": "second"}}],
        }
        assert extract_reply_text(body) == "first"

    def test_no_match(self):
        assert extract_reply_text({"message": {"role": "assistant"}}) == ""
        assert extract_reply_text(["not", "a", "dict"]) == ""

    def test_token_usage(self):
        assert extract_token_usage({"usage": {"total_tokens": 42}}) == 42
        assert extract_token_usage({"usage": {"prompt_tokens": 10, "completion_tokens": 5}}) == 15
        assert extract_token_usage({}) == 0
        assert extract_token_usage({"usage": "n/a"}) == 0


class TestOutcomeContent:
    def test_reply_passes_through(self):
        assert outcome_content(AssistantReply(content="text", tokens_used=7), "BaseRates") == (
            "text",
            7,
        )

    def test_timeout_fallback_payload(self):
        content, tokens = outcome_content(AssistantTimeout(timeout_s=600), "BaseRates")
        assert tokens == 0
        assert json.loads(content) == {
            "error": "Request timeout",
            "section": "BaseRates",
            "rows": [],
            "message": "Request timed out after 600 seconds",
        }

    def test_http_error_fallback_payload(self):
        content, _ = outcome_content(
            AssistantHttpError(status_code=500, body="boom"),
            "Surcharges",
        )
        payload = json.loads(content)
        assert payload["error"] == "Failed to extract Surcharges"
        assert payload["message"] == "API error 500: boom"
        assert payload["rows"] == []

    def test_unavailable_fallback_payload(self):
        content, _ = outcome_content(AssistantUnavailable(), "Customers")
        assert json.loads(content)["error"] == "No assistant configured for tenant"


class TestQuery:
    async def test_success_sends_expected_request(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "message": {"role": "assistant", "content": '```json\n{"rows": []}\n```'},
                    "usage": {"total_tokens": 321},
                },
            )

        outcome = await _client(handler).query("asst-1", "the prompt", "BaseRates", 5)

        assert outcome == AssistantReply(content='```json\n{"rows": []}\n```', tokens_used=321)
        request = seen[0]
        assert str(request.url) == "https://assistant.test/chat/asst-1"
        assert request.headers["Api-Key"] == "secret-key"
        assert request.headers["X-Pinecone-API-Version"] == "2025-04"
        body = json.loads(request.content)
        assert body == {
            "messages": [{"role": "user", "content": "the prompt"}],
            "model": "test-model",
            "stream": False,
        }

    async def test_missing_assistant_skips_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        outcome = await _client(handler).query(None, "p", "BaseRates", 5)
        assert isinstance(outcome, AssistantUnavailable)

    async def test_client_error_is_not_retried(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(401, text="bad key")

        outcome = await _client(handler, max_retries=3).query("a", "p", "BaseRates", 5)
        assert outcome == AssistantHttpError(status_code=401, body="bad key")
        assert calls == 1

    async def test_transient_status_is_retried(self):
        responses = [
            httpx.Response(503, text="busy"),
            httpx.Response(200, json={"content": '{"a": 1}'}),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        outcome = await _client(handler, max_retries=1).query("a", "p", "BaseRates", 5)
        assert outcome == AssistantReply(content='{"a": 1}', tokens_used=0)
        assert responses == []

    async def test_retries_exhausted_returns_last_response(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(500, text="server down")

        outcome = await _client(handler, max_retries=2).query("a", "p", "BaseRates", 5)
        assert outcome == AssistantHttpError(status_code=500, body="server down")
        assert calls == 3

    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        outcome = await _client(handler, max_retries=0).query("a", "p", "BaseRates", 5)
        assert isinstance(outcome, AssistantHttpError)
        assert outcome.status_code is None
        assert "connection refused" in outcome.body

    async def test_timeout(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, json={"content": "late"})

        outcome = await _client(handler).query("a", "p", "BaseRates", 0.05)
        assert outcome == AssistantTimeout(timeout_s=0.05)
        assert outcome.describe("BaseRates")[0] == "Request timeout"

    async def test_non_json_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>oops</html>")

        outcome = await _client(handler).query("a", "p", "BaseRates", 5)
        assert isinstance(outcome, AssistantMalformed)

    async def test_empty_content(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"message": {"content": ""}})

        outcome = await _client(handler).query("a", "p", "BaseRates", 5)
        assert outcome == AssistantMalformed(reason="No content in response")


def test_from_settings():
    settings = Settings(
        _env_file=None,
        ASSISTANT_BASE_URL="https://x.test/chat",
        ASSISTANT_API_KEY="k",
        ASSISTANT_MODEL="m",
        ASSISTANT_MAX_RETRIES=3,
    )
    client = AssistantClient.from_settings(settings)
    assert client.base_url == "https://x.test/chat"
    assert client.api_key == "k"
    assert client.model == "m"
    assert client.max_retries == 3


@pytest.mark.parametrize("retries", [-1, 0])
def test_negative_retries_clamped(retries):
    client = AssistantClient(base_url="https://x", api_key="k", model="m", max_retries=retries)
    assert client.max_retries == 0
