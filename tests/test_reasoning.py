"""
Tests for the reasoning client and its HTTP transports.

Validates retry with exponential backoff, the degraded fallback, payload
validation, and the request shape of both transports.
"""

from __future__ import annotations

import json
from dataclasses import replace

import httpx
import pytest

from conftest import FakeTransport, assessment_payload
from speaktutor.core.config import ReasoningConfig
from speaktutor.core.errors import ReasoningConfigError, ReasoningServiceError
from speaktutor.core.models import CEFRLevel, FlowMode, FlowState, RequestContext
from speaktutor.processing.reasoning import (
    FALLBACK_REPLY,
    GeminiTransport,
    HttpReasoningTransport,
    ReasoningClient,
    create_transport,
    parse_reply,
)

CONTEXT = RequestContext(
    target_level=CEFRLevel.B1,
    topic="Travel",
    flow_state=FlowState(combo_count=3, current_mode=FlowMode.CHALLENGE),
    is_drill_retry=True,
    vocabulary_size=420,
    recent_topics=("Travel", "Food"),
)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestReasoningClient:

    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        sleep = RecordingSleep()
        client = ReasoningClient(FakeTransport(assessment_payload(7)), sleep=sleep)

        reply = await client.send("I goes home", CONTEXT)

        assert reply.assessment.final_score == 7
        assert reply.degraded is False
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retryable_failures_back_off_exponentially(self):
        busy = ReasoningServiceError("busy", status=429)
        sleep = RecordingSleep()
        transport = FakeTransport(busy, busy, assessment_payload(10))
        client = ReasoningClient(transport, max_retries=2, backoff_base_s=1.0, sleep=sleep)

        reply = await client.send("hello", CONTEXT)

        assert reply.degraded is False
        assert sleep.delays == [1.0, 2.0]
        assert len(transport.calls) == 3

    @pytest.mark.asyncio
    async def test_fallback_after_three_attempts(self):
        busy = ReasoningServiceError("unavailable", status=503)
        sleep = RecordingSleep()
        transport = FakeTransport(busy, busy, busy, assessment_payload(3))
        client = ReasoningClient(transport, max_retries=2, sleep=sleep)

        reply = await client.send("hello", CONTEXT)

        assert reply.degraded is True
        assert reply.reply == FALLBACK_REPLY
        assert reply.assessment.final_score == 10
        assert reply.assessment.correction == "N/A"
        assert len(transport.calls) == 3
        assert client.fallbacks == 1

    @pytest.mark.asyncio
    async def test_non_retryable_failure_falls_back_immediately(self):
        sleep = RecordingSleep()
        transport = FakeTransport(ReasoningServiceError("bad request", status=400))
        client = ReasoningClient(transport, sleep=sleep)

        reply = await client.send("hello", CONTEXT)

        assert reply.degraded is True
        assert len(transport.calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_malformed_payload_falls_back(self):
        transport = FakeTransport({"reply": "hi"})
        client = ReasoningClient(transport, sleep=RecordingSleep())

        reply = await client.send("hello", CONTEXT)

        assert reply.degraded is True
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_configuration_error_falls_back(self):
        transport = FakeTransport(ReasoningConfigError("no key"))
        client = ReasoningClient(transport, sleep=RecordingSleep())

        reply = await client.send("hello", CONTEXT)

        assert reply.degraded is True
        assert len(transport.calls) == 1
        assert client.fallbacks == 1

    @pytest.mark.asyncio
    async def test_unexpected_transport_error_falls_back_without_retry(self):
        sleep = RecordingSleep()
        transport = FakeTransport(RuntimeError("connection reset by peer"), assessment_payload(10))
        client = ReasoningClient(transport, sleep=sleep)

        reply = await client.send("hello", CONTEXT)

        assert reply.reply == FALLBACK_REPLY
        assert len(transport.calls) == 1
        assert sleep.delays == []


class TestParseReply:

    def test_scores_are_clamped(self):
        payload = assessment_payload(10)
        payload["grammarScore"] = 14
        reply = parse_reply(payload)
        assert reply.assessment.grammar_score == 10

    def test_empty_reply_is_rejected(self):
        payload = assessment_payload(10, reply="")
        with pytest.raises(ReasoningServiceError) as exc:
            parse_reply(payload)
        assert exc.value.retryable is False


class TestGeminiTransport:

    @pytest.mark.asyncio
    async def test_request_shape_and_payload_extraction(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("x-goog-api-key")
            seen["body"] = json.loads(request.content)
            text = json.dumps(assessment_payload(9, reply="Great trip!"))
            return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})

        cfg = replace(ReasoningConfig(), gemini_api_key="test-key", model="test-model")
        transport = GeminiTransport(cfg, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        payload = await transport.complete("I visited Rome", CONTEXT)
        await transport.aclose()

        assert payload["reply"] == "Great trip!"
        assert seen["url"].endswith("/models/test-model:generateContent")
        assert seen["key"] == "test-key"
        system = seen["body"]["systemInstruction"]["parts"][0]["text"]
        assert "[MODE: CHALLENGE]" in system
        assert "[DRILL RETRY]" in system
        assert seen["body"]["contents"][0]["parts"][0]["text"] == 'User Input: "I visited Rome"'
        assert seen["body"]["generationConfig"]["responseMimeType"] == "application/json"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [(429, True), (503, True), (500, False)])
    async def test_http_errors_are_classified(self, status, retryable):
        cfg = replace(ReasoningConfig(), gemini_api_key="test-key")
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(status)))
        transport = GeminiTransport(cfg, client=client)

        with pytest.raises(ReasoningServiceError) as exc:
            await transport.complete("hello", CONTEXT)
        await transport.aclose()

        assert exc.value.status == status
        assert exc.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_missing_key_is_a_configuration_error(self):
        cfg = replace(ReasoningConfig(), gemini_api_key="")
        transport = GeminiTransport(cfg, client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))))
        with pytest.raises(ReasoningConfigError):
            await transport.complete("hello", CONTEXT)
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_non_json_text_is_a_service_error(self):
        body = {"candidates": [{"content": {"parts": [{"text": "not json"}]}}]}
        cfg = replace(ReasoningConfig(), gemini_api_key="k")
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body)))
        transport = GeminiTransport(cfg, client=client)
        with pytest.raises(ReasoningServiceError):
            await transport.complete("hello", CONTEXT)
        await transport.aclose()


class TestHttpReasoningTransport:

    @pytest.mark.asyncio
    async def test_posts_utterance_and_structured_context(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=assessment_payload(10))

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = HttpReasoningTransport("https://tutor.test/assess", client=client)

        payload = await transport.complete("I like trains", CONTEXT)
        await transport.aclose()

        assert payload["finalScore"] == 10
        assert seen["body"]["utteranceText"] == "I like trains"
        ctx = seen["body"]["context"]
        assert ctx["targetLevel"] == "B1"
        assert ctx["isDrillRetry"] is True
        assert ctx["flowState"]["currentMode"] == "challenge"
        assert ctx["userPastTopics"] == ["Travel", "Food"]
        assert "history" not in ctx


def test_create_transport_prefers_endpoint():
    cfg = replace(ReasoningConfig(), endpoint="https://tutor.test/assess")
    assert isinstance(create_transport(cfg), HttpReasoningTransport)
    cfg = replace(ReasoningConfig(), endpoint="", gemini_api_key="k")
    assert isinstance(create_transport(cfg), GeminiTransport)
