"""
SpeakTutor — Reasoning Client

Sends one utterance plus its structured context to the remote tutor model
and returns the reply with its assessment.

Two layers:
  1. Transport — one HTTP attempt (Gemini REST, or a generic JSON endpoint),
     failures classified retryable (429 / 503) or not.
  2. Client    — retries with exponential backoff, then degrades to a fixed
     fallback reply scored as a pass so the conversation never stalls.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.config import ReasoningConfig, reasoning_cfg
from ..core.errors import ReasoningConfigError, ReasoningServiceError
from ..core.interfaces import ReasoningTransport
from ..core.models import Assessment, ReasoningReply, RequestContext
from .prompts import RESPONSE_SCHEMA, build_system_instruction, build_user_prompt

logger = logging.getLogger("speaktutor.reasoning")

FALLBACK_REPLY = "I'm having a little trouble hearing you. Can you say that again?"


def fallback_reply() -> ReasoningReply:
    """Degraded answer: scored as a pass so the user is never drill-locked by an outage."""
    return ReasoningReply(
        reply=FALLBACK_REPLY,
        assessment=Assessment(
            grammar_score=10,
            phonetic_score=10,
            final_score=10,
            correction="N/A",
            explanation="Connection instability.",
            word_count=0,
        ),
        degraded=True,
    )


# ---------------------------------------------------------------------------
# Wire schema
# ---------------------------------------------------------------------------

class AssessmentPayload(BaseModel):
    """Response body of the reasoning service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    grammar_score: int = Field(alias="grammarScore")
    phonetic_score: int = Field(alias="phoneticsScore")
    final_score: int = Field(alias="finalScore")
    correction: Optional[str] = None
    explanation: Optional[str] = None
    reply: str = Field(min_length=1)
    word_count: int = Field(default=0, alias="wordCount")

    def to_reply(self) -> ReasoningReply:
        return ReasoningReply(
            reply=self.reply.strip(),
            assessment=Assessment(
                grammar_score=self.grammar_score,
                phonetic_score=self.phonetic_score,
                final_score=self.final_score,
                correction=self.correction,
                explanation=self.explanation,
                word_count=self.word_count,
            ),
        )


def parse_reply(payload: Dict[str, Any]) -> ReasoningReply:
    try:
        return AssessmentPayload.model_validate(payload).to_reply()
    except ValidationError as e:
        raise ReasoningServiceError(f"Malformed assessment payload: {e.error_count()} error(s)", retryable=False) from e


def _status_error(e: httpx.HTTPStatusError) -> ReasoningServiceError:
    status = e.response.status_code
    return ReasoningServiceError(f"Reasoning service returned HTTP {status}", status=status)


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

class GeminiTransport:
    """Gemini `generateContent` over REST with a JSON response schema."""

    def __init__(
        self,
        cfg: ReasoningConfig = reasoning_cfg,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._cfg = cfg
        self._client = client or httpx.AsyncClient(timeout=cfg.request_timeout)

    @property
    def url(self) -> str:
        return f"{self._cfg.api_base}/models/{self._cfg.model}:generateContent"

    def build_body(self, utterance: str, context: RequestContext) -> Dict[str, Any]:
        # Only the current turn goes out, to keep the prompt small
        return {
            "systemInstruction": {"parts": [{"text": build_system_instruction(context)}]},
            "contents": [{"role": "user", "parts": [{"text": build_user_prompt(utterance)}]}],
            "generationConfig": {
                "temperature": self._cfg.temperature,
                "maxOutputTokens": self._cfg.max_output_tokens,
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }

    async def complete(self, utterance: str, context: RequestContext) -> Dict[str, Any]:
        if not self._cfg.gemini_api_key:
            raise ReasoningConfigError("Reasoning service is not configured: set GEMINI_API_KEY or REASONING_ENDPOINT.")

        try:
            resp = await self._client.post(
                self.url,
                headers={"x-goog-api-key": self._cfg.gemini_api_key},
                json=self.build_body(utterance, context),
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise _status_error(e) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ReasoningServiceError(f"Reasoning request failed: {e}") from e

        return self._extract_payload(data)

    @staticmethod
    def _extract_payload(data: Dict[str, Any]) -> Dict[str, Any]:
        # candidates[0].content.parts[*].text holds the JSON document
        try:
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        except (KeyError, IndexError, TypeError) as e:
            raise ReasoningServiceError("Empty response from reasoning model") from e
        if not text.strip():
            raise ReasoningServiceError("Empty response from reasoning model")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise ReasoningServiceError(f"Reasoning model returned invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ReasoningServiceError("Reasoning model returned a non-object JSON document")
        return payload

    async def aclose(self) -> None:
        await self._client.aclose()


class HttpReasoningTransport:
    """Generic service: POST {utteranceText, context} → assessment JSON."""

    def __init__(
        self,
        endpoint: str,
        cfg: ReasoningConfig = reasoning_cfg,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=cfg.request_timeout)

    async def complete(self, utterance: str, context: RequestContext) -> Dict[str, Any]:
        try:
            resp = await self._client.post(
                self._endpoint,
                json={"utteranceText": utterance, "context": context.to_dict()},
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as e:
            raise _status_error(e) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ReasoningServiceError(f"Reasoning request failed: {e}") from e

        if not isinstance(payload, dict):
            raise ReasoningServiceError("Reasoning service returned a non-object JSON document")
        return payload

    async def aclose(self) -> None:
        await self._client.aclose()


def create_transport(cfg: ReasoningConfig = reasoning_cfg) -> ReasoningTransport:
    if cfg.endpoint:
        return HttpReasoningTransport(cfg.endpoint, cfg)
    return GeminiTransport(cfg)


# ---------------------------------------------------------------------------
# Client (retry → fallback)
# ---------------------------------------------------------------------------

class ReasoningClient:
    """
    One call per turn.

    Priority:
      1. The remote service, retried up to `max_retries` times on 429/503
         with backoff `backoff_base_s × 2^attempt`.
      2. The fixed fallback reply on any other failure (missing
         credentials included) or when retries run out.

    Nothing but cancellation escapes `send`.
    """

    def __init__(
        self,
        transport: ReasoningTransport,
        max_retries: int = reasoning_cfg.max_retries,
        backoff_base_s: float = reasoning_cfg.backoff_base_s,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        label: str = "",
    ) -> None:
        self._transport = transport
        self._max_retries = max_retries
        self._backoff_base_s = backoff_base_s
        self._sleep = sleep
        self._label = label
        self.calls = 0
        self.fallbacks = 0

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt `attempt` (0-indexed)."""
        return self._backoff_base_s * (2 ** attempt)

    async def send(self, utterance: str, context: RequestContext) -> ReasoningReply:
        self.calls += 1

        for attempt in range(self._max_retries + 1):
            try:
                payload = await self._transport.complete(utterance, context)
                return parse_reply(payload)
            except ReasoningServiceError as e:
                if e.retryable and attempt < self._max_retries:
                    wait = self.backoff_delay(attempt)
                    logger.warning(
                        f"[{self._label}] Reasoning service busy ({e.status}), "
                        f"retry {attempt + 1}/{self._max_retries} in {wait * 1000:.0f}ms"
                    )
                    await self._sleep(wait)
                    continue

                logger.error(f"[{self._label}] Reasoning failed on attempt {attempt + 1}: {e}")
                break
            except Exception as e:
                # Misconfiguration or a transport bug; never retried
                logger.error(f"[{self._label}] Reasoning call raised {type(e).__name__}: {e}", exc_info=True)
                break

        self.fallbacks += 1
        logger.warning(f"[{self._label}] Using fallback reply")
        return fallback_reply()
