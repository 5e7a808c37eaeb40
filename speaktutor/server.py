"""
SpeakTutor — FastAPI Server

================================================================================
Architecture:
  • One TutorSession per WebSocket connection.
  • The browser runs speech recognition and synthesis; the session drives
    it through capture / speak commands and gets capture_* / playback_*
    reports back on the same socket.
  • The reasoning transport is shared by all sessions; retries, fallback
    and the watchdog are per session.
================================================================================

Endpoints:
  WS  /ws/conversation      — real-time tutoring session
  GET /health               — server health
  GET /sessions             — list active sessions
  GET /session/{session_id} — single session detail

Client → Server messages:
  { type: "start_session", topic, level, learner_id?, speech_supported? }
  { type: "toggle" }                          → microphone on / off
  { type: "pause" } / { type: "resume" }
  { type: "update_voice", rate?, pitch?, voice_id? }
  { type: "capture_start" }
  { type: "capture_result", text, is_final }
  { type: "capture_error", code }
  { type: "capture_end" }
  { type: "playback_end" } / { type: "playback_error", message }
  { type: "stop_session" }
  { type: "ping" }

Server → Client messages:
  { type: "capture", action: "start"|"stop"|"abort", locale }
  { type: "speak", text, rate, pitch, voice_id }
  { type: "cancel_speech" }
  { type: "conversation_state", data: {...} }
  { type: "chat", data: {...} }
  { type: "notice", text }                    → null clears it
  { type: "session_started", data: {...} }
  { type: "session_stopped", data: {...} }
  { type: "error", message }
  { type: "pong" }
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import reasoning_cfg, server_cfg, turn_cfg
from .core.events import CaptureEnded, CaptureError, CaptureResult, CaptureStarted
from .core.interfaces import ReasoningTransport
from .core.models import CEFRLevel, TTSSettings
from .processing.reasoning import ReasoningClient, create_transport
from .services.adapters import WebSocketCaptureAdapter, WebSocketPlaybackAdapter
from .services.registry import SessionRegistry
from .services.session import TutorSession
from .services.store import InMemoryProgressStore

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("speaktutor.server")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

# ---------------------------------------------------------------------------
# Shared state
# ---------------------------------------------------------------------------

registry = SessionRegistry()

# Progress survives reconnects of the same learner
_stores: Dict[str, InMemoryProgressStore] = {}

_transport: Optional[ReasoningTransport] = None


def get_transport() -> ReasoningTransport:
    global _transport
    if _transport is None:
        _transport = create_transport(reasoning_cfg)
    return _transport


def set_transport(transport: Optional[ReasoningTransport]) -> None:
    global _transport
    _transport = transport


def get_store(learner_id: str) -> InMemoryProgressStore:
    store = _stores.get(learner_id)
    if store is None:
        store = _stores[learner_id] = InMemoryProgressStore()
    return store


# ---------------------------------------------------------------------------
# FastAPI Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 SpeakTutor starting...")
    logger.info(f"   Reasoning configured: {reasoning_cfg.has_credentials}")
    yield
    logger.info("🛑 Shutting down — closing all sessions...")
    await registry.stop_all()
    aclose = getattr(_transport, "aclose", None)
    if aclose is not None:
        await aclose()
    logger.info("🛑 SpeakTutor stopped")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SpeakTutor — Real-Time Voice Language Tutor",
    version=__version__,
    description=(
        "Turn-taking voice tutor: listens to the learner, scores each "
        "utterance with a remote model, adapts tone and speaking rate, and "
        "answers out loud."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(server_cfg.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# REST Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": __version__,
        "reasoning_configured": reasoning_cfg.has_credentials,
        "active_sessions": registry.active_count,
    }


@app.get("/sessions")
async def list_sessions():
    return {sid: session.to_dict() for sid, session in registry.all_sessions.items()}


@app.get("/session/{session_id}")
async def session_detail(session_id: str):
    session = registry.get(session_id)
    if session:
        return session.to_dict()
    return JSONResponse(status_code=404, content={"error": "session not found"})


# ---------------------------------------------------------------------------
# WebSocket: one tutoring session per connection
# ---------------------------------------------------------------------------

def _parse_level(raw: Any) -> CEFRLevel:
    return CEFRLevel(str(raw or "A1").upper())


def _optional_float(raw: Any) -> Optional[float]:
    if raw is None:
        return None
    return float(raw)


@app.websocket("/ws/conversation")
async def websocket_conversation(ws: WebSocket):
    await ws.accept()

    session_id = uuid.uuid4().hex[:12]
    session: Optional[TutorSession] = None

    # Helper to send JSON safely
    async def send(data: Dict[str, Any]) -> None:
        try:
            await ws.send_text(json.dumps(data))
        except Exception:
            pass

    capture = WebSocketCaptureAdapter(send, locale=turn_cfg.locale, label=session_id)
    playback = WebSocketPlaybackAdapter(send, label=session_id)

    async def on_state(snap: Any) -> None:
        await send({"type": "conversation_state", "data": snap.to_dict()})

    async def on_chat(msg: Any) -> None:
        await send({"type": "chat", "data": msg.to_dict()})

    async def on_notice(text: Optional[str]) -> None:
        await send({"type": "notice", "text": text})

    try:
        while True:
            raw = await ws.receive_text()

            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(message, dict):
                continue

            msg_type = message.get("type", "")

            # ── Keepalive ──
            if msg_type == "ping":
                await send({"type": "pong"})
                continue

            # ── Start a tutoring session ──
            if msg_type == "start_session":
                if session is not None:
                    await send({"type": "error", "message": "Session already active"})
                    continue
                try:
                    level = _parse_level(message.get("level"))
                except ValueError:
                    await send({"type": "error", "message": f"Unknown level: {message.get('level')}"})
                    continue

                capture.supported = bool(message.get("speech_supported", True))
                session = TutorSession(
                    session_id,
                    capture,
                    playback,
                    ReasoningClient(get_transport(), label=session_id),
                    get_store(str(message.get("learner_id") or "anonymous")),
                    settings=TTSSettings(),
                    on_state=on_state,
                    on_chat=on_chat,
                    on_notice=on_notice,
                )
                registry.add(session)
                info = await session.start(topic=str(message.get("topic") or "General"), level=level)
                await send({"type": "session_started", "data": info})
                continue

            if session is None:
                if msg_type in ("toggle", "pause", "resume", "update_voice", "stop_session"):
                    await send({"type": "error", "message": "No active session"})
                continue

            # ── User actions ──
            if msg_type == "toggle":
                session.toggle()

            elif msg_type == "pause":
                session.pause()

            elif msg_type == "resume":
                session.resume()

            elif msg_type == "update_voice":
                try:
                    session.update_voice(
                        rate=_optional_float(message.get("rate")),
                        pitch=_optional_float(message.get("pitch")),
                        voice_id=message.get("voice_id"),
                    )
                except (TypeError, ValueError):
                    await send({"type": "error", "message": "Invalid voice settings"})

            elif msg_type == "stop_session":
                summary = await registry.stop_session(session_id) or {}
                session = None
                await send({"type": "session_stopped", "data": summary})

            # ── Speech capture reports ──
            elif msg_type == "capture_start":
                capture.feed(CaptureStarted())

            elif msg_type == "capture_result":
                capture.feed(CaptureResult(
                    text=str(message.get("text", "")),
                    is_final=bool(message.get("is_final", False)),
                ))

            elif msg_type == "capture_error":
                capture.feed(CaptureError(code=str(message.get("code", ""))))

            elif msg_type == "capture_end":
                capture.feed(CaptureEnded())

            # ── Playback reports ──
            elif msg_type == "playback_end":
                playback.finish()

            elif msg_type == "playback_error":
                playback.finish(error=str(message.get("message") or "playback failed"))

            else:
                logger.debug(f"[{session_id}] Unknown message type '{msg_type}'")

    except WebSocketDisconnect:
        logger.info(f"[{session_id}] WebSocket disconnected")
    except Exception as e:
        logger.error(f"[{session_id}] WebSocket error: {e}", exc_info=True)
    finally:
        if session is not None:
            await registry.stop_session(session_id)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    import uvicorn
    uvicorn.run(
        "speaktutor.server:app",
        host=server_cfg.host,
        port=server_cfg.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
