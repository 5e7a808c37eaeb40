"""
SpeakTutor — Configuration

Centralised settings from environment variables.
Timings, limits and credentials for every component live here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv
import certifi

os.environ.setdefault("SSL_CERT_FILE", certifi.where())
os.environ.setdefault("REQUESTS_CA_BUNDLE", certifi.where())

load_dotenv()


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8080"))
    cors_origins: tuple[str, ...] = (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    )


# ---------------------------------------------------------------------------
# Reasoning service
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReasoningConfig:
    """Credentials and tuning knobs for the remote tutor model."""
    gemini_api_key: str = os.getenv("GEMINI_API_KEY", "")
    model: str = os.getenv("REASONING_MODEL", "gemini-2.0-flash")
    # Generic JSON endpoint; when set it replaces the Gemini transport
    endpoint: str = os.getenv("REASONING_ENDPOINT", "")
    api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    # Per-request HTTP timeout (the turn watchdog is the real bound)
    request_timeout: float = 9.0
    temperature: float = 0.4
    # Short replies keep generation fast
    max_output_tokens: int = 150
    # 3 attempts total
    max_retries: int = 2
    backoff_base_s: float = 1.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.endpoint or self.gemini_api_key)


# ---------------------------------------------------------------------------
# Turn-taking tunables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TurnConfig:
    # Quiet period after the last transcript change before the turn closes
    silence_timeout_s: float = 2.0
    # Hard SLA for a single reasoning call
    watchdog_timeout_s: float = 10.0
    # How long the "retrying" notice stays up before capture is re-armed
    retry_notice_s: float = 1.5
    locale: str = os.getenv("SPEECH_LOCALE", "en-US")
    # Max chat history entries kept by the owning session
    max_history_messages: int = 200


# ---------------------------------------------------------------------------
# Voice / playback tunables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VoiceConfig:
    # Slightly slower than default for clarity
    base_rate: float = 0.9
    # Slightly friendlier than default
    pitch: float = 1.05
    voice_id: str = os.getenv("TTS_VOICE_ID", "")
    min_rate: float = 0.5
    max_rate: float = 2.0
    min_pitch: float = 0.5
    max_pitch: float = 2.0


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

server_cfg = ServerConfig()
reasoning_cfg = ReasoningConfig()
turn_cfg = TurnConfig()
voice_cfg = VoiceConfig()
