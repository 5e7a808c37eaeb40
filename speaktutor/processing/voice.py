"""
SpeakTutor — Speech rate adaptation

The tutor speaks faster for advanced learners and when they are on a
streak, slower for beginners and when they are struggling. The result is
always relative to the user's own base rate.
"""

from __future__ import annotations

from typing import Dict

from ..core.config import voice_cfg
from ..core.models import CEFRLevel, FlowMode, TTSSettings, VoiceParams

LEVEL_RATE_MULTIPLIERS: Dict[CEFRLevel, float] = {
    CEFRLevel.A1: 0.90,
    CEFRLevel.A2: 0.95,
    CEFRLevel.B1: 1.00,
    CEFRLevel.B2: 1.05,
    CEFRLevel.C1: 1.10,
    CEFRLevel.C2: 1.15,
}

MODE_RATE_MULTIPLIERS: Dict[FlowMode, float] = {
    FlowMode.NEUTRAL: 1.00,
    FlowMode.CHALLENGE: 1.10,
    FlowMode.SUPPORT: 0.90,
}


def clamp_rate(rate: float) -> float:
    return min(max(rate, voice_cfg.min_rate), voice_cfg.max_rate)


def clamp_pitch(pitch: float) -> float:
    return min(max(pitch, voice_cfg.min_pitch), voice_cfg.max_pitch)


def adapted_speech_rate(base_rate: float, level: CEFRLevel, mode: FlowMode) -> float:
    """base × level × mode, clamped to the safe playback range."""
    rate = base_rate * LEVEL_RATE_MULTIPLIERS[level] * MODE_RATE_MULTIPLIERS[mode]
    return clamp_rate(rate)


def voice_params(settings: TTSSettings, level: CEFRLevel, mode: FlowMode) -> VoiceParams:
    return VoiceParams(
        rate=adapted_speech_rate(settings.rate, level, mode),
        pitch=settings.pitch,
        voice_id=settings.voice_id or None,
    )
