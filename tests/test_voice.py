from __future__ import annotations

import pytest

from speaktutor.core.models import CEFRLevel, FlowMode, TTSSettings
from speaktutor.processing.voice import adapted_speech_rate, clamp_pitch, clamp_rate, voice_params


def test_c1_challenge_rate() -> None:
    rate = adapted_speech_rate(0.9, CEFRLevel.C1, FlowMode.CHALLENGE)
    assert rate == pytest.approx(1.089)


def test_a1_support_rate() -> None:
    rate = adapted_speech_rate(1.0, CEFRLevel.A1, FlowMode.SUPPORT)
    assert rate == pytest.approx(0.81)


def test_neutral_b1_keeps_base_rate() -> None:
    assert adapted_speech_rate(1.3, CEFRLevel.B1, FlowMode.NEUTRAL) == pytest.approx(1.3)


def test_rate_is_clamped() -> None:
    assert adapted_speech_rate(1.9, CEFRLevel.C2, FlowMode.CHALLENGE) == 2.0
    assert adapted_speech_rate(0.5, CEFRLevel.A1, FlowMode.SUPPORT) == 0.5
    assert clamp_rate(0.1) == 0.5


def test_voice_params_keep_pitch_and_voice() -> None:
    settings = TTSSettings(voice_id="en-US-2", rate=0.9, pitch=1.05)
    voice = voice_params(settings, CEFRLevel.B2, FlowMode.NEUTRAL)
    assert voice.rate == pytest.approx(0.945)
    assert voice.pitch == 1.05
    assert voice.voice_id == "en-US-2"


def test_pitch_is_clamped() -> None:
    assert clamp_pitch(0.2) == 0.5
    assert clamp_pitch(2.4) == 2.0
    assert clamp_pitch(1.05) == 1.05
