"""
SpeakTutor — Tutor prompts

Builds the system instruction sent with every reasoning call. Only the
current utterance goes out with it; the running conversation is
summarised through the structured context instead of a transcript.
"""

from __future__ import annotations

from ..core.models import CEFRLevel, FlowMode, RequestContext

PEDAGOGIES = {
    CEFRLevel.A1: "Basic & Clear. Simple sentences.",
    CEFRLevel.A2: 'Connector Style. Connect simple phrases ("and", "but").',
    CEFRLevel.B1: "Independent. Moderate speed. Express opinions.",
    CEFRLevel.B2: "Fluent Operational. Abstract themes. No hesitation allowed.",
    CEFRLevel.C1: "Strategist. Fast, nuanced, ironic.",
    CEFRLevel.C2: "Master. Native cultural references & advanced rhetoric.",
}

SMALL_VOCABULARY = 500
LARGE_VOCABULARY = 2000

# Shape the model must answer with (Gemini responseSchema dialect)
RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "grammarScore": {"type": "INTEGER"},
        "phoneticsScore": {"type": "INTEGER"},
        "finalScore": {"type": "INTEGER"},
        "correction": {"type": "STRING", "nullable": True},
        "explanation": {"type": "STRING", "nullable": True},
        "reply": {"type": "STRING"},
        "wordCount": {"type": "INTEGER"},
    },
    "required": ["grammarScore", "phoneticsScore", "finalScore", "reply", "wordCount"],
}


def _mode_instruction(ctx: RequestContext) -> str:
    mode = ctx.flow_state.current_mode
    if mode == FlowMode.CHALLENGE:
        return (
            "[MODE: CHALLENGE]\n"
            f"- The user is on a streak (combo: {ctx.flow_state.combo_count}).\n"
            "- Increase speaking rate.\n"
            "- Be provocative. Challenge their opinion."
        )
    if mode == FlowMode.SUPPORT:
        return (
            "[MODE: SUPPORT]\n"
            "- The user is struggling.\n"
            "- Speak slower and more clearly.\n"
            "- Provide a HINT."
        )
    return "[MODE: STANDARD] Maintain a balanced, helpful tutor persona."


def _context_instruction(ctx: RequestContext) -> str:
    topics = ", ".join(ctx.recent_topics) if ctx.recent_topics else "None yet"
    if ctx.vocabulary_size < SMALL_VOCABULARY:
        vocab_rule = "Use very frequent words."
    elif ctx.vocabulary_size > LARGE_VOCABULARY:
        vocab_rule = "Use synonyms and less common words."
    else:
        vocab_rule = "Use everyday vocabulary with the occasional new word."
    return (
        "[USER CONTEXT]\n"
        f"- Unique vocabulary size: {ctx.vocabulary_size} words. {vocab_rule}\n"
        f"- Previous interest topics: {topics}.\n"
        "- If the current topic relates to a previous interest, briefly connect the dots."
    )


def _drill_instruction(ctx: RequestContext) -> str:
    if not ctx.is_drill_retry:
        return ""
    return (
        "[DRILL RETRY]\n"
        "- The user is repeating a sentence you asked them to correct.\n"
        "- Score only whether the correction was applied."
    )


def build_system_instruction(ctx: RequestContext) -> str:
    parts = [
        "Role: Strict English Tutor.",
        f"Target Level: {ctx.target_level.value}.",
        _mode_instruction(ctx),
        _context_instruction(ctx),
        f'[TOPIC: "{ctx.topic}"] Connect the user\'s last answer to a related sub-topic and keep the conversation flowing.',
    ]
    drill = _drill_instruction(ctx)
    if drill:
        parts.append(drill)
    parts.append(f"PEDAGOGY: {PEDAGOGIES[ctx.target_level]}")
    parts.append(
        "OUTPUT (JSON):\n"
        "- grammarScore, phoneticsScore, finalScore (0-10)\n"
        "- correction (string|null)\n"
        "- explanation (short string|null)\n"
        "- reply (string) - MAX 30 WORDS. Concise and engaging.\n"
        "- wordCount (int)"
    )
    parts.append(
        "RULES:\n"
        "1. Score < 10: FAIL. 'reply' MUST ask the user to repeat the corrected sentence.\n"
        "2. Score 10: PASS. 'reply' continues the conversation.\n"
        "3. Keep replies short. Speed is the priority."
    )
    return "\n\n".join(parts)


def build_user_prompt(utterance: str) -> str:
    return f'User Input: "{utterance}"'
