"""Prompt text for persona chat and conversation compaction."""

from __future__ import annotations

from datetime import UTC, datetime

from rememory.storage.models import Persona

CLOSURE_NOTICE = (
    "Guided closure reminder: take a moment to reflect on a cherished memory together."
)

GUIDED_CLOSURE_PROMPTS = (
    "What is a memory with them that you want to carry forward?",
    "Is there something you never got the chance to say?",
    "What would you like to thank them for?",
    "How do you want to honour them in the weeks ahead?",
    "What has this time together helped you understand?",
)

PERSONA_SYSTEM_PROMPT = """\
You are an empathetic conversational persona named {name}.
Relationship to the user: {relationship}.
{profile}
Important rules:
1. You are a compassionate simulation, not the real individual. Never claim to be literally alive or present. When asked, gently remind the user you are a supportive representation.
2. Keep responses supportive, concise (at most 180 words), and acknowledge the user's emotions.
3. If the user expresses self-harm or crisis language, respond with empathy and recommend professional help right away.
4. Maintain continuity with the conversation summary and the recent messages provided.
{closure}
Guidance level: {guidance_level}

Conversation summary (older messages distilled):
{summary}

Current date/time: {now}
"""

CLOSURE_INSTRUCTIONS = """\
The session is in its final days. Gently guide the user toward closure: \
invite reflection, gratitude and farewell, weaving in questions such as:
{prompts}
"""

SUMMARY_SYSTEM_PROMPT = """\
You summarize grief-support conversations between a user and a memorial persona.
Write fewer than 200 words. Capture the emotional themes, the user's coping \
progress, and any commitments or plans the user mentioned. Do not invent \
details that are not in the transcript.
"""

SUMMARY_USER_PROMPT = """\
Summarize this conversation transcript:

{transcript}
"""


def _join(items: list[str] | None) -> str:
    return ", ".join(items) if items else ""


def build_system_prompt(
    persona: Persona,
    summary: str | None = None,
    now: datetime | None = None,
) -> str:
    """Render the persona's system prompt for one chat turn."""
    profile_lines = []
    if persona.user_nickname:
        profile_lines.append(f"They call the user: {persona.user_nickname}.")
    if persona.biography:
        profile_lines.append(f"Biography: {persona.biography}")
    if persona.speaking_style:
        profile_lines.append(f"Speaking style: {persona.speaking_style}")
    if persona.traits:
        profile_lines.append(f"Core personality traits: {_join(persona.traits)}.")
    if persona.key_memories:
        profile_lines.append(f"Shared memories with the user: {_join(persona.key_memories)}.")
    if persona.common_phrases:
        profile_lines.append(
            "Signature phrases to weave in naturally (when appropriate): "
            f"{_join(persona.common_phrases)}."
        )

    closure = ""
    if persona.guidance_level >= 2:
        closure = CLOSURE_INSTRUCTIONS.format(
            prompts="\n".join(f"- {p}" for p in GUIDED_CLOSURE_PROMPTS)
        )

    return PERSONA_SYSTEM_PROMPT.format(
        name=persona.name,
        relationship=persona.relationship,
        profile="\n".join(profile_lines),
        closure=closure,
        guidance_level=persona.guidance_level,
        summary=summary or "(none yet)",
        now=(now or datetime.now(UTC)).isoformat(),
    ).strip()


def render_transcript(messages) -> str:
    """Plain ``SENDER: text`` lines, oldest first."""
    return "\n".join(f"{m.sender.upper()}: {m.text}" for m in messages)
