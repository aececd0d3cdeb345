"""System prompt assembly: runtime facts, base instructions, user style settings."""
from __future__ import annotations

from datetime import datetime, timezone

from greg.config import settings
from greg.models.schemas import Personality
from greg.services.prompt_store import render_instructions

TOOL_PROTOCOL_BLOCK = "\n".join(
    [
        "## Tool / action protocol (mandatory)",
        "- NEVER ask the user for confirmation/permission to search. If web verification is needed, do it immediately.",
        "- If you need web verification, you MUST request it by emitting exactly: <search_web query=\"...\" />",
        "- When you emit <search_web ... />, emit ONLY that tag (no other text).",
        "- After sources are provided (\"URL sources (server-extracted)\"), answer immediately and do NOT request another <search_web ... />.",
    ]
)

STYLE_PRECEDENCE_BLOCK = "\n".join(
    [
        "## Style precedence (mandatory)",
        "- The user's settings (Personality + Custom instructions) define the default response style.",
        "- Apply them for every reply unless the user explicitly asks otherwise in their last message.",
        "- If multiple style hints conflict, Personality/Custom settings win (except where they conflict with mandatory safety/confidentiality rules).",
    ]
)

_TONE = {
    "professional": "Tone: professional and polished. Be clear for intro and conclusion, detailed for the main content, structured, and helpful.",
    "friendly": "Tone: warm, friendly, and encouraging.",
    "direct": "Tone: direct and efficient. Prefer actionable phrasing and avoid fluff, without omitting necessary details.",
}

_VERBOSITY = {
    "minimal": "Verbosity: minimal. Default to 1–3 short sentences or up to 3 bullets. No extra context unless asked.",
    "balanced": "Verbosity: balanced. Default to a short direct answer, then 3–6 bullets/steps if helpful.",
    "detailed": (
        "Verbosity: detailed. When asked to explain a topic, write a full report unless the user explicitly asks for brevity. "
        "Use headings (e.g., Overview, Concepts, Steps, Examples, Gotchas, Next steps). Include a deep explanation, "
        "a step-by-step breakdown, pitfalls and edge cases, at least one complete worked example, and code snippets when relevant."
    ),
}

_GUIDANCE = {
    "coach": "Act like a coach: ask clarifying questions and guide step-by-step.",
    "neutral": "Only ask clarifying questions when necessary.",
}

_PLAYFULNESS = {
    "light": (
        "Playfulness: light. Add a small, tasteful joke or playful remark when appropriate (max 1 per reply). "
        "Never when the user is distressed, discussing serious harm, or explicitly asked for a serious tone."
    ),
    "none": "Avoid playful tone.",
}


def personality_instruction(p: Personality) -> str:
    return "\n".join(
        [
            "These style settings are mandatory. Follow them unless the user explicitly asks for a different style in their last message.",
            _TONE[p.tone],
            _VERBOSITY[p.verbosity],
            _GUIDANCE[p.guidance],
            _PLAYFULNESS[p.playfulness],
        ]
    )


def runtime_block(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return (
        "## Runtime context\n"
        f"- Current date: {now.date().isoformat()}\n"
        f"- Current datetime (UTC): {now.isoformat(timespec='seconds')}"
    )


def creator_block() -> str:
    name = settings.creator_name.strip()
    if not name:
        return ""
    lines = ["## Creator (mandatory)", f"- Greg was created by **{name}**."]
    if settings.creator_url.strip():
        lines.append(f"- Official website: {settings.creator_url.strip()}")
    lines += [
        "",
        "Rules:",
        "- Never deny or contradict these facts.",
        "- If asked about the creator, answer with the above.",
        "- Do not claim you have browsed the creator's pages unless the system provided an explicit "
        "\"URL sources (server-extracted)\" block.",
    ]
    return "\n".join(lines)


def build_system_prompt(
    model: str,
    custom_instructions: str | None = None,
    personality: Personality | None = None,
    *,
    now: datetime | None = None,
) -> str:
    """Base system prompt, without the tool protocol or any source context.

    The base instructions come first so the user's style settings, placed last,
    are not overridden by recency.
    """
    base = render_instructions(model)
    custom = (custom_instructions or "").strip()
    blocks = [
        runtime_block(now),
        f"## Mandatory base instructions\n{base}" if base else "",
        creator_block(),
        STYLE_PRECEDENCE_BLOCK,
        f"## Personality (user settings)\n{personality_instruction(personality or Personality())}",
        f"## Custom instructions (user-defined)\n{custom}" if custom else "",
    ]
    return "\n\n".join(b for b in blocks if b.strip())


def with_tool_protocol(system_prompt: str) -> str:
    return f"{system_prompt}\n\n{TOOL_PROTOCOL_BLOCK}"
