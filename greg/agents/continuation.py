"""Detect answers that stopped too early and brief the model on how to resume."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from greg.models.schemas import ChatMessage

MIN_INCOMPLETE_CHARS = 220
TAIL_CHARS = 7000
DONE_PREVIEW_CHARS = 420
MAX_HEADINGS = 6

AUTO_CONTINUE_USER = "Continue exactly where you stopped. Do not repeat."
MANUAL_CONTINUE_USER = (
    "Continue exactly where you stopped. Do not repeat. If you were in a list or code block, continue it correctly."
)

_BULLET_END_RE = re.compile(r"(\n|^)\s*[-*]\s*$")
_NUMBERED_END_RE = re.compile(r"\n\s*\d+\.\s*$")
_LEAD_IN_END_RE = re.compile(r"[,:;]\s*$")
_OPEN_BRACKET_END_RE = re.compile(r"[({\[]\s*$")
_FINAL_PUNCT_RE = re.compile(r"[.?!…\]\)\}\"']\s*$")
_ABBREVIATION_END_RE = re.compile(r"\b(?:etc|eg|e\.g|i\.e)\.?\s*$", re.IGNORECASE)
_HEADING_RE = re.compile(r"^#{1,4}\s+.+$", re.MULTILINE)

ContinuationReason = Literal["length", "heuristic"]


@dataclass
class ContinuationContext:
    done: str
    remaining: str
    tail: str


def _open_fence(text: str) -> bool:
    return text.count("```") % 2 == 1


def _ends_in_list(text: str) -> bool:
    return bool(_BULLET_END_RE.search(text) or _NUMBERED_END_RE.search(text))


def looks_like_incomplete(text: str) -> bool:
    t = (text or "").rstrip()
    if len(t) < MIN_INCOMPLETE_CHARS:
        return False
    if _open_fence(t) or _ends_in_list(t):
        return True
    if _LEAD_IN_END_RE.search(t) or _OPEN_BRACKET_END_RE.search(t):
        return True
    if not _FINAL_PUNCT_RE.search(t):
        # cut mid-sentence
        last_line = t.split("\n")[-1]
        if len(last_line) > 10 and not _ABBREVIATION_END_RE.search(last_line):
            return True
    return False


def continuation_reason(finish_reason: str | None, text: str) -> ContinuationReason | None:
    if finish_reason == "length":
        return "length"
    if looks_like_incomplete(text):
        return "heuristic"
    return None


def build_continuation_context(full_text: str) -> ContinuationContext:
    t = (full_text or "").rstrip()
    headings = _HEADING_RE.findall(t)[-MAX_HEADINGS:]
    if headings:
        done = "\n".join(headings)
    else:
        done = re.sub(r"\s+", " ", t[:DONE_PREVIEW_CHARS]).strip() + ("…" if len(t) > DONE_PREVIEW_CHARS else "")

    remaining = "Finish the answer without repeating."
    if _open_fence(t):
        remaining = "You were inside a code block; continue it and close it if appropriate."
    elif _LEAD_IN_END_RE.search(t):
        remaining = "You ended on a lead-in; continue the list/details that should follow."
    elif _ends_in_list(t):
        remaining = "You ended in a list; continue the next list item(s)."
    return ContinuationContext(done=done, remaining=remaining, tail=t[-TAIL_CHARS:])


def _summary(ctx: ContinuationContext) -> str:
    return (
        f"Summary (done):\n{ctx.done}\n\n"
        f"Summary (remaining):\n{ctx.remaining}\n\n"
        f"Tail of what you already wrote (context):\n{ctx.tail}"
    )


def auto_continuation_messages(full_text: str) -> list[dict[str, str]]:
    ctx = build_continuation_context(full_text)
    return [
        {"role": "system", "content": f"You were interrupted too early.\n\n{_summary(ctx)}"},
        {"role": "user", "content": AUTO_CONTINUE_USER},
    ]


def manual_continuation_messages(full_text: str) -> list[dict[str, str]]:
    ctx = build_continuation_context(full_text)
    return [
        {"role": "system", "content": f"You are continuing an answer that stopped too early.\n\n{_summary(ctx)}"},
        {"role": "user", "content": MANUAL_CONTINUE_USER},
    ]


def last_assistant_text(messages: list[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.role == "assistant":
            return message.content
    return ""
