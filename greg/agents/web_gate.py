"""Small non-streamed model calls that decide whether a turn needs the web."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Literal

from loguru import logger

from greg.llm_client import ModelStreamError, OpenRouterClient, client as llm_client
from greg.models.schemas import ChatMessage

GATE_CONTEXT_MESSAGES = 12
GATE_CONTEXT_CHARS = 8000

GATE_INSTRUCTION = "\n".join(
    [
        "You are a strict gatekeeper for Greg's web protocol.",
        "Decide if web verification is required to answer safely.",
        "Return ONLY one of:",
        '- <search_web query="..." />',
        "- <no_web />",
        "Rules:",
        "- If the user provided a URL, DO NOT emit <search_web />.",
        "- If the user asks for current prices, current events, recent releases, or factual verification, web is usually required.",
        "- If the user asks for general explanation or coding help, web is usually NOT required.",
        "- The query must be in the user's language and specific.",
    ]
)

REFINER_INSTRUCTION = (
    "You generate a better web-search query for Greg. Return STRICT JSON only: {\"query\": string}. "
    "The previous query returned NO usable URLs from a lightweight instant-answer search. "
    "Make the query more specific and likely to yield direct pages. Keep it in the user's language. "
    "If the user asked for 'any information from the internet', pick a concrete target like a well-known "
    "reference site page (e.g., a featured article, a definition page, or a topic page) rather than vague wording."
)

_NO_WEB_RE = re.compile(r"<no_web\s*/?>", re.IGNORECASE)
_SEARCH_TAG_RE = re.compile(r"<search_web\b[^>]*>", re.IGNORECASE)
_QUERY_ATTR_RE = re.compile(r"query\s*=\s*\"([^\"]*)\"", re.IGNORECASE)


@dataclass
class WebDecision:
    action: Literal["search", "no_web", "unknown"]
    query: str = ""


def conversation_context(messages: list[ChatMessage]) -> str:
    recent = messages[-GATE_CONTEXT_MESSAGES:]
    joined = "\n\n".join(f"{m.role.upper()}: {m.content}" for m in recent)
    return joined[:GATE_CONTEXT_CHARS]


def parse_gate_output(text: str) -> WebDecision:
    raw = (text or "").strip()
    if _NO_WEB_RE.search(raw):
        return WebDecision(action="no_web")
    tag = _SEARCH_TAG_RE.search(raw)
    if tag:
        match = _QUERY_ATTR_RE.search(tag.group(0))
        query = match.group(1).strip() if match else ""
        if query:
            return WebDecision(action="search", query=query)
    return WebDecision(action="unknown")


def parse_json_object_loose(text: str) -> dict[str, Any] | None:
    """Parse a JSON object, tolerating prose or fences around it."""
    raw = (text or "").strip()
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        start = raw.find("{")
        end = raw.rfind("}")
        if start < 0 or end <= start:
            return None
        try:
            parsed = json.loads(raw[start : end + 1])
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


async def decide_web_action(
    *,
    model: str,
    system_prompt: str,
    messages: list[ChatMessage],
    last_user_message: str,
    ui_language: str | None = None,
    llm: OpenRouterClient | None = None,
) -> WebDecision:
    """Ask the model for ``<search_web query=.../>`` or ``<no_web/>``.

    Upstream failures are reported as ``unknown`` so the caller can carry on
    without the web.
    """
    llm = llm or llm_client()
    user = (
        f"UI language: {ui_language or 'unknown'}\n\n"
        f"User message:\n{last_user_message}\n\n"
        f"Conversation context:\n{conversation_context(messages)}\n\n"
        "Return the tag now."
    )
    try:
        text = await llm.complete(
            model=model,
            system=f"{system_prompt}\n\n## Gatekeeper\n{GATE_INSTRUCTION}",
            messages=[{"role": "user", "content": user}],
            temperature=0,
            max_tokens=60,
            caller="web_gate",
        )
    except ModelStreamError as exc:
        logger.warning(f"Web gate failed: {exc}")
        return WebDecision(action="unknown")
    decision = parse_gate_output(text)
    logger.debug(f"Web gate decision: {decision.action} {decision.query!r}")
    return decision


async def refine_web_query(
    *,
    model: str,
    system_prompt: str,
    messages: list[ChatMessage],
    last_user_message: str,
    previous_query: str,
    ui_language: str | None = None,
    llm: OpenRouterClient | None = None,
) -> str:
    """One more specific query after a search returned nothing; "" when unavailable."""
    llm = llm or llm_client()
    user = (
        f"UI language: {ui_language or 'unknown'}\n\n"
        f"User message:\n{last_user_message}\n\n"
        f"Previous query:\n{previous_query}\n\n"
        f"Conversation context:\n{conversation_context(messages)}\n\n"
        "Return JSON now."
    )
    try:
        text = await llm.complete(
            model=model,
            system=f"{system_prompt}\n\n## Query refiner\n{REFINER_INSTRUCTION}",
            messages=[{"role": "user", "content": user}],
            temperature=0.2,
            max_tokens=80,
            caller="query_refiner",
        )
    except ModelStreamError as exc:
        logger.warning(f"Query refiner failed: {exc}")
        return ""
    parsed = parse_json_object_loose(text) or {}
    query = parsed.get("query")
    return query.strip() if isinstance(query, str) else ""
