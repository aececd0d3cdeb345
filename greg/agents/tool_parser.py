"""Incremental parser for the model's inline ``<search_web query="..." />`` requests.

The model streams plain text. It may interrupt itself with a search tag, and it may
emit a ``<greg_title>`` block that the UI shows as the conversation title. Neither
must ever reach the client, even when a tag is split across several chunks.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

TOOL_TAG = "<search_web"
TOOL_CLOSING_TAG = "</search_web"
TITLE_TAG = "<greg_title"
TITLE_CLOSING_TAG = "</greg_title"
MAX_TAG_PREFIX = 32
MAX_TITLE_CHARS = 120
MAX_UNQUOTED_QUERY = 240

_WATCHED_PREFIXES = (TOOL_TAG, TOOL_CLOSING_TAG, TITLE_TAG, TITLE_CLOSING_TAG)
# held-back tails that can only be internal markup cut off at end of stream
_INTERNAL_TAIL_PREFIXES = ("<search_", "</search_", "<greg_", "</greg_")

_FLAGS = re.IGNORECASE
_ML = re.IGNORECASE | re.MULTILINE

# Ordered; applied to every forwarded delta.
_SANITIZE_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bsearch_web\s*\{[\s\S]*?\}\s*", _FLAGS), ""),
    (re.compile(r"<search_web>[\s\S]*?</search_web>", _FLAGS), ""),
    (re.compile(r"<search_web\b[^>]*/\s*>", _FLAGS), ""),
    (re.compile(r"<search_web\b[^>]*>", _FLAGS), ""),
    (re.compile(r"\bOuais c['’]est Greg\.?(?!\w)", _FLAGS), ""),
    (re.compile(r"\bYeah it\s*['’]?s Greg\.?(?!\w)", _FLAGS), ""),
    (re.compile(r"<internal_sources>[\s\S]*?</internal_sources>", _FLAGS), ""),
    (re.compile(r"</?internal_sources>", _FLAGS), ""),
    (re.compile(r"^\s*##\s*Web search results \(server-extracted\)\s*$", _ML), ""),
    (re.compile(r"^\s*(Query|Fetched at|Rules|Results)\s*:\s*.*$", _ML), ""),
    (re.compile(r"^\s*-\s+Treat these results as the only verified external references available\.?\s*$", _ML), ""),
    (re.compile(r"^\s*-\s+Treat these as the authoritative source for the URL\(s\) above\.?\s*$", _ML), ""),
    (re.compile(r"^\s*-\s+Never copy/paste this block verbatim into the final answer; it is internal context\.?\s*$", _ML), ""),
    (re.compile(r"^\s*##\s*URL sources \(server-extracted\)\s*$", _ML), ""),
    (re.compile(r"\bURL sources \(server-extracted\)\s*", _FLAGS), ""),
    (re.compile(r"^\s*##\s*Web verification \(server note\)\s*$", _ML), ""),
    (
        re.compile(
            r"^(?:Source URL|Normalized URL|Fetched at|HTTP status|Content-Type|Fetch note|Main text \(extracted\)|"
            r"Links \(sample[^)]*\)|Headings|Extracted length|Site|Title|Description|Author|Published|Modified|"
            r"Structured types|Kind):.*$",
            _ML,
        ),
        "",
    ),
]

_TITLE_BLOCK_RE = re.compile(r"<greg_title>[\s\S]*?</greg_title>", _FLAGS)
_TITLE_OPEN_RE = re.compile(r"<greg_title\b[^>]*>", _FLAGS)
_TITLE_CLOSE_RE = re.compile(r"</greg_title\b[^>]*>", _FLAGS)


def sanitize_assistant_delta(delta: str) -> str:
    """Strip stray tool markup and leaked internal-context lines from visible text."""
    if not delta:
        return delta
    out = delta
    for pattern, replacement in _SANITIZE_RULES:
        out = pattern.sub(replacement, out)
    return out


def strip_internal_tags(text: str) -> str:
    out = _TITLE_BLOCK_RE.sub("", text or "")
    out = _TITLE_OPEN_RE.sub("", out)
    out = _TITLE_CLOSE_RE.sub("", out)
    out = re.sub(r"<search_web>[\s\S]*?</search_web>", "", out, flags=_FLAGS)
    out = re.sub(r"<search_web\b[^>]*/\s*>", "", out, flags=_FLAGS)
    return re.sub(r"<search_web\b[^>]*>", "", out, flags=_FLAGS)


@dataclass
class ToolRequest:
    query: str


def find_tool_call(text: str) -> ToolRequest | None:
    """First complete ``<search_web ...>`` tag in ``text``.

    The query may be double-quoted, single-quoted or bare. A tag whose closing
    ``>`` has not arrived yet is not a request. A complete tag without a usable
    query yields an empty query.
    """
    lowered = (text or "").lower()
    start = lowered.find(TOOL_TAG)
    if start < 0:
        return None
    tag_end = lowered.find(">", start)
    body_start = start + len(TOOL_TAG)

    query_at = lowered.find("query", body_start)
    if query_at < 0 or (tag_end >= 0 and query_at > tag_end):
        return ToolRequest(query="") if tag_end >= 0 else None
    eq_at = text.find("=", query_at)
    if eq_at < 0:
        return ToolRequest(query="") if tag_end >= 0 else None
    rest = text[eq_at + 1 :].lstrip()

    if rest[:1] in ('"', "'"):
        quote = rest[0]
        close = rest.find(quote, 1)
        if close < 0:
            return None
        if ">" not in rest[close + 1 :]:
            return None
        return ToolRequest(query=rest[1:close].strip())

    stops = [i for i in (rest.find(">"), rest.find("\n"), rest.find("\r")) if i >= 0]
    if ">" not in rest:
        return None
    value = rest[: min(stops)] if stops else rest[:MAX_UNQUOTED_QUERY]
    return ToolRequest(query=value[:MAX_UNQUOTED_QUERY].rstrip("/ ").strip())


class ParserState(str, Enum):
    FORWARDING = "forwarding"
    INSIDE_TAG = "inside_tag"
    INSIDE_TITLE = "inside_title"
    TOOL_DETECTED = "tool_detected"


class ToolCallParser:
    """Consumes one upstream response, returning the text safe to forward.

    ``feed`` is called with each raw delta. It returns sanitized text (possibly
    empty). After a request is detected the state is ``TOOL_DETECTED`` and every
    later call returns nothing. ``finish`` handles providers that never produced
    forwardable deltas.
    """

    def __init__(self, *, allow_tool_calls: bool = True, hard_stop: bool = False):
        self.allow_tool_calls = allow_tool_calls
        self.hard_stop = hard_stop
        self.state = ParserState.FORWARDING
        self.tool_request: ToolRequest | None = None
        self.ignored_disabled_tool = False
        self.pending_text = ""
        self.assistant_text = ""
        self.wrote_any_text = False
        self.wrote_non_whitespace = False
        self._angle_buffer = ""
        self._title_buffer = ""
        self._title: str | None = None
        self._title_taken = False
        self._title_open_pending = False

    @property
    def detected(self) -> bool:
        return self.state is ParserState.TOOL_DETECTED

    def take_title(self) -> str | None:
        """Captured ``<greg_title>`` text, returned once."""
        title, self._title = self._title, None
        return title

    def feed(self, delta: str) -> str:
        if self.detected or not delta:
            return ""
        self.pending_text += delta

        found = find_tool_call(self.pending_text)
        if found is not None:
            if self.allow_tool_calls or self.hard_stop:
                self.tool_request = found
                self.state = ParserState.TOOL_DETECTED
                return ""
            self.ignored_disabled_tool = True
            # forget the tag so it is not detected again
            self.pending_text = self.pending_text[: self.pending_text.lower().find(TOOL_TAG)]

        cleaned = sanitize_assistant_delta(self._strip_tag_fragments(delta))
        if cleaned:
            self.wrote_any_text = True
            if cleaned.strip():
                self.wrote_non_whitespace = True
            self.assistant_text += cleaned
        return cleaned

    def finish(self) -> str:
        """Text to flush once when the upstream ended without a tool request.

        Covers providers that never produced forwardable deltas, and a trailing
        ``<`` fragment that was held back in case it started a tag.
        """
        if self.detected:
            return ""
        tail = self._angle_buffer if self.state is ParserState.FORWARDING else ""
        self._angle_buffer = ""
        pending = self.pending_text
        if tail.lower().startswith(_INTERNAL_TAIL_PREFIXES):
            if pending.endswith(tail):
                pending = pending[: -len(tail)]
            tail = ""
        if self.wrote_any_text:
            remaining = sanitize_assistant_delta(tail)
        else:
            remaining = sanitize_assistant_delta(strip_internal_tags(pending))
        if remaining:
            self.wrote_any_text = True
        if remaining.strip():
            self.wrote_non_whitespace = True
            self.assistant_text += remaining
            return remaining
        return ""

    def _strip_tag_fragments(self, text: str) -> str:
        out: list[str] = []
        for ch in text:
            if self.state is ParserState.INSIDE_TITLE:
                self._consume_title_char(ch)
                continue
            if self.state is ParserState.INSIDE_TAG:
                if ch == ">":
                    self.state = ParserState.FORWARDING
                continue

            if not self._angle_buffer:
                if ch == "<":
                    self._angle_buffer = "<"
                else:
                    out.append(ch)
                continue

            self._angle_buffer += ch
            low = self._angle_buffer.lower()
            if low.startswith(TOOL_TAG) or low.startswith(TOOL_CLOSING_TAG):
                self._angle_buffer = ""
                self.state = ParserState.INSIDE_TAG
                continue
            if low.startswith(TITLE_TAG) or low.startswith(TITLE_CLOSING_TAG):
                opening = low.startswith(TITLE_TAG)
                self._angle_buffer = ""
                self.state = ParserState.INSIDE_TITLE if opening else ParserState.INSIDE_TAG
                if opening:
                    self._title_buffer = ""
                    self._title_open_pending = True
                continue
            if len(self._angle_buffer) < MAX_TAG_PREFIX and any(p.startswith(low) for p in _WATCHED_PREFIXES):
                continue
            out.append(self._angle_buffer)
            self._angle_buffer = ""
        # A trailing angle buffer may be the start of a tag split across chunks.
        return "".join(out)

    def _consume_title_char(self, ch: str) -> None:
        # The rest of the opening tag itself, up to ">", is not title text.
        if self._title_open_pending:
            if ch == ">":
                self._title_open_pending = False
            return
        if not self._angle_buffer:
            if ch == "<":
                self._angle_buffer = "<"
            else:
                self._title_buffer += ch
            return
        self._angle_buffer += ch
        low = self._angle_buffer.lower()
        if low.startswith(TITLE_CLOSING_TAG):
            candidate = re.sub(r"\s+", " ", self._title_buffer).strip()[:MAX_TITLE_CHARS]
            if candidate and not self._title_taken:
                self._title = candidate
                self._title_taken = True
            self._title_buffer = ""
            self._angle_buffer = ""
            self.state = ParserState.INSIDE_TAG
            return
        if len(self._angle_buffer) < MAX_TAG_PREFIX and TITLE_CLOSING_TAG.startswith(low):
            return
        self._angle_buffer = ""
