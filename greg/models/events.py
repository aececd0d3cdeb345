from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class StatusLevel(str, Enum):
    BRIEF = "brief"
    DETAILED = "detailed"


class Phase(str, Enum):
    SEARCH = "@phase:search"
    FETCH = "@phase:fetch"
    READ = "@phase:read"
    WRITE = "@phase:write"


def phase(key: Phase | str, idx: int | None = None, total: int | None = None, url: str | None = None) -> str:
    """Build a phase status token such as ``@phase:fetch 2/5 https://example.com``."""
    base = key.value if isinstance(key, Phase) else str(key)
    if idx is not None and total is not None and total > 0:
        base = f"{base} {idx}/{total}"
    url = (url or "").strip()
    return f"{base} {url}" if url else base


def status_marker(text: str, level: StatusLevel) -> str:
    return f'<greg_status level="{level.value}">{text}</greg_status>'


@dataclass
class StreamFrame:
    """One OpenAI-compatible SSE frame: an answer delta, a meta payload, or the terminal marker."""

    content: str | None = None
    meta: dict[str, Any] | None = None
    done: bool = False

    def data(self) -> str:
        """The payload after ``data: ``."""
        if self.done:
            return "[DONE]"
        if self.meta is not None:
            return json.dumps({"meta": self.meta}, ensure_ascii=False)
        return json.dumps({"choices": [{"delta": {"content": self.content or ""}}]}, ensure_ascii=False)

    def format(self) -> str:
        return f"data: {self.data()}\n\n"


@dataclass
class ProgressEvent:
    """Extraction progress published by the context builder."""

    stage: str  # fetch | extract
    index: int
    total: int
    url: str
