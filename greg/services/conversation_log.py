"""Best-effort JSONL diagnostics, one file per conversation id."""
from __future__ import annotations

import json
import re
from datetime import timezone
from pathlib import Path
from typing import Any

from loguru import logger

from greg.config import settings

_sink_id: int | None = None


def _safe_string(value: Any, max_chars: int = 600) -> str:
    text = value if isinstance(value, str) else ("" if value is None else str(value))
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 1)] + "…"


def _safe_data(data: dict[str, Any] | None) -> dict[str, Any] | None:
    if not data:
        return None
    out: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str):
            out[key] = _safe_string(value)
        elif isinstance(value, (list, tuple)):
            out[key] = [_safe_string(v, 300) if isinstance(v, str) else v for v in list(value)[:40]]
        else:
            out[key] = value
    return out


def normalize_conversation_id(conversation_id: str | None) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", (conversation_id or "").strip())[:80]
    return cleaned or "unknown"


def _write_record(message: Any) -> None:
    record = message.record
    extra = record["extra"]
    cid = extra["conversation_id"]
    payload = {
        "ts": record["time"].astimezone(timezone.utc).isoformat(),
        "type": record["message"],
        "conversationId": cid,
        "data": extra.get("data"),
    }
    directory = Path(settings.conversation_logs_dir)
    directory.mkdir(parents=True, exist_ok=True)
    with open(directory / f"{cid}.jsonl", "a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")


def _ensure_sink() -> None:
    global _sink_id
    if _sink_id is not None:
        return
    _sink_id = logger.add(
        _write_record,
        level="DEBUG",
        format="{message}",
        filter=lambda record: "conversation_id" in record["extra"],
        catch=True,
    )


class ConversationLog:
    """Per-request logger bound to a conversation id."""

    def __init__(self, conversation_id: str | None, *, enabled: bool | None = None):
        self.conversation_id = normalize_conversation_id(conversation_id)
        self.enabled = settings.conversation_logs_enabled if enabled is None else enabled
        if self.enabled:
            _ensure_sink()
        self._logger = logger.bind(conversation_id=self.conversation_id)

    def __call__(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        if not self.enabled:
            return
        self._logger.bind(data=_safe_data(data)).debug(event_type)
