from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

from greg.models.events import StatusLevel, StreamFrame, status_marker

STATUS_MODE_HEADER = "x-greg-status"
DETAILED_STATUS_MODES = ("detailed", "mcp")

_CLOSED = object()


def detailed_status_requested(mode: str | None) -> bool:
    return (mode or "").strip().lower() in DETAILED_STATUS_MODES


class StreamWriter:
    """Encodes answer deltas, status markers, meta payloads and the terminal marker.

    Frames are queued as soon as they are written and drained by iterating the
    writer, which is what the HTTP response streams (see ``StreamFrame.format``
    for the wire form). Once closed, writes are dropped silently so business
    logic never sees transport errors.
    """

    def __init__(self, *, send_detailed_status: bool = False, brief_status_enabled: bool = False):
        self.send_detailed_status = send_detailed_status
        self.brief_status_enabled = brief_status_enabled
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._last_status: dict[StatusLevel, str | None] = {
            StatusLevel.BRIEF: None,
            StatusLevel.DETAILED: None,
        }

    @property
    def closed(self) -> bool:
        return self._closed

    def _emit(self, frame: StreamFrame) -> None:
        if self._closed:
            return
        self._queue.put_nowait(frame)

    def flush(self) -> None:
        """Empty delta frame so the client can render its placeholder immediately."""
        self._emit(StreamFrame(content=""))

    def write_delta(self, text: str) -> None:
        if not text:
            return
        self._emit(StreamFrame(content=text))

    def write_status(self, text: str | None, level: StatusLevel = StatusLevel.DETAILED) -> None:
        if level is StatusLevel.DETAILED:
            if not self.send_detailed_status:
                return
        elif not (self.send_detailed_status or self.brief_status_enabled):
            return
        value = text or ""
        if self._last_status[level] == value:
            return
        self._last_status[level] = value
        self._emit(StreamFrame(content=status_marker(value, level)))

    def clear_status(self) -> None:
        """Send empty status markers so the client hides any progress line."""
        self.write_status("", StatusLevel.BRIEF)
        self.write_status("", StatusLevel.DETAILED)

    def write_meta(self, payload: dict[str, Any]) -> None:
        self._emit(StreamFrame(meta=payload))

    def write_done(self) -> None:
        self._emit(StreamFrame(done=True))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[StreamFrame]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
