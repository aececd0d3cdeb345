"""Process-wide TTL cache for derived, side-effect-free lookups."""
from __future__ import annotations

import time
from typing import Any, Callable


class TTLCache:
    """In-memory cache with a fixed time-to-live and a bounded eviction sweep.

    Entries are immutable once written and overwrites are idempotent, so the
    cache is shared across asyncio tasks without locking.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = 2000,
        sweep_batch: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = float(ttl_seconds)
        self._max_entries = max(int(max_entries), 1)
        self._sweep_batch = max(int(sweep_batch), 1)
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        hit = self._entries.get(key)
        if hit is None:
            return None
        expires_at, value = hit
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        if len(self._entries) >= self._max_entries:
            self.sweep()
        self._entries[key] = (self._clock() + self._ttl, value)

    def sweep(self) -> int:
        """Drop expired entries, then the oldest ones if still over capacity."""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        removed = len(expired)
        if len(self._entries) >= self._max_entries:
            # dicts keep insertion order
            for key in list(self._entries)[: self._sweep_batch]:
                del self._entries[key]
                removed += 1
        return removed

    def clear(self) -> None:
        self._entries.clear()
