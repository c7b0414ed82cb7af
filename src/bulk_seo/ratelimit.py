import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from bulk_seo.config import settings


@dataclass
class _Entry:
    value: Any
    touched_at: float


@dataclass
class TTLState:
    """Keyed in-memory state whose idle entries are evicted after ``ttl_sec``.

    One instance per app (or per test); nothing here is module-global.
    """

    ttl_sec: float
    clock: Callable[[], float] = time.monotonic
    _entries: dict[str, _Entry] = field(default_factory=dict)

    def get(self, key: str, default: Callable[[], Any]) -> Any:
        now = self.clock()
        entry = self._entries.get(key)
        if entry is None or now - entry.touched_at >= self.ttl_sec:
            entry = _Entry(default(), now)
            self._entries[key] = entry
        entry.touched_at = now
        return entry.value

    def sweep(self) -> int:
        now = self.clock()
        expired = [k for k, e in self._entries.items() if now - e.touched_at >= self.ttl_sec]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class ShopRateLimiter:
    """Sliding-window request limit per shop."""

    def __init__(
        self,
        limit: int | None = None,
        window_sec: float = 60.0,
        state: TTLState | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit if limit is not None else settings.batch_requests_per_minute
        self.window_sec = window_sec
        self.clock = clock
        self.state = state or TTLState(ttl_sec=max(settings.rate_state_ttl_sec, window_sec), clock=clock)
        self._last_sweep = clock()

    def allow(self, shop: str) -> bool:
        now = self.clock()
        if now - self._last_sweep >= self.state.ttl_sec:
            self.state.sweep()
            self._last_sweep = now

        hits: list[float] = self.state.get(shop, list)
        hits[:] = [t for t in hits if now - t < self.window_sec]
        if self.limit and len(hits) >= self.limit:
            return False
        hits.append(now)
        return True
