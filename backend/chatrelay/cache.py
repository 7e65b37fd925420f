from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable


@dataclass(frozen=True)
class _Entry:
    value: Any
    expires_at: float | None


class MemoryCache:
    """Process-local TTL cache.

    Entries are replaced wholesale, never mutated, so concurrent readers only
    ever see a complete snapshot (last writer wins). ``None`` is never stored:
    a loader returning ``None`` means "nothing to cache".
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: dict[str, _Entry] = {}

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() > entry.expires_at:
            self._store.pop(key, None)
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl_s: float = 0) -> None:
        if value is None:
            self._store.pop(key, None)
            return
        expires_at = self._clock() + ttl_s if ttl_s > 0 else None
        self._store[key] = _Entry(value=value, expires_at=expires_at)

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def wrap(self, key: str, ttl_s: float, loader: Callable[[], Any | None]) -> Any | None:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        if value is not None:
            self.set(key, value, ttl_s)
        return value

    async def wrap_async(self, key: str, ttl_s: float, loader: Callable[[], Awaitable[Any | None]]) -> Any | None:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            self.set(key, value, ttl_s)
        return value

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)
