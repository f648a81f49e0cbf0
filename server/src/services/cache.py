from __future__ import annotations

import asyncio
import contextlib
import copy
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from server.src.core.logging import get_logger
from server.src.core.time import now_ms

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    data: T
    created_at: float
    ttl_ms: float

    def is_valid(self, now: float) -> bool:
        return now - self.created_at <= self.ttl_ms


class TTLCache:
    """Process-wide key/value store with per-entry expiry.

    Expired entries read as a miss (``None``) and are dropped on that read;
    a background sweep removes the rest so memory stays bounded without read
    traffic. There is no size bound: keys are a handful of fixed names.

    Reads return a shallow copy of the stored value so callers never keep a
    handle into a cache-owned container. The clock is injectable (milliseconds)
    so tests can move time forward deterministically.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = now_ms,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._store: Dict[str, CacheEntry[Any]] = {}
        # Guards _store. No operation awaits, so a thread lock also covers
        # callers outside the event loop.
        self._lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def set(self, key: str, value: Any, ttl_ms: float) -> None:
        if value is None:
            raise ValueError("None cannot be cached; it is the miss value")
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        entry = CacheEntry(data=value, created_at=self._clock(), ttl_ms=ttl_ms)
        with self._lock:
            self._store[key] = entry

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if not entry.is_valid(self._clock()):
                del self._store[key]
                return None
            return copy.copy(entry.data)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def cleanup(self) -> int:
        """Drop every expired entry and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._store.items() if not entry.is_valid(now)]
            for key in expired:
                del self._store[key]
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            keys: List[str] = list(self._store)
        return {"size": len(keys), "keys": keys}

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="cache-sweep")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._sweep_interval)
            except asyncio.TimeoutError:
                pass
            else:
                break

            try:
                removed = self.cleanup()
            except Exception:  # noqa: BLE001
                logger.exception("Failed during cache sweep")
                continue
            if removed:
                logger.debug("Cache sweep removed %d expired entr(y/ies)", removed)
