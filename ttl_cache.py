import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple


class TTLCache:
    """
    Per-key TTL cache with single-flight fetches.

    Concurrent misses on one key share a single fetch task. ``clear`` and
    ``invalidate`` drop stored values and detach in-flight fetches so a result
    started before a configuration change is never stored after it.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._values: Dict[Hashable, Tuple[float, Any]] = {}
        self._inflight: Dict[Hashable, asyncio.Task] = {}
        self.lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._values.get(key)
        if entry is None:
            return None
        ts, value = entry
        if self._clock() - ts >= self.ttl:
            self._values.pop(key, None)
            return None
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._values[key] = (self._clock(), value)

    def invalidate(self, key: Hashable) -> None:
        self._values.pop(key, None)
        self._inflight.pop(key, None)

    def clear(self) -> None:
        self._values.clear()
        self._inflight.clear()

    def __len__(self) -> int:
        return len(self._values)

    async def get_or_fetch(self, key: Hashable, fetcher: Callable[[], Awaitable[Any]]) -> Any:
        async with self.lock:
            value = self.get(key)
            if value is not None:
                self.hits += 1
                return value
            self.misses += 1
            # Singleflight: reuse in-flight fetch task
            inflight_task = self._inflight.get(key)
            if inflight_task is None:
                inflight_task = asyncio.create_task(fetcher())
                self._inflight[key] = inflight_task

        try:
            # A caller that times out must not cancel the fetch other callers share
            data = await asyncio.shield(inflight_task)
        except Exception:
            async with self.lock:
                if self._inflight.get(key) is inflight_task:
                    self._inflight.pop(key, None)
            raise

        async with self.lock:
            if self._inflight.get(key) is inflight_task:
                self.set(key, data)
                self._inflight.pop(key, None)
        return data


__all__ = ["TTLCache"]
