"""Deduplicating, rate-limited work queue of object keys.

Semantics:

* a key waiting in the queue is only queued once, however often it is added;
* a key is never handed to two workers at the same time: adding it while it
  is being processed re-queues it once ``done`` is called;
* ``add_after`` delays an add, ``add_rate_limited`` delays it by a per-key
  exponential backoff that ``forget`` resets.
"""

from __future__ import annotations

import asyncio
from collections.abc import Hashable
from typing import Generic, TypeVar

from kubephase.observability.metrics import workqueue_depth

K = TypeVar("K", bound=Hashable)

_BASE_DELAY_SECONDS = 0.005
_MAX_DELAY_SECONDS = 300.0


class QueueShutDownError(Exception):
    """Raised by ``get`` once the queue is shut down."""


class WorkQueue(Generic[K]):
    def __init__(
        self,
        name: str,
        base_delay: float = _BASE_DELAY_SECONDS,
        max_delay: float = _MAX_DELAY_SECONDS,
    ) -> None:
        self.name = name
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._queue: asyncio.Queue[K | None] = asyncio.Queue()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._failures: dict[K, int] = {}
        self._timers: set[asyncio.TimerHandle] = set()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._dirty)

    def add(self, key: K) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.put_nowait(key)
        workqueue_depth.labels(controller=self.name).set(len(self._dirty))

    def add_after(self, key: K, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def _fire() -> None:
            self._timers.discard(handle)
            self.add(key)

        handle = loop.call_later(delay, _fire)
        self._timers.add(handle)

    def add_rate_limited(self, key: K) -> float:
        """Re-add *key* after its backoff; returns the delay used."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = min(self._base_delay * (2**failures), self._max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: K) -> None:
        self._failures.pop(key, None)

    def failures(self, key: K) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> K:
        key = await self._queue.get()
        if key is None or self._shutting_down:
            raise QueueShutDownError(self.name)
        self._processing.add(key)
        self._dirty.discard(key)
        workqueue_depth.labels(controller=self.name).set(len(self._dirty))
        return key

    def done(self, key: K) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.put_nowait(key)

    def shutdown(self, workers: int = 1) -> None:
        self._shutting_down = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        for _ in range(workers):
            self._queue.put_nowait(None)
