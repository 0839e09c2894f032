"""Controller runtime: informers feed a work queue drained by reconcile workers.

A ``Controller`` binds one primary kind to a :class:`Reconciler`.  Events on
the primary kind enqueue the object itself; events on secondary kinds are
mapped to primary keys (``owned_by`` maps an object to its controller owner
of the primary kind).  Each reconcile starts from a fresh read of the object.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from kubephase.cache.informer import Informer
from kubephase.controllers.owner import get_controller_of
from kubephase.controllers.reconciler import Reconciler
from kubephase.models.objects import GroupVersionKind, Object, ObjectKey, key_of
from kubephase.observability.logging import reconcile_context
from kubephase.observability.metrics import reconcile_duration_seconds, reconcile_total
from kubephase.runtime.queue import QueueShutDownError, WorkQueue
from kubephase.store.base import ObjectStore, WatchEvent
from kubephase.store.errors import NotFoundError

_log = structlog.get_logger(component="runtime.controller")

KeyMapper = Callable[[Object], list[ObjectKey]]

_SYNC_TIMEOUT_SECONDS = 60.0


def owned_by(owner_gvk: GroupVersionKind) -> KeyMapper:
    """Map an object to the key of its controller owner of *owner_gvk*."""

    def _map(obj: Object) -> list[ObjectKey]:
        ref = get_controller_of(obj)
        if ref is None or ref.get("kind") != owner_gvk.kind:
            return []
        if GroupVersionKind.from_api_version(str(ref.get("apiVersion", "")), owner_gvk.kind).group != owner_gvk.group:
            return []
        return [ObjectKey(key_of(obj).namespace, str(ref.get("name", "")))]

    return _map


class Controller:
    """Runs a reconciler for every change of a primary kind."""

    def __init__(
        self,
        name: str,
        store: ObjectStore,
        gvk: GroupVersionKind,
        reconciler: Reconciler,
        namespace: str | None = None,
        workers: int = 4,
        max_backoff: float = 300.0,
    ) -> None:
        self.name = name
        self.gvk = gvk
        self._store = store
        self._reconciler = reconciler
        self._namespace = namespace
        self._workers = max(workers, 1)
        self.queue: WorkQueue[ObjectKey] = WorkQueue(name, max_delay=max_backoff)
        self._informers: list[Informer] = [
            Informer(store, gvk, on_event=self._enqueue_event, namespace=namespace),
        ]
        self._tasks: list[asyncio.Task[None]] = []

    def watches(self, gvk: GroupVersionKind, mapper: KeyMapper) -> Controller:
        """Also reconcile the primary objects *mapper* returns for events on *gvk*."""

        def _on_event(event: WatchEvent) -> None:
            for key in mapper(event.object):
                self.queue.add(key)

        self._informers.append(Informer(self._store, gvk, on_event=_on_event, namespace=self._namespace))
        return self

    def enqueue(self, key: ObjectKey) -> None:
        self.queue.add(key)

    def _enqueue_event(self, event: WatchEvent) -> None:
        self.queue.add(key_of(event.object))

    @property
    def ready(self) -> bool:
        return bool(self._tasks) and all(informer.synced for informer in self._informers)

    async def start(self) -> None:
        for informer in self._informers:
            informer.start()
        await asyncio.gather(*(informer.wait_synced(_SYNC_TIMEOUT_SECONDS) for informer in self._informers))
        self._tasks = [
            asyncio.create_task(self._worker(), name=f"{self.name}-worker-{i}") for i in range(self._workers)
        ]
        _log.info("controller_started", controller=self.name, kind=self.gvk.kind, workers=self._workers)

    async def stop(self) -> None:
        self.queue.shutdown(len(self._tasks))
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        for informer in self._informers:
            await informer.stop()
        _log.info("controller_stopped", controller=self.name)

    async def _worker(self) -> None:
        while True:
            try:
                key = await self.queue.get()
            except QueueShutDownError:
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: ObjectKey) -> None:
        """Reconcile the object behind *key* once, scheduling retries as needed."""
        with reconcile_context(self.name, str(key)):
            start = time.monotonic()
            try:
                obj = await self._store.get(self.gvk, key.namespace, key.name)
            except NotFoundError:
                self.queue.forget(key)
                return
            try:
                result = await self._reconciler.reconcile(obj)
            except Exception as exc:
                delay = self.queue.add_rate_limited(key)
                reconcile_total.labels(controller=self.name, result="error").inc()
                _log.error("reconcile_failed", error=str(exc), error_type=type(exc).__name__, retry_in=delay)
                return
            finally:
                reconcile_duration_seconds.labels(controller=self.name).observe(time.monotonic() - start)

            self.queue.forget(key)
            if result.requeue_after is not None:
                reconcile_total.labels(controller=self.name, result="requeue").inc()
                self.queue.add_after(key, result.requeue_after)
            else:
                reconcile_total.labels(controller=self.name, result="success").inc()
