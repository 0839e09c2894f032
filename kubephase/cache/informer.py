"""List-and-watch informer over one kind.

An ``Informer`` keeps a local copy of every object of one GroupVersionKind
(optionally narrowed by namespace and label selector) and calls ``on_event``
for each change.  The watch loop reconnects with exponential backoff and
relists from scratch when the server reports its resourceVersion as expired.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    wait_exponential,
)

from kubephase.models.objects import GroupVersionKind, Object, ObjectKey, key_of, labels_of, resource_version_of
from kubephase.models.selectors import LabelSelector
from kubephase.store.base import EventType, ObjectStore, WatchEvent
from kubephase.store.errors import GoneError

_log = structlog.get_logger(component="cache.informer")

EventHandler = Callable[[WatchEvent], None]

_INITIAL_BACKOFF_SECONDS = 0.5
_MAX_BACKOFF_SECONDS = 30.0


class Informer:
    """Background list+watch loop with a local object index."""

    def __init__(
        self,
        store: ObjectStore,
        gvk: GroupVersionKind,
        on_event: EventHandler | None = None,
        namespace: str | None = None,
        label_selector: LabelSelector | None = None,
        initial_backoff: float = _INITIAL_BACKOFF_SECONDS,
        max_backoff: float = _MAX_BACKOFF_SECONDS,
    ) -> None:
        self.gvk = gvk
        self.namespace = namespace
        self.label_selector = label_selector
        self._store = store
        self._on_event = on_event
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._items: dict[ObjectKey, Object] = {}
        self._resource_version = ""
        self._synced = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def synced(self) -> bool:
        return self._synced.is_set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def __len__(self) -> int:
        return len(self._items)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"informer-{self.gvk.kind}")

    async def wait_synced(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._synced.wait(), timeout=timeout)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def get(self, key: ObjectKey) -> Object | None:
        obj = self._items.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    def list(self, namespace: str | None = None, label_selector: LabelSelector | None = None) -> list[Object]:
        return [
            copy.deepcopy(obj)
            for key, obj in sorted(self._items.items(), key=lambda kv: (kv[0].namespace, kv[0].name))
            if (namespace is None or key.namespace == namespace)
            and (label_selector is None or label_selector.matches(labels_of(obj)))
        ]

    # ------------------------------------------------------------------
    # Watch loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            retrying = AsyncRetrying(
                retry=retry_if_exception_type(Exception) & retry_if_not_exception_type(GoneError),
                wait=wait_exponential(multiplier=self._initial_backoff, max=self._max_backoff),
                before_sleep=self._log_retry,
            )
            try:
                await retrying(self._list_and_watch)
            except GoneError:
                _log.info("informer_relist", kind=self.gvk.kind, resource_version=self._resource_version)
                self._resource_version = ""

    async def _list_and_watch(self) -> None:
        if not self._resource_version:
            await self._relist()
        async for event in self._store.watch(
            self.gvk,
            namespace=self.namespace,
            label_selector=self.label_selector,
            resource_version=self._resource_version,
        ):
            self._apply(event)

    def _log_retry(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome is not None else None
        retry_in = state.next_action.sleep if state.next_action is not None else None
        _log.warning("informer_error", kind=self.gvk.kind, error=str(exc), retry_in=retry_in)

    async def _relist(self) -> None:
        result = await self._store.list(self.gvk, namespace=self.namespace, label_selector=self.label_selector)
        fresh = {key_of(obj): obj for obj in result.items}
        stale = [obj for key, obj in self._items.items() if key not in fresh]
        self._items = fresh
        self._resource_version = result.resource_version
        self._synced.set()
        _log.debug("informer_synced", kind=self.gvk.kind, objects=len(fresh))
        for obj in stale:
            self._emit(WatchEvent(EventType.DELETED, obj))
        for obj in fresh.values():
            self._emit(WatchEvent(EventType.ADDED, obj))

    def _apply(self, event: WatchEvent) -> None:
        rv = resource_version_of(event.object)
        if rv:
            self._resource_version = rv
        if event.type is EventType.BOOKMARK:
            return
        key = key_of(event.object)
        if event.type is EventType.DELETED:
            self._items.pop(key, None)
        else:
            self._items[key] = event.object
        self._emit(event)

    def _emit(self, event: WatchEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception as exc:
            _log.error("informer_handler_error", kind=self.gvk.kind, error=str(exc))
