"""Label-admitted, reference-counted cache over arbitrary kinds.

Owners (ObjectSets, SecretSyncs) call :meth:`DynamicCache.watch` for every
kind they manage.  The first registration of a kind starts an informer
restricted to objects labelled ``kubephase.io/cache=True``; the informer
stops when the last owner registered for that kind is freed.

Registrations are an explicit map ``kind -> owner -> namespaces``; ``_add``
and ``_remove`` are its only mutators.  Events never run reconciles directly:
they call the handler registered for the owner's kind, which enqueues the
owner.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from kubephase.cache.informer import Informer
from kubephase.models.api import DYNAMIC_CACHE_LABEL, DYNAMIC_CACHE_LABEL_VALUE
from kubephase.models.objects import (
    GroupKind,
    GroupVersionKind,
    Object,
    ObjectKey,
    gvk_of,
    key_of,
)
from kubephase.models.selectors import LabelSelector
from kubephase.observability.metrics import cache_informers, cache_registrations
from kubephase.store.base import ObjectStore, WatchEvent
from kubephase.store.errors import NotFoundError

_log = structlog.get_logger(component="cache.dynamic")

OwnerHandler = Callable[[ObjectKey], None]

_SYNC_TIMEOUT_SECONDS = 60.0


class CacheAdmissionError(Exception):
    """The requested kind is not registered with the dynamic cache."""

    def __init__(self, gvk: GroupVersionKind) -> None:
        super().__init__(f"{gvk} is not watched by the dynamic cache; call watch() first")
        self.gvk = gvk


@dataclass(frozen=True)
class OwnerRef:
    """Identity of a cache owner."""

    group_kind: GroupKind
    namespace: str
    name: str

    @classmethod
    def of(cls, owner: Object) -> OwnerRef:
        key = key_of(owner)
        return cls(group_kind=gvk_of(owner).group_kind, namespace=key.namespace, name=key.name)

    def __str__(self) -> str:
        return f"{self.group_kind}/{ObjectKey(self.namespace, self.name)}"


class DynamicCache:
    """Reference-counted informers keyed by GroupVersionKind."""

    def __init__(self, store: ObjectStore, sync_timeout: float = _SYNC_TIMEOUT_SECONDS) -> None:
        self._store = store
        self._sync_timeout = sync_timeout
        self._selector = LabelSelector.from_labels({DYNAMIC_CACHE_LABEL: DYNAMIC_CACHE_LABEL_VALUE})
        self._registrations: dict[GroupVersionKind, dict[OwnerRef, set[str | None]]] = {}
        self._informers: dict[GroupVersionKind, Informer] = {}
        self._handlers: dict[GroupKind, OwnerHandler] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Owner handlers
    # ------------------------------------------------------------------

    def add_owner_handler(self, owner_kind: GroupKind, handler: OwnerHandler) -> None:
        """Route events for owners of *owner_kind* to *handler*."""
        self._handlers[owner_kind] = handler

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def watch(self, owner: Object, gvk: GroupVersionKind, namespace: str | None = None) -> None:
        """Register *owner*'s interest in *gvk* objects in *namespace* (``None``: all).

        Starts an informer for *gvk* if none is running and waits for its
        initial sync.
        """
        ref = OwnerRef.of(owner)
        async with self._lock:
            self._add(gvk, ref, namespace)
            informer = self._informers.get(gvk)
            if informer is None:
                informer = Informer(
                    self._store,
                    gvk,
                    on_event=functools.partial(self._dispatch, gvk),
                    label_selector=self._selector,
                )
                self._informers[gvk] = informer
                informer.start()
                cache_informers.set(len(self._informers))
                _log.info("informer_started", kind=str(gvk), owner=str(ref))
        await informer.wait_synced(self._sync_timeout)

    async def free(self, owner: Object) -> None:
        """Drop every registration of *owner*; stop informers nobody needs anymore."""
        ref = OwnerRef.of(owner)
        async with self._lock:
            for gvk in [gvk for gvk, owners in self._registrations.items() if ref in owners]:
                if self._remove(gvk, ref):
                    informer = self._informers.pop(gvk, None)
                    if informer is not None:
                        await informer.stop()
                        _log.info("informer_stopped", kind=str(gvk))
            cache_informers.set(len(self._informers))

    def _add(self, gvk: GroupVersionKind, ref: OwnerRef, namespace: str | None) -> None:
        self._registrations.setdefault(gvk, {}).setdefault(ref, set()).add(namespace)
        cache_registrations.set(self.registration_count())

    def _remove(self, gvk: GroupVersionKind, ref: OwnerRef) -> bool:
        """Remove *ref* from *gvk*; returns True when *gvk* has no owners left."""
        owners = self._registrations.get(gvk, {})
        owners.pop(ref, None)
        empty = not owners
        if empty:
            self._registrations.pop(gvk, None)
        cache_registrations.set(self.registration_count())
        return empty

    def registration_count(self) -> int:
        return sum(len(owners) for owners in self._registrations.values())

    def owners_of(self, gvk: GroupVersionKind) -> set[OwnerRef]:
        return set(self._registrations.get(gvk, {}))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _informer(self, gvk: GroupVersionKind) -> Informer:
        informer = self._informers.get(gvk)
        if informer is None:
            raise CacheAdmissionError(gvk)
        return informer

    async def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> Object:
        """Return a cached object.

        Raises:
            CacheAdmissionError: *gvk* is not watched.
            NotFoundError: the object is absent or lacks the cache label.
        """
        obj = self._informer(gvk).get(ObjectKey(namespace, name))
        if obj is None:
            raise NotFoundError(f"{gvk.kind} {ObjectKey(namespace, name)} not found in dynamic cache")
        return obj

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        label_selector: LabelSelector | None = None,
    ) -> list[Object]:
        return self._informer(gvk).list(namespace=namespace, label_selector=label_selector)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _dispatch(self, gvk: GroupVersionKind, event: WatchEvent) -> None:
        namespace = key_of(event.object).namespace
        for ref, namespaces in list(self._registrations.get(gvk, {}).items()):
            if None not in namespaces and namespace not in namespaces:
                continue
            handler = self._handlers.get(ref.group_kind)
            if handler is None:
                _log.debug("no_owner_handler", owner_kind=str(ref.group_kind))
                continue
            handler(ObjectKey(ref.namespace, ref.name))

    # ------------------------------------------------------------------
    # Lifecycle / introspection
    # ------------------------------------------------------------------

    @property
    def synced(self) -> bool:
        return all(informer.synced for informer in self._informers.values())

    async def stop(self) -> None:
        async with self._lock:
            for informer in self._informers.values():
                await informer.stop()
            self._informers.clear()
            self._registrations.clear()
        cache_informers.set(0)
        cache_registrations.set(0)

    def snapshot(self) -> dict[str, Any]:
        """Informers and registrations, for the status API."""
        return {
            "informers": [
                {
                    "kind": str(gvk),
                    "objects": len(informer),
                    "synced": informer.synced,
                    "owners": sorted(str(ref) for ref in self._registrations.get(gvk, {})),
                }
                for gvk, informer in sorted(self._informers.items(), key=lambda kv: str(kv[0]))
            ],
            "registrations": self.registration_count(),
        }
