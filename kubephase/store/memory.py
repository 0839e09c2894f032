"""In-process object store binding.

``MemoryStore`` implements the full :class:`ObjectStore` contract in memory:
resourceVersions and optimistic concurrency, generation bumps on spec
changes, finalizer-gated deletion, ownerReference cascade, label-filtered
watches with replay from a resourceVersion, and history compaction.  It backs
the test suite and local dry runs; every call is recorded in ``actions`` and
faults can be injected per verb and kind.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from kubephase.models.objects import (
    GroupKind,
    GroupVersionKind,
    Object,
    finalizers_of,
    gvk_of,
    key_of,
    labels_of,
    merge_patch,
    metadata_of,
)
from kubephase.models.selectors import LabelSelector
from kubephase.store.base import EventType, ObjectList, ObjectStore, PropagationPolicy, WatchEvent
from kubephase.store.errors import AlreadyExistsError, ConflictError, GoneError, NotFoundError, StoreError

WRITE_VERBS = frozenset({"create", "update", "update_status", "patch", "delete"})

_Key = tuple[str, str]  # namespace, name


@dataclass(frozen=True)
class Action:
    """A recorded store call."""

    verb: str
    kind: str
    namespace: str
    name: str
    body: Object | None = field(default=None, compare=False, repr=False)


@dataclass
class _Fault:
    verb: str
    kind: str
    error: StoreError
    remaining: int


@dataclass
class _Subscriber:
    group_kind: GroupKind
    namespace: str | None
    selector: LabelSelector | None
    queue: asyncio.Queue[tuple[int, WatchEvent]] = field(default_factory=asyncio.Queue)


@dataclass
class _HistoryEntry:
    rv: int
    group_kind: GroupKind
    before: Object | None
    after: Object | None
    deleted: bool


def _now() -> str:
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _spec_view(obj: Object) -> dict[str, Any]:
    return {k: v for k, v in obj.items() if k not in ("metadata", "status", "apiVersion", "kind")}


class MemoryStore(ObjectStore):
    """Dictionary-backed ObjectStore."""

    def __init__(self) -> None:
        self._objects: dict[GroupKind, dict[_Key, Object]] = {}
        self._rv = 0
        self._compacted_rv = 0
        self._history: list[_HistoryEntry] = []
        self._subscribers: list[_Subscriber] = []
        self._faults: list[_Fault] = []
        # Pending deletions that must orphan their dependents once finalizers clear.
        self._orphaning: set[tuple[GroupKind, _Key]] = set()
        self.actions: list[Action] = []

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def seed(self, *objs: Object) -> list[Object]:
        """Insert objects without recording actions."""
        return [copy.deepcopy(self._create(copy.deepcopy(obj))) for obj in objs]

    def inject_error(self, verb: str, kind: str, error: StoreError, times: int = 1) -> None:
        """Make the next *times* calls of *verb* on *kind* raise *error*."""
        self._faults.append(_Fault(verb=verb, kind=kind, error=error, remaining=times))

    def writes(self) -> list[Action]:
        return [a for a in self.actions if a.verb in WRITE_VERBS]

    def calls(self, verb: str, kind: str | None = None) -> list[Action]:
        return [a for a in self.actions if a.verb == verb and (kind is None or a.kind == kind)]

    def peek(self, gvk: GroupVersionKind, namespace: str, name: str) -> Object | None:
        obj = self._bucket(gvk.group_kind).get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def all(self, gvk: GroupVersionKind) -> list[Object]:
        return [copy.deepcopy(o) for o in self._bucket(gvk.group_kind).values()]

    def compact(self) -> None:
        """Drop watch history; watches from older resourceVersions get GoneError."""
        self._history.clear()
        self._compacted_rv = self._rv

    # ------------------------------------------------------------------
    # ObjectStore
    # ------------------------------------------------------------------

    async def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> Object:
        self._record("get", gvk.kind, namespace, name)
        obj = self._bucket(gvk.group_kind).get((namespace, name))
        if obj is None:
            raise NotFoundError(f"{gvk.kind} {namespace}/{name} not found")
        return copy.deepcopy(obj)

    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        label_selector: LabelSelector | None = None,
    ) -> ObjectList:
        self._record("list", gvk.kind, namespace or "", "")
        items = [
            copy.deepcopy(obj)
            for (ns, _), obj in sorted(self._bucket(gvk.group_kind).items())
            if (namespace is None or ns == namespace)
            and (label_selector is None or label_selector.matches(labels_of(obj)))
        ]
        return ObjectList(items=items, resource_version=str(self._rv))

    async def watch(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        label_selector: LabelSelector | None = None,
        resource_version: str = "",
    ) -> AsyncIterator[WatchEvent]:
        start_rv = int(resource_version or self._rv)
        if start_rv < self._compacted_rv:
            raise GoneError(f"resourceVersion {start_rv} is too old")
        sub = _Subscriber(group_kind=gvk.group_kind, namespace=namespace, selector=label_selector)
        backlog = [
            (entry.rv, event)
            for entry in self._history
            if entry.rv > start_rv
            for event in [self._event_for(sub, entry)]
            if event is not None
        ]
        self._subscribers.append(sub)
        try:
            for _, event in backlog:
                yield event
            while True:
                _, event = await sub.queue.get()
                yield event
        finally:
            self._subscribers.remove(sub)

    async def create(self, obj: Object) -> Object:
        gvk = gvk_of(obj)
        key = key_of(obj)
        self._record("create", gvk.kind, key.namespace, key.name, obj)
        return copy.deepcopy(self._create(copy.deepcopy(obj)))

    async def update(self, obj: Object) -> Object:
        gvk = gvk_of(obj)
        key = key_of(obj)
        self._record("update", gvk.kind, key.namespace, key.name, obj)
        current = self._current(gvk, key.namespace, key.name)
        self._check_rv(current, obj)
        new = copy.deepcopy(obj)
        new.pop("status", None)
        if "status" in current:
            new["status"] = copy.deepcopy(current["status"])
        return copy.deepcopy(self._replace(gvk, current, new))

    async def update_status(self, obj: Object) -> Object:
        gvk = gvk_of(obj)
        key = key_of(obj)
        self._record("update_status", gvk.kind, key.namespace, key.name, obj)
        current = self._current(gvk, key.namespace, key.name)
        self._check_rv(current, obj)
        new = copy.deepcopy(current)
        new["status"] = copy.deepcopy(obj.get("status") or {})
        return copy.deepcopy(self._replace(gvk, current, new))

    async def patch(self, gvk: GroupVersionKind, namespace: str, name: str, patch: dict[str, Any]) -> Object:
        self._record("patch", gvk.kind, namespace, name, patch)
        current = self._current(gvk, namespace, name)
        self._check_rv(current, patch)
        new = merge_patch(current, patch)
        if "status" in current:
            new["status"] = copy.deepcopy(current["status"])
        else:
            new.pop("status", None)
        return copy.deepcopy(self._replace(gvk, current, new))

    async def delete(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        propagation_policy: PropagationPolicy | None = None,
    ) -> None:
        self._record("delete", gvk.kind, namespace, name)
        current = self._current(gvk, namespace, name)
        if finalizers_of(current):
            if propagation_policy is PropagationPolicy.ORPHAN:
                self._orphaning.add((gvk.group_kind, (namespace, name)))
            if not metadata_of(current).get("deletionTimestamp"):
                new = copy.deepcopy(current)
                metadata_of(new)["deletionTimestamp"] = _now()
                self._replace(gvk, current, new, marking_deleted=True)
            return
        self._remove(gvk.group_kind, current, propagation_policy)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, verb: str, kind: str, namespace: str, name: str, body: Object | None = None) -> None:
        self.actions.append(
            Action(verb=verb, kind=kind, namespace=namespace, name=name, body=copy.deepcopy(body) if body else None)
        )
        for fault in self._faults:
            if fault.verb == verb and fault.kind == kind and fault.remaining > 0:
                fault.remaining -= 1
                raise fault.error

    def _bucket(self, group_kind: GroupKind) -> dict[_Key, Object]:
        return self._objects.setdefault(group_kind, {})

    def _current(self, gvk: GroupVersionKind, namespace: str, name: str) -> Object:
        obj = self._bucket(gvk.group_kind).get((namespace, name))
        if obj is None:
            raise NotFoundError(f"{gvk.kind} {namespace}/{name} not found")
        return obj

    @staticmethod
    def _check_rv(current: Object, incoming: dict[str, Any]) -> None:
        wanted = (incoming.get("metadata") or {}).get("resourceVersion")
        if wanted and wanted != metadata_of(current).get("resourceVersion"):
            key = key_of(current)
            raise ConflictError(f"the object {key} has been modified; please apply your changes to the latest version")

    def _next_rv(self) -> int:
        self._rv += 1
        return self._rv

    def _create(self, obj: Object) -> Object:
        gvk = gvk_of(obj)
        key = key_of(obj)
        if not key.name:
            raise StoreError("name is required", status=422, reason="Invalid")
        bucket = self._bucket(gvk.group_kind)
        if (key.namespace, key.name) in bucket:
            raise AlreadyExistsError(f"{gvk.kind} {key} already exists")
        meta = metadata_of(obj)
        rv = self._next_rv()
        meta["uid"] = str(uuid.uuid4())
        meta["resourceVersion"] = str(rv)
        meta["generation"] = 1
        meta["creationTimestamp"] = _now()
        meta.pop("deletionTimestamp", None)
        bucket[(key.namespace, key.name)] = obj
        self._publish(rv, gvk.group_kind, None, obj, deleted=False)
        return obj

    def _replace(self, gvk: GroupVersionKind, current: Object, new: Object, marking_deleted: bool = False) -> Object:
        cur_meta = metadata_of(current)
        meta = metadata_of(new)
        immutables = ["uid", "creationTimestamp", "namespace", "name"]
        if not marking_deleted:
            immutables.append("deletionTimestamp")
        for immutable in immutables:
            if immutable in cur_meta:
                meta[immutable] = cur_meta[immutable]
            else:
                meta.pop(immutable, None)
        generation = int(cur_meta.get("generation") or 1)
        if _spec_view(new) != _spec_view(current):
            generation += 1
        meta["generation"] = generation
        meta["resourceVersion"] = cur_meta.get("resourceVersion")
        if new == current:
            return current
        rv = self._next_rv()
        meta["resourceVersion"] = str(rv)
        key = key_of(current)
        self._bucket(gvk.group_kind)[(key.namespace, key.name)] = new
        self._publish(rv, gvk.group_kind, current, new, deleted=False)
        if meta.get("deletionTimestamp") and not meta.get("finalizers"):
            pending = (gvk.group_kind, (key.namespace, key.name))
            policy = PropagationPolicy.ORPHAN if pending in self._orphaning else None
            self._orphaning.discard(pending)
            self._remove(gvk.group_kind, new, policy)
        return new

    def _remove(self, group_kind: GroupKind, obj: Object, propagation_policy: PropagationPolicy | None) -> None:
        key = key_of(obj)
        self._bucket(group_kind).pop((key.namespace, key.name), None)
        rv = self._next_rv()
        self._publish(rv, group_kind, obj, obj, deleted=True)
        self._collect_dependents(metadata_of(obj).get("uid"), propagation_policy)

    def _collect_dependents(self, owner_uid: str | None, propagation_policy: PropagationPolicy | None) -> None:
        if not owner_uid:
            return
        for group_kind, bucket in list(self._objects.items()):
            for dependent in list(bucket.values()):
                refs = metadata_of(dependent).get("ownerReferences") or []
                if not any(ref.get("uid") == owner_uid for ref in refs):
                    continue
                gvk = gvk_of(dependent)
                remaining = [r for r in refs if r.get("uid") != owner_uid]
                # Dependents with another owner only lose the dangling reference.
                if propagation_policy is PropagationPolicy.ORPHAN or remaining:
                    new = copy.deepcopy(dependent)
                    metadata_of(new)["ownerReferences"] = remaining
                    self._replace(gvk, dependent, new)
                elif finalizers_of(dependent):
                    if not metadata_of(dependent).get("deletionTimestamp"):
                        new = copy.deepcopy(dependent)
                        metadata_of(new)["deletionTimestamp"] = _now()
                        self._replace(gvk, dependent, new, marking_deleted=True)
                else:
                    self._remove(group_kind, dependent, None)

    def _publish(self, rv: int, group_kind: GroupKind, before: Object | None, after: Object, deleted: bool) -> None:
        entry = _HistoryEntry(
            rv=rv,
            group_kind=group_kind,
            before=copy.deepcopy(before),
            after=copy.deepcopy(after),
            deleted=deleted,
        )
        self._history.append(entry)
        for sub in list(self._subscribers):
            event = self._event_for(sub, entry)
            if event is not None:
                sub.queue.put_nowait((rv, event))

    @staticmethod
    def _event_for(sub: _Subscriber, entry: _HistoryEntry) -> WatchEvent | None:
        if entry.group_kind != sub.group_kind or entry.after is None:
            return None
        if sub.namespace is not None and key_of(entry.after).namespace != sub.namespace:
            return None

        def matches(obj: Object | None) -> bool:
            if obj is None:
                return False
            return sub.selector is None or sub.selector.matches(labels_of(obj))

        obj = copy.deepcopy(entry.after)
        was, now = matches(entry.before), matches(entry.after)
        if entry.deleted:
            return WatchEvent(EventType.DELETED, obj) if was else None
        if was and now:
            return WatchEvent(EventType.MODIFIED, obj)
        if now:
            return WatchEvent(EventType.ADDED, obj)
        if was:
            return WatchEvent(EventType.DELETED, obj)
        return None
