"""Unit tests for the in-process object store and conflict retries.

Covers optimistic concurrency, generation bumps, finalizer-gated deletion,
ownerReference cascade and orphaning, label-filtered watches, history
compaction and fault injection.
"""

from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from kubephase.models.objects import GroupVersionKind
from kubephase.models.selectors import LabelSelector
from kubephase.store.base import EventType, PropagationPolicy
from kubephase.store.errors import (
    AlreadyExistsError,
    ConflictError,
    GoneError,
    NotFoundError,
    StoreError,
    error_for_status,
    with_context,
)
from kubephase.store.memory import MemoryStore
from kubephase.store.retry import retry_on_conflict

_CM = GroupVersionKind("", "v1", "ConfigMap")


def _cm(name: str, data: dict | None = None, labels: dict | None = None, **meta: object) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": "default", "labels": labels or {}, **meta},
        "data": data or {"k": "v"},
    }


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestWrites:
    async def test_create_assigns_server_fields(self, store: MemoryStore) -> None:
        created = await store.create(_cm("a"))
        meta = created["metadata"]
        assert meta["uid"]
        assert meta["generation"] == 1
        assert meta["resourceVersion"] == "1"
        with pytest.raises(AlreadyExistsError):
            await store.create(_cm("a"))

    async def test_stale_resource_version_conflicts(self, store: MemoryStore) -> None:
        (stale,) = store.seed(_cm("a"))
        await store.patch(_CM, "default", "a", {"data": {"k": "w"}})

        stale["data"] = {"k": "x"}
        with pytest.raises(ConflictError):
            await store.update(stale)

    async def test_generation_only_moves_on_spec_changes(self, store: MemoryStore) -> None:
        store.seed(_cm("a"))
        labelled = await store.patch(_CM, "default", "a", {"metadata": {"labels": {"x": "y"}}})
        assert labelled["metadata"]["generation"] == 1

        changed = await store.patch(_CM, "default", "a", {"data": {"k": "w"}})
        assert changed["metadata"]["generation"] == 2

    async def test_noop_write_keeps_resource_version(self, store: MemoryStore) -> None:
        (obj,) = store.seed(_cm("a"))
        again = await store.update(obj)
        assert again["metadata"]["resourceVersion"] == obj["metadata"]["resourceVersion"]

    async def test_update_ignores_status_and_update_status_ignores_spec(self, store: MemoryStore) -> None:
        (obj,) = store.seed(_cm("a"))
        obj["status"] = {"ready": True}
        obj = await store.update(obj)
        assert "status" not in obj

        obj["status"] = {"ready": True}
        obj["data"] = {"k": "ignored"}
        obj = await store.update_status(obj)
        assert obj["status"] == {"ready": True}
        assert obj["data"] == {"k": "v"}

    async def test_patch_resource_version_precondition(self, store: MemoryStore) -> None:
        store.seed(_cm("a"))
        with pytest.raises(ConflictError):
            await store.patch(_CM, "default", "a", {"metadata": {"resourceVersion": "99"}, "data": {"k": "w"}})


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


class TestDeletion:
    async def test_finalizers_hold_deletion(self, store: MemoryStore) -> None:
        store.seed(_cm("a", finalizers=["test/hold"]))

        await store.delete(_CM, "default", "a")
        held = store.peek(_CM, "default", "a")
        assert held is not None and held["metadata"]["deletionTimestamp"]

        await store.patch(_CM, "default", "a", {"metadata": {"finalizers": None}})
        assert store.peek(_CM, "default", "a") is None

    async def test_dependents_cascade(self, store: MemoryStore) -> None:
        (owner,) = store.seed(_cm("owner"))
        ref = {"apiVersion": "v1", "kind": "ConfigMap", "name": "owner", "uid": owner["metadata"]["uid"]}
        store.seed(_cm("child", ownerReferences=[ref]))

        await store.delete(_CM, "default", "owner")

        assert store.peek(_CM, "default", "child") is None

    async def test_orphan_policy_keeps_dependents(self, store: MemoryStore) -> None:
        (owner,) = store.seed(_cm("owner"))
        ref = {"apiVersion": "v1", "kind": "ConfigMap", "name": "owner", "uid": owner["metadata"]["uid"]}
        store.seed(_cm("child", ownerReferences=[ref]))

        await store.delete(_CM, "default", "owner", propagation_policy=PropagationPolicy.ORPHAN)

        child = store.peek(_CM, "default", "child")
        assert child is not None
        assert child["metadata"]["ownerReferences"] == []

    async def test_delete_missing_raises(self, store: MemoryStore) -> None:
        with pytest.raises(NotFoundError):
            await store.delete(_CM, "default", "missing")


# ---------------------------------------------------------------------------
# Watches
# ---------------------------------------------------------------------------


class TestWatch:
    async def test_label_filtered_watch(self, store: MemoryStore) -> None:
        stream = store.watch(_CM, "default", LabelSelector.from_labels({"cached": "yes"}))
        events = []

        async def collect() -> None:
            async for event in stream:
                events.append((event.type, event.object["metadata"]["name"]))
                if len(events) == 3:
                    return

        task = asyncio.create_task(collect())
        await asyncio.sleep(0.01)
        await store.create(_cm("plain"))
        await store.create(_cm("a", labels={"cached": "yes"}))
        await store.patch(_CM, "default", "plain", {"metadata": {"labels": {"cached": "yes"}}})
        await store.patch(_CM, "default", "a", {"metadata": {"labels": {"cached": None}}})
        await asyncio.wait_for(task, 1.0)

        assert events == [
            (EventType.ADDED, "a"),
            (EventType.ADDED, "plain"),
            (EventType.DELETED, "a"),
        ]

    async def test_watch_replays_from_resource_version(self, store: MemoryStore) -> None:
        store.seed(_cm("a"))
        listed = await store.list(_CM)
        await store.patch(_CM, "default", "a", {"data": {"k": "w"}})

        stream = store.watch(_CM, resource_version=listed.resource_version)
        event = await asyncio.wait_for(anext(stream), 1.0)

        assert event.type is EventType.MODIFIED
        assert event.object["data"] == {"k": "w"}
        await stream.aclose()

    async def test_compacted_history_is_gone(self, store: MemoryStore) -> None:
        store.seed(_cm("a"))
        store.seed(_cm("b"))
        store.compact()

        with pytest.raises(GoneError):
            await anext(store.watch(_CM, resource_version="1"))


# ---------------------------------------------------------------------------
# Faults and retries
# ---------------------------------------------------------------------------


class TestFaultsAndRetries:
    async def test_inject_error_fires_once(self, store: MemoryStore) -> None:
        store.inject_error("create", "ConfigMap", StoreError("boom"))
        with pytest.raises(StoreError, match="boom"):
            await store.create(_cm("a"))
        await store.create(_cm("a"))
        assert [a.verb for a in store.calls("create", "ConfigMap")] == ["create", "create"]

    async def test_retry_on_conflict_rereads(self, store: MemoryStore) -> None:
        store.seed(_cm("a"))
        store.inject_error("update", "ConfigMap", ConflictError("stale"), times=2)
        retries_before = REGISTRY.get_sample_value("kubephase_conflict_retries_total") or 0.0

        async def bump() -> dict:
            obj = await store.get(_CM, "default", "a")
            obj["data"]["k"] = "bumped"
            return await store.update(obj)

        result = await retry_on_conflict(bump, base_delay=0.001)

        assert result["data"] == {"k": "bumped"}
        assert len(store.calls("update")) == 3
        assert REGISTRY.get_sample_value("kubephase_conflict_retries_total") == retries_before + 2

    async def test_retry_on_conflict_gives_up(self, store: MemoryStore) -> None:
        store.seed(_cm("a"))
        store.inject_error("patch", "ConfigMap", ConflictError("stale"), times=10)

        with pytest.raises(ConflictError):
            await retry_on_conflict(lambda: store.patch(_CM, "default", "a", {}), attempts=3, base_delay=0.001)
        assert len(store.calls("patch")) == 3

    def test_error_for_status(self) -> None:
        assert isinstance(error_for_status(404, "", "x"), NotFoundError)
        assert isinstance(error_for_status(409, "AlreadyExists", "x"), AlreadyExistsError)
        assert isinstance(error_for_status(409, "Conflict", "x"), ConflictError)
        assert isinstance(error_for_status(410, "Expired", "x"), GoneError)
        other = error_for_status(503, "", "x")
        assert (other.status, other.reason) == (503, "Unknown")

    def test_with_context_keeps_class(self) -> None:
        wrapped = with_context(NotFoundError("gone"), "loading slice")
        assert isinstance(wrapped, NotFoundError)
        assert str(wrapped) == "loading slice: gone"
