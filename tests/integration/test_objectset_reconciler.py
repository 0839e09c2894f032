"""Integration tests for the ObjectSet reconciler.

Tests cover: finalizers, phase gating on availability probes, idempotence,
adoption from older revisions, conflicts with foreign controllers, external
objects, slice references, condition mapping, pausing, archiving and ordered
teardown on deletion.
"""

from __future__ import annotations

import pytest

from kubephase.cache.dynamic_cache import DynamicCache
from kubephase.controllers.owner import ObjectNotOwnedError, OwnerStrategy
from kubephase.models.api import (
    CACHED_FINALIZER,
    DYNAMIC_CACHE_LABEL,
    OBJECT_SET_GVK,
    REVISION_ANNOTATION,
    TEARDOWN_FINALIZER,
)
from kubephase.models.conditions import find_status_condition
from kubephase.models.objects import Object
from kubephase.objectsets import ObjectSetReconciler
from kubephase.slices.store import SliceNotFoundError, SliceStore
from kubephase.store.memory import MemoryStore

from .conftest import (
    CONFIGMAP_GVK,
    NAMESPACE,
    make_configmap,
    make_objectset,
    make_slice,
    probe_field_value,
    settle,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _two_phases() -> list[dict]:
    return [
        {"name": "P1", "objects": [{"object": make_configmap("cm-a", {"k": "v"})}]},
        {"name": "P2", "objects": [{"object": make_configmap("cm-b", {"k": "v"})}]},
    ]


def _ready_probe() -> list[dict]:
    return [probe_field_value("ConfigMap", "data.ready", "true")]


class _Harness:
    def __init__(self, store: MemoryStore, cache: DynamicCache) -> None:
        self.store = store
        self.reconciler = ObjectSetReconciler(store, cache, SliceStore(store), teardown_requeue=5.0)

    async def reconcile(self, name: str = "web-1"):
        obj = await self.store.get(OBJECT_SET_GVK, NAMESPACE, name)
        result = await self.reconciler.reconcile(obj)
        await settle()
        return result

    def status(self, name: str = "web-1") -> dict:
        obj = self.store.peek(OBJECT_SET_GVK, NAMESPACE, name)
        assert obj is not None
        return obj.get("status") or {}

    def configmap(self, name: str) -> Object | None:
        return self.store.peek(CONFIGMAP_GVK, NAMESPACE, name)


@pytest.fixture()
def harness(store: MemoryStore, cache: DynamicCache) -> _Harness:
    return _Harness(store, cache)


# ---------------------------------------------------------------------------
# Active revisions
# ---------------------------------------------------------------------------


class TestActive:
    async def test_adds_finalizers_and_creates_objects(self, harness: _Harness) -> None:
        (objectset,) = harness.store.seed(make_objectset())

        await harness.reconcile()

        live = harness.store.peek(OBJECT_SET_GVK, NAMESPACE, "web-1")
        assert live is not None
        assert {CACHED_FINALIZER, TEARDOWN_FINALIZER} <= set(live["metadata"]["finalizers"])
        cm = harness.configmap("cm-a")
        assert cm is not None
        assert cm["metadata"]["labels"][DYNAMIC_CACHE_LABEL] == "True"
        assert cm["metadata"]["annotations"][REVISION_ANNOTATION] == "1"
        assert OwnerStrategy().is_controller(objectset, cm)

        status = harness.status()
        assert status["phase"] == "Available"
        assert status["revision"] == 1
        assert status["controllerOf"] == [{"kind": "ConfigMap", "group": "", "namespace": NAMESPACE, "name": "cm-a"}]
        available = find_status_condition(status["conditions"], "Available")
        assert available is not None and available["status"] == "True"

    async def test_failing_probe_gates_later_phases(self, harness: _Harness) -> None:
        harness.store.seed(make_objectset(phases=_two_phases(), probes=_ready_probe()))

        await harness.reconcile()

        assert harness.configmap("cm-a") is not None
        assert harness.configmap("cm-b") is None
        status = harness.status()
        assert status["phase"] == "Progressing"
        assert status["activePhase"] == "P1"
        available = find_status_condition(status["conditions"], "Available")
        assert available is not None
        assert available["reason"] == "ProbeFailure"
        assert available["message"].startswith('Phase "P1" failed: ConfigMap default/cm-a')

    async def test_next_phase_starts_once_probe_passes(self, harness: _Harness) -> None:
        harness.store.seed(make_objectset(phases=_two_phases(), probes=_ready_probe()))
        await harness.reconcile()

        # Fields outside the template are left alone by the reconciler.
        await harness.store.patch(CONFIGMAP_GVK, NAMESPACE, "cm-a", {"data": {"ready": "true"}})
        await settle()
        await harness.reconcile()

        assert harness.configmap("cm-b") is not None
        status = harness.status()
        assert status["activePhase"] == "P2"

    async def test_second_reconcile_performs_no_writes(self, harness: _Harness) -> None:
        harness.store.seed(make_objectset(phases=_two_phases()))
        await harness.reconcile()
        writes_before = len(harness.store.writes())

        await harness.reconcile()

        assert harness.store.writes()[writes_before:] == []

    async def test_drifted_object_is_patched_back(self, harness: _Harness) -> None:
        harness.store.seed(make_objectset())
        await harness.reconcile()

        await harness.store.patch(CONFIGMAP_GVK, NAMESPACE, "cm-a", {"data": {"k": "drifted"}})
        await settle()
        await harness.reconcile()

        cm = harness.configmap("cm-a")
        assert cm is not None
        assert cm["data"]["k"] == "v"

    async def test_condition_mapping_copies_source_condition(self, harness: _Harness) -> None:
        item = {
            "object": make_configmap("cm-a", {"k": "v"}),
            "conditionMappings": [{"sourceType": "Ready", "destinationType": "example.com/Ready"}],
        }
        harness.store.seed(make_objectset(phases=[{"name": "deploy", "objects": [item]}]))
        await harness.reconcile()

        cm = harness.configmap("cm-a")
        assert cm is not None
        await harness.store.update_status(
            {**cm, "status": {"conditions": [{"type": "Ready", "status": "True", "reason": "Fine"}]}}
        )
        await settle()
        await harness.reconcile()

        mapped = find_status_condition(harness.status()["conditions"], "example.com/Ready")
        assert mapped is not None
        assert mapped["status"] == "True"
        assert mapped["reason"] == "Fine"


# ---------------------------------------------------------------------------
# Slice references
# ---------------------------------------------------------------------------


class TestSliceReferences:
    async def test_slice_objects_are_applied_after_inline_objects(self, harness: _Harness) -> None:
        phase = {
            "name": "deploy",
            "objects": [{"object": make_configmap("cm-a", {"k": "v"})}],
            "slices": ["web-slice"],
        }
        harness.store.seed(
            make_slice("web-slice", [{"object": make_configmap("cm-s", {"k": "s"})}]),
            make_objectset(phases=[phase]),
        )

        await harness.reconcile()

        cm = harness.configmap("cm-s")
        assert cm is not None
        assert cm["data"] == {"k": "s"}
        status = harness.status()
        assert status["phase"] == "Available"
        assert [ref["name"] for ref in status["controllerOf"]] == ["cm-a", "cm-s"]

    async def test_missing_slice_fails_the_pass_until_it_exists(self, harness: _Harness) -> None:
        harness.store.seed(make_objectset(phases=[{"name": "deploy", "slices": ["web-slice"]}]))

        with pytest.raises(SliceNotFoundError, match="default/web-slice"):
            await harness.reconcile()

        assert harness.store.calls("create", "ConfigMap") == []
        assert harness.configmap("cm-s") is None

        harness.store.seed(make_slice("web-slice", [{"object": make_configmap("cm-s", {"k": "s"})}]))
        await harness.reconcile()

        assert harness.configmap("cm-s") is not None
        assert harness.status()["phase"] == "Available"


# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------


class TestOwnership:
    async def test_newer_revision_adopts_object(self, harness: _Harness) -> None:
        old, new = harness.store.seed(make_objectset("web-1", revision=1), make_objectset("web-2", revision=2))
        await harness.reconcile("web-1")

        await harness.reconcile("web-2")

        cm = harness.configmap("cm-a")
        assert cm is not None
        owners = OwnerStrategy()
        assert owners.is_controller(new, cm)
        assert owners.is_owner(old, cm)
        assert cm["metadata"]["annotations"][REVISION_ANNOTATION] == "2"

    async def test_older_revision_only_observes(self, harness: _Harness) -> None:
        old, new = harness.store.seed(make_objectset("web-1", revision=1), make_objectset("web-2", revision=2))
        await harness.reconcile("web-2")

        await harness.reconcile("web-1")

        cm = harness.configmap("cm-a")
        assert cm is not None
        assert OwnerStrategy().is_controller(new, cm)
        assert harness.status("web-1")["controllerOf"] == []

    async def test_foreign_controller_is_an_error(self, harness: _Harness) -> None:
        foreign = {"apiVersion": "apps/v1", "kind": "Deployment", "name": "other", "uid": "x", "controller": True}
        harness.store.seed(
            make_objectset(),
            make_configmap("cm-a", {"k": "v"}, namespace=NAMESPACE, owner_references=[foreign]),
        )

        with pytest.raises(ObjectNotOwnedError, match="controlled by Deployment other"):
            await harness.reconcile()

    async def test_external_object_is_observed_not_written(self, harness: _Harness) -> None:
        item = {"object": make_configmap("cm-ext", {"k": "v"}), "external": True}
        harness.store.seed(
            make_objectset(phases=[{"name": "deploy", "objects": [item]}]),
            make_configmap("cm-ext", {"k": "other"}, namespace=NAMESPACE),
        )

        await harness.reconcile()

        cm = harness.configmap("cm-ext")
        assert cm is not None
        assert cm["data"]["k"] == "other"
        assert cm["metadata"].get("ownerReferences") is None
        assert cm["metadata"]["labels"][DYNAMIC_CACHE_LABEL] == "True"
        assert harness.status()["phase"] == "Available"

    async def test_missing_external_object_blocks_phase(self, harness: _Harness) -> None:
        item = {"object": make_configmap("cm-ext"), "external": True}
        harness.store.seed(make_objectset(phases=[{"name": "deploy", "objects": [item]}]))

        await harness.reconcile()

        assert harness.configmap("cm-ext") is None
        available = find_status_condition(harness.status()["conditions"], "Available")
        assert available is not None
        assert "not found" in available["message"]


# ---------------------------------------------------------------------------
# Paused and archived
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_paused_revision_writes_no_objects(self, harness: _Harness) -> None:
        harness.store.seed(make_objectset(lifecycle_state="Paused"))

        await harness.reconcile()

        assert harness.configmap("cm-a") is None
        status = harness.status()
        assert status["phase"] == "Pending"
        paused = find_status_condition(status["conditions"], "Paused")
        assert paused is not None and paused["reason"] == "Paused"

    async def test_archived_revision_tears_down_objects(self, harness: _Harness) -> None:
        harness.store.seed(make_objectset())
        await harness.reconcile()
        await harness.store.patch(OBJECT_SET_GVK, NAMESPACE, "web-1", {"spec": {"lifecycleState": "Archived"}})

        result = await harness.reconcile()

        assert result.requeue_after is None
        assert harness.configmap("cm-a") is None
        status = harness.status()
        assert status["phase"] == "Archived"
        assert status["controllerOf"] == []
        archived = find_status_condition(status["conditions"], "Archived")
        assert archived is not None and archived["status"] == "True"

    async def test_archived_revision_leaves_adopted_objects(self, harness: _Harness) -> None:
        old, new = harness.store.seed(make_objectset("web-1", revision=1), make_objectset("web-2", revision=2))
        await harness.reconcile("web-1")
        await harness.reconcile("web-2")
        await harness.store.patch(OBJECT_SET_GVK, NAMESPACE, "web-1", {"spec": {"lifecycleState": "Archived"}})

        await harness.reconcile("web-1")

        cm = harness.configmap("cm-a")
        assert cm is not None
        owners = OwnerStrategy()
        assert owners.is_controller(new, cm)
        assert not owners.is_owner(old, cm)


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


class TestDeletion:
    async def test_teardown_runs_later_phases_first(self, harness: _Harness) -> None:
        harness.store.seed(make_objectset(phases=_two_phases()))
        await harness.reconcile()
        # Hold cm-b in deletion so the teardown of P2 stays pending.
        await harness.store.patch(CONFIGMAP_GVK, NAMESPACE, "cm-b", {"metadata": {"finalizers": ["test/hold"]}})
        await harness.store.delete(OBJECT_SET_GVK, NAMESPACE, "web-1")

        result = await harness.reconcile()

        assert result.requeue_after == 5.0
        cm_a, cm_b = harness.configmap("cm-a"), harness.configmap("cm-b")
        assert cm_b is not None and cm_b["metadata"].get("deletionTimestamp")
        assert cm_a is not None and not cm_a["metadata"].get("deletionTimestamp")
        assert harness.status()["phase"] == "Deleting"

        await harness.store.patch(CONFIGMAP_GVK, NAMESPACE, "cm-b", {"metadata": {"finalizers": None}})
        result = await harness.reconcile()

        assert result.requeue_after is None
        assert harness.configmap("cm-a") is None
        assert harness.configmap("cm-b") is None
        assert harness.store.peek(OBJECT_SET_GVK, NAMESPACE, "web-1") is None

    async def test_single_pass_deletion_removes_revision(self, harness: _Harness) -> None:
        harness.store.seed(make_objectset(phases=_two_phases()))
        await harness.reconcile()
        await harness.store.delete(OBJECT_SET_GVK, NAMESPACE, "web-1")

        result = await harness.reconcile()

        assert result.requeue_after is None
        assert harness.configmap("cm-a") is None
        assert harness.configmap("cm-b") is None
        assert harness.store.peek(OBJECT_SET_GVK, NAMESPACE, "web-1") is None
