"""Shared fixtures for kubephase integration tests.

Provides an in-memory object store, a dynamic cache on top of it and
factories for ObjectDeployments, ObjectSets, ObjectSlices, ConfigMaps,
Secrets and SecretSyncs, so the reconcilers can be exercised end to end
without touching a real Kubernetes cluster.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from kubephase.cache.dynamic_cache import DynamicCache
from kubephase.models.api import (
    API_VERSION,
    CHUNKING_STRATEGY_ANNOTATION,
    DYNAMIC_CACHE_LABEL,
    DYNAMIC_CACHE_LABEL_VALUE,
    OBJECT_DEPLOYMENT_LABEL,
    REVISION_ANNOTATION,
)
from kubephase.models.objects import GroupVersionKind, Object
from kubephase.slices.store import SliceStore
from kubephase.store.memory import MemoryStore

CONFIGMAP_GVK = GroupVersionKind("", "v1", "ConfigMap")

NAMESPACE = "default"


# ---------------------------------------------------------------------------
# Event loop helpers
# ---------------------------------------------------------------------------


async def settle(rounds: int = 20) -> None:
    """Let informer tasks drain their pending watch events."""
    for _ in range(rounds):
        await asyncio.sleep(0.001)


# ---------------------------------------------------------------------------
# Object factories
# ---------------------------------------------------------------------------


def make_configmap(
    name: str,
    data: dict[str, str] | None = None,
    namespace: str | None = None,
    labels: dict[str, str] | None = None,
    owner_references: list[dict[str, Any]] | None = None,
    annotations: dict[str, str] | None = None,
) -> Object:
    """Create a ConfigMap with sensible defaults for testing."""
    metadata: dict[str, Any] = {"name": name}
    if namespace is not None:
        metadata["namespace"] = namespace
    if labels:
        metadata["labels"] = dict(labels)
    if annotations:
        metadata["annotations"] = dict(annotations)
    if owner_references:
        metadata["ownerReferences"] = owner_references
    cm: Object = {"apiVersion": "v1", "kind": "ConfigMap", "metadata": metadata}
    if data is not None:
        cm["data"] = dict(data)
    return cm


def make_secret(name: str, data: dict[str, str], namespace: str = NAMESPACE, cached: bool = False) -> Object:
    metadata: dict[str, Any] = {"name": name, "namespace": namespace}
    if cached:
        metadata["labels"] = {DYNAMIC_CACHE_LABEL: DYNAMIC_CACHE_LABEL_VALUE}
    return {"apiVersion": "v1", "kind": "Secret", "metadata": metadata, "type": "Opaque", "data": dict(data)}


def make_deployment(
    name: str = "test-depl",
    phases: list[dict[str, Any]] | None = None,
    namespace: str = NAMESPACE,
    chunking: str | None = "NoOp",
    selector: dict[str, Any] | None = None,
    template_labels: dict[str, str] | None = None,
    probes: list[dict[str, Any]] | None = None,
    revision_history_limit: int | None = None,
) -> Object:
    """Create an ObjectDeployment; phases default to one ConfigMap in phase ``deploy``."""
    if phases is None:
        phases = [{"name": "deploy", "objects": [{"object": make_configmap("cm-a", {"k": "v"})}]}]
    metadata: dict[str, Any] = {"name": name, "namespace": namespace}
    if chunking is not None:
        metadata["annotations"] = {CHUNKING_STRATEGY_ANNOTATION: chunking}
    spec: dict[str, Any] = {
        "selector": selector or {},
        "template": {
            "metadata": {"labels": dict(template_labels or {})},
            "spec": {"phases": phases, "availabilityProbes": probes or []},
        },
    }
    if revision_history_limit is not None:
        spec["revisionHistoryLimit"] = revision_history_limit
    return {"apiVersion": API_VERSION, "kind": "ObjectDeployment", "metadata": metadata, "spec": spec}


def make_objectset(
    name: str = "web-1",
    phases: list[dict[str, Any]] | None = None,
    namespace: str = NAMESPACE,
    revision: int = 1,
    lifecycle_state: str = "Active",
    probes: list[dict[str, Any]] | None = None,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
    status: dict[str, Any] | None = None,
) -> Object:
    """Create an ObjectSet revision; phases default to one ConfigMap in phase ``deploy``."""
    if phases is None:
        phases = [{"name": "deploy", "objects": [{"object": make_configmap("cm-a", {"k": "v"})}]}]
    obj: Object = {
        "apiVersion": API_VERSION,
        "kind": "ObjectSet",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": dict(labels or {}),
            "annotations": {REVISION_ANNOTATION: str(revision), **(annotations or {})},
        },
        "spec": {"phases": phases, "availabilityProbes": probes or [], "lifecycleState": lifecycle_state},
    }
    if status is not None:
        obj["status"] = status
    return obj


def make_slice(
    name: str,
    objects: list[dict[str, Any]],
    deployment: str = "test-depl",
    namespace: str = NAMESPACE,
    owner_references: list[dict[str, Any]] | None = None,
) -> Object:
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "labels": {OBJECT_DEPLOYMENT_LABEL: deployment},
    }
    if owner_references is not None:
        metadata["ownerReferences"] = owner_references
    return {"apiVersion": API_VERSION, "kind": "ObjectSlice", "metadata": metadata, "objects": objects}


def make_secretsync(
    name: str = "sync",
    src: tuple[str, str] = (NAMESPACE, "src"),
    dest: list[tuple[str, str]] | None = None,
    watch: bool = False,
    poll_interval: str = "30s",
    paused: bool = False,
) -> Object:
    strategy: dict[str, Any] = {"watch": {}} if watch else {"poll": {"interval": poll_interval}}
    return {
        "apiVersion": API_VERSION,
        "kind": "SecretSync",
        "metadata": {"name": name, "namespace": NAMESPACE},
        "spec": {
            "src": {"namespace": src[0], "name": src[1]},
            "dest": [{"namespace": ns, "name": n} for ns, n in (dest or [(NAMESPACE, "dest")])],
            "strategy": strategy,
            "paused": paused,
        },
    }


def probe_field_value(kind: str, field: str, value: Any, group: str = "") -> dict[str, Any]:
    """availabilityProbes entry requiring *field* == *value* on every *kind* object."""
    return {
        "selector": {"kind": {"group": group, "kind": kind}},
        "probes": [{"fieldValue": {"field": field, "value": value}}],
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def slices(store: MemoryStore) -> SliceStore:
    return SliceStore(store)


@pytest.fixture()
async def cache(store: MemoryStore) -> AsyncIterator[DynamicCache]:
    dynamic_cache = DynamicCache(store, sync_timeout=5.0)
    yield dynamic_cache
    await dynamic_cache.stop()
