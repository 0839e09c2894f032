"""Applying and probing the objects of one phase."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field

import structlog

from kubephase.cache.dynamic_cache import DynamicCache
from kubephase.controllers.common import ensure_dynamic_cache_label
from kubephase.controllers.owner import ObjectNotOwnedError, OwnerStrategy, get_controller_of
from kubephase.models.api import (
    DYNAMIC_CACHE_LABEL,
    DYNAMIC_CACHE_LABEL_VALUE,
    GROUP,
    OBJECT_SET_GVK,
    REVISION_ANNOTATION,
    ControlledObjectReference,
    ObjectSetObject,
    TemplatePhase,
)
from kubephase.models.conditions import Condition, map_conditions
from kubephase.models.objects import (
    GroupVersionKind,
    Object,
    annotations_of,
    contains,
    generation_of,
    gvk_of,
    key_of,
    metadata_of,
    namespace_of,
    resource_version_of,
    set_annotation,
    set_label,
    uid_of,
)
from kubephase.objectsets.probing import Probe
from kubephase.store.base import ObjectStore
from kubephase.store.errors import AlreadyExistsError, NotFoundError

_log = structlog.get_logger(component="objectsets.phases")


@dataclass
class PhaseResult:
    """What reconciling one phase produced."""

    controller_of: list[ControlledObjectReference] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    mapped_conditions: set[str] = field(default_factory=set)

    @property
    def available(self) -> bool:
        return not self.failures


def desired_object(owner: Object, item: ObjectSetObject, revision: int) -> Object:
    """The object as it should exist in the store, before owner references."""
    obj = copy.deepcopy(item.object)
    meta = metadata_of(obj)
    if not meta.get("namespace"):
        meta["namespace"] = namespace_of(owner)
    set_label(obj, DYNAMIC_CACHE_LABEL, DYNAMIC_CACHE_LABEL_VALUE)
    if not item.external:
        set_annotation(obj, REVISION_ANNOTATION, str(revision))
    return obj


def _revision_of(obj: Object) -> int | None:
    try:
        return int(annotations_of(obj)[REVISION_ANNOTATION])
    except (KeyError, ValueError):
        return None


class PhaseReconciler:
    """Creates, adopts, patches and probes phase objects."""

    def __init__(self, store: ObjectStore, cache: DynamicCache, owners: OwnerStrategy | None = None) -> None:
        self._store = store
        self._cache = cache
        self._owners = owners or OwnerStrategy()

    async def reconcile_phase(
        self,
        owner: Object,
        revision: int,
        phase: TemplatePhase,
        probe: Probe,
        conditions: list[Condition],
    ) -> PhaseResult:
        """Reconcile every object of the expanded *phase*, then probe them.

        Mapped conditions are written into *conditions* in place.
        """
        result = PhaseResult()
        for item in phase.objects:
            desired = desired_object(owner, item, revision)
            gvk = gvk_of(desired)
            key = key_of(desired)
            await self._cache.watch(owner, gvk, key.namespace or None)

            if item.external:
                live = await self._observe_external(gvk, desired)
            else:
                live, controlled = await self._apply(owner, revision, gvk, desired)
                if controlled:
                    result.controller_of.append(
                        ControlledObjectReference(kind=gvk.kind, group=gvk.group, namespace=key.namespace, name=key.name)
                    )

            if live is None:
                result.failures.append(f"{gvk.kind} {key}: not found")
                continue
            ok, message = probe.probe(live)
            if not ok:
                result.failures.append(f"{gvk.kind} {key}: {message}")

            mappings = {m.source_type: m.destination_type for m in item.condition_mappings}
            if mappings:
                result.mapped_conditions |= map_conditions(
                    generation_of(live),
                    (live.get("status") or {}).get("conditions") or [],
                    generation_of(owner),
                    conditions,
                    mappings,
                )
        return result

    async def _observe_external(self, gvk: GroupVersionKind, desired: Object) -> Object | None:
        key = key_of(desired)
        try:
            live = await self._store.get(gvk, key.namespace, key.name)
        except NotFoundError:
            return None
        return await ensure_dynamic_cache_label(self._store, live)

    async def _apply(
        self, owner: Object, revision: int, gvk: GroupVersionKind, desired: Object
    ) -> tuple[Object, bool]:
        """Bring the live object in line with *desired*.

        Returns the live object and whether *owner* controls it.

        Raises:
            ObjectNotOwnedError: a foreign controller owns the object.
        """
        key = key_of(desired)
        actual: Object | None
        try:
            actual = await self._cache.get(gvk, key.namespace, key.name)
        except NotFoundError:
            actual = None

        if actual is None:
            new = copy.deepcopy(desired)
            metadata_of(new)["ownerReferences"] = [self._owners.owner_reference(owner)]
            try:
                created = await self._store.create(new)
            except AlreadyExistsError:
                # Present but not (yet) admitted into the cache.
                actual = await self._store.get(gvk, key.namespace, key.name)
            else:
                _log.info("object_created", kind=gvk.kind, object=str(key))
                return created, True

        controller = get_controller_of(actual)
        if controller is not None and controller.get("uid") != uid_of(owner):
            other = self._controlling_revision(actual, controller)
            if other is None or other == revision:
                raise ObjectNotOwnedError(actual, controller)
            if other > revision:
                _log.debug("object_owned_by_newer_revision", kind=gvk.kind, object=str(key), revision=other)
                return actual, False
            _log.info("object_adopted", kind=gvk.kind, object=str(key), previous_revision=other)

        wanted = copy.deepcopy(desired)
        metadata_of(wanted)["ownerReferences"] = self._owners.controller_references(owner, actual)
        if contains(actual, wanted):
            return actual, True
        metadata_of(wanted)["resourceVersion"] = resource_version_of(actual)
        patched = await self._store.patch(gvk, key.namespace, key.name, wanted)
        _log.info("object_patched", kind=gvk.kind, object=str(key))
        return patched, True

    @staticmethod
    def _controlling_revision(actual: Object, controller: dict) -> int | None:
        """Revision of the ObjectSet controlling *actual*; None for any other controller."""
        api_version = str(controller.get("apiVersion", ""))
        if controller.get("kind") != OBJECT_SET_GVK.kind or api_version.rpartition("/")[0] != GROUP:
            return None
        revision = _revision_of(actual)
        return 0 if revision is None else revision
