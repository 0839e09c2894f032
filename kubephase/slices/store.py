"""ObjectSlice persistence.

Slices are write-once: ``create`` never overwrites a stored slice.  Because
names are content addressed, finding a slice of the same name that holds the
same objects and belongs to the same deployment means the work is already
done; anything else is a collision the caller has to step around.
"""

from __future__ import annotations

import structlog

from kubephase.controllers.owner import OwnerStrategy
from kubephase.models.api import (
    API_VERSION,
    OBJECT_DEPLOYMENT_LABEL,
    OBJECT_SLICE_GVK,
    ObjectSetObject,
    ObjectSlice,
    TemplatePhase,
)
from kubephase.models.objects import Object, name_of, namespace_of
from kubephase.models.selectors import LabelSelector
from kubephase.observability.metrics import slices_created_total
from kubephase.store.base import ObjectStore
from kubephase.store.errors import AlreadyExistsError, NotFoundError

_log = structlog.get_logger(component="slices.store")


class SliceCollisionError(Exception):
    """A slice with the same name but different content or owner exists."""

    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(f"ObjectSlice collision with {namespace}/{name}")
        self.namespace = namespace
        self.name = name


class SliceNotFoundError(Exception):
    """A phase references a slice that does not exist."""

    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(f"ObjectSlice {namespace}/{name} not found")
        self.namespace = namespace
        self.name = name


def _wire(objects: list[ObjectSetObject]) -> list[dict]:
    return [o.to_dict() for o in objects]


class SliceStore:
    """CRUD over ObjectSlices owned by ObjectDeployments."""

    def __init__(self, store: ObjectStore, owners: OwnerStrategy | None = None) -> None:
        self._store = store
        self._owners = owners or OwnerStrategy()

    async def create(self, deployment: Object, name: str, objects: list[ObjectSetObject]) -> ObjectSlice:
        """Store *objects* as slice *name*, owned by *deployment*.

        Raises:
            SliceCollisionError: *name* is taken by different content or by a
                slice *deployment* does not own.  The stored slice is left as is.
        """
        namespace = namespace_of(deployment)
        raw: Object = {
            "apiVersion": API_VERSION,
            "kind": OBJECT_SLICE_GVK.kind,
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": {OBJECT_DEPLOYMENT_LABEL: name_of(deployment)},
                "ownerReferences": [self._owners.owner_reference(deployment)],
            },
            "objects": _wire(objects),
        }
        try:
            created = await self._store.create(raw)
        except AlreadyExistsError:
            existing = await self._store.get(OBJECT_SLICE_GVK, namespace, name)
            stored = [ObjectSetObject.from_dict(o).to_dict() for o in existing.get("objects") or []]
            if stored == raw["objects"] and self._owners.is_owner(deployment, existing):
                _log.debug("slice_exists", namespace=namespace, name=name)
                return ObjectSlice.from_dict(existing)
            raise SliceCollisionError(namespace, name) from None
        slices_created_total.inc()
        _log.info("slice_created", namespace=namespace, name=name, objects=len(objects))
        return ObjectSlice.from_dict(created)

    async def get(self, namespace: str, name: str) -> ObjectSlice:
        try:
            raw = await self._store.get(OBJECT_SLICE_GVK, namespace, name)
        except NotFoundError:
            raise SliceNotFoundError(namespace, name) from None
        return ObjectSlice.from_dict(raw)

    async def delete(self, namespace: str, name: str) -> None:
        try:
            await self._store.delete(OBJECT_SLICE_GVK, namespace, name)
        except NotFoundError:
            pass

    async def list_for_deployment(self, namespace: str, deployment_name: str) -> list[ObjectSlice]:
        result = await self._store.list(
            OBJECT_SLICE_GVK,
            namespace=namespace,
            label_selector=LabelSelector.from_labels({OBJECT_DEPLOYMENT_LABEL: deployment_name}),
        )
        return [ObjectSlice.from_dict(item) for item in result.items]

    async def expand_phase(self, namespace: str, phase: TemplatePhase, missing_ok: bool = False) -> TemplatePhase:
        """Return *phase* with every slice reference replaced by its objects.

        Inline objects come first, then each slice's objects in list order.
        With *missing_ok*, unknown slices are skipped instead of raising
        SliceNotFoundError.
        """
        objects = list(phase.objects)
        for slice_name in phase.slices:
            try:
                stored = await self.get(namespace, slice_name)
            except SliceNotFoundError:
                if not missing_ok:
                    raise
                _log.warning("slice_missing", namespace=namespace, name=slice_name, phase=phase.name)
                continue
            objects.extend(stored.objects)
        return TemplatePhase(name=phase.name, objects=objects)

    async def expand_phases(
        self, namespace: str, phases: list[TemplatePhase], missing_ok: bool = False
    ) -> list[TemplatePhase]:
        return [await self.expand_phase(namespace, phase, missing_ok) for phase in phases]
