"""Ordered removal of the objects an ObjectSet controls."""

from __future__ import annotations

import structlog

from kubephase.controllers.common import remove_dynamic_cache_label
from kubephase.controllers.owner import OwnerStrategy
from kubephase.models.api import ObjectSetObject, TemplatePhase
from kubephase.models.objects import Object, gvk_of, is_deleting, name_of, namespace_of, resource_version_of
from kubephase.store.base import ObjectStore
from kubephase.store.errors import NotFoundError

_log = structlog.get_logger(component="objectsets.teardown")


class Teardown:
    """Deletes controlled objects, later phases first.

    Objects controlled by someone else (typically a newer revision that
    adopted them) are left in place; only this owner's reference is dropped.
    External objects merely lose the cache label.
    """

    def __init__(self, store: ObjectStore, owners: OwnerStrategy | None = None) -> None:
        self._store = store
        self._owners = owners or OwnerStrategy()

    async def teardown(self, owner: Object, phases: list[TemplatePhase]) -> bool:
        """Tear down *phases* in reverse order; True once everything is gone.

        A phase is only touched after every later phase is gone.
        """
        for phase in reversed(phases):
            if not await self.teardown_phase(owner, phase):
                _log.info("teardown_pending", phase=phase.name)
                return False
        return True

    async def teardown_phase(self, owner: Object, phase: TemplatePhase) -> bool:
        done = True
        for item in reversed(phase.objects):
            if not await self._teardown_object(owner, item):
                done = False
        return done

    async def _teardown_object(self, owner: Object, item: ObjectSetObject) -> bool:
        gvk = gvk_of(item.object)
        namespace = namespace_of(item.object) or namespace_of(owner)
        name = name_of(item.object)
        try:
            live = await self._store.get(gvk, namespace, name)
        except NotFoundError:
            return True

        if item.external:
            await remove_dynamic_cache_label(self._store, live)
            return True

        if not self._owners.is_controller(owner, live):
            if self._owners.is_owner(owner, live):
                await self._store.patch(
                    gvk,
                    namespace,
                    name,
                    {
                        "metadata": {
                            "ownerReferences": self._owners.references_without(owner, live),
                            "resourceVersion": resource_version_of(live),
                        }
                    },
                )
            return True

        if not is_deleting(live):
            try:
                await self._store.delete(gvk, namespace, name)
            except NotFoundError:
                return True
            _log.info("object_deleted", kind=gvk.kind, namespace=namespace, name=name)
        try:
            await self._store.get(gvk, namespace, name)
        except NotFoundError:
            return True
        return False
