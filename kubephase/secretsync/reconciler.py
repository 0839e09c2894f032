"""SecretSync reconciler.

Copies a source Secret to every destination.  With the ``watch`` strategy the
source and destinations are read through the dynamic cache, so a change to
the source triggers a resync; with ``poll`` the source is read uncached and
the SecretSync is requeued every ``interval``.
"""

from __future__ import annotations

import copy
from typing import Any

import structlog

from kubephase.cache.dynamic_cache import DynamicCache
from kubephase.controllers.common import (
    ensure_cached_finalizer,
    ensure_dynamic_cache_label,
    free_cache_and_remove_finalizer,
    remove_dynamic_cache_label,
)
from kubephase.controllers.owner import ObjectNotOwnedError, OwnerStrategy, get_controller_of
from kubephase.controllers.reconciler import ReconcileResult, Reconciler
from kubephase.models.api import (
    DYNAMIC_CACHE_LABEL,
    DYNAMIC_CACHE_LABEL_VALUE,
    MANAGED_BY_SECRET_SYNC_LABEL,
    SECRET_GVK,
    SECRET_SYNC_PAUSED,
    SECRET_SYNC_SYNC,
    NamespacedName,
    SecretSync,
    SecretSyncStatusPhase,
)
from kubephase.models.conditions import new_condition, set_status_condition
from kubephase.models.objects import Object, contains, key_of, metadata_of, resource_version_of, uid_of
from kubephase.models.selectors import LabelSelector
from kubephase.store.base import ObjectStore
from kubephase.store.errors import NotFoundError, StoreError, with_context

_log = structlog.get_logger(component="secretsync.reconciler")

_DEFAULT_POLL_INTERVAL_SECONDS = 60.0


class SecretSyncReconciler(Reconciler):
    """Keeps destination Secrets identical to the source Secret."""

    def __init__(
        self,
        store: ObjectStore,
        cache: DynamicCache,
        owners: OwnerStrategy | None = None,
        default_poll_interval: float = _DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._cache = cache
        self._owners = owners or OwnerStrategy()
        self._default_poll_interval = default_poll_interval

    async def reconcile(self, obj: Object) -> ReconcileResult:
        sync = SecretSync.from_dict(obj)
        sync.validate()
        if sync.is_deleting:
            await self._reconcile_deletion(obj, sync)
            return ReconcileResult()

        status = copy.deepcopy(sync.status)
        result = ReconcileResult()
        if not sync.paused:
            obj, result = await self._reconcile_secrets(obj, sync, status)
        self._reconcile_pause(sync, status)

        if status != sync.status:
            updated = copy.deepcopy(obj)
            updated["status"] = status
            await self._store.update_status(updated)
        return result

    async def _reconcile_deletion(self, obj: Object, sync: SecretSync) -> None:
        if not sync.watch:
            return
        try:
            src = await self._store.get(SECRET_GVK, sync.src.namespace, sync.src.name)
        except NotFoundError:
            pass
        else:
            await remove_dynamic_cache_label(self._store, src)
        await free_cache_and_remove_finalizer(self._store, self._cache, obj)

    async def _reconcile_secrets(
        self, obj: Object, sync: SecretSync, status: dict[str, Any]
    ) -> tuple[Object, ReconcileResult]:
        if sync.watch:
            obj = await ensure_cached_finalizer(self._store, obj)
            await self._cache.watch(obj, SECRET_GVK, sync.src.namespace)
        src = await self._get_source(sync)

        controller_of = []
        for dest in sync.dest:
            await self._sync_destination(obj, sync, src, dest)
            controller_of.append(dest)
        await self._collect_garbage(obj, sync, set(controller_of))

        set_status_condition(
            status.setdefault("conditions", []),
            new_condition(
                SECRET_SYNC_SYNC, True, "SuccessfulSync", "Synchronization completed successfully.", sync.generation
            ),
        )
        status["phase"] = str(SecretSyncStatusPhase.SYNC)
        status["controllerOf"] = [d.to_dict() for d in controller_of]
        if sync.poll_interval is not None:
            # An unset interval polls at the controller default.
            return obj, ReconcileResult(requeue_after=sync.poll_interval or self._default_poll_interval)
        return obj, ReconcileResult()

    async def _get_source(self, sync: SecretSync) -> Object:
        src_key = sync.src
        if sync.watch:
            try:
                return await self._cache.get(SECRET_GVK, src_key.namespace, src_key.name)
            except NotFoundError:
                # Not admitted into the cache yet.
                pass
        try:
            src = await self._store.get(SECRET_GVK, src_key.namespace, src_key.name)
        except StoreError as exc:
            raise with_context(exc, "getting source object") from exc
        if sync.watch:
            src = await ensure_dynamic_cache_label(self._store, src)
        return src

    async def _read_destination(self, sync: SecretSync, dest: NamespacedName) -> Object | None:
        try:
            if sync.watch:
                return await self._cache.get(SECRET_GVK, dest.namespace, dest.name)
            return await self._store.get(SECRET_GVK, dest.namespace, dest.name)
        except NotFoundError:
            pass
        if not sync.watch:
            return None
        # Present but missing the cache label.
        try:
            return await self._store.get(SECRET_GVK, dest.namespace, dest.name)
        except NotFoundError:
            return None

    async def _sync_destination(self, obj: Object, sync: SecretSync, src: Object, dest: NamespacedName) -> None:
        target: Object = {
            "apiVersion": SECRET_GVK.api_version,
            "kind": SECRET_GVK.kind,
            "metadata": {
                "namespace": dest.namespace,
                "name": dest.name,
                "labels": {
                    DYNAMIC_CACHE_LABEL: DYNAMIC_CACHE_LABEL_VALUE,
                    MANAGED_BY_SECRET_SYNC_LABEL: sync.name,
                },
            },
            "data": copy.deepcopy(src.get("data") or {}),
        }
        if src.get("type"):
            target["type"] = src["type"]
        if sync.watch:
            await self._cache.watch(obj, SECRET_GVK, dest.namespace)

        live = await self._read_destination(sync, dest)
        if live is None:
            self._owners.set_controller_reference(obj, target)
            await self._store.create(target)
            _log.info("secret_created", destination=str(key_of(target)))
            return

        controller = get_controller_of(live)
        if controller is not None and controller.get("uid") != uid_of(obj):
            raise ObjectNotOwnedError(live, controller)
        metadata_of(target)["ownerReferences"] = self._owners.controller_references(obj, live)
        if contains(live, target) and (live.get("data") or {}) == target["data"]:
            return
        patch = copy.deepcopy(target)
        # Keys removed from the source are removed from the destination.
        patch["data"] = {**{k: None for k in live.get("data") or {}}, **target["data"]}
        metadata_of(patch)["resourceVersion"] = resource_version_of(live)
        await self._store.patch(SECRET_GVK, dest.namespace, dest.name, patch)
        _log.info("secret_updated", destination=str(key_of(target)))

    async def _collect_garbage(self, obj: Object, sync: SecretSync, keep: set[NamespacedName]) -> None:
        selector = LabelSelector.from_labels({MANAGED_BY_SECRET_SYNC_LABEL: sync.name})
        if sync.watch:
            managed = await self._cache.list(SECRET_GVK, label_selector=selector)
        else:
            managed = (await self._store.list(SECRET_GVK, label_selector=selector)).items
        for secret in managed:
            key = key_of(secret)
            if NamespacedName(key.namespace, key.name) in keep or not self._owners.is_controller(obj, secret):
                continue
            try:
                await self._store.delete(SECRET_GVK, key.namespace, key.name)
            except NotFoundError:
                continue
            _log.info("secret_deleted", destination=str(key))

    @staticmethod
    def _reconcile_pause(sync: SecretSync, status: dict[str, Any]) -> None:
        set_status_condition(
            status.setdefault("conditions", []),
            new_condition(
                SECRET_SYNC_PAUSED,
                sync.paused,
                "SpecSaysPaused" if sync.paused else "SpecSaysUnpaused",
                "",
                sync.generation,
            ),
        )
        if sync.paused:
            status["phase"] = str(SecretSyncStatusPhase.PAUSED)
        else:
            status.setdefault("phase", str(SecretSyncStatusPhase.SYNC))
