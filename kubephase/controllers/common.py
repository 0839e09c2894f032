"""Object-handling helpers shared by the controllers.

Finalizer and label changes are JSON merge patches carrying the
resourceVersion they were computed from, so a concurrent change makes them
fail with a conflict instead of silently dropping the other writer's update.
"""

from __future__ import annotations

import structlog

from kubephase.cache.dynamic_cache import DynamicCache
from kubephase.models.api import CACHED_FINALIZER, DYNAMIC_CACHE_LABEL, DYNAMIC_CACHE_LABEL_VALUE
from kubephase.models.objects import (
    Object,
    finalizers_of,
    gvk_of,
    key_of,
    labels_of,
    resource_version_of,
)
from kubephase.store.base import ObjectStore
from kubephase.store.errors import NotFoundError, StoreError, with_context

_log = structlog.get_logger(component="controllers.common")


async def _patch_metadata(store: ObjectStore, obj: Object, metadata: dict, context: str) -> Object:
    key = key_of(obj)
    patch = {"metadata": {**metadata, "resourceVersion": resource_version_of(obj) or None}}
    try:
        return await store.patch(gvk_of(obj), key.namespace, key.name, patch)
    except StoreError as exc:
        raise with_context(exc, context) from exc


async def ensure_finalizer(store: ObjectStore, obj: Object, finalizer: str) -> Object:
    """Add *finalizer* to *obj* unless present; returns the latest object."""
    finalizers = finalizers_of(obj)
    if finalizer in finalizers:
        return obj
    return await _patch_metadata(store, obj, {"finalizers": [*finalizers, finalizer]}, f"adding finalizer {finalizer}")


async def remove_finalizer(store: ObjectStore, obj: Object, finalizer: str) -> Object:
    """Remove *finalizer* from *obj* if present.  A vanished object is not an error."""
    finalizers = finalizers_of(obj)
    if finalizer not in finalizers:
        return obj
    try:
        return await _patch_metadata(
            store, obj, {"finalizers": [f for f in finalizers if f != finalizer]}, f"removing finalizer {finalizer}"
        )
    except NotFoundError:
        return obj


async def ensure_cached_finalizer(store: ObjectStore, obj: Object) -> Object:
    """Guard cache registrations of *obj*; must run before the first ``watch``."""
    return await ensure_finalizer(store, obj, CACHED_FINALIZER)


async def free_cache_and_remove_finalizer(store: ObjectStore, cache: DynamicCache, obj: Object) -> Object:
    """Release *obj*'s cache registrations, then drop the cached finalizer.

    The registrations are freed first; the finalizer only goes once that has
    completed.  Without the finalizer there is nothing to do.
    """
    if CACHED_FINALIZER not in finalizers_of(obj):
        return obj
    await cache.free(obj)
    _log.debug("cache_freed", kind=obj.get("kind", ""), object=str(key_of(obj)))
    return await remove_finalizer(store, obj, CACHED_FINALIZER)


async def ensure_dynamic_cache_label(store: ObjectStore, obj: Object) -> Object:
    """Admit *obj* into the dynamic cache."""
    if labels_of(obj).get(DYNAMIC_CACHE_LABEL) == DYNAMIC_CACHE_LABEL_VALUE:
        return obj
    return await _patch_metadata(
        store, obj, {"labels": {DYNAMIC_CACHE_LABEL: DYNAMIC_CACHE_LABEL_VALUE}}, "adding dynamic cache label"
    )


async def remove_dynamic_cache_label(store: ObjectStore, obj: Object) -> Object:
    """Evict *obj* from the dynamic cache.  A vanished object is not an error."""
    if DYNAMIC_CACHE_LABEL not in labels_of(obj):
        return obj
    try:
        return await _patch_metadata(store, obj, {"labels": {DYNAMIC_CACHE_LABEL: None}}, "removing dynamic cache label")
    except NotFoundError:
        return obj
