"""Reconciler contract and object-handling helpers."""

from kubephase.controllers.common import (
    ensure_cached_finalizer,
    ensure_dynamic_cache_label,
    ensure_finalizer,
    free_cache_and_remove_finalizer,
    remove_dynamic_cache_label,
    remove_finalizer,
)
from kubephase.controllers.owner import ObjectNotOwnedError, OwnerStrategy, get_controller_of
from kubephase.controllers.reconciler import ReconcileResult, Reconciler

__all__ = [
    "ObjectNotOwnedError",
    "OwnerStrategy",
    "ReconcileResult",
    "Reconciler",
    "ensure_cached_finalizer",
    "ensure_dynamic_cache_label",
    "ensure_finalizer",
    "free_cache_and_remove_finalizer",
    "get_controller_of",
    "remove_dynamic_cache_label",
    "remove_finalizer",
]
