"""ObjectSet reconciler: the per-revision phase state machine.

Sub-reconcilers run in a fixed order and the first one that applies decides
the outcome:

1. deletion   -- tear down controlled objects, later phases first, then
                 release the cache and drop the finalizers.
2. finalizers -- guarantee cleanup before any watch is registered.
3. paused     -- report Pending; no object writes.
4. archived   -- tear down what this revision still controls.
5. active     -- apply phases in order, each gated on its probes.

Status is only written when it changed.
"""

from __future__ import annotations

import copy
from typing import Any

import structlog

from kubephase.cache.dynamic_cache import DynamicCache
from kubephase.controllers.common import (
    ensure_cached_finalizer,
    ensure_finalizer,
    free_cache_and_remove_finalizer,
    remove_finalizer,
)
from kubephase.controllers.owner import OwnerStrategy
from kubephase.controllers.reconciler import ReconcileResult, Reconciler
from kubephase.models.api import (
    ARCHIVED,
    AVAILABLE,
    PAUSED,
    TEARDOWN_FINALIZER,
    LifecycleState,
    ObjectSet,
    ObjectSetStatusPhase,
)
from kubephase.models.conditions import (
    delete_mapped_conditions,
    new_condition,
    remove_status_condition,
    set_status_condition,
)
from kubephase.models.objects import Object, gvk_of, key_of
from kubephase.objectsets.phases import PhaseReconciler
from kubephase.objectsets.probing import parse_probes
from kubephase.objectsets.teardown import Teardown
from kubephase.observability.metrics import probe_failures_total
from kubephase.slices.store import SliceStore
from kubephase.store.base import ObjectStore
from kubephase.store.errors import NotFoundError

_log = structlog.get_logger(component="objectsets.reconciler")

_TEARDOWN_REQUEUE_SECONDS = 5.0


class ObjectSetReconciler(Reconciler):
    """Reconciles one ObjectSet revision against the live cluster."""

    def __init__(
        self,
        store: ObjectStore,
        cache: DynamicCache,
        slices: SliceStore,
        owners: OwnerStrategy | None = None,
        teardown_requeue: float = _TEARDOWN_REQUEUE_SECONDS,
    ) -> None:
        owners = owners or OwnerStrategy()
        self._store = store
        self._cache = cache
        self._slices = slices
        self._phases = PhaseReconciler(store, cache, owners)
        self._teardown = Teardown(store, owners)
        self._teardown_requeue = teardown_requeue

    async def reconcile(self, obj: Object) -> ReconcileResult:
        objectset = ObjectSet.from_dict(obj)
        if objectset.is_deleting:
            return await self._reconcile_deletion(obj, objectset)

        obj = await ensure_cached_finalizer(self._store, obj)
        obj = await ensure_finalizer(self._store, obj, TEARDOWN_FINALIZER)
        objectset = ObjectSet.from_dict(obj)

        status = copy.deepcopy(objectset.status)
        if objectset.lifecycle_state is LifecycleState.PAUSED or objectset.slices_pending:
            result = self._reconcile_paused(objectset, status)
        elif objectset.lifecycle_state is LifecycleState.ARCHIVED:
            result = await self._reconcile_archived(obj, objectset, status)
        else:
            result = await self._reconcile_active(obj, objectset, status)
        status["revision"] = objectset.revision
        status["observedGeneration"] = objectset.generation
        await self._write_status(obj, objectset.status, status)
        return result

    # ------------------------------------------------------------------
    # Sub-reconcilers
    # ------------------------------------------------------------------

    async def _reconcile_deletion(self, obj: Object, objectset: ObjectSet) -> ReconcileResult:
        status = copy.deepcopy(objectset.status)
        status["phase"] = str(ObjectSetStatusPhase.DELETING)
        obj = await self._write_status(obj, objectset.status, status)

        # Slices may already be gone with their deployment; whatever they
        # held is still collected through its owner reference.
        phases = await self._slices.expand_phases(objectset.namespace, objectset.template.phases, missing_ok=True)
        if not await self._teardown.teardown(obj, phases):
            return ReconcileResult(requeue_after=self._teardown_requeue)

        obj = await free_cache_and_remove_finalizer(self._store, self._cache, obj)
        await remove_finalizer(self._store, obj, TEARDOWN_FINALIZER)
        _log.info("objectset_deleted", revision=objectset.revision)
        return ReconcileResult()

    def _reconcile_paused(self, objectset: ObjectSet, status: dict[str, Any]) -> ReconcileResult:
        conditions = status.setdefault("conditions", [])
        reason = "SlicesPending" if objectset.slices_pending else "Paused"
        set_status_condition(conditions, new_condition(PAUSED, True, reason, "", objectset.generation))
        status["phase"] = str(ObjectSetStatusPhase.PENDING)
        return ReconcileResult()

    async def _reconcile_archived(self, obj: Object, objectset: ObjectSet, status: dict[str, Any]) -> ReconcileResult:
        phases = await self._slices.expand_phases(objectset.namespace, objectset.template.phases, missing_ok=True)
        done = await self._teardown.teardown(obj, phases)

        conditions = status.setdefault("conditions", [])
        remove_status_condition(conditions, PAUSED)
        set_status_condition(
            conditions, new_condition(ARCHIVED, True, "Archived", "Revision is archived.", objectset.generation)
        )
        status["phase"] = str(ObjectSetStatusPhase.ARCHIVED)
        status.pop("activePhase", None)
        if not done:
            return ReconcileResult(requeue_after=self._teardown_requeue)
        status["controllerOf"] = []
        return ReconcileResult()

    async def _reconcile_active(self, obj: Object, objectset: ObjectSet, status: dict[str, Any]) -> ReconcileResult:
        phases = await self._slices.expand_phases(objectset.namespace, objectset.template.phases)
        probe = parse_probes(objectset.template.availability_probes)
        conditions = status.setdefault("conditions", [])

        controller_of = []
        mapped: set[str] = set()
        failing: tuple[str, list[str]] | None = None
        for phase in phases:
            result = await self._phases.reconcile_phase(obj, objectset.revision, phase, probe, conditions)
            controller_of.extend(result.controller_of)
            mapped |= result.mapped_conditions
            if not result.available:
                failing = (phase.name, result.failures)
                break

        delete_mapped_conditions(conditions, keep=mapped)
        remove_status_condition(conditions, PAUSED)
        remove_status_condition(conditions, ARCHIVED)
        status["controllerOf"] = [ref.to_dict() for ref in controller_of]

        if failing is not None:
            phase_name, failures = failing
            probe_failures_total.inc()
            _log.info("phase_unavailable", phase=phase_name, failures=failures)
            status["phase"] = str(ObjectSetStatusPhase.PROGRESSING)
            status["activePhase"] = phase_name
            set_status_condition(
                conditions,
                new_condition(
                    AVAILABLE,
                    False,
                    "ProbeFailure",
                    f'Phase "{phase_name}" failed: {"; ".join(failures)}',
                    objectset.generation,
                ),
            )
            return ReconcileResult()

        status["phase"] = str(ObjectSetStatusPhase.AVAILABLE)
        status.pop("activePhase", None)
        set_status_condition(
            conditions,
            new_condition(
                AVAILABLE, True, "Available", "Object is available and passes all probes.", objectset.generation
            ),
        )
        return ReconcileResult()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def _write_status(self, obj: Object, before: dict[str, Any], after: dict[str, Any]) -> Object:
        """Write *after* unless it equals *before*; returns the latest object."""
        if before == after:
            return obj
        updated = copy.deepcopy(obj)
        updated["status"] = after
        try:
            return await self._store.update_status(updated)
        except NotFoundError:
            _log.debug("status_target_gone", kind=gvk_of(obj).kind, object=str(key_of(obj)))
            return obj
