"""ObjectDeployment reconciler: revisions, slicing and slice garbage collection.

One reconcile:

1. lists the deployment's revisions (ObjectSets matched by its selector);
2. compares the newest revision with the desired template, with every slice
   reference expanded, and creates a new revision only when they differ;
3. once the newest revision is Available, archives the older ones and
   deletes archived revisions beyond ``revisionHistoryLimit``;
4. deletes slices no live revision and no desired template references;
5. mirrors the newest revision's availability into the deployment status.

A revision that needs slices is created empty and paused, annotated
``kubephase.io/slices-pending``; the slices are stored next and the revision
is then filled in and activated.  If that sequence is interrupted the next
reconcile finishes the same revision instead of creating another one.
"""

from __future__ import annotations

import copy
from typing import Any

import structlog

from kubephase.controllers.owner import OwnerStrategy
from kubephase.controllers.reconciler import ReconcileResult, Reconciler
from kubephase.models.api import (
    AVAILABLE,
    OBJECT_DEPLOYMENT_GVK,
    OBJECT_DEPLOYMENT_LABEL,
    OBJECT_SET_GVK,
    PROGRESSING,
    REVISION_ANNOTATION,
    SLICE_COLLISION,
    SLICES_PENDING_ANNOTATION,
    LifecycleState,
    ObjectDeployment,
    ObjectSet,
    ObjectSetObject,
    TemplateError,
    TemplatePhase,
    TemplateSpec,
)
from kubephase.models.conditions import (
    find_status_condition,
    is_status_condition_true,
    new_condition,
    set_status_condition,
)
from kubephase.models.config import KubePhaseConfig
from kubephase.models.objects import Object, generation_of, is_deleting, name_of, namespace_of
from kubephase.models.selectors import LabelSelector
from kubephase.observability.metrics import (
    slice_collisions_total,
    slice_gc_failures_total,
    slices_garbage_collected_total,
)
from kubephase.slices.chunking import ChunkingStrategy, chunker_for
from kubephase.slices.hashing import name_for
from kubephase.slices.store import SliceCollisionError, SliceNotFoundError, SliceStore
from kubephase.store.base import ObjectStore
from kubephase.store.errors import NotFoundError, StoreError
from kubephase.store.retry import retry_on_conflict

_log = structlog.get_logger(component="deployments.reconciler")


def _phases_wire(phases: list[TemplatePhase]) -> list[dict[str, Any]]:
    return [TemplatePhase(name=p.name, objects=p.objects).to_dict() for p in phases]


def revision_selector(deployment: ObjectDeployment) -> LabelSelector:
    """Selector finding the deployment's revisions; an empty selector falls back to the owner label."""
    if deployment.selector.is_empty():
        return LabelSelector.from_labels({OBJECT_DEPLOYMENT_LABEL: deployment.name})
    return deployment.selector


class DeploymentReconciler(Reconciler):
    """Turns an ObjectDeployment's template into ObjectSet revisions."""

    def __init__(
        self,
        store: ObjectStore,
        slices: SliceStore,
        config: KubePhaseConfig | None = None,
        chunker: ChunkingStrategy | None = None,
        owners: OwnerStrategy | None = None,
    ) -> None:
        config = config or KubePhaseConfig()
        self._store = store
        self._slices = slices
        self._chunker = chunker
        self._owners = owners or OwnerStrategy()
        self._default_chunking = config.slices.chunking_strategy
        self._threshold_bytes = config.slices.threshold_bytes
        self._max_collisions = config.slices.max_collisions
        self._history_limit = config.deployment.revision_history_limit
        self._conflict_retries = config.controller.conflict_retries

    async def reconcile(self, obj: Object) -> ReconcileResult:
        if is_deleting(obj):
            # Revisions and slices go with the deployment through their owner references.
            return ReconcileResult()

        deployment = ObjectDeployment.from_dict(obj, self._history_limit)
        deployment.template.validate()
        if not revision_selector(deployment).matches(self._revision_labels(deployment)):
            raise TemplateError("template labels do not match spec.selector")
        chunker = self._chunker or chunker_for(obj, self._default_chunking, self._threshold_bytes)

        all_revisions = await self.list_revisions(deployment)
        revisions = [r for r in all_revisions if not r.is_deleting]
        desired = await self._slices.expand_phases(deployment.namespace, deployment.template.phases)

        newest = revisions[-1] if revisions else None
        if newest is not None and newest.slices_pending:
            newest = await self._complete_revision(obj, deployment, newest, desired, chunker)
        elif newest is None or not await self._matches(deployment, newest, desired):
            number = max((r.revision for r in all_revisions), default=0) + 1
            newest = await self._create_revision(obj, deployment, number, desired, chunker)
            revisions.append(newest)

        await self._archive_and_prune(deployment, revisions, newest)
        await self.collect_garbage(obj)
        await self._update_status(obj, newest)
        return ReconcileResult()

    # ------------------------------------------------------------------
    # Revisions
    # ------------------------------------------------------------------

    async def list_revisions(self, deployment: ObjectDeployment) -> list[ObjectSet]:
        """Revisions matched by the deployment's selector, oldest first."""
        result = await self._store.list(
            OBJECT_SET_GVK, namespace=deployment.namespace, label_selector=revision_selector(deployment)
        )
        return sorted((ObjectSet.from_dict(item) for item in result.items), key=lambda r: (r.revision, r.name))

    def _revision_labels(self, deployment: ObjectDeployment) -> dict[str, str]:
        return {**deployment.template_labels, OBJECT_DEPLOYMENT_LABEL: deployment.name}

    async def _matches(self, deployment: ObjectDeployment, revision: ObjectSet, desired: list[TemplatePhase]) -> bool:
        try:
            expanded = await self._slices.expand_phases(revision.namespace, revision.template.phases)
        except SliceNotFoundError as exc:
            _log.warning("revision_slice_missing", revision=revision.name, error=str(exc))
            return False
        return (
            _phases_wire(expanded) == _phases_wire(desired)
            and revision.template.availability_probes == deployment.template.availability_probes
        )

    async def _create_revision(
        self,
        obj: Object,
        deployment: ObjectDeployment,
        number: int,
        desired: list[TemplatePhase],
        chunker: ChunkingStrategy,
    ) -> ObjectSet:
        metadata: dict[str, Any] = {
            "name": f"{deployment.name}-{number}",
            "namespace": deployment.namespace,
            "labels": self._revision_labels(deployment),
            "annotations": {REVISION_ANNOTATION: str(number)},
            "ownerReferences": [self._owners.owner_reference(obj)],
        }
        if not chunker.chunk(desired):
            revision = ObjectSet(
                metadata=metadata,
                template=TemplateSpec(
                    phases=desired, availability_probes=copy.deepcopy(deployment.template.availability_probes)
                ),
                lifecycle_state=LifecycleState.ACTIVE,
            )
            created = ObjectSet.from_dict(await self._store.create(revision.to_dict()))
            _log.info("revision_created", revision=created.name, number=number)
            return created

        metadata["annotations"][SLICES_PENDING_ANNOTATION] = "True"
        placeholder = ObjectSet(metadata=metadata, template=TemplateSpec(), lifecycle_state=LifecycleState.PAUSED)
        created = ObjectSet.from_dict(await self._store.create(placeholder.to_dict()))
        _log.info("revision_created", revision=created.name, number=number, slices_pending=True)
        return await self._complete_revision(obj, deployment, created, desired, chunker)

    async def _complete_revision(
        self,
        obj: Object,
        deployment: ObjectDeployment,
        revision: ObjectSet,
        desired: list[TemplatePhase],
        chunker: ChunkingStrategy,
    ) -> ObjectSet:
        """Store the revision's slices, then fill in its phases and activate it."""
        chunks = chunker.chunk(desired)
        phases = []
        for phase in desired:
            phase_chunks = chunks.get(phase.name)
            if not phase_chunks:
                phases.append(phase)
                continue
            names = [await self.reconcile_slice(obj, chunk) for chunk in phase_chunks]
            phases.append(TemplatePhase(name=phase.name, slices=names))
        template = TemplateSpec(phases=phases, availability_probes=copy.deepcopy(deployment.template.availability_probes))

        async def _fill() -> Object:
            current = ObjectSet.from_dict(await self._store.get(OBJECT_SET_GVK, revision.namespace, revision.name))
            current.template = template
            current.lifecycle_state = LifecycleState.ACTIVE
            (current.metadata.get("annotations") or {}).pop(SLICES_PENDING_ANNOTATION, None)
            return await self._store.update(current.to_dict())

        updated = ObjectSet.from_dict(await retry_on_conflict(_fill, attempts=self._conflict_retries))
        _log.info("revision_completed", revision=updated.name, slices=sum(len(p.slices) for p in phases))
        return updated

    async def _archive_and_prune(
        self, deployment: ObjectDeployment, revisions: list[ObjectSet], newest: ObjectSet
    ) -> None:
        older = [r for r in revisions if r.name != newest.name]
        newest_available = newest.lifecycle_state is LifecycleState.ACTIVE and is_status_condition_true(
            newest.status.get("conditions") or [], AVAILABLE
        )
        if newest_available:
            for revision in older:
                if revision.lifecycle_state is LifecycleState.ARCHIVED:
                    continue
                await self._store.patch(
                    OBJECT_SET_GVK,
                    revision.namespace,
                    revision.name,
                    {"spec": {"lifecycleState": str(LifecycleState.ARCHIVED)}},
                )
                revision.lifecycle_state = LifecycleState.ARCHIVED
                _log.info("revision_archived", revision=revision.name)

        archived = [r for r in older if r.lifecycle_state is LifecycleState.ARCHIVED]
        excess = len(archived) - max(deployment.revision_history_limit, 0)
        for revision in archived[: max(excess, 0)]:
            try:
                await self._store.delete(OBJECT_SET_GVK, revision.namespace, revision.name)
            except NotFoundError:
                continue
            _log.info("revision_pruned", revision=revision.name)

    # ------------------------------------------------------------------
    # Slices
    # ------------------------------------------------------------------

    async def reconcile_slice(self, obj: Object, objects: list[ObjectSetObject]) -> str:
        """Store *objects* as a slice owned by the deployment and return its name.

        Names are salted starting at ``status.collisionCount``.  Each collision
        advances the salt, which is persisted together with a SliceCollision
        condition before the next attempt.

        Raises:
            SliceCollisionError: after ``max_collisions`` consecutive collisions.
        """
        namespace = namespace_of(obj)
        wire = [o.to_dict() for o in objects]
        status = obj.setdefault("status", {})
        salt = int(status.get("collisionCount") or 0)
        name = ""
        for _ in range(max(self._max_collisions, 1)):
            name = name_for(name_of(obj), wire, salt)
            try:
                await self._slices.create(obj, name, objects)
                return name
            except SliceCollisionError as exc:
                slice_collisions_total.inc()
                salt += 1
                _log.warning("slice_collision", slice=name, next_salt=salt)
                await self._record_collision(obj, salt, str(exc))
                status["collisionCount"] = salt
        raise SliceCollisionError(namespace, name)

    async def _record_collision(self, obj: Object, collision_count: int, message: str) -> None:
        async def _write() -> Object:
            current = await self._store.get(OBJECT_DEPLOYMENT_GVK, namespace_of(obj), name_of(obj))
            status = current.setdefault("status", {})
            status["collisionCount"] = max(collision_count, int(status.get("collisionCount") or 0))
            set_status_condition(
                status.setdefault("conditions", []),
                new_condition(SLICE_COLLISION, True, "HashCollision", message, generation_of(current)),
            )
            return await self._store.update_status(current)

        await retry_on_conflict(_write, attempts=self._conflict_retries)

    async def collect_garbage(self, obj: Object) -> None:
        """Delete the deployment's slices that nothing references anymore.

        Referenced are the slices of the desired template and of every
        revision matched by the selector, including revisions being deleted.
        Failures are logged and counted; they never stop the other deletions.
        """
        deployment = ObjectDeployment.from_dict(obj, self._history_limit)
        referenced = deployment.template.slice_names()
        for revision in await self.list_revisions(deployment):
            referenced |= revision.template.slice_names()

        for stored in await self._slices.list_for_deployment(deployment.namespace, deployment.name):
            if stored.name in referenced:
                continue
            try:
                await self._slices.delete(deployment.namespace, stored.name)
            except StoreError as exc:
                slice_gc_failures_total.inc()
                _log.warning("slice_gc_failed", slice=stored.name, error=str(exc))
                continue
            slices_garbage_collected_total.inc()
            _log.info("slice_garbage_collected", slice=stored.name)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @staticmethod
    def _desired_status(current: Object, newest: ObjectSet) -> dict[str, Any]:
        status = copy.deepcopy(current.get("status") or {})
        generation = generation_of(current)
        status["revision"] = newest.revision
        status["observedGeneration"] = generation
        conditions = status.setdefault("conditions", [])
        newest_conditions = newest.status.get("conditions") or []
        if is_status_condition_true(newest_conditions, AVAILABLE):
            set_status_condition(
                conditions, new_condition(AVAILABLE, True, "Available", "Latest revision is available.", generation)
            )
            set_status_condition(conditions, new_condition(PROGRESSING, False, "Idle", "", generation))
        else:
            revision_cond = find_status_condition(newest_conditions, AVAILABLE) or {}
            set_status_condition(
                conditions,
                new_condition(
                    AVAILABLE,
                    False,
                    str(revision_cond.get("reason") or "RevisionPending"),
                    str(revision_cond.get("message") or ""),
                    generation,
                ),
            )
            set_status_condition(
                conditions,
                new_condition(
                    PROGRESSING,
                    True,
                    "NewRevision",
                    f"Waiting for revision {newest.revision} to become available.",
                    generation,
                ),
            )
        return status

    async def _update_status(self, obj: Object, newest: ObjectSet) -> None:
        if self._desired_status(obj, newest) == (obj.get("status") or {}):
            return

        async def _write() -> Object:
            current = await self._store.get(OBJECT_DEPLOYMENT_GVK, namespace_of(obj), name_of(obj))
            status = self._desired_status(current, newest)
            if status == (current.get("status") or {}):
                return current
            current["status"] = status
            return await self._store.update_status(current)

        await retry_on_conflict(_write, attempts=self._conflict_retries)
