"""kubephase API types (group ``kubephase.io``, version ``v1alpha1``).

The controllers work on typed views of ObjectDeployment, ObjectSet and
ObjectSlice objects.  ``from_dict`` parses the wire representation and
``to_dict`` renders it back; unknown metadata is preserved untouched so
round-tripping through these types never drops server-managed fields.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from kubephase.models.objects import GroupVersionKind, Object
from kubephase.models.selectors import LabelSelector

GROUP = "kubephase.io"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"

OBJECT_DEPLOYMENT_GVK = GroupVersionKind(GROUP, VERSION, "ObjectDeployment")
OBJECT_SET_GVK = GroupVersionKind(GROUP, VERSION, "ObjectSet")
OBJECT_SLICE_GVK = GroupVersionKind(GROUP, VERSION, "ObjectSlice")
SECRET_SYNC_GVK = GroupVersionKind(GROUP, VERSION, "SecretSync")
SECRET_GVK = GroupVersionKind("", "v1", "Secret")

# Set on every dynamically cached object to bound what the cache holds.
DYNAMIC_CACHE_LABEL = "kubephase.io/cache"
DYNAMIC_CACHE_LABEL_VALUE = "True"
# Frees dynamic cache registrations before the owner disappears.
CACHED_FINALIZER = "kubephase.io/cached"
# Tears down controlled objects before an ObjectSet disappears.
TEARDOWN_FINALIZER = "kubephase.io/teardown"

OBJECT_DEPLOYMENT_LABEL = "kubephase.io/object-deployment"
REVISION_ANNOTATION = "kubephase.io/revision"
SLICES_PENDING_ANNOTATION = "kubephase.io/slices-pending"
CHUNKING_STRATEGY_ANNOTATION = "kubephase.io/chunking-strategy"

DEFAULT_REVISION_HISTORY_LIMIT = 10


class LifecycleState(StrEnum):
    """Desired lifecycle of an ObjectSet."""

    ACTIVE = "Active"
    PAUSED = "Paused"
    ARCHIVED = "Archived"


class ObjectSetStatusPhase(StrEnum):
    """Reported progress of an ObjectSet."""

    PENDING = "Pending"
    PROGRESSING = "Progressing"
    AVAILABLE = "Available"
    ARCHIVED = "Archived"
    DELETING = "Deleting"


# Condition types
AVAILABLE = "Available"
PROGRESSING = "Progressing"
PAUSED = "Paused"
ARCHIVED = "Archived"
SLICE_COLLISION = "SliceCollision"


class TemplateError(ValueError):
    """Raised when a deployment template violates its invariants."""


@dataclass
class ConditionMapping:
    """Copies a condition of a managed object into the ObjectSet status."""

    source_type: str
    destination_type: str

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ConditionMapping:
        return cls(source_type=str(raw.get("sourceType", "")), destination_type=str(raw.get("destinationType", "")))

    def to_dict(self) -> dict[str, Any]:
        return {"sourceType": self.source_type, "destinationType": self.destination_type}


@dataclass
class ObjectSetObject:
    """One object template inside a phase or slice."""

    object: Object
    condition_mappings: list[ConditionMapping] = field(default_factory=list)
    external: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ObjectSetObject:
        return cls(
            object=copy.deepcopy(raw.get("object") or {}),
            condition_mappings=[ConditionMapping.from_dict(m) for m in raw.get("conditionMappings") or []],
            external=bool(raw.get("external", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"object": copy.deepcopy(self.object)}
        if self.condition_mappings:
            out["conditionMappings"] = [m.to_dict() for m in self.condition_mappings]
        if self.external:
            out["external"] = True
        return out


@dataclass
class TemplatePhase:
    """Named, ordered group of objects.

    ``objects`` are inline; ``slices`` name ObjectSlices holding the rest of
    the phase.  Expanded order is inline objects first, then each slice's
    objects in list order.
    """

    name: str
    objects: list[ObjectSetObject] = field(default_factory=list)
    slices: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TemplatePhase:
        return cls(
            name=str(raw.get("name", "")),
            objects=[ObjectSetObject.from_dict(o) for o in raw.get("objects") or []],
            slices=[str(s) for s in raw.get("slices") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.objects:
            out["objects"] = [o.to_dict() for o in self.objects]
        if self.slices:
            out["slices"] = list(self.slices)
        return out


@dataclass
class TemplateSpec:
    """Ordered phases plus the probes gating them."""

    phases: list[TemplatePhase] = field(default_factory=list)
    availability_probes: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> TemplateSpec:
        raw = raw or {}
        return cls(
            phases=[TemplatePhase.from_dict(p) for p in raw.get("phases") or []],
            availability_probes=copy.deepcopy(list(raw.get("availabilityProbes") or [])),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"phases": [p.to_dict() for p in self.phases]}
        if self.availability_probes:
            out["availabilityProbes"] = copy.deepcopy(self.availability_probes)
        return out

    def validate(self) -> None:
        seen: set[str] = set()
        for phase in self.phases:
            if not phase.name:
                raise TemplateError("phase name must not be empty")
            if phase.name in seen:
                raise TemplateError(f"duplicate phase name {phase.name!r}")
            seen.add(phase.name)

    def slice_names(self) -> set[str]:
        return {name for phase in self.phases for name in phase.slices}


@dataclass(frozen=True)
class ControlledObjectReference:
    """Identifies a live object controlled by an ObjectSet."""

    kind: str
    group: str
    namespace: str
    name: str

    def to_dict(self) -> dict[str, str]:
        out = {"kind": self.kind, "group": self.group, "name": self.name}
        if self.namespace:
            out["namespace"] = self.namespace
        return out


def _meta(raw: Object) -> dict[str, Any]:
    return copy.deepcopy(raw.get("metadata") or {})


@dataclass
class ObjectDeployment:
    """Mutable desired state."""

    metadata: dict[str, Any]
    selector: LabelSelector
    template_labels: dict[str, str]
    template: TemplateSpec
    revision_history_limit: int = DEFAULT_REVISION_HISTORY_LIMIT
    status: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Object, default_history_limit: int = DEFAULT_REVISION_HISTORY_LIMIT) -> ObjectDeployment:
        spec = raw.get("spec") or {}
        template = spec.get("template") or {}
        limit = spec.get("revisionHistoryLimit")
        return cls(
            metadata=_meta(raw),
            selector=LabelSelector.from_dict(spec.get("selector")),
            template_labels=dict((template.get("metadata") or {}).get("labels") or {}),
            template=TemplateSpec.from_dict(template.get("spec")),
            revision_history_limit=default_history_limit if limit is None else int(limit),
            status=copy.deepcopy(raw.get("status") or {}),
        )

    def to_dict(self) -> Object:
        return {
            "apiVersion": API_VERSION,
            "kind": OBJECT_DEPLOYMENT_GVK.kind,
            "metadata": copy.deepcopy(self.metadata),
            "spec": {
                "selector": self.selector.to_dict(),
                "revisionHistoryLimit": self.revision_history_limit,
                "template": {
                    "metadata": {"labels": dict(self.template_labels)},
                    "spec": self.template.to_dict(),
                },
            },
            "status": copy.deepcopy(self.status),
        }

    @property
    def name(self) -> str:
        return str(self.metadata.get("name", ""))

    @property
    def namespace(self) -> str:
        return str(self.metadata.get("namespace") or "")

    @property
    def uid(self) -> str:
        return str(self.metadata.get("uid") or "")

    @property
    def collision_count(self) -> int:
        return int(self.status.get("collisionCount") or 0)

    @property
    def annotations(self) -> dict[str, str]:
        return dict(self.metadata.get("annotations") or {})


@dataclass
class ObjectSet:
    """One immutable revision of an ObjectDeployment's template."""

    metadata: dict[str, Any]
    template: TemplateSpec
    lifecycle_state: LifecycleState = LifecycleState.ACTIVE
    status: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Object) -> ObjectSet:
        spec = raw.get("spec") or {}
        try:
            state = LifecycleState(spec.get("lifecycleState") or LifecycleState.ACTIVE)
        except ValueError:
            state = LifecycleState.ACTIVE
        return cls(
            metadata=_meta(raw),
            template=TemplateSpec.from_dict(spec),
            lifecycle_state=state,
            status=copy.deepcopy(raw.get("status") or {}),
        )

    def to_dict(self) -> Object:
        spec = self.template.to_dict()
        spec["lifecycleState"] = str(self.lifecycle_state)
        return {
            "apiVersion": API_VERSION,
            "kind": OBJECT_SET_GVK.kind,
            "metadata": copy.deepcopy(self.metadata),
            "spec": spec,
            "status": copy.deepcopy(self.status),
        }

    @property
    def name(self) -> str:
        return str(self.metadata.get("name", ""))

    @property
    def namespace(self) -> str:
        return str(self.metadata.get("namespace") or "")

    @property
    def uid(self) -> str:
        return str(self.metadata.get("uid") or "")

    @property
    def generation(self) -> int:
        return int(self.metadata.get("generation") or 0)

    @property
    def revision(self) -> int:
        annotations = self.metadata.get("annotations") or {}
        try:
            return int(annotations.get(REVISION_ANNOTATION, 0))
        except (TypeError, ValueError):
            return 0

    @property
    def slices_pending(self) -> bool:
        return SLICES_PENDING_ANNOTATION in (self.metadata.get("annotations") or {})

    @property
    def is_deleting(self) -> bool:
        return bool(self.metadata.get("deletionTimestamp"))


@dataclass
class ObjectSlice:
    """Out-of-line storage for part of a phase."""

    metadata: dict[str, Any]
    objects: list[ObjectSetObject] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Object) -> ObjectSlice:
        return cls(metadata=_meta(raw), objects=[ObjectSetObject.from_dict(o) for o in raw.get("objects") or []])

    def to_dict(self) -> Object:
        return {
            "apiVersion": API_VERSION,
            "kind": OBJECT_SLICE_GVK.kind,
            "metadata": copy.deepcopy(self.metadata),
            "objects": [o.to_dict() for o in self.objects],
        }

    @property
    def name(self) -> str:
        return str(self.metadata.get("name", ""))

    @property
    def namespace(self) -> str:
        return str(self.metadata.get("namespace") or "")


class SecretSyncStatusPhase(StrEnum):
    SYNC = "Sync"
    PAUSED = "Paused"


# SecretSync condition types
SECRET_SYNC_SYNC = "Sync"
SECRET_SYNC_PAUSED = "Paused"

MANAGED_BY_SECRET_SYNC_LABEL = "kubephase.io/managed-by-secretsync"


class InvalidStrategyError(ValueError):
    """A SecretSync sets neither (or both) of the watch and poll strategies."""


_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600}


def parse_duration(value: str | int | float) -> float:
    """Parse ``"90s"``, ``"5m"``, ``"1h"`` or a plain number of seconds."""
    if isinstance(value, int | float):
        return float(value)
    text = value.strip()
    if text and text[-1] in _DURATION_UNITS:
        return float(text[:-1]) * _DURATION_UNITS[text[-1]]
    return float(text)


@dataclass(frozen=True)
class NamespacedName:
    namespace: str
    name: str

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> NamespacedName:
        raw = raw or {}
        return cls(namespace=str(raw.get("namespace", "")), name=str(raw.get("name", "")))

    def to_dict(self) -> dict[str, str]:
        return {"namespace": self.namespace, "name": self.name}


@dataclass
class SecretSync:
    """Copies one Secret to a list of destinations."""

    metadata: dict[str, Any]
    src: NamespacedName
    dest: list[NamespacedName] = field(default_factory=list)
    watch: bool = False
    poll_interval: float | None = None
    paused: bool = False
    status: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Object) -> SecretSync:
        spec = raw.get("spec") or {}
        strategy = spec.get("strategy") or {}
        poll = strategy.get("poll")
        return cls(
            metadata=_meta(raw),
            src=NamespacedName.from_dict(spec.get("src")),
            dest=[NamespacedName.from_dict(d) for d in spec.get("dest") or []],
            watch="watch" in strategy and strategy["watch"] is not None,
            poll_interval=parse_duration((poll or {}).get("interval", 0)) if poll is not None else None,
            paused=bool(spec.get("paused", False)),
            status=copy.deepcopy(raw.get("status") or {}),
        )

    def validate(self) -> None:
        if self.watch == (self.poll_interval is not None):
            raise InvalidStrategyError("exactly one of strategy.watch and strategy.poll must be set")

    @property
    def name(self) -> str:
        return str(self.metadata.get("name", ""))

    @property
    def generation(self) -> int:
        return int(self.metadata.get("generation") or 0)

    @property
    def is_deleting(self) -> bool:
        return bool(self.metadata.get("deletionTimestamp"))
