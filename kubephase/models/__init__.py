"""Core data structures for kubephase."""

from kubephase.models.api import (
    ControlledObjectReference,
    LifecycleState,
    ObjectDeployment,
    ObjectSet,
    ObjectSetObject,
    ObjectSetStatusPhase,
    ObjectSlice,
    SecretSync,
    SecretSyncStatusPhase,
    TemplateError,
    TemplatePhase,
    TemplateSpec,
)
from kubephase.models.config import KubePhaseConfig
from kubephase.models.objects import GroupKind, GroupVersionKind, Object, ObjectKey
from kubephase.models.selectors import LabelSelector

__all__ = [
    "ControlledObjectReference",
    "GroupKind",
    "GroupVersionKind",
    "KubePhaseConfig",
    "LabelSelector",
    "LifecycleState",
    "Object",
    "ObjectDeployment",
    "ObjectKey",
    "ObjectSet",
    "ObjectSetObject",
    "ObjectSetStatusPhase",
    "ObjectSlice",
    "SecretSync",
    "SecretSyncStatusPhase",
    "TemplateError",
    "TemplatePhase",
    "TemplateSpec",
]
