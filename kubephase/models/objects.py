"""Kind-agnostic object envelope.

Every object handled by kubephase travels as a plain ``dict`` shaped like the
Kubernetes wire format.  The helpers in this module read and write the
envelope (apiVersion, kind, metadata) without knowing anything about the
payload, so the engine manages arbitrary kinds through one code path.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

Object = dict[str, Any]


@dataclass(frozen=True)
class GroupKind:
    """API group and kind, without version."""

    group: str
    kind: str

    def __str__(self) -> str:
        return f"{self.kind}.{self.group}" if self.group else self.kind


@dataclass(frozen=True)
class GroupVersionKind:
    """Fully qualified kind of an object."""

    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def group_kind(self) -> GroupKind:
        return GroupKind(group=self.group, kind=self.kind)

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> GroupVersionKind:
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


@dataclass(frozen=True)
class ObjectKey:
    """Namespace/name pair.  Namespace is empty for cluster-scoped objects."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


def gvk_of(obj: Object) -> GroupVersionKind:
    """Return the GroupVersionKind of *obj*.

    Raises:
        ValueError: if apiVersion or kind is missing.
    """
    api_version = obj.get("apiVersion") or ""
    kind = obj.get("kind") or ""
    if not api_version or not kind:
        raise ValueError(f"object {key_of(obj)} is missing apiVersion or kind")
    return GroupVersionKind.from_api_version(api_version, kind)


def metadata_of(obj: Object) -> dict[str, Any]:
    """Return the metadata mapping of *obj*, creating it when absent."""
    meta = obj.get("metadata")
    if meta is None:
        meta = {}
        obj["metadata"] = meta
    return meta


def key_of(obj: Object) -> ObjectKey:
    meta = obj.get("metadata") or {}
    return ObjectKey(namespace=meta.get("namespace") or "", name=meta.get("name") or "")


def name_of(obj: Object) -> str:
    return (obj.get("metadata") or {}).get("name") or ""


def namespace_of(obj: Object) -> str:
    return (obj.get("metadata") or {}).get("namespace") or ""


def uid_of(obj: Object) -> str:
    return (obj.get("metadata") or {}).get("uid") or ""


def resource_version_of(obj: Object) -> str:
    return (obj.get("metadata") or {}).get("resourceVersion") or ""


def generation_of(obj: Object) -> int:
    return int((obj.get("metadata") or {}).get("generation") or 0)


def labels_of(obj: Object) -> dict[str, str]:
    return dict((obj.get("metadata") or {}).get("labels") or {})


def annotations_of(obj: Object) -> dict[str, str]:
    return dict((obj.get("metadata") or {}).get("annotations") or {})


def finalizers_of(obj: Object) -> list[str]:
    return list((obj.get("metadata") or {}).get("finalizers") or [])


def owner_references_of(obj: Object) -> list[dict[str, Any]]:
    return [dict(ref) for ref in (obj.get("metadata") or {}).get("ownerReferences") or []]


def is_deleting(obj: Object) -> bool:
    return bool((obj.get("metadata") or {}).get("deletionTimestamp"))


def set_label(obj: Object, key: str, value: str) -> None:
    meta = metadata_of(obj)
    labels = meta.get("labels") or {}
    labels[key] = value
    meta["labels"] = labels


def remove_label(obj: Object, key: str) -> bool:
    labels = metadata_of(obj).get("labels") or {}
    if key not in labels:
        return False
    del labels[key]
    return True


def set_annotation(obj: Object, key: str, value: str) -> None:
    meta = metadata_of(obj)
    annotations = meta.get("annotations") or {}
    annotations[key] = value
    meta["annotations"] = annotations


def deep_copy(obj: Object) -> Object:
    return copy.deepcopy(obj)


def get_path(obj: Any, path: str) -> tuple[bool, Any]:
    """Resolve a dotted *path* inside *obj*.

    Numeric segments index into lists, e.g. ``status.conditions.0.type``.

    Returns:
        (found, value) -- ``found`` is False when any segment is missing.
    """
    current = obj
    for segment in path.strip(".").split("."):
        if isinstance(current, dict):
            if segment not in current:
                return False, None
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return False, None
            current = current[index]
        else:
            return False, None
    return True, current


def merge_patch(target: Any, patch: Any) -> Any:
    """Apply a JSON merge patch (RFC 7386) and return the result.

    Neither argument is mutated.  ``None`` values in *patch* delete keys.
    """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def contains(actual: Any, desired: Any) -> bool:
    """Return True when every field set in *desired* has the same value in *actual*.

    Mappings are compared as subsets; lists must have equal length and
    contain matching items position by position.
    """
    if isinstance(desired, dict):
        if not isinstance(actual, dict):
            return False
        return all(key in actual and contains(actual[key], value) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(actual, list) or len(actual) != len(desired):
            return False
        return all(contains(a, d) for a, d in zip(actual, desired, strict=True))
    return bool(actual == desired)
