"""Object store capability set.

``ObjectStore`` is the single interface through which kubephase talks to the
backing store.  It is implemented once per binding (the Kubernetes API in
:mod:`kubephase.store.kube`, an in-process store in
:mod:`kubephase.store.memory`), never per kind.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from kubephase.models.objects import GroupVersionKind, Object
from kubephase.models.selectors import LabelSelector


class EventType(StrEnum):
    """Watch event types."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"


@dataclass(frozen=True)
class WatchEvent:
    type: EventType
    object: Object


@dataclass
class ObjectList:
    items: list[Object] = field(default_factory=list)
    resource_version: str = ""


class PropagationPolicy(StrEnum):
    """Deletion propagation for dependents."""

    BACKGROUND = "Background"
    FOREGROUND = "Foreground"
    ORPHAN = "Orphan"


class ObjectStore(ABC):
    """Get/List/Watch/Create/Update/Patch/Delete over arbitrary kinds.

    All methods raise :class:`kubephase.store.errors.StoreError` subclasses.
    Returned objects are copies; mutating them never affects the store.
    """

    @abstractmethod
    async def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> Object:
        """Return the object or raise NotFoundError."""

    @abstractmethod
    async def list(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        label_selector: LabelSelector | None = None,
    ) -> ObjectList:
        """List objects of *gvk*; ``namespace=None`` lists across namespaces."""

    @abstractmethod
    def watch(
        self,
        gvk: GroupVersionKind,
        namespace: str | None = None,
        label_selector: LabelSelector | None = None,
        resource_version: str = "",
    ) -> AsyncIterator[WatchEvent]:
        """Stream changes after *resource_version*.

        Objects that stop matching *label_selector* are delivered as DELETED.
        Raises GoneError when *resource_version* is too old.
        """

    @abstractmethod
    async def create(self, obj: Object) -> Object:
        """Create *obj* or raise AlreadyExistsError."""

    @abstractmethod
    async def update(self, obj: Object) -> Object:
        """Replace *obj* (status excluded); raises ConflictError on a stale resourceVersion."""

    @abstractmethod
    async def update_status(self, obj: Object) -> Object:
        """Replace only the status of *obj*; raises ConflictError on a stale resourceVersion."""

    @abstractmethod
    async def patch(self, gvk: GroupVersionKind, namespace: str, name: str, patch: dict[str, Any]) -> Object:
        """Apply a JSON merge patch.

        A ``metadata.resourceVersion`` inside *patch* acts as a precondition.
        """

    @abstractmethod
    async def delete(
        self,
        gvk: GroupVersionKind,
        namespace: str,
        name: str,
        propagation_policy: PropagationPolicy | None = None,
    ) -> None:
        """Delete the object or raise NotFoundError."""
