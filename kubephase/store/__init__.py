"""Object store layer.

Submodules:
    base    -- ObjectStore capability set, watch events, list results.
    errors  -- NotFound / Conflict / AlreadyExists / Gone error hierarchy.
    retry   -- Bounded retry-on-conflict combinator.
    memory  -- In-process binding (tests, dry runs).
    kube    -- Kubernetes API binding (kubernetes-asyncio dynamic client).
"""

from kubephase.store.base import EventType, ObjectList, ObjectStore, PropagationPolicy, WatchEvent
from kubephase.store.errors import (
    AlreadyExistsError,
    ConflictError,
    GoneError,
    NotFoundError,
    StoreError,
)
from kubephase.store.retry import retry_on_conflict

__all__ = [
    "AlreadyExistsError",
    "ConflictError",
    "EventType",
    "GoneError",
    "NotFoundError",
    "ObjectList",
    "ObjectStore",
    "PropagationPolicy",
    "StoreError",
    "WatchEvent",
    "retry_on_conflict",
]
