"""Reconciler contract shared by every controller."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from kubephase.models.objects import Object


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a successful reconcile.

    ``requeue_after`` asks the runtime to reconcile the object again after
    that many seconds even without a change.  Failures are raised instead.
    """

    requeue_after: float | None = None


class Reconciler(ABC):
    """Drives one object towards its desired state.

    Implementations must be idempotent: the runtime may call ``reconcile``
    any number of times for the same object.
    """

    @abstractmethod
    async def reconcile(self, obj: Object) -> ReconcileResult:
        """Reconcile *obj*, a fresh read of the primary object."""
