"""Controller runtime: work queue and informer-driven reconcile loops."""

from kubephase.runtime.controller import Controller, owned_by
from kubephase.runtime.queue import QueueShutDownError, WorkQueue

__all__ = ["Controller", "QueueShutDownError", "WorkQueue", "owned_by"]
