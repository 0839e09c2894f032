"""ObjectSet (revision) controller: phase ordering, probes, teardown."""

from kubephase.objectsets.phases import PhaseReconciler, PhaseResult
from kubephase.objectsets.probing import ProbeParseError, parse_probes
from kubephase.objectsets.reconciler import ObjectSetReconciler
from kubephase.objectsets.teardown import Teardown

__all__ = [
    "ObjectSetReconciler",
    "PhaseReconciler",
    "PhaseResult",
    "ProbeParseError",
    "Teardown",
    "parse_probes",
]
