"""Prometheus metrics exported on ``/metrics``."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

reconcile_total = Counter(
    "kubephase_reconcile_total",
    "Reconcile invocations by controller and outcome.",
    ["controller", "result"],
)

reconcile_duration_seconds = Histogram(
    "kubephase_reconcile_duration_seconds",
    "Wall-clock duration of a single reconcile.",
    ["controller"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

workqueue_depth = Gauge(
    "kubephase_workqueue_depth",
    "Keys waiting in a controller work queue.",
    ["controller"],
)

conflict_retries_total = Counter(
    "kubephase_conflict_retries_total",
    "Read-modify-write attempts retried after a resourceVersion conflict.",
)

slices_created_total = Counter(
    "kubephase_slices_created_total",
    "ObjectSlices created.",
)

slice_collisions_total = Counter(
    "kubephase_slice_collisions_total",
    "ObjectSlice name collisions detected.",
)

slices_garbage_collected_total = Counter(
    "kubephase_slices_garbage_collected_total",
    "Unreferenced ObjectSlices deleted.",
)

slice_gc_failures_total = Counter(
    "kubephase_slice_gc_failures_total",
    "ObjectSlice deletions that failed during garbage collection.",
)

cache_informers = Gauge(
    "kubephase_dynamic_cache_informers",
    "Informers currently running in the dynamic cache.",
)

cache_registrations = Gauge(
    "kubephase_dynamic_cache_registrations",
    "Owner registrations currently held by the dynamic cache.",
)

probe_failures_total = Counter(
    "kubephase_probe_failures_total",
    "Phase progressions halted by a failing availability probe.",
)
