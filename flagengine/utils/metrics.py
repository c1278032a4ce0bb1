"""Prometheus metrics for flag evaluation, caching and invalidation.

All metric objects are defined at import time on the default registry.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

flag_evaluations_total = Counter(
    "flag_evaluations_total",
    "Flag evaluations by deciding rule",
    ["reason"],
)
flag_cache_requests_total = Counter(
    "flag_cache_requests_total",
    "Flag cache lookups",
    ["tier", "result"],  # tier: local|shared|store; result: hit|miss|stale|error
)
flag_store_errors_total = Counter(
    "flag_store_errors_total",
    "Flag store failures seen by the cache layer",
    ["operation"],
)
flag_store_load_seconds = Histogram(
    "flag_store_load_seconds",
    "Duration of cache-miss snapshot loads from the flag store",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)
flag_invalidations_total = Counter(
    "flag_invalidations_total",
    "Cache invalidation events",
    ["direction", "status"],  # direction: published|received
)
flag_mutations_total = Counter(
    "flag_mutations_total",
    "Audited flag mutations",
    ["action"],
)
