# tierstore/metrics.py
"""
Prometheus instrumentation for tier operations.
"""

from __future__ import annotations

import time
import functools
import logging
from typing import Any, Awaitable, Callable

from prometheus_client import Counter, Histogram, start_http_server

LOG = logging.getLogger("tierstore.metrics")

TIER_OPS = Counter(
    "tierstore_operations_total",
    "Tier backend operations",
    ["op", "tier", "outcome"],
)
TIER_OP_LATENCY = Histogram(
    "tierstore_operation_seconds",
    "Tier backend operation latency (s)",
    ["op", "tier"],
    buckets=[0.001, 0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30],
)
DIRECT_READER_CHUNKS = Counter(
    "tierstore_direct_reader_chunks_total",
    "Chunks fetched by point lookup in the direct reader",
)
MAINTENANCE_RECORDS = Counter(
    "tierstore_maintenance_records_total",
    "Records processed by maintenance operations",
    ["action", "outcome"],
)


def record_tier_op(op: str):
    """
    Decorator for async backend methods; the backend instance must expose ``tier``.
    """
    def _decorator(fn: Callable[..., Awaitable[Any]]):
        @functools.wraps(fn)
        async def _wrapped(self, *args, **kwargs):
            tier = getattr(self.tier, "value", str(self.tier))
            t0 = time.perf_counter()
            outcome = "error"
            try:
                result = await fn(self, *args, **kwargs)
                outcome = "ok"
                return result
            finally:
                TIER_OPS.labels(op=op, tier=tier, outcome=outcome).inc()
                TIER_OP_LATENCY.labels(op=op, tier=tier).observe(time.perf_counter() - t0)
        return _wrapped
    return _decorator


def start_prometheus_exporter(port: int = 9109):
    start_http_server(port)
    LOG.info("Prometheus metrics exposed at :%d", port)
