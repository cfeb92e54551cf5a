"""Prometheus metrics for MCP tool calls, Bitbucket REST calls and the search cache.

Each `Metrics` owns its own CollectorRegistry, so tests and multiple
instances never collide on the process-wide default registry. `/metrics`
renders it with `generate_latest`.
"""

import contextlib
import time
from typing import Iterator, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

NAMESPACE = "bitbucket_dc_mcp"

# Seconds; tool calls range from cached lookups to multi-second searches.
LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class Metrics:
    """Counters and histograms exported on /metrics."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.tool_calls = Counter(
            "tool_calls",
            "MCP tool invocations",
            ["tool", "status"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.tool_duration = Histogram(
            "tool_duration_seconds",
            "MCP tool latency",
            ["tool"],
            namespace=NAMESPACE,
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.bitbucket_requests = Counter(
            "bitbucket_requests",
            "REST calls sent to Bitbucket, by HTTP status or failure kind",
            ["operation_id", "status"],
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.bitbucket_duration = Histogram(
            "bitbucket_request_duration_seconds",
            "Bitbucket REST call latency",
            ["operation_id"],
            namespace=NAMESPACE,
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.cache_entries = Gauge(
            "search_cache_entries",
            "Entries held by the semantic search cache",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self.cache_hit_rate = Gauge(
            "search_cache_hit_rate",
            "Semantic search cache hit rate since startup",
            namespace=NAMESPACE,
            registry=self.registry,
        )

    @contextlib.contextmanager
    def track_tool(self, tool: str) -> Iterator[None]:
        """Count one call of `tool` and time it; an exception marks it as an error."""
        started = time.perf_counter()
        status = "success"
        try:
            yield
        except Exception:
            status = "error"
            raise
        finally:
            self.tool_calls.labels(tool=tool, status=status).inc()
            self.tool_duration.labels(tool=tool).observe(time.perf_counter() - started)

    def observe_request(self, operation_id: str, status: str, seconds: float) -> None:
        self.bitbucket_requests.labels(operation_id=operation_id, status=status).inc()
        self.bitbucket_duration.labels(operation_id=operation_id).observe(seconds)

    def update_cache(self, stats: dict) -> None:
        self.cache_entries.set(stats.get("size", 0))
        self.cache_hit_rate.set(stats.get("hit_rate", 0.0))

    def render(self) -> bytes:
        return generate_latest(self.registry)
