"""Prometheus metrics for the client synchronization layer.

Counters and histograms live on a private ``CollectorRegistry`` so that
importing campusfeed never touches the process-wide default registry.

Metric Types:
    Counters:
        - api_requests_total: Gateway requests by endpoint, method, outcome
        - mutations_total: Optimistic mutations by name and outcome
        - cache_invalidations_total: Invalidated keys by collection
        - feed_pages_loaded_total: Feed pages appended by the paginator
    Gauges:
        - cache_entries: Keys currently held by the entity cache
    Histograms:
        - api_request_duration_seconds: Gateway request latency

Usage:
    ```python
    from campusfeed.metrics import mutations_total

    mutations_total.labels(mutation="like_post", outcome="rolled_back").inc()
    ```
"""

from __future__ import annotations

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
)

from campusfeed.logging import logger

registry = CollectorRegistry()

# Latency buckets in seconds for REST calls issued from an interactive client
HTTP_LATENCY_BUCKETS = (
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
)


# ========== COUNTER METRICS ==========

api_requests_total = Counter(
    "campusfeed_api_requests_total",
    "Total number of requests sent to the campus backend",
    labelnames=["endpoint", "method", "outcome"],
    registry=registry,
)
"""Labels:
    endpoint: Route template (e.g., "/posts/{id}/like")
    method: HTTP method
    outcome: "success", "transient", "auth", "error"
"""

mutations_total = Counter(
    "campusfeed_mutations_total",
    "Optimistic mutations by outcome",
    labelnames=["mutation", "outcome"],
    registry=registry,
)
"""Labels:
    mutation: Mutation name from the action table (e.g., "like_post")
    outcome: "succeeded", "rolled_back", "coalesced", "queued"
"""

cache_invalidations_total = Counter(
    "campusfeed_cache_invalidations_total",
    "Cache keys marked stale",
    labelnames=["collection"],
    registry=registry,
)

feed_pages_loaded_total = Counter(
    "campusfeed_feed_pages_loaded_total",
    "Feed pages appended by the paginator",
    labelnames=["collection"],
    registry=registry,
)


# ========== GAUGE METRICS ==========

cache_entries = Gauge(
    "campusfeed_cache_entries",
    "Number of keys held by the entity cache",
    registry=registry,
)


# ========== HISTOGRAM METRICS ==========

api_request_duration_seconds = Histogram(
    "campusfeed_api_request_duration_seconds",
    "Duration of backend requests in seconds",
    labelnames=["endpoint", "method"],
    buckets=HTTP_LATENCY_BUCKETS,
    registry=registry,
)


# ========== HELPER FUNCTIONS ==========


def initialize_metrics() -> None:
    """Log that metrics collection is active."""
    logger.debug("Prometheus metrics initialized (custom registry)")


__all__ = [
    "registry",
    "api_requests_total",
    "mutations_total",
    "cache_invalidations_total",
    "feed_pages_loaded_total",
    "cache_entries",
    "api_request_duration_seconds",
    "initialize_metrics",
    "HTTP_LATENCY_BUCKETS",
]
