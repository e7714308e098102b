"""
Prometheus metrics for the portfolio aggregator.

Exposes upstream, cache and resolver metrics for monitoring and observability.
"""

import time

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
)

# Create a custom registry to avoid conflicts
REGISTRY = CollectorRegistry()

APP_INFO = Info(
    "defi_portfolio",
    "DeFi portfolio aggregator application info",
    registry=REGISTRY,
)
APP_INFO.info({
    "version": "1.0.0",
    "name": "defi-portfolio-aggregator",
})

# Upstream metrics (RPC, explorer, price source), labelled by cache-key operation
UPSTREAM_REQUESTS_TOTAL = Counter(
    "defi_portfolio_upstream_requests_total",
    "Total number of upstream fetch attempts",
    ["operation", "status"],
    registry=REGISTRY,
)

UPSTREAM_RETRIES_TOTAL = Counter(
    "defi_portfolio_upstream_retries_total",
    "Total number of upstream retries after a failed attempt",
    ["operation"],
    registry=REGISTRY,
)

CACHE_LOOKUPS_TOTAL = Counter(
    "defi_portfolio_cache_lookups_total",
    "Fetch wrapper cache lookups",
    ["result"],
    registry=REGISTRY,
)

# Multicall metrics
MULTICALL_CALLS = Histogram(
    "defi_portfolio_multicall_calls",
    "Number of read calls per multicall batch",
    buckets=[1, 5, 10, 25, 50, 100, 250, 500, 1000],
    registry=REGISTRY,
)

MULTICALL_FAILURES_TOTAL = Counter(
    "defi_portfolio_multicall_failures_total",
    "Multicall batches that failed at the transport level",
    ["chain"],
    registry=REGISTRY,
)

# Resolver metrics
RESOLVER_ERRORS_TOTAL = Counter(
    "defi_portfolio_resolver_errors_total",
    "Protocol resolutions that ended in an error annotation",
    ["protocol", "chain"],
    registry=REGISTRY,
)

REQUEST_DURATION_SECONDS = Histogram(
    "defi_portfolio_request_duration_seconds",
    "Duration of API requests in seconds",
    ["endpoint"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Get all metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the Prometheus content type."""
    return CONTENT_TYPE_LATEST


def operation_of(cache_key: str) -> str:
    """Metric label for a composite cache key (its operation prefix)."""
    return cache_key.split(":", 1)[0]


def record_upstream_attempt(operation: str, success: bool):
    UPSTREAM_REQUESTS_TOTAL.labels(
        operation=operation, status="success" if success else "error"
    ).inc()


def record_retry(operation: str):
    UPSTREAM_RETRIES_TOTAL.labels(operation=operation).inc()


def record_cache_lookup(hit: bool):
    CACHE_LOOKUPS_TOTAL.labels(result="hit" if hit else "miss").inc()


def record_multicall(chain: str, size: int, failed: bool = False):
    MULTICALL_CALLS.observe(size)
    if failed:
        MULTICALL_FAILURES_TOTAL.labels(chain=chain).inc()


def record_resolver_error(protocol: str, chain: str):
    RESOLVER_ERRORS_TOTAL.labels(protocol=protocol, chain=chain).inc()


class RequestTimer:
    """Context manager for timing API requests."""

    def __init__(self, endpoint: str):
        self._endpoint = endpoint
        self._start_time = None

    def __enter__(self):
        self._start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self._start_time
        REQUEST_DURATION_SECONDS.labels(endpoint=self._endpoint).observe(duration)
        return False  # Don't suppress exceptions
