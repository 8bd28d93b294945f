"""
Prometheus metrics for cache performance, upstream API usage, and background work.
Exposed via /metrics endpoint for Prometheus scraping.
"""

from prometheus_client import Counter, Histogram

# Detail lookups served from the persistent store vs upstream
cache_hits_total = Counter(
    "mealcache_cache_hits_total",
    "Recipe detail reads served from the persistent store",
    ["operation"],
)
cache_misses_total = Counter(
    "mealcache_cache_misses_total",
    "Recipe detail reads that required an upstream call",
    ["operation"],
)

# Response time histograms (seconds)
store_query_duration_seconds = Histogram(
    "mealcache_store_query_duration_seconds",
    "Persistent store call duration in seconds",
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)
upstream_query_duration_seconds = Histogram(
    "mealcache_upstream_query_duration_seconds",
    "Spoonacular API call duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0),
)

upstream_api_calls_total = Counter(
    "mealcache_upstream_api_calls_total",
    "Spoonacular API calls by status",
    ["operation", "status"],  # search/detail/..., success/quota_exceeded/rate_limited/...
)

store_write_failures_total = Counter(
    "mealcache_store_write_failures_total",
    "Failed merge-writes to the persistent store",
    ["operation"],
)

background_fetches_total = Counter(
    "mealcache_background_fetches_total",
    "Background detail fetches by final state",
    ["state"],
)

maintenance_ticks_total = Counter(
    "mealcache_maintenance_ticks_total",
    "Maintenance scheduler ticks by outcome",
    ["outcome"],  # ran, skipped, error
)


def record_cache_hit(operation: str) -> None:
    cache_hits_total.labels(operation=operation).inc()


def record_cache_miss(operation: str) -> None:
    cache_misses_total.labels(operation=operation).inc()


def record_store_duration(seconds: float) -> None:
    store_query_duration_seconds.observe(seconds)


def record_upstream_duration(seconds: float) -> None:
    upstream_query_duration_seconds.observe(seconds)


def record_upstream_call(operation: str, status: str) -> None:
    upstream_api_calls_total.labels(operation=operation, status=status).inc()


def record_store_write_failure(operation: str) -> None:
    store_write_failures_total.labels(operation=operation).inc()


def record_background_fetch(state: str) -> None:
    background_fetches_total.labels(state=state).inc()


def record_maintenance_tick(outcome: str) -> None:
    maintenance_ticks_total.labels(outcome=outcome).inc()
