"""
Prometheus metrics collection module.

Metrics Categories:
- RED Metrics: Rate, Errors, Duration for HTTP endpoints
- Pipeline Metrics: query outcomes, per-stage latency, payload reduction
- Dependency Metrics: cache, rate limiter, shared store, answer generator

All metrics follow Prometheus naming conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for duration
- Gauges: No special suffix
"""
import re

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    REGISTRY,
    CONTENT_TYPE_LATEST,
)

from saathi.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# RED METRICS - Rate, Errors, Duration
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=registry,
)

# ============================================================================
# PIPELINE METRICS
# ============================================================================

query_outcomes_total = Counter(
    "query_outcomes_total",
    "Query pipeline terminations by outcome",
    ["outcome"],  # cache_hit, generated, degraded, rate_limited, invalid
    registry=registry,
)

query_pipeline_duration_seconds = Histogram(
    "query_pipeline_duration_seconds",
    "End-to-end query pipeline latency in seconds",
    ["outcome"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 4.0, 5.0, 7.5],
    registry=registry,
)

payload_reduction_ratio = Histogram(
    "payload_reduction_ratio",
    "Adapted payload size divided by full payload size for low-bandwidth responses",
    buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.75, 1.0],
    registry=registry,
)

eligibility_type_mismatch_total = Counter(
    "eligibility_type_mismatch_total",
    "Criteria that failed because a numeric operator met a non-numeric value",
    ["criterion_type"],
    registry=registry,
)

# ============================================================================
# DEPENDENCY METRICS
# ============================================================================

cache_hits_total = Counter(
    "cache_hits_total",
    "Total number of cache hits",
    ["cache_type"],
    registry=registry,
)

cache_misses_total = Counter(
    "cache_misses_total",
    "Total number of cache misses",
    ["cache_type"],
    registry=registry,
)

cache_invalidations_total = Counter(
    "cache_invalidations_total",
    "Cache entries removed because a cited scheme changed",
    registry=registry,
)

rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by the token bucket limiter",
    ["endpoint_class"],
    registry=registry,
)

generator_requests_total = Counter(
    "generator_requests_total",
    "Answer generator calls by outcome",
    ["outcome"],  # success, timeout, rate_limited, unavailable
    registry=registry,
)

generator_latency_seconds = Histogram(
    "generator_latency_seconds",
    "Answer generator call latency in seconds",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 4.0, 5.0],
    registry=registry,
)

store_retries_total = Counter(
    "store_retries_total",
    "Shared store operations retried after a failure",
    ["operation"],
    registry=registry,
)

store_reduced_mode_total = Counter(
    "store_reduced_mode_total",
    "Shared store operations abandoned after retries (request continued in reduced mode)",
    ["operation"],
    registry=registry,
)

session_evictions_total = Counter(
    "session_evictions_total",
    "Idle sessions reclaimed by the background pass",
    registry=registry,
)

active_schemes = Gauge(
    "active_schemes",
    "Number of schemes currently loaded in the scheme store",
    registry=registry,
)

feedback_total = Counter(
    "feedback_total",
    "Feedback submissions by rating",
    ["rating"],
    registry=registry,
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

_SCHEME_PATH = re.compile(r"^/api/v1/schemes/(?!search$)[^/]+$")
_ADMIN_SCHEME_PATH = re.compile(r"^/admin/schemes/[^/]+$")


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metrics.

    Replaces dynamic segments (scheme IDs) with placeholders to avoid high
    cardinality.

    Examples:
        /api/v1/schemes/pm-scholarship -> /api/v1/schemes/{scheme_id}
        /api/v1/schemes/search?q=x -> /api/v1/schemes/search
    """
    if "?" in path:
        path = path.split("?")[0]

    if _SCHEME_PATH.match(path):
        return "/api/v1/schemes/{scheme_id}"
    if _ADMIN_SCHEME_PATH.match(path):
        return "/admin/schemes/{scheme_id}"

    return path


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """Record HTTP request metrics (RED metrics)."""
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_query_outcome(outcome: str, duration_seconds: float) -> None:
    query_outcomes_total.labels(outcome=outcome).inc()
    query_pipeline_duration_seconds.labels(outcome=outcome).observe(duration_seconds)


def record_payload_reduction(full_bytes: int, adapted_bytes: int) -> None:
    if full_bytes > 0:
        payload_reduction_ratio.observe(adapted_bytes / full_bytes)


def record_type_mismatch(criterion_type: str) -> None:
    eligibility_type_mismatch_total.labels(criterion_type=criterion_type).inc()


def record_cache_hit(cache_type: str) -> None:
    """
    Record a cache hit.

    Args:
        cache_type: Kind of cached data (e.g., "llm_answer", "scheme_detail", "raw_query")
    """
    cache_hits_total.labels(cache_type=cache_type).inc()


def record_cache_miss(cache_type: str) -> None:
    cache_misses_total.labels(cache_type=cache_type).inc()


def record_cache_invalidation(count: int) -> None:
    if count > 0:
        cache_invalidations_total.inc(count)


def record_rate_limit_rejection(endpoint_class: str) -> None:
    rate_limit_rejections_total.labels(endpoint_class=endpoint_class).inc()


def record_generator_call(outcome: str, duration_seconds: float) -> None:
    generator_requests_total.labels(outcome=outcome).inc()
    generator_latency_seconds.observe(duration_seconds)


def record_store_retry(operation: str) -> None:
    store_retries_total.labels(operation=operation).inc()


def record_store_reduced_mode(operation: str) -> None:
    store_reduced_mode_total.labels(operation=operation).inc()


def record_session_evictions(count: int) -> None:
    if count > 0:
        session_evictions_total.inc(count)


def update_active_schemes(count: int) -> None:
    active_schemes.set(count)


def record_feedback(rating: int) -> None:
    feedback_total.labels(rating=str(rating)).inc()


def get_metrics() -> bytes:
    """Get Prometheus metrics in text format."""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    """Get content type for metrics endpoint."""
    return CONTENT_TYPE_LATEST
