"""
Prometheus metrics collection for the logging infrastructure.

Provides RED metrics (Rate, Errors, Duration) for requests, jobs, queries and
outbound calls, plus error and alert counters.
"""

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    REGISTRY,
)

# Use the default registry
metrics_registry = REGISTRY

# HTTP Metrics (RED - Rate, Errors, Duration)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
    registry=metrics_registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=metrics_registry,
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests in progress",
    ["method"],
    registry=metrics_registry,
)

# Database Metrics
db_query_duration_seconds = Histogram(
    "db_query_duration_seconds",
    "Database query duration in seconds",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=metrics_registry,
)

db_slow_queries_total = Counter(
    "db_slow_queries_total",
    "Total database queries over the slow threshold",
    ["operation"],
    registry=metrics_registry,
)

db_connection_pool_size = Gauge(
    "db_connection_pool_size",
    "Current database connection pool size",
    registry=metrics_registry,
)

db_connection_pool_checked_out = Gauge(
    "db_connection_pool_checked_out",
    "Number of connections currently checked out from pool",
    registry=metrics_registry,
)

db_connection_pool_overflow = Gauge(
    "db_connection_pool_overflow",
    "Number of overflow connections",
    registry=metrics_registry,
)

# External API Metrics
external_api_duration_seconds = Histogram(
    "external_api_duration_seconds",
    "Outbound HTTP call duration in seconds",
    ["host"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
    registry=metrics_registry,
)

# Cache Metrics
cache_hits_total = Counter(
    "cache_hits_total",
    "Total cache hits",
    ["cache_type"],
    registry=metrics_registry,
)

cache_misses_total = Counter(
    "cache_misses_total",
    "Total cache misses",
    ["cache_type"],
    registry=metrics_registry,
)

# Background Job Metrics
background_jobs_total = Counter(
    "background_jobs_total",
    "Total background job executions",
    ["job_class", "status"],  # status: success, failed
    registry=metrics_registry,
)

background_job_duration_seconds = Histogram(
    "background_job_duration_seconds",
    "Background job duration in seconds",
    ["job_class"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0],
    registry=metrics_registry,
)

# Error and Alert Metrics
errors_total = Counter(
    "errors_total",
    "Total handled exceptions",
    ["severity"],
    registry=metrics_registry,
)

alerts_total = Counter(
    "alerts_total",
    "Alert dispatch attempts",
    ["kind", "outcome"],  # kind: error, security, suspicious; outcome: sent, suppressed, failed
    registry=metrics_registry,
)
