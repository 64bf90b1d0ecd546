"""
Observability core for FastAPI services.

Provides:
- Structured JSON logging with correlation IDs and redaction
- Request and background job instrumentation
- Performance tracking for queries, cache and outbound calls
- Error classification with deduplicated alerting
- Prometheus metrics and Sentry forwarding
"""

from .alerts import AlertMessage, AlertSink, CallableAlertSink, WebhookAlertSink
from .config import Settings
from .correlation import (
    CorrelationId,
    bind_context,
    capture,
    correlation_id_context,
    get_context,
    get_correlation_id,
    request_scope,
    restore,
)
from .database import DatabaseInstrumentation, QueryEvent, query_stats
from .errors import ErrorHandler, Severity
from .jobs import InstrumentedJob, JobDescriptor, JobInstrumentation
from .logging import StructuredLogger
from .middleware import ObservabilityMiddleware
from .performance import PerformanceMonitor, cache_stats, instrument_httpx
from .runtime import (
    configure,
    get_error_handler,
    get_job_instrumentation,
    get_logger,
    get_performance_monitor,
    install,
)

__all__ = [
    "AlertMessage",
    "AlertSink",
    "CallableAlertSink",
    "WebhookAlertSink",
    "Settings",
    "CorrelationId",
    "bind_context",
    "capture",
    "correlation_id_context",
    "get_context",
    "get_correlation_id",
    "request_scope",
    "restore",
    "DatabaseInstrumentation",
    "QueryEvent",
    "query_stats",
    "ErrorHandler",
    "Severity",
    "InstrumentedJob",
    "JobDescriptor",
    "JobInstrumentation",
    "StructuredLogger",
    "ObservabilityMiddleware",
    "PerformanceMonitor",
    "cache_stats",
    "instrument_httpx",
    "configure",
    "get_error_handler",
    "get_job_instrumentation",
    "get_logger",
    "get_performance_monitor",
    "install",
]
