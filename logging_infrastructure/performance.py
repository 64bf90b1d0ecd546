"""
Performance metric formatting and threshold policy.

Each ``track_*`` method turns one measurement into a structured record with
``metric_type`` / ``metric_data`` fields and picks a level from the
configured thresholds. Aggregates are mirrored to Prometheus.
"""

import gc
import logging
import re
import threading
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union
from urllib.parse import parse_qsl, quote_plus, urlsplit, urlunsplit

import httpx
import psutil

from .logging import StructuredLogger
from .metrics import (
    cache_hits_total,
    cache_misses_total,
    db_query_duration_seconds,
    db_slow_queries_total,
    external_api_duration_seconds,
    background_jobs_total,
    background_job_duration_seconds,
)
from .redaction import REDACTION_MARKER

_internal_logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD_MS = 100.0
SLOW_API_THRESHOLD_MS = 1000.0
HIGH_MEMORY_THRESHOLD_MB = 500.0

MAX_SQL_LENGTH = 500
MAX_CACHE_KEY_LENGTH = 100
INVALID_URL = "[INVALID_URL]"

_CONTROL_STATEMENT = re.compile(
    r"\A\s*(BEGIN|COMMIT|ROLLBACK|SAVEPOINT|RELEASE\s+SAVEPOINT|PREPARE|EXECUTE|DEALLOCATE|PRAGMA)\b",
    re.IGNORECASE,
)
_INTROSPECTION = re.compile(
    r"alembic_version|information_schema|pg_catalog|sqlite_master", re.IGNORECASE
)

_SQL_NUMBER = re.compile(r"\b\d+(?:\.\d+)?\b")
_SQL_STRING = re.compile(r"'(?:[^']|'')*'")
_WHITESPACE = re.compile(r"\s+")

_TABLE_PATTERNS: Dict[str, re.Pattern] = {
    "select": re.compile(r"\bFROM\s+[\"'`]?(\w+)", re.IGNORECASE),
    "insert": re.compile(r"\bINSERT\s+INTO\s+[\"'`]?(\w+)", re.IGNORECASE),
    "update": re.compile(r"\AUPDATE\s+[\"'`]?(\w+)", re.IGNORECASE),
    "delete": re.compile(r"\bDELETE\s+FROM\s+[\"'`]?(\w+)", re.IGNORECASE),
}

_OPERATIONS = ("select", "insert", "update", "delete", "create", "drop", "alter")

_CACHE_KEY_SENSITIVE = re.compile(r"password|token|secret", re.IGNORECASE)
_URL_PARAM_SENSITIVE = re.compile(r"password|token|key|secret", re.IGNORECASE)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self.hits += 1
            else:
                self.misses += 1

    def to_dict(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses}


_cache_stats_ctx: ContextVar[Optional[CacheStats]] = ContextVar("cache_stats", default=None)
# (monotonic start, memory before in MB)
_tracking_ctx: ContextVar[Optional[Tuple[float, float]]] = ContextVar("perf_tracking", default=None)


def _current_cache_stats() -> CacheStats:
    stats = _cache_stats_ctx.get()
    if stats is None:
        stats = CacheStats()
        _cache_stats_ctx.set(stats)
    return stats


def reset_cache_stats() -> CacheStats:
    stats = CacheStats()
    _cache_stats_ctx.set(stats)
    return stats


def cache_stats() -> Dict[str, int]:
    """Hit/miss counters for the current request or job."""
    return _current_cache_stats().to_dict()


def get_memory_usage_mb() -> float:
    try:
        return psutil.Process().memory_info().rss / 1024.0 / 1024.0
    except (psutil.Error, OSError):
        return 0.0


def gc_statistics() -> Dict[str, Any]:
    stats = gc.get_stats()
    return {
        "gc_count": sum(s.get("collections", 0) for s in stats),
        "gc_collections": [s.get("collections", 0) for s in stats],
        "gc_uncollectable": sum(s.get("uncollectable", 0) for s in stats),
        "gc_pending": list(gc.get_count()),
    }


def sanitize_sql(sql: str) -> str:
    """Replace numeric and quoted literals, squish whitespace and bound the length."""
    sanitized = _SQL_STRING.sub("'[VALUE]'", sql)
    sanitized = _SQL_NUMBER.sub("[NUMBER]", sanitized)
    sanitized = _WHITESPACE.sub(" ", sanitized).strip()
    if len(sanitized) > MAX_SQL_LENGTH:
        sanitized = sanitized[: MAX_SQL_LENGTH - 3] + "..."
    return sanitized


def extract_operation(sql: str) -> str:
    head = sql.lstrip().lower()
    for operation in _OPERATIONS:
        if head.startswith(operation):
            return operation
    # CTEs resolve to their main statement
    if head.startswith("with"):
        for operation in ("insert", "update", "delete", "select"):
            if re.search(rf"\b{operation}\b", head):
                return operation
    return "other"


def extract_table_name(sql: str) -> str:
    operation = extract_operation(sql)
    pattern = _TABLE_PATTERNS.get(operation)
    if pattern:
        match = pattern.search(sql.strip())
        if match:
            return match.group(1)
    return "unknown"


def is_internal_statement(sql: Optional[str]) -> bool:
    if not sql or not sql.strip():
        return True
    return bool(_CONTROL_STATEMENT.match(sql) or _INTROSPECTION.search(sql))


def sanitize_cache_key(key: Any) -> str:
    key_str = str(key)
    if _CACHE_KEY_SENSITIVE.search(key_str):
        return REDACTION_MARKER
    return key_str[:MAX_CACHE_KEY_LENGTH]


def sanitize_url(url: Any) -> str:
    """Redact sensitive query parameter values; other parameters are re-escaped."""
    try:
        parts = urlsplit(str(url))
        if not parts.query:
            return urlunsplit(parts)
        params = []
        for key, value in parse_qsl(parts.query, keep_blank_values=True):
            if _URL_PARAM_SENSITIVE.search(key):
                params.append(f"{quote_plus(key)}={REDACTION_MARKER}")
            else:
                params.append(f"{quote_plus(key)}={quote_plus(value)}")
        return urlunsplit(parts._replace(query="&".join(params)))
    except ValueError:
        return INVALID_URL


def extract_host(url: Any) -> str:
    try:
        return urlsplit(str(url)).hostname or "unknown"
    except ValueError:
        return "unknown"


def _byte_size(body: Any) -> Optional[int]:
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        return len(body)
    return len(str(body).encode("utf-8"))


class PerformanceMonitor:
    """
    Formats performance measurements into structured log records.

    Args:
        logger: Structured logger receiving the records
        slow_query_threshold_ms: Queries above this are logged at warn
        slow_api_threshold_ms: Outbound calls above this are logged at warn
        high_memory_threshold_mb: Resident memory above this is logged at warn
    """

    def __init__(
        self,
        logger: StructuredLogger,
        slow_query_threshold_ms: float = SLOW_QUERY_THRESHOLD_MS,
        slow_api_threshold_ms: float = SLOW_API_THRESHOLD_MS,
        high_memory_threshold_mb: float = HIGH_MEMORY_THRESHOLD_MB,
    ):
        self.logger = logger
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self.slow_api_threshold_ms = slow_api_threshold_ms
        self.high_memory_threshold_mb = high_memory_threshold_mb

    def track_database_query(
        self,
        sql: Optional[str],
        name: Optional[str],
        duration_ms: float,
        connection_info: Optional[Dict[str, Any]] = None,
    ) -> Optional[bool]:
        """
        Log one executed statement.

        Returns:
            Whether the query was slow, or None when the statement was skipped
        """
        if is_internal_statement(sql):
            return None

        slow = duration_ms > self.slow_query_threshold_ms
        operation = extract_operation(sql)
        # Ad hoc callers may pass a pool handle; keep only plain values
        connection_info = {
            k: v for k, v in (connection_info or {}).items()
            if isinstance(v, (str, int, float, bool, type(None)))
        }
        metadata = {
            "metric_type": "database_query",
            "metric_data": {
                "sql": sanitize_sql(sql),
                "name": name or "SQL",
                "duration_ms": round(duration_ms, 2),
                "slow": slow,
                "table": extract_table_name(sql),
                "operation": operation,
                **(connection_info or {}),
            },
        }

        db_query_duration_seconds.labels(operation=operation).observe(duration_ms / 1000.0)
        if slow:
            db_slow_queries_total.labels(operation=operation).inc()
            self.logger.warn("Database query executed", metadata)
        else:
            self.logger.debug("Database query executed", metadata)
        return slow

    def track_cache_operation(
        self,
        operation: str,
        key: Any,
        hit: bool,
        duration_ms: float,
        store: Optional[str] = None,
    ) -> None:
        metadata = {
            "metric_type": "cache_operation",
            "metric_data": {
                "operation": str(operation),
                "key": sanitize_cache_key(key),
                "hit": bool(hit),
                "duration_ms": round(duration_ms, 2),
                "cache_store": store,
            },
        }
        self.logger.debug("Cache operation performed", metadata)

        _current_cache_stats().record(bool(hit))
        cache_type = store or "default"
        if hit:
            cache_hits_total.labels(cache_type=cache_type).inc()
        else:
            cache_misses_total.labels(cache_type=cache_type).inc()

    def track_external_api_call(
        self,
        url: str,
        method: str,
        duration_ms: float,
        status: Optional[int],
        request_body: Any = None,
        response_body: Any = None,
    ) -> None:
        slow = duration_ms > self.slow_api_threshold_ms
        host = extract_host(url)
        metric_data: Dict[str, Any] = {
            "url": sanitize_url(url),
            "method": str(method).upper(),
            "duration_ms": round(duration_ms, 2),
            "status": status,
            "slow": slow,
            "host": host,
        }
        request_size = _byte_size(request_body)
        if request_size is not None:
            metric_data["request_size"] = request_size
        response_size = _byte_size(response_body)
        if response_size is not None:
            metric_data["response_size"] = response_size

        external_api_duration_seconds.labels(host=host).observe(duration_ms / 1000.0)
        metadata = {"metric_type": "external_api_call", "metric_data": metric_data}
        if slow:
            self.logger.warn("External API call completed", metadata)
        else:
            self.logger.info("External API call completed", metadata)

    def track_memory_usage(self) -> Dict[str, Any]:
        memory_mb = get_memory_usage_mb()
        high_usage = memory_mb > self.high_memory_threshold_mb
        metric_data = {
            "usage_mb": round(memory_mb, 2),
            "high_usage": high_usage,
            **gc_statistics(),
        }
        metadata = {"metric_type": "memory_usage", "metric_data": metric_data}
        if high_usage:
            self.logger.warn("Memory usage tracked", metadata)
        else:
            self.logger.debug("Memory usage tracked", metadata)
        return metric_data

    def track_job_performance(
        self,
        job_class: Any,
        duration_ms: float,
        status: str,
        error: Optional[BaseException] = None,
    ) -> None:
        tracking = _tracking_ctx.get()
        metric_data: Dict[str, Any] = {
            "job_class": str(job_class),
            "duration_ms": round(duration_ms, 2),
            "status": str(status),
            "memory_before_mb": round(tracking[1], 2) if tracking else None,
            "memory_after_mb": round(get_memory_usage_mb(), 2),
        }
        if error is not None:
            metric_data["error"] = {"class": type(error).__name__, "message": str(error)}

        background_jobs_total.labels(job_class=str(job_class), status=str(status)).inc()
        background_job_duration_seconds.labels(job_class=str(job_class)).observe(duration_ms / 1000.0)

        metadata = {"metric_type": "background_job", "metric_data": metric_data}
        if error is not None:
            self.logger.error("Background job completed", metadata)
        else:
            self.logger.info("Background job completed", metadata)

    def start_tracking(self) -> None:
        """Start a stopwatch owned by the current task."""
        _tracking_ctx.set((time.monotonic(), get_memory_usage_mb()))

    def end_tracking(self) -> Optional[float]:
        """
        Stop the current task's stopwatch.

        Returns:
            Elapsed milliseconds, or None when start_tracking was not called in this task
        """
        tracking = _tracking_ctx.get()
        if tracking is None:
            return None
        _tracking_ctx.set(None)
        return round((time.monotonic() - tracking[0]) * 1000, 2)


def instrument_httpx(client: Union[httpx.Client, httpx.AsyncClient], monitor: PerformanceMonitor) -> None:
    """
    Time outbound calls made through an httpx client.

    Adds the current correlation ID to every outbound request and reports each
    completed call through ``monitor.track_external_api_call``.
    """
    from .correlation import CANONICAL_HEADER, get_correlation_id

    def _on_request(request: httpx.Request) -> None:
        correlation_id = get_correlation_id()
        if correlation_id and CANONICAL_HEADER not in request.headers:
            request.headers[CANONICAL_HEADER] = correlation_id
        request.extensions["observability_started_at"] = time.monotonic()

    def _on_response(response: httpx.Response) -> None:
        request = response.request
        started_at = request.extensions.get("observability_started_at")
        if started_at is None:
            return
        try:
            monitor.track_external_api_call(
                str(request.url),
                request.method,
                (time.monotonic() - started_at) * 1000,
                response.status_code,
                request_body=request.content or None,
            )
        except Exception as e:
            _internal_logger.warning("External call tracking failed: %s", e)

    if isinstance(client, httpx.AsyncClient):

        async def _async_on_request(request: httpx.Request) -> None:
            _on_request(request)

        async def _async_on_response(response: httpx.Response) -> None:
            _on_response(response)

        client.event_hooks["request"].append(_async_on_request)
        client.event_hooks["response"].append(_async_on_response)
    else:
        client.event_hooks["request"].append(_on_request)
        client.event_hooks["response"].append(_on_response)
