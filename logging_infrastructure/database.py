"""
SQLAlchemy query instrumentation.

Provides:
- Per-statement timing through engine cursor events
- Request/job scoped query counters (query_stats)
- Repeated-query (N+1) detection
- Periodic connection pool sampling

Usage:
    instrumentation = DatabaseInstrumentation(monitor, logger)
    instrumentation.install(engine)
    monitor_thread = instrumentation.start_pool_monitor(engine, interval=30)
"""

import logging
import re
import threading
import time
from collections import Counter
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine

from .correlation import get_context_field
from .logging import StructuredLogger
from .metrics import (
    db_connection_pool_checked_out,
    db_connection_pool_overflow,
    db_connection_pool_size,
)
from .performance import PerformanceMonitor, extract_operation, is_internal_statement

_internal_logger = logging.getLogger(__name__)

REPEATED_QUERY_THRESHOLD = 5
MAX_TRACKED_PATTERNS = 100
_START_TIMES_KEY = "logging_infrastructure_query_start"

_PATTERN_NUMBER = re.compile(r"\b\d+\b")
_PATTERN_STRING = re.compile(r"'[^']*'")
_PATTERN_IDENTIFIER = re.compile(r'"[^"]*"')
_PATTERN_LIST = re.compile(r"\([^)]*\)")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class QueryEvent:
    """One executed statement as reported by the data access layer."""

    sql: str
    name: Optional[str] = None
    duration_ms: float = 0.0
    cached: bool = False
    connection_info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryStats:
    query_count: int = 0
    total_duration_ms: float = 0.0
    cached_count: int = 0
    slow_count: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, duration_ms: float, slow: bool, cached: bool) -> None:
        with self._lock:
            self.query_count += 1
            self.total_duration_ms += duration_ms
            if cached:
                self.cached_count += 1
            if slow:
                self.slow_count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_count": self.query_count,
            "total_duration_ms": round(self.total_duration_ms, 2),
            "slow_query_count": self.slow_count,
            "cached_query_count": self.cached_count,
        }


_query_stats_ctx: ContextVar[Optional[QueryStats]] = ContextVar("query_stats", default=None)


def _current_query_stats() -> QueryStats:
    stats = _query_stats_ctx.get()
    if stats is None:
        stats = QueryStats()
        _query_stats_ctx.set(stats)
    return stats


def reset_query_stats() -> QueryStats:
    """Start fresh counters; called at the start of each request and job."""
    stats = QueryStats()
    _query_stats_ctx.set(stats)
    return stats


def query_stats() -> Dict[str, Any]:
    return _current_query_stats().to_dict()


def query_pattern(sql: str) -> str:
    """Reduce a statement to its shape by stripping literal values."""
    pattern = _PATTERN_NUMBER.sub("N", sql)
    pattern = _PATTERN_STRING.sub("'?'", pattern)
    pattern = _PATTERN_IDENTIFIER.sub('"?"', pattern)
    pattern = _PATTERN_LIST.sub("(?)", pattern)
    return _WHITESPACE.sub(" ", pattern).strip()


class DatabaseInstrumentation:
    """
    Subscribes to engine events and reports every statement.

    Args:
        monitor: Receives each statement through track_database_query
        logger: Used for repeated-query warnings and pool status
        detect_repeated_queries: Enable N+1 detection (normally development only)
    """

    def __init__(
        self,
        monitor: PerformanceMonitor,
        logger: StructuredLogger,
        detect_repeated_queries: bool = False,
        repeat_threshold: int = REPEATED_QUERY_THRESHOLD,
    ):
        self.monitor = monitor
        self.logger = logger
        self.detect_repeated_queries = detect_repeated_queries
        self.repeat_threshold = repeat_threshold
        self._query_patterns: Counter = Counter()
        self._patterns_lock = threading.Lock()

    def handle_query(self, query: QueryEvent) -> None:
        if is_internal_statement(query.sql):
            return

        slow = self.monitor.track_database_query(
            query.sql,
            query.name,
            query.duration_ms,
            {**query.connection_info, "cached": query.cached},
        )
        if slow is None:
            return

        _current_query_stats().record(query.duration_ms, slow, query.cached)

        if self.detect_repeated_queries:
            self._detect_repeated_query(query)

    def _detect_repeated_query(self, query: QueryEvent) -> None:
        if extract_operation(query.sql) != "select":
            return
        # Workers legitimately loop over records
        if get_context_field("worker"):
            return

        pattern = query_pattern(query.sql)
        with self._patterns_lock:
            self._query_patterns[pattern] += 1
            count = self._query_patterns[pattern]
            if len(self._query_patterns) > MAX_TRACKED_PATTERNS:
                self._query_patterns.clear()

        if count > self.repeat_threshold:
            self.logger.warn(
                "Potential N+1 query detected",
                {
                    "event": "repeated_query",
                    "pattern": pattern[:200],
                    "count": count,
                    "name": query.name or "SQL",
                },
            )

    def reset_patterns(self) -> None:
        with self._patterns_lock:
            self._query_patterns.clear()

    # SQLAlchemy integration

    def install(self, engine: Any) -> Engine:
        """
        Subscribe to cursor events on an Engine (or AsyncEngine).

        Installing twice on the same engine is a no-op.
        """
        sync_engine = getattr(engine, "sync_engine", engine)
        if event.contains(sync_engine, "before_cursor_execute", self._before_cursor_execute):
            return sync_engine

        event.listen(sync_engine, "before_cursor_execute", self._before_cursor_execute)
        event.listen(sync_engine, "after_cursor_execute", self._after_cursor_execute)
        _internal_logger.info("Query instrumentation installed on %s", sync_engine.url.render_as_string())
        return sync_engine

    def uninstall(self, engine: Any) -> None:
        sync_engine = getattr(engine, "sync_engine", engine)
        if event.contains(sync_engine, "before_cursor_execute", self._before_cursor_execute):
            event.remove(sync_engine, "before_cursor_execute", self._before_cursor_execute)
            event.remove(sync_engine, "after_cursor_execute", self._after_cursor_execute)

    def _before_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault(_START_TIMES_KEY, []).append(time.perf_counter())

    def _after_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        start_times = conn.info.get(_START_TIMES_KEY)
        if not start_times:
            return
        duration_ms = (time.perf_counter() - start_times.pop()) * 1000

        try:
            self.handle_query(
                QueryEvent(
                    sql=statement,
                    name="SQL",
                    duration_ms=duration_ms,
                    connection_info={
                        "database": conn.engine.url.database,
                        "adapter": conn.engine.dialect.name,
                        "executemany": bool(executemany),
                        "in_transaction": conn.in_transaction(),
                    },
                )
            )
        except Exception as e:
            # Never break the caller's query
            _internal_logger.warning("Query instrumentation failed: %s", e)

    def start_pool_monitor(self, engine: Any, interval: float = 30.0) -> "PoolMonitor":
        monitor = PoolMonitor(getattr(engine, "sync_engine", engine), self.logger, interval)
        monitor.start()
        return monitor


class PoolMonitor(threading.Thread):
    """Daemon thread that samples connection pool usage every ``interval`` seconds."""

    def __init__(self, engine: Engine, logger: StructuredLogger, interval: float = 30.0):
        super().__init__(name="db-pool-monitor", daemon=True)
        self.engine = engine
        self.logger = logger
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.sample()
            except Exception as e:
                self.logger.error("Connection pool monitoring error", {"error": str(e)})

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout)

    def sample(self) -> Optional[Dict[str, Any]]:
        """
        Log one pool snapshot.

        Returns:
            The pool stats, or None when the pool does not expose sizing (e.g. SQLite)
        """
        pool = self.engine.pool
        if not all(hasattr(pool, attr) for attr in ("size", "checkedin", "checkedout", "overflow")):
            return None

        stats = {
            "pool_class": type(pool).__name__,
            "size": pool.size(),
            "checked_in": pool.checkedin(),
            "checked_out": pool.checkedout(),
            "overflow": pool.overflow(),
        }
        # No idle connection and nothing left to open means callers are queueing
        stats["exhausted"] = stats["checked_in"] == 0 and stats["checked_out"] >= stats["size"]

        db_connection_pool_size.set(stats["size"])
        db_connection_pool_checked_out.set(stats["checked_out"])
        db_connection_pool_overflow.set(max(stats["overflow"], 0))

        metadata = {"metric_type": "connection_pool", "pool_stats": stats}
        if stats["overflow"] > 0 or stats["exhausted"]:
            self.logger.warn("Connection pool issues detected", metadata)
        else:
            self.logger.debug("Connection pool status", metadata)
        return stats
