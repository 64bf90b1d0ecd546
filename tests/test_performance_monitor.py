"""Tests for performance metric formatting and thresholds."""

import asyncio

import httpx
import pytest

from logging_infrastructure.correlation import request_scope
from logging_infrastructure.performance import (
    INVALID_URL,
    PerformanceMonitor,
    cache_stats,
    extract_operation,
    extract_table_name,
    instrument_httpx,
    is_internal_statement,
    sanitize_cache_key,
    sanitize_sql,
    sanitize_url,
)


class TestSqlHelpers:
    def test_sanitize_sql(self):
        sql = "SELECT *   FROM users\n WHERE id = 123456 AND pin = 123 AND email = 'a@example.com' LIMIT 10"
        assert sanitize_sql(sql) == (
            "SELECT * FROM users WHERE id = [NUMBER] AND pin = [NUMBER] AND email = '[VALUE]' LIMIT [NUMBER]"
        )

    def test_sanitize_sql_keeps_identifiers_with_digits(self):
        assert sanitize_sql("SELECT col_2 FROM table1 WHERE score > 4.5") == (
            "SELECT col_2 FROM table1 WHERE score > [NUMBER]"
        )

    def test_sanitize_sql_truncates(self):
        sql = "SELECT " + ", ".join(f"col_{i}" for i in range(200)) + " FROM wide"
        sanitized = sanitize_sql(sql)
        assert len(sanitized) == 500
        assert sanitized.endswith("...")

    @pytest.mark.parametrize(
        "sql, operation, table",
        [
            ("SELECT id FROM users WHERE id = 1", "select", "users"),
            ('SELECT "rows".id FROM "rows"', "select", "rows"),
            ("INSERT INTO bids (id) VALUES (1)", "insert", "bids"),
            ("UPDATE sellers SET name = 'x'", "update", "sellers"),
            ("DELETE FROM sessions WHERE id = 4", "delete", "sessions"),
            ("CREATE TABLE things (id int)", "create", "unknown"),
            ("WITH recent AS (SELECT 1) SELECT * FROM recent", "select", "recent"),
            ("VACUUM", "other", "unknown"),
        ],
    )
    def test_operation_and_table(self, sql, operation, table):
        assert extract_operation(sql) == operation
        assert extract_table_name(sql) == table

    @pytest.mark.parametrize(
        "sql",
        [
            "",
            "   ",
            "BEGIN",
            "commit",
            "ROLLBACK TO SAVEPOINT sa_1",
            "RELEASE SAVEPOINT sa_1",
            "SELECT version_num FROM alembic_version",
            "SELECT * FROM information_schema.tables",
            "SELECT typname FROM pg_catalog.pg_type",
            "PRAGMA table_info(users)",
        ],
    )
    def test_internal_statements(self, sql):
        assert is_internal_statement(sql)

    def test_regular_statement_is_not_internal(self):
        assert not is_internal_statement("SELECT * FROM users WHERE id = $1")


class TestTrackDatabaseQuery:
    def test_fast_query_logs_debug(self, monitor, logs):
        slow = monitor.track_database_query("SELECT * FROM users WHERE id = 1", "User Load", 12.3456)

        record = logs()[0]
        assert slow is False
        assert record["level"] == "debug"
        assert record["message"] == "Database query executed"
        assert record["metric_type"] == "database_query"
        assert record["metric_data"]["duration_ms"] == 12.35
        assert record["metric_data"]["slow"] is False
        assert record["metric_data"]["table"] == "users"
        assert record["metric_data"]["operation"] == "select"
        assert record["metric_data"]["name"] == "User Load"

    def test_slow_query_logs_warn(self, monitor, logs):
        assert monitor.track_database_query("SELECT * FROM bids", None, 150.0) is True

        record = logs()[0]
        assert record["level"] == "warn"
        assert record["metric_data"]["slow"] is True
        assert record["metric_data"]["name"] == "SQL"

    def test_custom_threshold(self, logger, logs):
        monitor = PerformanceMonitor(logger, slow_query_threshold_ms=10)
        monitor.track_database_query("SELECT * FROM bids", None, 11.0)
        assert logs()[0]["level"] == "warn"

    def test_skipped_statement_emits_nothing(self, monitor, log_output):
        assert monitor.track_database_query("BEGIN", None, 1.0) is None
        assert monitor.track_database_query("", None, 1.0) is None
        assert log_output.getvalue() == ""

    def test_connection_info_keeps_plain_values(self, monitor, logs):
        monitor.track_database_query(
            "SELECT * FROM rows", None, 1.0, {"adapter": "postgresql", "pool": object()}
        )
        data = logs()[0]["metric_data"]
        assert data["adapter"] == "postgresql"
        assert "pool" not in data


class TestTrackCacheOperation:
    def test_hit_and_miss(self, monitor, logs):
        monitor.track_cache_operation("read", "rows:42", True, 0.5, store="redis")
        monitor.track_cache_operation("read", "rows:43", False, 0.7)

        records = logs()
        assert records[0]["level"] == "debug"
        assert records[0]["metric_type"] == "cache_operation"
        assert records[0]["metric_data"]["key"] == "rows:42"
        assert records[0]["metric_data"]["cache_store"] == "redis"
        assert cache_stats() == {"hits": 1, "misses": 1}

    def test_sensitive_key(self):
        assert sanitize_cache_key("user:1:password_reset") == "[REDACTED]"
        assert sanitize_cache_key("session_token:abc") == "[REDACTED]"

    def test_long_key_truncated(self):
        assert len(sanitize_cache_key("k" * 500)) == 100


class TestTrackExternalApiCall:
    def test_fast_call_logs_info(self, monitor, logs):
        monitor.track_external_api_call(
            "https://api.example.com/v1/items?api_key=abc123&q=shoes",
            "get",
            250.0,
            200,
            response_body=b"12345",
        )

        record = logs()[0]
        data = record["metric_data"]
        assert record["level"] == "info"
        assert record["metric_type"] == "external_api_call"
        assert data["url"] == "https://api.example.com/v1/items?api_key=[REDACTED]&q=shoes"
        assert data["method"] == "GET"
        assert data["host"] == "api.example.com"
        assert data["status"] == 200
        assert data["slow"] is False
        assert data["response_size"] == 5
        assert "request_size" not in data

    def test_slow_call_logs_warn(self, monitor, logs):
        monitor.track_external_api_call("https://api.example.com/slow", "POST", 1500.0, 504)
        assert logs()[0]["level"] == "warn"

    def test_invalid_url(self):
        assert sanitize_url("http://[::1") == INVALID_URL

    def test_url_without_query_is_unchanged(self):
        assert sanitize_url("https://example.com/a/b") == "https://example.com/a/b"


class TestTrackMemoryAndJobs:
    def test_memory_usage(self, monitor, logs):
        data = monitor.track_memory_usage()

        record = logs()[0]
        assert record["metric_type"] == "memory_usage"
        assert data["usage_mb"] > 0
        assert record["level"] == ("warn" if data["high_usage"] else "debug")
        assert isinstance(data["gc_collections"], list)

    def test_high_memory_logs_warn(self, logger, logs):
        PerformanceMonitor(logger, high_memory_threshold_mb=0.001).track_memory_usage()
        assert logs()[0]["level"] == "warn"

    def test_job_success(self, monitor, logs):
        monitor.start_tracking()
        monitor.track_job_performance("ExportJob", 120.0, "success")

        record = logs()[0]
        assert record["level"] == "info"
        assert record["metric_type"] == "background_job"
        assert record["metric_data"]["job_class"] == "ExportJob"
        assert record["metric_data"]["memory_before_mb"] is not None
        assert monitor.end_tracking() is not None

    def test_job_failure(self, monitor, logs):
        monitor.track_job_performance("ExportJob", 5.0, "failed", ValueError("bad row"))

        record = logs()[0]
        assert record["level"] == "error"
        assert record["metric_data"]["error"] == {"class": "ValueError", "message": "bad row"}


class TestStopwatch:
    def test_end_without_start(self, monitor):
        assert monitor.end_tracking() is None

    def test_start_and_end(self, monitor):
        monitor.start_tracking()
        elapsed = monitor.end_tracking()
        assert elapsed is not None and elapsed >= 0
        assert monitor.end_tracking() is None

    @pytest.mark.asyncio
    async def test_concurrent_tasks_time_independently(self, monitor):
        async def measure(delay):
            monitor.start_tracking()
            await asyncio.sleep(delay)
            return monitor.end_tracking()

        slow, fast = await asyncio.gather(measure(0.05), measure(0))

        assert slow >= 40
        assert fast is not None and fast < slow

    @pytest.mark.asyncio
    async def test_child_task_does_not_end_parent_stopwatch(self, monitor):
        monitor.start_tracking()

        async def child():
            return monitor.end_tracking()

        assert await asyncio.create_task(child()) is not None
        assert monitor.end_tracking() is not None


class TestInstrumentHttpx:
    def test_sync_client(self, monitor, logs):
        seen_headers = {}

        def handler(request):
            seen_headers["correlation_id"] = request.headers.get("X-Correlation-ID")
            return httpx.Response(200, json={"ok": True})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        instrument_httpx(client, monitor)

        with request_scope("outbound-1"):
            response = client.get("https://api.example.com/items?token=abc")

        assert response.status_code == 200
        assert seen_headers["correlation_id"] == "outbound-1"
        record = logs()[-1]
        assert record["message"] == "External API call completed"
        assert record["metric_data"]["url"] == "https://api.example.com/items?token=[REDACTED]"
        assert record["metric_data"]["status"] == 200
        assert record["correlation_id"] == "outbound-1"

    @pytest.mark.asyncio
    async def test_async_client(self, monitor, logs):
        async def handler(request):
            return httpx.Response(201)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            instrument_httpx(client, monitor)
            await client.post("https://api.example.com/rows", json={"name": "x"})

        data = logs()[-1]["metric_data"]
        assert data["method"] == "POST"
        assert data["status"] == 201
        assert data["request_size"] > 0
