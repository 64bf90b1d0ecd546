"""Tests for the structured JSON logger."""

import io
import json
import logging
import threading

import pytest

from logging_infrastructure.correlation import bind_context, request_scope
from logging_infrastructure.logging import StructuredLogger, normalize_level


class TestRecordShape:
    def test_one_json_object_per_line(self, logger, log_output):
        logger.info("first")
        logger.info("second")

        lines = log_output.getvalue().splitlines()
        assert len(lines) == 2
        assert [json.loads(line)["message"] for line in lines] == ["first", "second"]

    def test_enrichment_fields(self, logger, logs):
        logger.info("User action", {"action": "create_row"})

        record = logs()[0]
        assert record["level"] == "info"
        assert record["message"] == "User action"
        assert record["action"] == "create_row"
        assert record["environment"] == "test"
        assert record["service"] == "test-service"
        assert record["version"] == "9.9.9"
        assert record["timestamp"].endswith("+00:00")
        for field in ("hostname", "pid", "thread_id"):
            assert field in record

    def test_null_enrichment_is_omitted(self, logger, logs):
        logger.info("no context")

        record = logs()[0]
        assert "correlation_id" not in record
        assert "user_id" not in record

    def test_null_metadata_is_omitted(self, logger, logs):
        logger.warn("Security event: login_failed", {"event": "security_event", "user_id": None, "detail": {"ip": None}})

        record = logs()[0]
        assert "user_id" not in record
        assert record["detail"] == {"ip": None}

    def test_metadata_cannot_overwrite_enrichment(self, logger, logs):
        with request_scope("req-reserved-1"):
            logger.info(
                "real message",
                {"level": "debug", "message": "forged", "timestamp": "yesterday", "correlation_id": "other", "action": "x"},
            )

        record = logs()[0]
        assert record["level"] == "info"
        assert record["message"] == "real message"
        assert record["timestamp"] != "yesterday"
        assert record["correlation_id"] == "req-reserved-1"
        assert record["action"] == "x"

    def test_context_enrichment(self, logger, logs):
        with request_scope("req-ctx-1", user_id=42, session_id="sess-1"):
            logger.info("with context")

        record = logs()[0]
        assert record["correlation_id"] == "req-ctx-1"
        assert record["user_id"] == 42
        assert record["session_id"] == "sess-1"

    def test_metadata_is_redacted(self, logger, logs):
        logger.info("login", {"email": "a@example.com", "password": "hunter2"})

        record = logs()[0]
        assert record["email"] == "a@example.com"
        assert record["password"] == "[REDACTED]"

    def test_metadata_redaction_does_not_touch_caller_dict(self, logger):
        metadata = {"token": "abc"}
        logger.info("call", metadata)
        assert metadata == {"token": "abc"}

    def test_nil_message(self, logger, logs):
        logger.info(None, {"event": "ping"})
        assert logs()[0]["message"] == ""


class TestLevels:
    def test_threshold(self, log_output, logs):
        structured = StructuredLogger(level="warn", output=log_output)
        structured.debug("d")
        structured.info("i")
        structured.warn("w")
        structured.error("e")
        structured.fatal("f")

        assert [r["level"] for r in logs()] == ["warn", "error", "fatal"]

    def test_predicates(self, log_output):
        structured = StructuredLogger(level="error", output=log_output)
        assert not structured.is_debug()
        assert not structured.is_warn()
        assert structured.is_error()
        assert structured.is_fatal()

    def test_deferred_message_not_evaluated_when_disabled(self, log_output):
        structured = StructuredLogger(level="info", output=log_output)
        calls = []
        structured.debug(lambda: calls.append("called") or "expensive")
        assert calls == []
        assert log_output.getvalue() == ""

    def test_deferred_message_evaluated_when_enabled(self, logger, logs):
        logger.debug(lambda: "computed")
        assert logs()[0]["message"] == "computed"

    def test_warning_alias(self, logger, logs):
        logger.warning("careful")
        assert logs()[0]["level"] == "warn"

    def test_silence_restores_previous_level(self, logger, logs):
        with logger.silence():
            logger.info("hidden")
            logger.error("shown")
        logger.info("visible again")

        assert [r["message"] for r in logs()] == ["shown", "visible again"]
        assert logger.level == "debug"

    def test_silence_restores_on_exception(self, logger):
        with pytest.raises(RuntimeError):
            with logger.silence("fatal"):
                raise RuntimeError("boom")
        assert logger.level == "debug"


class TestCompatibility:
    @pytest.mark.parametrize(
        "severity, expected",
        [
            (logging.DEBUG, "debug"),
            (logging.INFO, "info"),
            (logging.WARNING, "warn"),
            (logging.ERROR, "error"),
            (logging.CRITICAL, "fatal"),
            (0, "debug"),
            (3, "error"),
            (5, "fatal"),
            ("warning", "warn"),
            (99, "info"),
            ("bogus", "info"),
        ],
    )
    def test_normalize_level(self, severity, expected):
        assert normalize_level(severity) == expected

    def test_add(self, logger, logs):
        logger.add(logging.ERROR, "via add")
        logger.add(1, None, "from progname")

        records = logs()
        assert (records[0]["level"], records[0]["message"]) == ("error", "via add")
        assert (records[1]["level"], records[1]["message"]) == ("info", "from progname")

    def test_unknown(self, logger, logs):
        logger.unknown()
        record = logs()[0]
        assert record["level"] == "fatal"
        assert record["message"] == "Unknown"

    def test_close_keeps_stdout_open(self):
        import sys

        structured = StructuredLogger(output=sys.stdout)
        structured.close()
        assert not sys.stdout.closed

    def test_close_closes_file_sink(self):
        output = io.StringIO()
        structured = StructuredLogger(output=output)
        structured.close()
        assert output.closed


def test_concurrent_writes_produce_whole_lines(logger, log_output, logs):
    def worker(n):
        for i in range(50):
            bind_context(user_id=n)
            logger.info(f"thread {n} record {i}", {"payload": "lorem ipsum " * 20})

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    records = logs()
    assert len(records) == 400
    assert all(r["payload"] == "lorem ipsum " * 20 for r in records)


def test_context_isolated_per_thread(logger, logs):
    def worker(n):
        with request_scope(f"thread-{n}", user_id=n):
            logger.info("hello")

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted((r["correlation_id"], r["user_id"]) for r in logs()) == [
        (f"thread-{n}", n) for n in range(4)
    ]
