"""Tests for settings, process-wide wiring and alert transports."""

import io
import json

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from conftest import RecordingSink, parse_logs
from logging_infrastructure import runtime
from logging_infrastructure.alerts import AlertMessage, CallableAlertSink, WebhookAlertSink, severity_color
from logging_infrastructure.config import DEFAULT_EXCLUDED_PATHS, Settings
from logging_infrastructure.correlation import correlation_id_context
from logging_infrastructure.sentry_config import before_send_hook, forward_correlation_id, init_sentry

ENV_VARS = (
    "ENVIRONMENT",
    "LOG_LEVEL",
    "LOG_OUTPUT",
    "ALERT_WEBHOOK_URL",
    "SLOW_QUERY_THRESHOLD_MS",
    "LOG_EXCLUDED_PATHS",
    "DETECT_REPEATED_QUERIES",
    "SENTRY_DSN",
    "DEBUG",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return tmp_path / ".env"


@pytest.fixture
def runtime_output():
    output = io.StringIO()
    yield output
    runtime.shutdown()


class TestSettings:
    def test_development_defaults(self, clean_env):
        settings = Settings.from_env(dotenv_path=clean_env)

        assert settings.environment == "development"
        assert settings.log_level == "debug"
        assert settings.detect_repeated_queries is True
        assert settings.excluded_paths == DEFAULT_EXCLUDED_PATHS
        assert settings.alerts_enabled is False

    def test_production_from_env(self, clean_env, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "Production")
        monkeypatch.setenv("ALERT_WEBHOOK_URL", "https://hooks.example.com/alerts")
        monkeypatch.setenv("SLOW_QUERY_THRESHOLD_MS", "250")
        monkeypatch.setenv("LOG_EXCLUDED_PATHS", "/health, /internal")

        settings = Settings.from_env(dotenv_path=clean_env)

        assert settings.environment == "production"
        assert settings.log_level == "info"
        assert settings.alerts_enabled is True
        assert settings.alert_webhook_url == "https://hooks.example.com/alerts"
        assert settings.slow_query_threshold_ms == 250.0
        assert settings.excluded_paths == ("/health", "/internal")
        assert settings.detect_repeated_queries is False

    def test_test_environment_is_quiet(self, clean_env, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "test")
        assert Settings.from_env(dotenv_path=clean_env).log_level == "warn"

    def test_dotenv_file(self, clean_env, monkeypatch):
        clean_env.write_text("ENVIRONMENT=staging\nLOG_LEVEL=ERROR\n")
        settings = Settings.from_env(dotenv_path=clean_env)

        assert settings.environment == "staging"
        assert settings.log_level == "error"

    def test_invalid_number_falls_back(self, clean_env, monkeypatch):
        monkeypatch.setenv("SLOW_QUERY_THRESHOLD_MS", "fast")
        assert Settings.from_env(dotenv_path=clean_env).slow_query_threshold_ms == 100.0


class TestRuntime:
    def test_install_logs_startup_and_instruments_requests(self, runtime_output):
        runtime.configure(
            Settings(environment="test", log_level="debug", pool_monitor_interval=0),
            output=runtime_output,
        )
        engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
        app = FastAPI()

        @app.get("/ping")
        async def ping():
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            runtime.get_logger().info("pong")
            return {"ok": True}

        runtime.install(app, engine=engine)
        response = TestClient(app).get("/ping", headers={"X-Correlation-ID": "runtime-req-1"})

        assert response.headers["X-Correlation-ID"] == "runtime-req-1"
        records = parse_logs(runtime_output)
        started = records[0]
        assert started["event"] == "application_started"
        assert started["environment"] == "test"
        assert started["alerts_enabled"] is False
        assert started["sentry_enabled"] is False

        completed = [r for r in records if r.get("event") == "request_completed"][0]
        assert completed["correlation_id"] == "runtime-req-1"
        assert completed["database"]["query_count"] == 1
        assert [r["correlation_id"] for r in records if r["message"] == "pong"] == ["runtime-req-1"]

    def test_accessors_share_one_runtime(self, runtime_output):
        active = runtime.configure(Settings(environment="test"), output=runtime_output)

        assert runtime.get_runtime() is active
        assert runtime.get_logger() is active.logger
        assert runtime.get_error_handler().logger is active.logger
        assert runtime.get_performance_monitor() is active.monitor
        assert runtime.get_job_instrumentation().error_handler is active.error_handler

    def test_reconfigure_replaces_runtime(self, runtime_output):
        first = runtime.configure(Settings(environment="test"), output=runtime_output)
        second = runtime.configure(Settings(environment="test"), output=runtime_output)
        assert runtime.get_runtime() is second
        assert second is not first

    def test_alerts_are_dispatched_off_thread(self, runtime_output):
        sink = RecordingSink()
        active = runtime.configure(Settings(environment="production"), output=runtime_output, alert_sink=sink)

        with correlation_id_context("runtime-alert-1"):
            record = runtime.get_error_handler().handle_exception(ConnectionError("upstream down"))

        active.alert_executor.shutdown(wait=True)
        assert record.alert_sent is True
        assert len(sink.messages) == 1
        assert sink.messages[0].field_value("Correlation ID") == "runtime-alert-1"

    def test_file_output(self, tmp_path):
        log_file = tmp_path / "app.log"
        runtime.configure(Settings(environment="test", log_level="info", log_output=str(log_file)))
        runtime.get_logger().info("written to file")
        runtime.shutdown()

        records = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert records[0]["message"] == "written to file"


class TestAlertSinks:
    def test_payload(self):
        message = AlertMessage(text="alert", title="ConnectionError", color=severity_color("high"), body="down")
        message.add_field("Severity", "High").add_field("User ID", None)

        attachment = message.to_payload()["attachments"][0]
        assert attachment["color"] == "#ff9900"
        assert attachment["fields"] == [
            {"title": "Severity", "value": "High", "short": True},
            {"title": "User ID", "value": "N/A", "short": True},
        ]
        assert message.field_value("Missing") is None

    def test_long_field_values_are_truncated(self):
        message = AlertMessage(text="alert", title="t").add_field("Details", "a" * 600)
        assert len(message.field_value("Details")) == 500
        assert message.field_value("Details").endswith("...")

    def test_unknown_severity_color(self):
        assert severity_color("low") == "#cccccc"
        assert severity_color(None) == "#cccccc"

    def test_webhook_posts_payload(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text="ok")

        client = httpx.Client(transport=httpx.MockTransport(handler))
        sink = WebhookAlertSink("https://hooks.example.com/alerts", client=client)
        sink.send(AlertMessage(text="alert", title="ConnectionError"))

        assert requests[0].url == "https://hooks.example.com/alerts"
        assert json.loads(requests[0].content)["attachments"][0]["title"] == "ConnectionError"

    def test_webhook_failure_raises(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        sink = WebhookAlertSink("https://hooks.example.com/alerts", client=client)

        with pytest.raises(httpx.HTTPStatusError):
            sink.send(AlertMessage(text="alert", title="t"))

    def test_callable_sink(self):
        received = []
        CallableAlertSink(received.append).send(AlertMessage(text="alert", title="t"))
        assert received[0].title == "t"


class TestSentry:
    def test_disabled_without_dsn(self):
        assert init_sentry(Settings()) is False

    def test_disabled_by_flag(self):
        assert init_sentry(Settings(sentry_dsn="https://key@sentry.example.com/1", sentry_enable=False)) is False

    def test_forward_is_noop_without_sentry(self):
        forward_correlation_id("req-sentry-1")

    def test_events_are_tagged(self):
        with correlation_id_context("req-sentry-2"):
            event = before_send_hook({"message": "boom"}, {})
        assert event["tags"]["correlation_id"] == "req-sentry-2"

    def test_client_disconnects_are_dropped(self):
        event = {"exception": {"values": [{"type": "ClientDisconnect", "value": "Client disconnected"}]}}
        assert before_send_hook(event, {}) is None
