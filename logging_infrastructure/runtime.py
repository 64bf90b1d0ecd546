"""
Process-wide wiring of the logging infrastructure.

Usage:
    from fastapi import FastAPI
    from logging_infrastructure import runtime

    app = FastAPI()
    runtime.configure()
    runtime.install(app, engine=engine)
"""

import platform
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, IO, List, Optional

from .alerts import AlertSink, WebhookAlertSink
from .config import Settings
from .database import DatabaseInstrumentation, PoolMonitor
from .errors import ErrorHandler
from .jobs import JobInstrumentation
from .logging import StructuredLogger, setup_logging
from .middleware import ObservabilityMiddleware
from .performance import PerformanceMonitor
from .sentry_config import init_sentry


class Runtime:
    """Holds the configured components for one process."""

    def __init__(
        self,
        settings: Settings,
        output: Optional[IO[str]] = None,
        alert_sink: Optional[AlertSink] = None,
    ):
        self.settings = settings
        self._owns_output = output is None and settings.log_output not in ("stdout", "stderr")
        self.logger = StructuredLogger(
            level=settings.log_level,
            output=output if output is not None else _open_output(settings.log_output),
            environment=settings.environment,
            service=settings.service,
            version=settings.version,
        )
        self.monitor = PerformanceMonitor(
            self.logger,
            slow_query_threshold_ms=settings.slow_query_threshold_ms,
            slow_api_threshold_ms=settings.slow_api_threshold_ms,
            high_memory_threshold_mb=settings.high_memory_threshold_mb,
        )

        if alert_sink is None and settings.alert_webhook_url:
            alert_sink = WebhookAlertSink(settings.alert_webhook_url)
        self.alert_executor = (
            ThreadPoolExecutor(max_workers=2, thread_name_prefix="alerts") if alert_sink is not None else None
        )
        self.error_handler = ErrorHandler(
            self.logger,
            alert_sink=alert_sink,
            environment=settings.environment,
            cooldown_seconds=settings.alert_cooldown_seconds,
            executor=self.alert_executor,
        )
        self.job_instrumentation = JobInstrumentation(self.logger, self.monitor, self.error_handler)
        self.database = DatabaseInstrumentation(
            self.monitor,
            self.logger,
            detect_repeated_queries=settings.detect_repeated_queries,
        )
        self.pool_monitors: List[PoolMonitor] = []
        self.sentry_enabled = False

    def shutdown(self) -> None:
        for monitor in self.pool_monitors:
            monitor.stop(timeout=1.0)
        self.pool_monitors.clear()
        if self.alert_executor is not None:
            self.alert_executor.shutdown(wait=False)
        if self._owns_output:
            self.logger.close()


def _open_output(log_output: str) -> IO[str]:
    if log_output == "stdout":
        return sys.stdout
    if log_output == "stderr":
        return sys.stderr
    return open(log_output, "a", buffering=1, encoding="utf-8")


_runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def configure(
    settings: Optional[Settings] = None,
    output: Optional[IO[str]] = None,
    alert_sink: Optional[AlertSink] = None,
) -> Runtime:
    """
    Build the process-wide components, replacing any previous configuration.

    Args:
        settings: Configuration (default: Settings.from_env())
        output: Overrides settings.log_output with an open text stream
        alert_sink: Overrides the webhook sink built from settings

    Returns:
        The active Runtime
    """
    global _runtime

    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    with _runtime_lock:
        if _runtime is not None:
            _runtime.shutdown()
        _runtime = Runtime(settings, output=output, alert_sink=alert_sink)
        _runtime.sentry_enabled = init_sentry(settings)
        return _runtime


def get_runtime() -> Runtime:
    if _runtime is None:
        return configure()
    return _runtime


def get_logger() -> StructuredLogger:
    return get_runtime().logger


def get_error_handler() -> ErrorHandler:
    return get_runtime().error_handler


def get_performance_monitor() -> PerformanceMonitor:
    return get_runtime().monitor


def get_job_instrumentation() -> JobInstrumentation:
    return get_runtime().job_instrumentation


def install(app: Any, engine: Any = None) -> Runtime:
    """
    Attach request and database instrumentation to an application.

    Args:
        app: FastAPI/Starlette application
        engine: Optional SQLAlchemy Engine or AsyncEngine to instrument
    """
    runtime = get_runtime()
    settings = runtime.settings

    app.add_middleware(
        ObservabilityMiddleware,
        logger=runtime.logger,
        error_handler=runtime.error_handler,
        excluded_paths=settings.excluded_paths,
        slow_request_threshold_ms=settings.slow_request_threshold_ms,
    )

    if engine is not None:
        runtime.database.install(engine)
        if settings.pool_monitor_interval > 0:
            runtime.pool_monitors.append(
                runtime.database.start_pool_monitor(engine, interval=settings.pool_monitor_interval)
            )

    runtime.logger.info(
        "Logging infrastructure initialized",
        {
            "event": "application_started",
            "environment": settings.environment,
            "version": settings.version,
            "python_version": platform.python_version(),
            "log_level": runtime.logger.level,
            "alerts_enabled": settings.alerts_enabled and runtime.error_handler.alert_sink is not None,
            "sentry_enabled": runtime.sentry_enabled,
        },
    )
    return runtime


def shutdown() -> None:
    global _runtime

    with _runtime_lock:
        if _runtime is not None:
            _runtime.shutdown()
            _runtime = None
