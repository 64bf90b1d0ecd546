import io
import json
import os
import sys

import pytest

# Add parent directory to path to allow importing the package without installing it
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from logging_infrastructure.correlation import clear_context
from logging_infrastructure.database import reset_query_stats
from logging_infrastructure.errors import ErrorHandler, reset_error_stats
from logging_infrastructure.logging import StructuredLogger
from logging_infrastructure.performance import PerformanceMonitor, _tracking_ctx, reset_cache_stats


def parse_logs(output):
    """Parse every JSON line written to a StringIO sink."""
    return [json.loads(line) for line in output.getvalue().splitlines() if line.strip()]


@pytest.fixture(autouse=True)
def clean_context():
    clear_context()
    reset_query_stats()
    reset_cache_stats()
    reset_error_stats()
    _tracking_ctx.set(None)
    yield
    clear_context()
    _tracking_ctx.set(None)


@pytest.fixture
def log_output():
    return io.StringIO()


@pytest.fixture
def logger(log_output):
    structured = StructuredLogger(
        level="debug",
        output=log_output,
        environment="test",
        service="test-service",
        version="9.9.9",
    )
    yield structured
    structured.close()


@pytest.fixture
def logs(log_output):
    return lambda: parse_logs(log_output)


@pytest.fixture
def monitor(logger):
    return PerformanceMonitor(logger)


class RecordingSink:
    """Alert sink that keeps every message it receives."""

    def __init__(self):
        self.messages = []

    def send(self, message):
        self.messages.append(message)


@pytest.fixture
def alert_sink():
    return RecordingSink()


@pytest.fixture
def error_handler(logger, alert_sink):
    return ErrorHandler(logger, alert_sink=alert_sink, environment="production")
