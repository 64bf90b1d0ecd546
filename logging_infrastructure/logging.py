"""
Structured logging with correlation IDs, redaction and JSON formatting.

Usage:
    from logging_infrastructure import get_logger

    logger = get_logger()
    logger.info("User action", {
        "user_id": 123,
        "action": "create_row",
        "resource_id": "row-456"
    })
    logger.debug(lambda: f"expensive {compute()}")  # only evaluated when enabled
"""

import logging
import os
import socket
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, IO, Iterator, Mapping, Optional, Union

from pythonjsonlogger import jsonlogger

from .correlation import get_context, get_correlation_id
from .redaction import redact

_internal_logger = logging.getLogger(__name__)

LEVELS: Dict[str, int] = {"debug": 0, "info": 1, "warn": 2, "error": 3, "fatal": 4}

# Structured level -> stdlib level used on the wire
_STDLIB_LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}

_LEVEL_ALIASES: Dict[str, str] = {
    "warning": "warn",
    "critical": "fatal",
    "unknown": "fatal",
}

# Stdlib ordinals and the 0-5 rank scale (5 == unknown)
_SEVERITY_MAPPING: Dict[int, str] = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "fatal",
    0: "debug",
    1: "info",
    2: "warn",
    3: "error",
    4: "fatal",
    5: "fatal",
}

Message = Union[None, str, Callable[[], Any]]

_METADATA_ATTR = "structured_metadata"
_LEVEL_ATTR = "structured_level"

# Enrichment fields that caller metadata may not overwrite
RESERVED_FIELDS = frozenset(
    {"timestamp", "level", "message", "correlation_id", "environment", "service", "version", "hostname", "pid", "thread_id"}
)


def normalize_level(level: Union[str, int, None], default: str = "info") -> str:
    """Map a level name or ordinal onto one of debug/info/warn/error/fatal."""
    if level is None:
        return default
    if isinstance(level, bool):
        return default
    if isinstance(level, int):
        return _SEVERITY_MAPPING.get(level, default)
    name = str(level).strip().lower()
    name = _LEVEL_ALIASES.get(name, name)
    return name if name in LEVELS else default


class StructuredJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter producing one self-describing record per line."""

    def __init__(
        self,
        *args: Any,
        environment: str = "development",
        service: str = "app",
        version: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.environment = environment
        self.service = service
        self.version = version
        self.hostname = socket.gethostname()

    def add_fields(
        self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        metadata = getattr(record, _METADATA_ATTR, None) or {}
        exc_info = log_record.get("exc_info")

        context = get_context()
        enrichment = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": getattr(record, _LEVEL_ATTR, record.levelname.lower()),
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
            "user_id": context.get("user_id"),
            "session_id": context.get("session_id"),
            "environment": self.environment,
            "service": self.service,
            "version": self.version,
            "hostname": self.hostname,
            "pid": record.process or os.getpid(),
            "thread_id": record.thread,
        }

        # Enrichment first, then caller metadata; stdlib record extras are dropped
        log_record.clear()
        log_record.update({k: v for k, v in enrichment.items() if v is not None})
        log_record.update(
            {k: v for k, v in metadata.items() if v is not None and k not in RESERVED_FIELDS}
        )
        if exc_info:
            log_record["exception"] = exc_info


class StructuredLogger:
    """
    Leveled logger emitting redacted JSON lines to a sink.

    Levels rank debug < info < warn < error < fatal; a record is written iff its
    rank is at least the configured minimum.

    Args:
        level: Minimum level name or ordinal (default: info)
        output: Writable text stream used as the sink (default: stdout)
        environment: Value of the ``environment`` field
        service: Value of the ``service`` field
        version: Value of the ``version`` field
    """

    _instances = 0
    _instances_lock = threading.Lock()

    def __init__(
        self,
        level: Union[str, int] = "info",
        output: Optional[IO[str]] = None,
        environment: str = "development",
        service: str = "app",
        version: Optional[str] = "1.0.0",
    ):
        self.output = output if output is not None else sys.stdout
        self.environment = environment
        self.service = service
        self._level = normalize_level(level)
        self._current_rank = LEVELS[self._level]

        with StructuredLogger._instances_lock:
            StructuredLogger._instances += 1
            name = f"logging_infrastructure.structured.{StructuredLogger._instances}"

        self._handler = logging.StreamHandler(self.output)
        self._handler.setFormatter(
            StructuredJsonFormatter(
                "%(message)s", environment=environment, service=service, version=version
            )
        )
        self._logger = logging.getLogger(name)
        self._logger.handlers = [self._handler]
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False

    @property
    def level(self) -> str:
        return self._level

    @level.setter
    def level(self, value: Union[str, int]) -> None:
        self._level = normalize_level(value)
        self._current_rank = LEVELS[self._level]

    # Level predicates

    def is_enabled(self, level: str) -> bool:
        return LEVELS[level] >= self._current_rank

    def is_debug(self) -> bool:
        return self.is_enabled("debug")

    def is_info(self) -> bool:
        return self.is_enabled("info")

    def is_warn(self) -> bool:
        return self.is_enabled("warn")

    def is_error(self) -> bool:
        return self.is_enabled("error")

    def is_fatal(self) -> bool:
        return self.is_enabled("fatal")

    # Entry points

    def debug(self, message: Message = None, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.log("debug", message, metadata)

    def info(self, message: Message = None, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.log("info", message, metadata)

    def warn(self, message: Message = None, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.log("warn", message, metadata)

    warning = warn

    def error(self, message: Message = None, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.log("error", message, metadata)

    def fatal(self, message: Message = None, metadata: Optional[Mapping[str, Any]] = None) -> None:
        self.log("fatal", message, metadata)

    def unknown(self, message: Message = None) -> None:
        self.log("fatal", message if message is not None else "Unknown")

    def add(self, severity: Union[str, int, None], message: Message = None, progname: Optional[str] = None) -> None:
        """Log with a severity given as a stdlib ordinal, a 0-5 rank or a level name."""
        if message is None and progname is not None:
            message = progname
        self.log(normalize_level(severity), message)

    @contextmanager
    def silence(self, temporary_level: Union[str, int] = "error") -> Iterator["StructuredLogger"]:
        """Temporarily raise the minimum level; the previous level is restored on exit."""
        previous = self._level
        self.level = normalize_level(temporary_level, default="error")
        try:
            yield self
        finally:
            self.level = previous

    def close(self) -> None:
        self._handler.flush()
        if self.output not in (sys.stdout, sys.stderr) and hasattr(self.output, "close"):
            self.output.close()

    def log(self, level: Union[str, int], message: Message = None, metadata: Optional[Mapping[str, Any]] = None) -> None:
        level = normalize_level(level)
        if not self.is_enabled(level):
            return

        if callable(message):
            try:
                message = message()
            except Exception as e:
                _internal_logger.debug("Deferred log message failed: %s", e)
                message = "[message unavailable]"
        text = "" if message is None else str(message)

        try:
            safe_metadata = redact(metadata) if metadata else {}
        except Exception as e:
            # Redaction must never block the record itself
            safe_metadata = {"metadata_error": type(e).__name__}

        try:
            self._logger.log(
                _STDLIB_LEVELS[level],
                "%s",
                text,
                extra={_METADATA_ATTR: safe_metadata, _LEVEL_ATTR: level},
            )
        except Exception as e:
            _internal_logger.warning("Structured log emission failed: %s", e)


def setup_logging(level: str = "info") -> None:
    """
    Configure stdlib logging for the library's own diagnostics.

    Application records go through StructuredLogger; this only routes
    internal warnings and quiets noisy third-party loggers.
    """
    root_logger = logging.getLogger("logging_infrastructure")
    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if normalize_level(level) == "debug" else logging.INFO)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
