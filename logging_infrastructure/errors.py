"""
Error classification, fingerprinting and deduplicated alerting.

Severity is derived in two steps: a concrete exception is mapped onto an
ErrorCategory by type name (exact type first, then its ancestry), and
categories map onto severities through SEVERITY_TABLE. The core never imports
the exception classes it knows about; it only compares qualified names.

Alerting:
- Only critical/high errors alert, and never from development or test.
- One alert per fingerprint per cooldown window, even under concurrent callers.
- Sink failures are logged and swallowed; a slow sink can be moved off the
  calling thread by passing an executor.
"""

import hashlib
import json
import logging
import os
import re
import threading
import time
import traceback
from concurrent.futures import Executor
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .alerts import AlertMessage, AlertSink, severity_color, truncate
from .correlation import get_context, get_correlation_id
from .logging import StructuredLogger
from .metrics import alerts_total, errors_total
from .redaction import sanitize_loose

_internal_logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 300.0
DEFAULT_MAX_AGE_SECONDS = 3600.0
BACKTRACE_LIMIT = 10
CAUSE_BACKTRACE_LIMIT = 3


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ErrorCategory(str, Enum):
    DATABASE_UNAVAILABLE = "database_unavailable"
    CACHE_UNAVAILABLE = "cache_unavailable"
    PROCESS_EXIT = "process_exit"
    PROGRAMMING = "programming"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    CLIENT_ABORT = "client_abort"


# Checked in this order; the first severity with a matching category wins
SEVERITY_TABLE: Dict[Severity, Tuple[ErrorCategory, ...]] = {
    Severity.CRITICAL: (
        ErrorCategory.DATABASE_UNAVAILABLE,
        ErrorCategory.CACHE_UNAVAILABLE,
        ErrorCategory.PROCESS_EXIT,
    ),
    Severity.HIGH: (
        ErrorCategory.PROGRAMMING,
        ErrorCategory.NOT_FOUND,
        ErrorCategory.NETWORK,
    ),
    Severity.MEDIUM: (ErrorCategory.VALIDATION,),
    Severity.LOW: (
        ErrorCategory.CONFLICT,
        ErrorCategory.CLIENT_ABORT,
    ),
}

# Adapter from concrete platform exceptions to categories.
# Names are "<top-level package>.<QualName>" or the full "<module>.<QualName>".
EXCEPTION_CATEGORIES: Dict[ErrorCategory, Tuple[str, ...]] = {
    ErrorCategory.DATABASE_UNAVAILABLE: (
        "sqlalchemy.exc.OperationalError",
        "sqlalchemy.exc.DisconnectionError",
        "sqlalchemy.exc.TimeoutError",
        "asyncpg.exceptions.ConnectionDoesNotExistError",
    ),
    ErrorCategory.CACHE_UNAVAILABLE: (
        "redis.exceptions.ConnectionError",
        "redis.exceptions.TimeoutError",
    ),
    ErrorCategory.PROCESS_EXIT: (
        "builtins.SystemExit",
        "builtins.MemoryError",
    ),
    ErrorCategory.PROGRAMMING: (
        "builtins.AttributeError",
        "builtins.NameError",
        "builtins.TypeError",
        "builtins.ImportError",
        "builtins.NotImplementedError",
        "builtins.KeyError",
        "builtins.IndexError",
    ),
    ErrorCategory.NOT_FOUND: (
        "sqlalchemy.exc.NoResultFound",
        "builtins.FileNotFoundError",
    ),
    ErrorCategory.NETWORK: (
        "httpx.TransportError",
        "builtins.ConnectionError",
        "builtins.TimeoutError",
    ),
    ErrorCategory.VALIDATION: (
        "fastapi.exceptions.RequestValidationError",
        "pydantic_core.ValidationError",
        "sqlalchemy.exc.IntegrityError",
        "builtins.ValueError",
    ),
    ErrorCategory.CONFLICT: ("sqlalchemy.orm.exc.StaleDataError",),
    ErrorCategory.CLIENT_ABORT: (
        "starlette.requests.ClientDisconnect",
        "asyncio.exceptions.CancelledError",
    ),
}

SECURITY_EVENTS: Dict[str, str] = {
    "authentication_failure": "Authentication Failed",
    "unauthorized_access": "Unauthorized Access Attempt",
    "suspicious_activity": "Suspicious Activity Detected",
    "rate_limit_exceeded": "Rate Limit Exceeded",
    "invalid_token": "Invalid Token Used",
    "permission_denied": "Permission Denied",
}

ALERTING_SECURITY_EVENTS = frozenset({"unauthorized_access", "suspicious_activity"})

HIGH_RISK_ACTIVITIES = frozenset(
    {
        "multiple_failed_logins",
        "privilege_escalation_attempt",
        "data_export_attempt",
        "api_abuse",
    }
)

_HEX_LITERAL = re.compile(r"0x[0-9a-f]+", re.IGNORECASE)
_DIGITS = re.compile(r"\d+")


def type_names(cls: type) -> Tuple[str, ...]:
    """Names under which a class can appear in EXCEPTION_CATEGORIES."""
    module = cls.__module__
    qualname = cls.__qualname__
    names = [f"{module}.{qualname}", f"{module.split('.')[0]}.{qualname}"]
    if module == "builtins":
        names.append(qualname)
    return tuple(dict.fromkeys(names))


def classify_category(
    exc: BaseException,
    severity_table: Mapping[Severity, Iterable[ErrorCategory]] = SEVERITY_TABLE,
    exception_categories: Mapping[ErrorCategory, Iterable[str]] = EXCEPTION_CATEGORIES,
) -> Tuple[Severity, Optional[ErrorCategory]]:
    """
    Classify an exception.

    Severities are walked in table order. Within each severity the exception's
    own type is matched first, then each ancestor in MRO order.

    Returns:
        (severity, category); category is None when nothing matched
    """
    exc_type = type(exc)
    own_names = set(type_names(exc_type))
    ancestors = [set(type_names(base)) for base in exc_type.__mro__[1:]]

    for severity, categories in severity_table.items():
        known = [(category, set(exception_categories.get(category, ()))) for category in categories]
        for category, names in known:
            if own_names & names:
                return Severity(severity), category
        for ancestor_names in ancestors:
            for category, names in known:
                if ancestor_names & names:
                    return Severity(severity), category

    return Severity.MEDIUM, None


def determine_severity(exc: BaseException) -> Severity:
    return classify_category(exc)[0]


def normalize_message(message: str) -> str:
    """Replace embedded hex literals and numbers with placeholders."""
    return _DIGITS.sub("N", _HEX_LITERAL.sub("0xHEX", message))


def format_frame(frame: traceback.FrameSummary) -> str:
    return f"{frame.filename}:{frame.lineno}:in `{frame.name}`"


def backtrace_frames(exc: BaseException) -> List[traceback.FrameSummary]:
    """Traceback frames ordered most recent call first."""
    if exc.__traceback__ is None:
        return []
    return list(reversed(traceback.extract_tb(exc.__traceback__)))


def clean_backtrace(exc: BaseException, limit: int = BACKTRACE_LIMIT) -> List[str]:
    return [format_frame(frame) for frame in backtrace_frames(exc)[:limit]]


def _is_library_path(path: str) -> bool:
    return "site-packages" in path or "dist-packages" in path or path.startswith("<")


def first_application_frame(exc: BaseException, app_root: Optional[str] = None) -> Optional[str]:
    frames = backtrace_frames(exc)
    if not frames:
        return None
    root = os.path.abspath(app_root) if app_root else None
    for frame in frames:
        path = os.path.abspath(frame.filename)
        if _is_library_path(path):
            continue
        if root is None or path.startswith(root):
            return format_frame(frame)
    return format_frame(frames[0])


def generate_fingerprint(exc: BaseException, app_root: Optional[str] = None) -> str:
    """
    Stable grouping hash for an exception.

    Built from the qualified type name, the message with numbers and hex
    literals normalized, and the first in-application traceback frame.
    """
    exc_type = type(exc)
    parts = [
        f"{exc_type.__module__}.{exc_type.__qualname__}",
        normalize_message(str(exc)),
        first_application_frame(exc, app_root) or "",
    ]
    return hashlib.md5("|".join(parts).encode("utf-8")).hexdigest()


def extract_cause(exc: BaseException) -> Optional[Dict[str, Any]]:
    cause = exc.__cause__ or (None if exc.__suppress_context__ else exc.__context__)
    if cause is None:
        return None
    return {
        "class": type(cause).__name__,
        "message": str(cause),
        "backtrace": clean_backtrace(cause, CAUSE_BACKTRACE_LIMIT),
    }


class AlertTimestampCache:
    """
    Process-wide record of when each fingerprint last alerted.

    ``should_alert`` checks and records under one lock, so concurrent raisers
    of the same failure produce a single alert per cooldown window.
    """

    def __init__(
        self,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown_seconds = cooldown_seconds
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._timestamps: Dict[str, float] = {}
        self._lock = threading.Lock()

    def should_alert(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            last_alert = self._timestamps.get(key)
            if last_alert is not None and (now - last_alert) < self.cooldown_seconds:
                return False
            self._timestamps[key] = now
            self._prune(now)
            return True

    def _prune(self, now: float) -> None:
        expired = [k for k, v in self._timestamps.items() if (now - v) > self.max_age_seconds]
        for key in expired:
            del self._timestamps[key]

    def clear(self) -> None:
        with self._lock:
            self._timestamps.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._timestamps)


@dataclass
class ErrorStats:
    total: int = 0
    by_severity: Dict[str, int] = field(default_factory=dict)
    by_class: Dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, severity: str, class_name: str) -> None:
        with self._lock:
            self.total += 1
            self.by_severity[severity] = self.by_severity.get(severity, 0) + 1
            self.by_class[class_name] = self.by_class.get(class_name, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_count": self.total,
            "errors_by_severity": dict(self.by_severity),
            "errors_by_class": dict(self.by_class),
        }


_error_stats_ctx: ContextVar[Optional[ErrorStats]] = ContextVar("error_stats", default=None)


def reset_error_stats() -> ErrorStats:
    stats = ErrorStats()
    _error_stats_ctx.set(stats)
    return stats


def error_stats() -> Dict[str, Any]:
    """Error counters for the current request or job."""
    stats = _error_stats_ctx.get()
    return stats.to_dict() if stats else ErrorStats().to_dict()


@dataclass
class ErrorRecord:
    """Everything derived from one handled exception."""

    class_name: str
    message: str
    backtrace: List[str]
    fingerprint: str
    severity: Severity
    category: Optional[ErrorCategory]
    cause: Optional[Dict[str, Any]]
    context: Dict[str, Any]
    alert_sent: bool = False

    def error_dict(self) -> Dict[str, Any]:
        return {
            "class": self.class_name,
            "message": self.message,
            "backtrace": self.backtrace,
            "fingerprint": self.fingerprint,
            "cause": self.cause,
        }


class ErrorHandler:
    """
    Classifies, logs and alerts on exceptions.

    Args:
        logger: Structured logger receiving error and security records
        alert_sink: Destination for alerts; alerting is off when None
        environment: Alerts for exceptions are suppressed in development and test
        cooldown_seconds: Per-fingerprint alert cooldown
        executor: Optional executor used to dispatch alerts off the caller's thread
        app_root: Directory used to pick the first in-application frame
    """

    def __init__(
        self,
        logger: StructuredLogger,
        alert_sink: Optional[AlertSink] = None,
        environment: str = "development",
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        executor: Optional[Executor] = None,
        app_root: Optional[str] = None,
        alert_cache: Optional[AlertTimestampCache] = None,
    ):
        self.logger = logger
        self.alert_sink = alert_sink
        self.environment = environment
        self.executor = executor
        self.app_root = app_root or os.getcwd()
        self.alert_cache = alert_cache or AlertTimestampCache(cooldown_seconds=cooldown_seconds)

    @property
    def alerts_enabled(self) -> bool:
        return self.environment not in ("development", "test")

    def handle_exception(
        self, exception: BaseException, context: Optional[Mapping[str, Any]] = None
    ) -> Optional[ErrorRecord]:
        """
        Log an exception and alert on it when warranted.

        Never raises; an internal failure is reported through stdlib logging and
        None is returned.
        """
        try:
            record = self._build_record(exception, context)

            if self._should_alert(record):
                record.alert_sent = True

            self.logger.error(
                f"Exception occurred: {record.message}",
                {
                    "event": "exception_raised",
                    "error": record.error_dict(),
                    "context": record.context,
                    "severity": record.severity.value,
                    "alert_sent": record.alert_sent,
                },
            )

            errors_total.labels(severity=record.severity.value).inc()
            self._track_error_stats(record)

            if record.alert_sent:
                self._dispatch("error", self._format_error_alert(record))
            return record
        except Exception as e:
            # The error handler itself must never crash the application
            _internal_logger.error("Error in ErrorHandler: %s", e, exc_info=True)
            return None

    def log_security_event(self, event_type: Any, details: Optional[Mapping[str, Any]] = None) -> bool:
        """
        Record a named security event.

        Returns:
            True when the event type is recognized and was logged
        """
        event_type = getattr(event_type, "value", event_type)
        description = SECURITY_EVENTS.get(str(event_type))
        if description is None:
            return False

        try:
            context = get_context()
            log_entry = {
                "event": "security_event",
                "event_type": str(event_type),
                "event_description": description,
                "user_id": context.get("user_id"),
                "ip_address": context.get("remote_ip"),
                "details": sanitize_loose(dict(details or {})),
            }
            self.logger.warn(f"Security event: {description}", log_entry)

            if event_type in ALERTING_SECURITY_EVENTS and self.alert_sink is not None:
                self._dispatch("security", self._format_security_alert(log_entry))
        except Exception as e:
            _internal_logger.error("Failed to log security event: %s", e, exc_info=True)
        return True

    def log_suspicious_activity(
        self, user_id: Any, activity_type: Any, details: Optional[Mapping[str, Any]] = None
    ) -> None:
        activity_type = str(getattr(activity_type, "value", activity_type))
        try:
            context = get_context()
            log_entry = {
                "event": "suspicious_activity",
                "activity_type": activity_type,
                "user_id": user_id,
                "ip_address": context.get("remote_ip"),
                "user_agent": context.get("user_agent"),
                "request_path": context.get("request_path"),
                "request_method": context.get("request_method"),
                "details": sanitize_loose(dict(details or {})),
            }
            self.logger.warn("Suspicious activity detected", log_entry)

            if activity_type in HIGH_RISK_ACTIVITIES and self.alert_sink is not None:
                self._dispatch("suspicious", self._format_suspicious_alert(log_entry))
        except Exception as e:
            _internal_logger.error("Failed to log suspicious activity: %s", e, exc_info=True)

    # Internals

    def _build_record(self, exception: BaseException, context: Optional[Mapping[str, Any]]) -> ErrorRecord:
        severity, category = classify_category(exception)
        first_frame = first_application_frame(exception, self.app_root)
        error_context = {k: v for k, v in get_context().items() if v is not None}
        if first_frame:
            error_context["location"] = first_frame
        error_context.update(context or {})

        return ErrorRecord(
            class_name=type(exception).__name__,
            message=str(exception),
            backtrace=clean_backtrace(exception),
            fingerprint=generate_fingerprint(exception, self.app_root),
            severity=severity,
            category=category,
            cause=extract_cause(exception),
            context=error_context,
        )

    def _should_alert(self, record: ErrorRecord) -> bool:
        if record.severity not in (Severity.CRITICAL, Severity.HIGH):
            return False
        if not self.alerts_enabled or self.alert_sink is None:
            return False
        if not self.alert_cache.should_alert(f"error_alert:{record.fingerprint}"):
            alerts_total.labels(kind="error", outcome="suppressed").inc()
            return False
        return True

    def _track_error_stats(self, record: ErrorRecord) -> None:
        stats = _error_stats_ctx.get()
        if stats is None:
            stats = reset_error_stats()
        stats.record(record.severity.value, record.class_name)

    def _dispatch(self, kind: str, message: AlertMessage) -> None:
        if self.executor is not None:
            try:
                self.executor.submit(self._deliver, kind, message)
                return
            except RuntimeError as e:
                # Executor already shut down; deliver inline instead
                _internal_logger.debug("Alert executor unavailable: %s", e)
        self._deliver(kind, message)

    def _deliver(self, kind: str, message: AlertMessage) -> None:
        try:
            self.alert_sink.send(message)
            alerts_total.labels(kind=kind, outcome="sent").inc()
        except Exception as e:
            alerts_total.labels(kind=kind, outcome="failed").inc()
            try:
                self.logger.error(
                    "Failed to send alert notification",
                    {"event": "alert_failed", "alert_kind": kind, "title": message.title, "error": str(e)},
                )
            except Exception:
                _internal_logger.error("Failed to send alert notification: %s", e)

    def _format_error_alert(self, record: ErrorRecord) -> AlertMessage:
        context = record.context
        message = AlertMessage(
            text="🚨 *Application Error Detected*",
            title=record.class_name,
            color=severity_color(record.severity.value),
            body=truncate(record.message, 200),
        )
        path = " ".join(
            str(p) for p in (context.get("request_method"), context.get("request_path")) if p
        )
        message.add_field("Severity", record.severity.value.capitalize())
        message.add_field("Environment", self.environment)
        message.add_field("Correlation ID", get_correlation_id() or context.get("correlation_id"))
        message.add_field("User ID", context.get("user_id"))
        message.add_field("Path", path or None, short=False)
        message.add_field("Location", context.get("job_class") or context.get("location"), short=False)
        message.add_field("Fingerprint", record.fingerprint, short=False)
        message.add_field("Timestamp", datetime.now(timezone.utc).isoformat(timespec="milliseconds"))
        return message

    def _format_security_alert(self, log_entry: Dict[str, Any]) -> AlertMessage:
        message = AlertMessage(
            text="🔐 *Security Alert*",
            title=log_entry["event_description"],
            color="warning",
        )
        message.add_field("Event Type", log_entry["event_type"])
        message.add_field("User ID", log_entry.get("user_id") or "Anonymous")
        message.add_field("IP Address", log_entry.get("ip_address") or "Unknown")
        message.add_field("Correlation ID", get_correlation_id())
        message.add_field("Details", _details_json(log_entry["details"]), short=False)
        return message

    def _format_suspicious_alert(self, log_entry: Dict[str, Any]) -> AlertMessage:
        message = AlertMessage(
            text="⚠️ *Suspicious Activity Detected*",
            title="Suspicious Activity",
            color="warning",
        )
        message.add_field("Activity Type", log_entry["activity_type"])
        message.add_field("User ID", log_entry.get("user_id"))
        message.add_field("IP Address", log_entry.get("ip_address") or "Unknown")
        message.add_field("User Agent", log_entry.get("user_agent") or "Unknown", short=False)
        message.add_field("Details", _details_json(log_entry["details"]), short=False)
        return message


def _details_json(details: Any) -> str:
    try:
        return json.dumps(details, default=str)
    except (TypeError, ValueError):
        return str(details)
