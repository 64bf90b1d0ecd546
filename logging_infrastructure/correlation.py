"""
Correlation ID and ambient request context management.

Every value lives in a ContextVar, so each thread and each asyncio task sees
only its own binding. Values are replaced, never mutated in place, which keeps
a child task's changes from leaking back into its parent.

Usage:
    # In middleware (request start)
    with request_scope(CorrelationId.extract_from_headers(request.headers)):
        ...

    # Handing work to another task
    snapshot = capture()
    executor.submit(run_with, snapshot)

    def run_with(snapshot):
        with restore(snapshot):
            ...
"""

import secrets
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, MutableMapping, Optional

ID_PREFIX = "req_"
ID_BYTES = 16
CANONICAL_HEADER = "X-Correlation-ID"

# Checked in order
INBOUND_HEADERS = (
    "X-Correlation-ID",
    "HTTP_X_CORRELATION_ID",
    "X-Request-ID",
    "HTTP_X_REQUEST_ID",
)

CONTEXT_FIELDS = (
    "user_id",
    "session_id",
    "request_id",
    "request_path",
    "request_method",
    "remote_ip",
    "user_agent",
    "worker",
    "job_class",
    "job_id",
    "job_queue",
)

_EMPTY: Mapping[str, Any] = MappingProxyType({})

_correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_context_ctx: ContextVar[Mapping[str, Any]] = ContextVar("log_context", default=_EMPTY)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return _correlation_id_ctx.get()


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Set the correlation ID for the current context."""
    _correlation_id_ctx.set(correlation_id)


def reset_correlation_id() -> None:
    _correlation_id_ctx.set(None)


def generate_correlation_id() -> str:
    """Generate a new correlation ID carrying 128 random bits."""
    return f"{ID_PREFIX}{secrets.token_hex(ID_BYTES)}"


def ensure_correlation_id() -> str:
    """Return the current correlation ID, generating and binding one if absent."""
    correlation_id = get_correlation_id()
    if not correlation_id:
        correlation_id = generate_correlation_id()
        set_correlation_id(correlation_id)
    return correlation_id


@contextmanager
def correlation_id_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind a correlation ID for the duration of the block.

    The previous binding is restored on exit, whether the block returns or raises.
    """
    correlation_id = correlation_id or generate_correlation_id()
    token = _correlation_id_ctx.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id_ctx.reset(token)


def extract_from_headers(headers: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Return the first correlation ID found among the recognized inbound headers."""
    if not headers:
        return None
    for name in INBOUND_HEADERS:
        value = headers.get(name)
        if value:
            return str(value)
    return None


def add_to_headers(
    headers: MutableMapping[str, str], correlation_id: Optional[str] = None
) -> MutableMapping[str, str]:
    headers[CANONICAL_HEADER] = correlation_id or ensure_correlation_id()
    return headers


@contextmanager
def with_correlation_id(correlation_id: Optional[str]) -> Iterator[Optional[str]]:
    """Bind exactly ``correlation_id`` (None included) and restore the previous ID afterwards."""
    token = _correlation_id_ctx.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id_ctx.reset(token)


# Ambient context fields


def get_context() -> Mapping[str, Any]:
    """Read-only view of the ambient fields bound to the current task."""
    return _context_ctx.get()


def get_context_field(name: str, default: Any = None) -> Any:
    return _context_ctx.get().get(name, default)


def bind_context(**fields: Any) -> None:
    """Bind ambient fields. A value of None removes the field."""
    merged = dict(_context_ctx.get())
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    _context_ctx.set(MappingProxyType(merged))


def clear_context() -> None:
    """Clear every ambient field and the correlation ID."""
    _context_ctx.set(_EMPTY)
    _correlation_id_ctx.set(None)


@dataclass(frozen=True)
class ContextSnapshot:
    """Correlation state captured at a task handoff."""

    correlation_id: Optional[str]
    fields: Dict[str, Any] = field(default_factory=dict)


def capture() -> ContextSnapshot:
    return ContextSnapshot(get_correlation_id(), dict(get_context()))


@contextmanager
def restore(snapshot: ContextSnapshot, **extra: Any) -> Iterator[Optional[str]]:
    """Bind a captured snapshot in a new task, clearing it again on exit."""
    with request_scope(snapshot.correlation_id, **{**snapshot.fields, **extra}) as cid:
        yield cid


@contextmanager
def request_scope(correlation_id: Optional[str], **fields: Any) -> Iterator[Optional[str]]:
    """
    Establish correlation context for one unit of work.

    Both the correlation ID and the ambient fields are reset on every exit path,
    so nothing leaks into the next request served by the same thread.
    """
    cid_token = _correlation_id_ctx.set(correlation_id)
    ctx_token = _context_ctx.set(
        MappingProxyType({k: v for k, v in fields.items() if v is not None})
    )
    try:
        yield correlation_id
    finally:
        _context_ctx.reset(ctx_token)
        _correlation_id_ctx.reset(cid_token)


class CorrelationId:
    """Static facade over the correlation helpers."""

    HEADER = CANONICAL_HEADER

    current = staticmethod(get_correlation_id)
    set = staticmethod(set_correlation_id)
    reset = staticmethod(reset_correlation_id)
    generate = staticmethod(generate_correlation_id)
    with_id = staticmethod(with_correlation_id)
    ensure_present = staticmethod(ensure_correlation_id)
    extract_from_headers = staticmethod(extract_from_headers)
    add_to_headers = staticmethod(add_to_headers)
