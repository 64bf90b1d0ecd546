"""
FastAPI middleware for request observability.

Provides:
- Correlation ID extraction/generation and the X-Correlation-ID response header
- Ambient request context for every record logged downstream
- request_started / request_completed / request_failed records
- Prometheus request metrics and slow request warnings
"""

import json
import re
import time
import uuid
from typing import Any, Callable, Dict, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .config import DEFAULT_EXCLUDED_PATHS
from .correlation import CANONICAL_HEADER, extract_from_headers, generate_correlation_id, request_scope
from .database import query_stats, reset_query_stats
from .errors import ErrorHandler, clean_backtrace, reset_error_stats
from .logging import StructuredLogger
from .metrics import (
    http_requests_total,
    http_request_duration_seconds,
    http_requests_in_progress,
)
from .performance import cache_stats, gc_statistics, get_memory_usage_mb, reset_cache_stats, sanitize_url
from .redaction import redact_params
from .sentry_config import forward_correlation_id

SLOW_REQUEST_THRESHOLD_MS = 2000.0
EXCLUDED_PARAMS = ("format",)
RELEVANT_HEADERS = ("Accept", "Accept-Language", "Content-Type")
MAX_JSON_BODY_BYTES = 64 * 1024
REQUEST_BACKTRACE_LIMIT = 5

UserResolver = Callable[[Request], Any]


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """
    Middleware for automatic request instrumentation.

    Args:
        app: Downstream ASGI app
        logger: Structured logger (default: the process-wide logger)
        error_handler: Receives unhandled exceptions before they are re-raised
        excluded_paths: Path prefixes that bypass instrumentation entirely
        slow_request_threshold_ms: Requests slower than this also log a warning
        user_resolver: Optional callable returning the user id for a request
    """

    def __init__(
        self,
        app: ASGIApp,
        logger: Optional[StructuredLogger] = None,
        error_handler: Optional[ErrorHandler] = None,
        excluded_paths: Optional[Iterable[str]] = None,
        slow_request_threshold_ms: float = SLOW_REQUEST_THRESHOLD_MS,
        user_resolver: Optional[UserResolver] = None,
    ):
        super().__init__(app)
        if logger is None:
            from .runtime import get_error_handler, get_logger

            logger = get_logger()
            error_handler = error_handler or get_error_handler()
        self.logger = logger
        self.error_handler = error_handler
        self.excluded_paths = tuple(excluded_paths if excluded_paths is not None else DEFAULT_EXCLUDED_PATHS)
        self.slow_request_threshold_ms = slow_request_threshold_ms
        self.user_resolver = user_resolver

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if self._is_excluded(request.url.path):
            return await call_next(request)

        correlation_id = extract_from_headers(request.headers) or generate_correlation_id()
        context_fields = {
            "request_id": request.headers.get("X-Request-ID") or str(uuid.uuid4()),
            "session_id": self._session_id(request),
            "user_id": self._resolve_user_id(request),
            "request_path": request.url.path,
            "request_method": request.method,
            "remote_ip": self._remote_ip(request),
            "user_agent": request.headers.get("user-agent"),
        }

        with request_scope(correlation_id, **context_fields):
            request.state.correlation_id = correlation_id
            forward_correlation_id(correlation_id)
            reset_query_stats()
            reset_cache_stats()
            reset_error_stats()

            method = request.method
            endpoint = self._sanitize_path(request.url.path)
            request_metadata = await self._request_metadata(request)

            http_requests_in_progress.labels(method=method).inc()
            start_time = time.monotonic()

            try:
                self.logger.info("Request started", {"event": "request_started", **request_metadata})

                response = await call_next(request)

                duration_ms = self._elapsed_ms(start_time)
                http_requests_total.labels(method=method, endpoint=endpoint, status=response.status_code).inc()
                http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                    duration_ms / 1000.0
                )

                response.headers[CANONICAL_HEADER] = correlation_id
                self._log_request_completed(request_metadata, response, duration_ms)

                if duration_ms > self.slow_request_threshold_ms:
                    self.logger.warn(
                        "Slow request detected",
                        {
                            "event": "slow_request",
                            "method": method,
                            "path": request.url.path,
                            "status": response.status_code,
                            "duration_ms": duration_ms,
                            "threshold_ms": self.slow_request_threshold_ms,
                        },
                    )

                return response

            except Exception as exc:
                duration_ms = self._elapsed_ms(start_time)

                # Record error metrics (status 500 for unhandled exceptions)
                http_requests_total.labels(method=method, endpoint=endpoint, status=500).inc()
                http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                    duration_ms / 1000.0
                )

                self.logger.error(
                    "Request failed",
                    {
                        "event": "request_failed",
                        **request_metadata,
                        "error": {
                            "class": type(exc).__name__,
                            "message": str(exc),
                            "backtrace": clean_backtrace(exc, REQUEST_BACKTRACE_LIMIT),
                        },
                        "duration_ms": duration_ms,
                    },
                )

                if self.error_handler is not None:
                    self.error_handler.handle_exception(
                        exc,
                        {
                            "request": {
                                "method": method,
                                "path": request.url.path,
                                "params": request_metadata["request"]["params"],
                            }
                        },
                    )

                # Re-raise to let FastAPI handle it
                raise

            finally:
                http_requests_in_progress.labels(method=method).dec()

    def _log_request_completed(
        self, request_metadata: Dict[str, Any], response: Response, duration_ms: float
    ) -> None:
        content_length = response.headers.get("content-length")
        self.logger.info(
            "Request completed",
            {
                "event": "request_completed",
                **request_metadata,
                "response": {
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "size_bytes": int(content_length) if content_length and content_length.isdigit() else None,
                },
                "database": query_stats(),
                "cache": cache_stats(),
                "memory": {
                    "usage_mb": round(get_memory_usage_mb(), 2),
                    "gc_count": gc_statistics()["gc_count"],
                },
            },
        )

    async def _request_metadata(self, request: Request) -> Dict[str, Any]:
        headers = {name: request.headers[name] for name in RELEVANT_HEADERS if name in request.headers}
        return {
            "request": {
                "method": request.method,
                "path": request.url.path,
                "url": sanitize_url(request.url),
                "ip": self._remote_ip(request),
                "user_agent": request.headers.get("user-agent"),
                "referer": self._referer(request),
                "params": await self._request_params(request),
                "headers": headers,
            }
        }

    async def _request_params(self, request: Request) -> Dict[str, Any]:
        params: Dict[str, Any] = dict(request.query_params)

        content_type = request.headers.get("content-type", "")
        content_length = request.headers.get("content-length", "")
        if (
            content_type.startswith("application/json")
            and content_length.isdigit()
            and 0 < int(content_length) <= MAX_JSON_BODY_BYTES
        ):
            try:
                body = json.loads(await request.body())
            except (ValueError, UnicodeDecodeError):
                body = None
            if isinstance(body, dict):
                params.update(body)

        for name in EXCLUDED_PARAMS:
            params.pop(name, None)
        return redact_params(params)

    def _resolve_user_id(self, request: Request) -> Any:
        if self.user_resolver is not None:
            try:
                user_id = self.user_resolver(request)
            except Exception:
                user_id = None
            if user_id is not None:
                return user_id

        user_id = getattr(request.state, "user_id", None)
        if user_id is not None:
            return user_id

        session = request.scope.get("session")
        if isinstance(session, dict) and session.get("user_id") is not None:
            return session["user_id"]

        user = request.scope.get("user")
        if user is not None and getattr(user, "is_authenticated", False):
            return getattr(user, "id", None) or getattr(user, "identity", None)
        return None

    def _session_id(self, request: Request) -> Optional[str]:
        session = request.scope.get("session")
        if isinstance(session, dict):
            return session.get("session_id") or session.get("id")
        return None

    def _remote_ip(self, request: Request) -> Optional[str]:
        # Proxy headers are resolved upstream (uvicorn --proxy-headers)
        return request.client.host if request.client else None

    def _referer(self, request: Request) -> Optional[str]:
        referer = request.headers.get("referer")
        return sanitize_url(referer) if referer else None

    def _is_excluded(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.excluded_paths)

    @staticmethod
    def _elapsed_ms(start_time: float) -> float:
        return round((time.monotonic() - start_time) * 1000, 2)

    @staticmethod
    def _sanitize_path(path: str) -> str:
        """
        Sanitize path to avoid metric cardinality explosion.

        Replace UUIDs and numeric IDs with placeholders.
        """
        path = re.sub(
            r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
            "/{uuid}",
            path,
            flags=re.IGNORECASE,
        )
        return re.sub(r"/\d+", "/{id}", path)
