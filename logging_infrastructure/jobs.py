"""
Background job instrumentation.

A job inherits the correlation ID that was current when it was enqueued, so
its records can be joined to the request that scheduled it.

Usage:
    class SendReceiptJob(InstrumentedJob):
        queue = "mailers"

        async def perform(self, order_id):
            ...

    # In a FastAPI endpoint
    SendReceiptJob.enqueue(background_tasks.add_task, order.id)
"""

import inspect
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from .correlation import (
    generate_correlation_id,
    get_context_field,
    get_correlation_id,
    request_scope,
)
from .database import _query_stats_ctx, query_stats, reset_query_stats
from .errors import ErrorHandler, _error_stats_ctx, clean_backtrace, reset_error_stats
from .logging import StructuredLogger
from .performance import (
    PerformanceMonitor,
    _cache_stats_ctx,
    _tracking_ctx,
    get_memory_usage_mb,
    reset_cache_stats,
)
from .redaction import sanitize_loose

JOB_BACKTRACE_LIMIT = 5

# Per-task counters and stopwatch, restored when a job ends
_TASK_STATE = (_query_stats_ctx, _cache_stats_ctx, _error_stats_ctx, _tracking_ctx)


@dataclass
class JobDescriptor:
    job_class: str
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    queue: str = "default"
    arguments: Sequence[Any] = ()
    priority: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    attempt: int = 1
    correlation_id: Optional[str] = None
    enqueued_by: Any = None
    request_id: Optional[str] = None
    critical: bool = False


def _sanitize_argument(arg: Any) -> Any:
    if isinstance(arg, (str, Mapping)):
        return sanitize_loose(arg)
    if isinstance(arg, (int, float, bool)) or arg is None:
        return arg
    # Model instances are logged by identity only
    if hasattr(arg, "id"):
        return {"class": type(arg).__name__, "id": getattr(arg, "id")}
    return arg


def sanitize_arguments(arguments: Sequence[Any]) -> List[Any]:
    return [_sanitize_argument(arg) for arg in arguments]


class JobInstrumentation:
    """
    Lifecycle hooks for background jobs.

    Args:
        logger: Structured logger receiving job records
        monitor: Performance monitor used for job timing
        error_handler: Notified when a critical job fails
    """

    def __init__(
        self,
        logger: StructuredLogger,
        monitor: PerformanceMonitor,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.logger = logger
        self.monitor = monitor
        self.error_handler = error_handler

    def before_enqueue(self, job: JobDescriptor) -> JobDescriptor:
        """Capture the enqueuing request's correlation ID and identity."""
        job.correlation_id = job.correlation_id or get_correlation_id() or generate_correlation_id()
        job.enqueued_by = get_context_field("user_id")
        job.request_id = get_context_field("request_id")
        return job

    def after_enqueue(self, job: JobDescriptor) -> None:
        self.logger.info(
            "Job enqueued",
            {
                "event": "job_enqueued",
                "job": {
                    "class": job.job_class,
                    "id": job.job_id,
                    "queue": job.queue,
                    "priority": job.priority,
                    "arguments": sanitize_arguments(job.arguments),
                    "scheduled_at": job.scheduled_at,
                    "correlation_id": job.correlation_id,
                    "enqueued_by": job.enqueued_by,
                    "request_id": job.request_id,
                },
            },
        )

    def perform(self, job: JobDescriptor, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        with self._job_scope(job):
            start_time = time.monotonic()
            self._log_job_started(job)
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:
                self._job_failed(job, start_time, exc)
                raise
            self._job_completed(job, start_time)
            return result

    async def perform_async(self, job: JobDescriptor, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        with self._job_scope(job):
            start_time = time.monotonic()
            self._log_job_started(job)
            try:
                result = await fn(*args, **kwargs)
            except Exception as exc:
                self._job_failed(job, start_time, exc)
                raise
            self._job_completed(job, start_time)
            return result

    @contextmanager
    def _job_scope(self, job: JobDescriptor) -> Iterator[None]:
        correlation_id = job.correlation_id or generate_correlation_id()
        with request_scope(
            correlation_id,
            worker=True,
            job_class=job.job_class,
            job_id=job.job_id,
            job_queue=job.queue,
        ):
            tokens = [var.set(None) for var in _TASK_STATE]
            reset_query_stats()
            reset_cache_stats()
            reset_error_stats()
            self.monitor.start_tracking()
            try:
                yield
            finally:
                self.monitor.end_tracking()
                for var, token in zip(reversed(_TASK_STATE), reversed(tokens)):
                    var.reset(token)

    def _job_fields(self, job: JobDescriptor) -> Dict[str, Any]:
        return {
            "class": job.job_class,
            "id": job.job_id,
            "queue": job.queue,
            "attempt_number": job.attempt,
            "correlation_id": get_correlation_id(),
        }

    def _log_job_started(self, job: JobDescriptor) -> None:
        self.logger.info(
            "Job started",
            {
                "event": "job_started",
                "job": {**self._job_fields(job), "arguments": sanitize_arguments(job.arguments)},
            },
        )

    def _job_completed(self, job: JobDescriptor, start_time: float) -> None:
        duration_ms = round((time.monotonic() - start_time) * 1000, 2)
        self.monitor.track_job_performance(job.job_class, duration_ms, "success")
        self.logger.info(
            "Job completed successfully",
            {
                "event": "job_completed",
                "job": {**self._job_fields(job), "duration_ms": duration_ms},
                "performance": {
                    "database": query_stats(),
                    "memory": {"usage_mb": round(get_memory_usage_mb(), 2)},
                },
            },
        )

    def _job_failed(self, job: JobDescriptor, start_time: float, exc: Exception) -> None:
        duration_ms = round((time.monotonic() - start_time) * 1000, 2)
        self.monitor.track_job_performance(job.job_class, duration_ms, "failed", exc)
        self.logger.error(
            "Job failed",
            {
                "event": "job_failed",
                "job": {**self._job_fields(job), "duration_ms": duration_ms},
                "error": {
                    "class": type(exc).__name__,
                    "message": str(exc),
                    "backtrace": clean_backtrace(exc, JOB_BACKTRACE_LIMIT),
                },
            },
        )

        if job.critical and self.error_handler is not None:
            try:
                self.error_handler.handle_exception(
                    exc,
                    {
                        "job_class": job.job_class,
                        "job_id": job.job_id,
                        "queue": job.queue,
                        "attempts": job.attempt,
                    },
                )
            except Exception as e:
                self.logger.error("Failed to send job failure notification", {"error": str(e)})


class InstrumentedJob:
    """
    Base class for instrumented background jobs.

    Subclasses implement ``perform`` (sync or async). Jobs are handed to any
    ``submit(fn, *args)`` callable, such as ``BackgroundTasks.add_task`` or
    ``Executor.submit``; the executing side is instrumented automatically.
    """

    queue: str = "default"
    priority: Optional[int] = None
    critical: bool = False
    instrumentation: Optional[JobInstrumentation] = None

    @classmethod
    def log_as_critical(cls) -> None:
        """Report failures of this job class through the error handler."""
        cls.critical = True

    def perform(self, *args: Any) -> Any:
        raise NotImplementedError

    @classmethod
    def get_instrumentation(cls) -> JobInstrumentation:
        if cls.instrumentation is not None:
            return cls.instrumentation
        from .runtime import get_job_instrumentation

        return get_job_instrumentation()

    @classmethod
    def build(cls, *args: Any, scheduled_at: Optional[datetime] = None) -> JobDescriptor:
        return JobDescriptor(
            job_class=cls.__name__,
            queue=cls.queue,
            arguments=args,
            priority=cls.priority,
            scheduled_at=scheduled_at,
            critical=cls.critical,
        )

    @classmethod
    def enqueue(
        cls, submit: Callable[..., Any], *args: Any, scheduled_at: Optional[datetime] = None
    ) -> JobDescriptor:
        instrumentation = cls.get_instrumentation()
        job = instrumentation.before_enqueue(cls.build(*args, scheduled_at=scheduled_at))
        submit(cls._runner(), job, *args)
        instrumentation.after_enqueue(job)
        return job

    @classmethod
    def run_now(cls, *args: Any) -> Any:
        """Run inline; returns a coroutine for async jobs."""
        job = cls.get_instrumentation().before_enqueue(cls.build(*args))
        return cls._runner()(job, *args)

    @classmethod
    def _runner(cls) -> Callable[..., Any]:
        if inspect.iscoroutinefunction(cls.perform):
            return cls._execute_async
        return cls._execute

    @classmethod
    def _execute(cls, job: JobDescriptor, *args: Any) -> Any:
        return cls.get_instrumentation().perform(job, cls().perform, *args)

    @classmethod
    async def _execute_async(cls, job: JobDescriptor, *args: Any) -> Any:
        return await cls.get_instrumentation().perform_async(job, cls().perform, *args)
