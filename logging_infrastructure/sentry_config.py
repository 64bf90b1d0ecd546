"""
Sentry error tracking integration.

Sentry receives the same correlation ID as the structured log records, so an
event can be joined back to its request or job.
"""

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from .config import Settings
from .correlation import get_correlation_id

logger = logging.getLogger(__name__)


def init_sentry(settings: Settings) -> bool:
    """
    Initialize Sentry error tracking.

    Environment variables (read in addition to Settings):
    - SENTRY_RELEASE: Release version (e.g., git commit SHA)
    - SENTRY_TRACES_SAMPLE_RATE: Percentage of transactions to trace (0.0-1.0)

    Returns:
        True when Sentry was initialized
    """
    if not settings.sentry_dsn or not settings.sentry_enable:
        logger.info("Sentry is disabled (SENTRY_DSN not set or SENTRY_ENABLE=false)")
        return False

    release = os.getenv("SENTRY_RELEASE") or settings.version

    # Sample rates (lower outside production to reduce noise)
    is_production = settings.environment == "production"
    traces_sample_rate = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "1.0" if is_production else "0.1"))

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"{settings.service}@{release}",
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR,
            ),
        ],
        traces_sample_rate=traces_sample_rate,
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        before_send=before_send_hook,
    )

    logger.info("Sentry initialized (environment=%s, release=%s)", settings.environment, release)
    return True


def before_send_hook(event, hint):
    """
    Filter and tag events before sending to Sentry.

    Client disconnects are dropped; every other event is tagged with the
    current correlation ID.
    """
    if "exception" in event:
        for exc_value in event["exception"].get("values", []):
            if "client disconnected" in str(exc_value.get("value", "")).lower():
                return None

    correlation_id = get_correlation_id()
    if correlation_id:
        event.setdefault("tags", {})["correlation_id"] = correlation_id
        event.setdefault("extra", {})["correlation_id"] = correlation_id

    return event


def forward_correlation_id(correlation_id: Optional[str]) -> None:
    """Tag the current Sentry scope with the correlation ID; no-op when Sentry is off."""
    if not correlation_id or not sentry_sdk.is_initialized():
        return
    sentry_sdk.set_tag("correlation_id", correlation_id)
