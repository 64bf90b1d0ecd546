"""
Alert sink interface and transport adapters.

The error handler only depends on the AlertSink protocol. Transports live
outside this package; WebhookAlertSink is a thin adapter for Slack-compatible
incoming webhooks.
"""

import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

SEVERITY_COLORS: Dict[str, str] = {
    "critical": "danger",
    "high": "#ff9900",
    "medium": "warning",
}
DEFAULT_COLOR = "#cccccc"
MAX_FIELD_LENGTH = 500


def severity_color(severity: Optional[str]) -> str:
    return SEVERITY_COLORS.get(str(severity or "").lower(), DEFAULT_COLOR)


def truncate(value: Any, length: int) -> str:
    text = "" if value is None else str(value)
    if len(text) <= length:
        return text
    return text[: length - 3] + "..."


@dataclass
class AlertMessage:
    """Structured alert handed to a sink."""

    text: str
    title: str
    color: str = DEFAULT_COLOR
    body: str = ""
    fields: List[Dict[str, Any]] = field(default_factory=list)
    footer: str = field(default_factory=socket.gethostname)
    ts: int = field(default_factory=lambda: int(time.time()))

    def add_field(self, title: str, value: Any, short: bool = True) -> "AlertMessage":
        self.fields.append(
            {"title": title, "value": truncate(value, MAX_FIELD_LENGTH) if value is not None else "N/A", "short": short}
        )
        return self

    def field_value(self, title: str) -> Optional[str]:
        for item in self.fields:
            if item["title"] == title:
                return item["value"]
        return None

    def to_payload(self) -> Dict[str, Any]:
        """Render as a Slack-compatible attachment payload."""
        return {
            "text": self.text,
            "attachments": [
                {
                    "color": self.color,
                    "title": self.title,
                    "text": self.body,
                    "fields": self.fields,
                    "footer": self.footer,
                    "ts": self.ts,
                }
            ],
        }


class AlertSink(Protocol):
    def send(self, message: AlertMessage) -> None:
        ...


class CallableAlertSink:
    """Adapts a plain callable into an AlertSink."""

    def __init__(self, func: Callable[[AlertMessage], Any]):
        self.func = func

    def send(self, message: AlertMessage) -> None:
        self.func(message)


class WebhookAlertSink:
    """
    Posts alerts to an incoming-webhook URL.

    Args:
        url: Webhook endpoint
        timeout: Request timeout in seconds
    """

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    def send(self, message: AlertMessage) -> None:
        payload = message.to_payload()
        if self._client is not None:
            response = self._client.post(self.url, json=payload, timeout=self.timeout)
        else:
            response = httpx.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        logger.debug("Alert delivered: %s", message.title)
