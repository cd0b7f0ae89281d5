"""Operational alerts.

WHAT:
    `AlertSink` is the fire-and-forget seam to whatever notifies humans
    (Slack, email, pager). `SentryAlertSink` logs the alert and sends it to
    Sentry as a message, where alert rules route it.

WHY:
    Quarantined conversions need manual review; someone has to hear about
    them. Delivery problems must never break the sweep that raised the alert.
"""

import logging
from abc import ABC, abstractmethod

from attribution_engine.telemetry import capture_message

logger = logging.getLogger(__name__)

SEVERITY_TO_LEVEL = {
    "info": "info",
    "warning": "warning",
    "error": "error",
    "critical": "fatal",
}


class AlertSink(ABC):
    """Fire-and-forget operational alert channel."""

    @abstractmethod
    def send(self, tenant_id: str, severity: str, message: str, **context) -> None:
        """Emit one alert. Must not raise."""


class SentryAlertSink(AlertSink):
    """Alerts as log lines + Sentry messages tagged with the tenant."""

    def send(self, tenant_id: str, severity: str, message: str, **context) -> None:
        try:
            logger.warning(
                f"[ALERT] {message}",
                extra={"tenant_id": tenant_id, "severity": severity, **context},
            )
            capture_message(
                message,
                level=SEVERITY_TO_LEVEL.get(severity, "error"),
                extra={"tenant_id": tenant_id, "severity": severity, **context},
            )
        except Exception as e:
            logger.error(f"[ALERT] Failed to deliver alert: {e}")
