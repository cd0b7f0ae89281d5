"""
Sentry Error Tracking
=====================

Centralized error tracking for the API and the arq worker.

Related files:
- attribution_engine/main.py: Initializes Sentry on app startup
- attribution_engine/workers/arq_worker.py: Initializes Sentry on worker startup
- attribution_engine/services/conversion_pipeline.py: Reports invariant violations
- attribution_engine/services/alerts.py: Operational alerts as Sentry messages

Environment Variables:
- SENTRY_DSN: Sentry project DSN (required for Sentry to work)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.arq import ArqIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from attribution_engine.config import get_settings

logger = logging.getLogger(__name__)


def init_sentry(dsn: Optional[str] = None) -> bool:
    """
    Initialize Sentry SDK.

    Should be called once during application or worker startup.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.
    """
    settings = get_settings()
    dsn = dsn or settings.SENTRY_DSN
    if not dsn:
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=settings.ENVIRONMENT,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                ArqIntegration(),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        logger.debug(f"[SENTRY] Initialized for {settings.ENVIRONMENT} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def set_tenant_context(tenant_id: str) -> None:
    """Tag subsequent events in this scope with the tenant."""
    sentry_sdk.set_tag("tenant_id", tenant_id)


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled but should still
    be tracked for monitoring purposes.

    Example:
        try:
            store.save_attribution(conversion, results, now)
        except AllocationInvariantError as e:
            capture_exception(e, extra={"conversion_id": str(conversion.id)})
    """
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message to Sentry.

    Use this for important events that aren't exceptions but should
    be tracked (e.g. a conversion quarantined).
    """
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture message: {e}")
