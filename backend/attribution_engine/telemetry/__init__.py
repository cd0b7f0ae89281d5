"""
Telemetry Module
================

Observability for the attribution engine.

Components:
- sentry.py: Error tracking and operational messages

Usage:
    from attribution_engine.telemetry import init_sentry, capture_exception

    init_sentry()  # on app / worker startup
"""

from attribution_engine.telemetry.sentry import (
    init_sentry,
    set_tenant_context,
    capture_exception,
    capture_message,
)


__all__ = [
    "init_sentry",
    "set_tenant_context",
    "capture_exception",
    "capture_message",
]
