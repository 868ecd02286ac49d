"""
Telemetry Module
================

Observability for the analytics API and workers.

Components:
- sentry.py: Error tracking (FastAPI, Redis, arq and logging integrations)

Logging itself is plain `logging` with bracketed component tags
([ARQ], [FLOW], [DISPATCH], ...), configured by the entrypoints.

Usage:
    from merchant_analytics.telemetry import init_sentry, capture_exception

    init_sentry()
"""

from merchant_analytics.telemetry.sentry import (
    capture_exception,
    capture_message,
    init_sentry,
)

__all__ = ["init_sentry", "capture_exception", "capture_message"]
