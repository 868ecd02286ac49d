"""
Sentry Error Tracking
=====================

Centralized error tracking for the API and the arq workers.

Related files:
- merchant_analytics/main.py: Initializes Sentry on app startup
- merchant_analytics/workers/arq_worker.py: Initializes Sentry on worker startup,
  captures handled job failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays off without it)
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
from sentry_sdk.integrations.redis import RedisIntegration

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry(dsn: Optional[str] = None, environment: Optional[str] = None) -> bool:
    """
    Initialize the Sentry SDK once per process.

    Args:
        dsn: Overrides settings.SENTRY_DSN
        environment: Overrides settings.ENVIRONMENT

    Returns:
        True if Sentry is active, False if no DSN is configured.
    """
    global _initialized
    if _initialized:
        return True

    from merchant_analytics.deps import get_settings

    settings = get_settings()
    dsn = dsn or settings.SENTRY_DSN
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = environment or settings.ENVIRONMENT

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                RedisIntegration(),
                ArqIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    _initialized = True
    logger.debug(f"[SENTRY] Initialized for {environment} environment")
    return True


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Capture a handled exception.

    Use this for exceptions that are caught and handled but should still
    be tracked (a merchant that exhausted its retries, a failed dispatch).

    Example:
        except DownstreamError as e:
            capture_exception(e, extra={"operation": "salesforce_dispatch"})
    """
    if not _initialized:
        logger.error(f"Exception (Sentry disabled): {exception}")
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message that isn't an exception but should be tracked.

    Args:
        message: The message to capture
        level: Severity level (debug, info, warning, error, fatal)
        extra: Additional context to attach
    """
    if not _initialized:
        logger.log(
            logging.getLevelName(level.upper()),
            f"Message (Sentry disabled): {message}"
        )
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture message: {e}")
