"""
Sentry Error Tracking
=====================

Centralized error tracking for the API and the arq worker.

Related files:
- leadpixel/main.py: Initializes Sentry in create_app()
- leadpixel/workers/arq_worker.py: Initializes Sentry on worker startup and
  reports swallowed background failures (enrichment, visitors API sync)

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays off when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import os
import logging
from typing import Optional
from functools import lru_cache

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable."""
    return os.environ.get("SENTRY_DSN")


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.
    """
    dsn = get_sentry_dsn()
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # ERROR+ as events
                ),
            ],
            traces_sample_rate=0.05,
            # Visitor emails and IPs must not leave through default PII capture
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )

        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def set_pixel_context(pixel_id: str, owner_id: Optional[str] = None) -> None:
    """Tag subsequent events with the pixel being processed."""
    try:
        sentry_sdk.set_tag("pixel_id", pixel_id)
        if owner_id:
            sentry_sdk.set_tag("owner_id", owner_id)
    except Exception as e:
        logger.debug(f"[SENTRY] Failed to set pixel context: {e}")


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Report a caught-and-handled exception.

    Background jobs swallow their failures (enrichment is best-effort), so
    this is the only place those failures become visible.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        try:
            await client.enrich(ip, user_agent)
        except EnrichmentError as e:
            capture_exception(e, extra={"visitor_pk": visitor_pk})
    """
    if not get_sentry_dsn():
        logger.error(f"Exception (Sentry disabled): {exception}", extra=extra or {})
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")
