"""
Sentry Error Tracking
=====================

Centralized error tracking for the API and the usage worker.

Related files:
- crannies/main.py: Initializes Sentry in create_app()
- crannies/deps.py: Sets user context after authentication
- crannies/services/usage_service.py: Reports per-workspace metering failures

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
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable."""
    return os.environ.get("SENTRY_DSN")


def is_enabled() -> bool:
    return bool(get_sentry_dsn())


def init_sentry() -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Should be called once during application startup, before any routes are defined.

    Returns:
        True if Sentry was initialized, False when no DSN is configured or init failed.
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
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,  # User is attached explicitly via set_user_context
            release=os.environ.get("RELEASE_VERSION"),
        )

        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def set_user_context(
    user_id: str,
    email: Optional[str] = None,
    workspace_id: Optional[str] = None
) -> None:
    """
    Set user context for Sentry error tracking.

    Called by get_current_user so every error in the request carries the
    user and workspace.
    """
    if not is_enabled():
        return

    try:
        sentry_sdk.set_user({
            "id": user_id,
            "email": email,
            "workspace_id": workspace_id,
        })
    except Exception as e:
        logger.debug(f"[SENTRY] Failed to set user context: {e}")


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled but should still
    be tracked, e.g. a single workspace failing during the usage report.

    Example:
        try:
            report_meter_event(...)
        except stripe.StripeError as e:
            capture_exception(e, extra={"workspace_id": str(workspace_id)})
    """
    if not is_enabled():
        logger.error(f"Exception (Sentry disabled): {exception}")
        return

    try:
        with sentry_sdk.push_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")
