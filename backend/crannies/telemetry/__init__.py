"""
Telemetry Module
================

Observability for the Crannies backend.

Components:
- sentry.py: Error tracking and performance monitoring

Environment Variables:
- SENTRY_DSN: Sentry project DSN
- ENVIRONMENT: Environment name

Usage:
    from crannies.telemetry import init_sentry, capture_exception

Related modules:
- crannies/main.py: Initializes Sentry on startup
- crannies/deps.py: Sets user context after authentication
"""

from crannies.telemetry.sentry import (
    init_sentry,
    set_user_context,
    capture_exception,
)

__all__ = [
    "init_sentry",
    "set_user_context",
    "capture_exception",
]
