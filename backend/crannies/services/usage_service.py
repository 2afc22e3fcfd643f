"""Usage reporting service - metered "active deals" billing.

WHAT:
    Counts active deals (issues not closed/lost) per workspace and reports
    the count to Stripe as a billing meter event.

WHY:
    The subscription price is metered on active deals. The monthly arq cron
    (crannies/workers/usage_worker.py) reports every active subscription;
    POST /billing/usage/report reports one workspace on demand.

FAILURE MODEL:
    Best-effort. A failing workspace is logged, sent to Sentry and skipped;
    the loop continues with the next subscription. Nothing here raises.

REFERENCES:
    - crannies/services/trial.py (is_trial_expired filter)
    - https://docs.stripe.com/billing/subscriptions/usage-based/recording-usage-api
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
from uuid import UUID

import stripe
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..deps import get_settings
from ..models import INACTIVE_ISSUE_STATUSES, Issue, WorkspaceSubscription
from ..telemetry import capture_exception
from .stripe_billing import ACTIVE_SUBSCRIPTION_STATUS, configure_stripe
from .trial import is_trial_expired

logger = logging.getLogger(__name__)

# Default meter event name; STRIPE_USAGE_METER_EVENT overrides it
ACTIVE_DEALS_METER = "active_deals"


@dataclass
class UsageReportSummary:
    """Outcome of one reporting run."""

    reported: int = 0
    skipped: int = 0
    failed: int = 0
    failed_workspace_ids: List[str] = field(default_factory=list)


def get_active_deals_count(db: Session, workspace_id: UUID) -> int:
    """Count issues in the workspace that are not closed or lost."""
    count = (
        db.query(func.count(Issue.id))
        .filter(
            Issue.workspace_id == workspace_id,
            Issue.status.notin_(INACTIVE_ISSUE_STATUSES),
        )
        .scalar()
    )
    return count or 0


def _send_meter_event(stripe_customer_id: str, value: int) -> None:
    stripe.billing.MeterEvent.create(
        event_name=get_settings().STRIPE_USAGE_METER_EVENT or ACTIVE_DEALS_METER,
        payload={
            "stripe_customer_id": stripe_customer_id,
            "value": str(value),
        },
    )


def _report_subscription(db: Session, subscription: WorkspaceSubscription) -> Optional[int]:
    """Report one subscription. Returns the count sent, or None when nothing was sent."""
    active_deals = get_active_deals_count(db, subscription.workspace_id)

    if not subscription.stripe_customer_id:
        logger.info(
            f"[USAGE] Workspace {subscription.workspace_id} has no Stripe customer, "
            f"counted {active_deals} active deals but nothing sent"
        )
        return None

    _send_meter_event(subscription.stripe_customer_id, active_deals)
    logger.info(f"[USAGE] Reported {active_deals} active deals for workspace {subscription.workspace_id}")
    return active_deals


def report_usage_for_all_subscriptions(db: Session, now: Optional[datetime] = None) -> UsageReportSummary:
    """Report usage for every active subscription.

    Workspaces whose trial has expired without an active subscription are
    skipped. Per-workspace failures are logged and counted.
    """
    logger.info("[USAGE] Starting monthly usage reporting...")
    summary = UsageReportSummary()

    try:
        configure_stripe()
        subscriptions = (
            db.query(WorkspaceSubscription)
            .filter(WorkspaceSubscription.status == ACTIVE_SUBSCRIPTION_STATUS)
            .all()
        )
    except Exception as e:
        logger.error(f"[USAGE] Error in monthly usage reporting: {e}", exc_info=True)
        capture_exception(e, extra={"job": "report_usage_for_all_subscriptions"})
        return summary

    logger.info(f"[USAGE] Found {len(subscriptions)} active subscriptions to report usage for")

    for subscription in subscriptions:
        workspace_id = str(subscription.workspace_id)
        try:
            workspace = subscription.workspace
            if workspace is not None and is_trial_expired(workspace, now=now):
                logger.info(f"[USAGE] Skipping workspace {workspace_id}: trial expired")
                summary.skipped += 1
                continue

            if _report_subscription(db, subscription) is None:
                summary.skipped += 1
            else:
                summary.reported += 1
        except Exception as e:
            logger.error(f"[USAGE] Failed to report usage for workspace {workspace_id}: {e}", exc_info=True)
            capture_exception(e, extra={"workspace_id": workspace_id})
            summary.failed += 1
            summary.failed_workspace_ids.append(workspace_id)

    logger.info(
        f"[USAGE] Monthly usage reporting completed: reported={summary.reported} "
        f"skipped={summary.skipped} failed={summary.failed}"
    )
    return summary


def report_usage_for_workspace(db: Session, workspace_id: UUID) -> Optional[int]:
    """Report usage for one workspace right away.

    Returns:
        The active deal count sent to Stripe, or None when the workspace has
        no active subscription, no Stripe customer, or reporting failed.
    """
    try:
        subscription = (
            db.query(WorkspaceSubscription)
            .filter(
                WorkspaceSubscription.workspace_id == workspace_id,
                WorkspaceSubscription.status == ACTIVE_SUBSCRIPTION_STATUS,
            )
            .first()
        )

        if not subscription:
            logger.info(f"[USAGE] No active subscription found for workspace {workspace_id}")
            return None

        configure_stripe()
        return _report_subscription(db, subscription)
    except Exception as e:
        logger.error(f"[USAGE] Failed to report usage for workspace {workspace_id}: {e}", exc_info=True)
        capture_exception(e, extra={"workspace_id": str(workspace_id)})
        return None


