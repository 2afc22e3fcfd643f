"""Stripe billing service - checkout sessions and subscription webhooks.

WHAT:
    - create_checkout_session: subscription-mode checkout for a workspace
    - verify_webhook: signature check on incoming Stripe events
    - process_webhook_event: applies subscription changes to workspaces

WHY:
    A completed checkout is the only thing that moves a workspace from
    "trial" to subscription_status="active", which switches off trial gating
    (see crannies/services/trial.py).

EVENTS HANDLED:
    - checkout.session.completed: activate workspace, upsert WorkspaceSubscription
    - invoice.payment_succeeded: refresh subscription status and period
    - customer.subscription.deleted: mark subscription canceled (workspace untouched)

REFERENCES:
    - crannies/routers/billing.py
    - https://docs.stripe.com/api/checkout/sessions/create
    - https://docs.stripe.com/webhooks
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

import stripe
from sqlalchemy.orm import Session

from ..deps import get_settings
from ..models import User, Workspace, WorkspaceSubscription
from .trial import ACTIVE_SUBSCRIPTION_STATUS

logger = logging.getLogger(__name__)


class BillingConfigurationError(RuntimeError):
    """Stripe keys or price id missing from the environment."""


def configure_stripe() -> None:
    """Point the Stripe SDK at the configured secret key.

    Raises:
        BillingConfigurationError: If STRIPE_SECRET_KEY is not set
    """
    settings = get_settings()
    secret_key = (settings.STRIPE_SECRET_KEY or "").strip()
    if not secret_key:
        raise BillingConfigurationError("STRIPE_SECRET_KEY is not set")
    stripe.api_key = secret_key


def _to_plain(obj: Any) -> Dict[str, Any]:
    # Recent SDKs return StripeObject instances that are no longer dicts
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _from_unix(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _period_bounds(subscription: Dict[str, Any]) -> tuple[Optional[datetime], Optional[datetime]]:
    """Current billing period of a Stripe subscription.

    Newer API versions only expose the period on subscription items.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return _from_unix(start), _from_unix(end)


# =============================================================================
# CHECKOUT
# =============================================================================


def create_checkout_session(
    user: User,
    workspace: Workspace,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Dict[str, str]:
    """Create a Stripe checkout session for the workspace subscription.

    Returns:
        dict with url and session_id

    Raises:
        BillingConfigurationError: Missing secret key or price id
        stripe.StripeError: Stripe rejected the request
    """
    configure_stripe()
    settings = get_settings()
    if not settings.STRIPE_PRICE_ID:
        raise BillingConfigurationError("STRIPE_PRICE_ID is not set")

    frontend_url = settings.FRONTEND_URL.rstrip("/")
    session = stripe.checkout.Session.create(
        # Metered price: no quantity on the line item
        line_items=[{"price": settings.STRIPE_PRICE_ID}],
        mode="subscription",
        metadata={
            "userId": str(user.id),
            "workspaceId": str(workspace.id),
            "userEmail": user.email,
        },
        success_url=success_url or f"{frontend_url}/?success=true",
        cancel_url=cancel_url or f"{frontend_url}/trial-expired",
        allow_promotion_codes=True,
    )

    logger.info(f"[BILLING] Created checkout session {session['id']} for workspace {workspace.id}")
    return {"url": session["url"], "session_id": session["id"]}


# =============================================================================
# WEBHOOKS
# =============================================================================


def verify_webhook(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Verify and parse a Stripe webhook payload.

    Without STRIPE_WEBHOOK_SECRET (dev mode) the payload is parsed unverified.
    The raw JSON is returned in both cases so stored/handled data stays plain
    dicts with Unix timestamps.

    Raises:
        stripe.SignatureVerificationError: Bad or missing signature
        ValueError: Payload is not a JSON object
    """
    settings = get_settings()
    secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()

    if not secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set - webhook verification disabled (dev mode)")
    else:
        stripe.Webhook.construct_event(payload, signature or "", secret)

    event = json.loads(payload)
    if not isinstance(event, dict):
        raise ValueError("Webhook payload must be a JSON object")
    return event


def process_webhook_event(event_type: str, data: Dict[str, Any], db: Session) -> str:
    """Route a webhook event to its handler.

    Returns:
        Action taken: processed, ignored, no_metadata, workspace_not_found,
        subscription_not_found
    """
    if event_type == "checkout.session.completed":
        return _handle_checkout_completed(data, db)
    elif event_type == "invoice.payment_succeeded":
        return _handle_invoice_payment_succeeded(data, db)
    elif event_type == "customer.subscription.deleted":
        return _handle_subscription_deleted(data, db)
    else:
        logger.info(f"Unhandled event type: {event_type}")
        return "ignored"


def _find_subscription(db: Session, stripe_subscription_id: str) -> Optional[WorkspaceSubscription]:
    return (
        db.query(WorkspaceSubscription)
        .filter(WorkspaceSubscription.stripe_subscription_id == stripe_subscription_id)
        .first()
    )


def _handle_checkout_completed(data: Dict[str, Any], db: Session) -> str:
    """Handle checkout.session.completed.

    Flow:
        1. Resolve workspace from session metadata
        2. Set subscription_status="active" and remember the Stripe customer
        3. If the session created a subscription, retrieve it and upsert the
           WorkspaceSubscription row
    """
    session_id = data.get("id")
    metadata = data.get("metadata") or {}
    workspace_id_str = metadata.get("workspaceId")
    user_id = metadata.get("userId")

    logger.info(f"Checkout session completed: {session_id}")

    if not workspace_id_str or not user_id:
        logger.warning(f"Checkout session {session_id} has no workspace/user metadata")
        return "no_metadata"

    try:
        workspace = db.query(Workspace).filter(Workspace.id == UUID(workspace_id_str)).first()
    except (ValueError, TypeError):
        logger.warning(f"Invalid workspaceId in metadata: {workspace_id_str}")
        return "workspace_not_found"

    if not workspace:
        logger.warning(f"Workspace {workspace_id_str} not found for checkout {session_id}")
        return "workspace_not_found"

    customer_id = data.get("customer")
    workspace.subscription_status = ACTIVE_SUBSCRIPTION_STATUS
    if customer_id:
        workspace.stripe_customer_id = customer_id

    stripe_subscription_id = data.get("subscription")
    if stripe_subscription_id:
        configure_stripe()
        subscription = _to_plain(stripe.Subscription.retrieve(stripe_subscription_id))
        period_start, period_end = _period_bounds(subscription)

        record = _find_subscription(db, stripe_subscription_id)
        if not record:
            record = WorkspaceSubscription(
                workspace_id=workspace.id,
                stripe_subscription_id=stripe_subscription_id,
            )
            db.add(record)
        record.stripe_customer_id = customer_id
        record.status = subscription.get("status") or ACTIVE_SUBSCRIPTION_STATUS
        record.trial_end_date = _from_unix(subscription.get("trial_end"))
        record.current_period_start = period_start
        record.current_period_end = period_end

    db.commit()

    logger.info(f"[BILLING] Activated subscription for workspace {workspace.id}, user {user_id}")
    return "processed"


def _handle_invoice_payment_succeeded(data: Dict[str, Any], db: Session) -> str:
    """Handle invoice.payment_succeeded: refresh status/period of the subscription row."""
    invoice_id = data.get("id")
    stripe_subscription_id = data.get("subscription")

    logger.info(f"Invoice payment succeeded: {invoice_id}")

    if not stripe_subscription_id:
        return "ignored"

    record = _find_subscription(db, stripe_subscription_id)
    if not record:
        logger.warning(f"No workspace subscription for {stripe_subscription_id}")
        return "subscription_not_found"

    configure_stripe()
    subscription = _to_plain(stripe.Subscription.retrieve(stripe_subscription_id))
    period_start, period_end = _period_bounds(subscription)

    record.status = subscription.get("status") or record.status
    record.current_period_start = period_start
    record.current_period_end = period_end
    db.commit()

    logger.info(f"[BILLING] Subscription {stripe_subscription_id} renewed: status={record.status}")
    return "processed"


def _handle_subscription_deleted(data: Dict[str, Any], db: Session) -> str:
    """Handle customer.subscription.deleted.

    Only the subscription row is canceled. The workspace keeps its
    subscription_status until someone decides what a canceled workspace
    should see.
    """
    stripe_subscription_id = data.get("id")
    logger.info(f"Subscription cancelled: {stripe_subscription_id}")

    record = _find_subscription(db, stripe_subscription_id)
    if not record:
        logger.warning(f"No workspace subscription for {stripe_subscription_id}")
        return "subscription_not_found"

    record.status = "canceled"
    db.commit()
    return "processed"
