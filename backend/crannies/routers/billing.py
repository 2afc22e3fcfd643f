"""Stripe billing endpoints.

WHAT: Trial/subscription status, Stripe checkout, usage reporting and webhooks
WHY: Per-workspace billing - a workspace runs a 7-day trial, then needs a
     Stripe subscription to keep using gated routes

Key flows:
    1. Status: GET /billing/status → trial state for the caller's workspace
    2. Checkout: POST /billing/checkout → Stripe checkout URL (admins only)
    3. Usage: POST /billing/usage/report → report active deals now (admins only)
    4. Webhook: POST /webhooks/stripe → activate/renew/cancel subscriptions

None of these routes use the trial gate: an expired workspace must still be
able to see its status and subscribe.

REFERENCES:
    - crannies/services/trial.py
    - crannies/services/stripe_billing.py
    - crannies/services/usage_service.py
    - https://docs.stripe.com/webhooks
"""

import asyncio
import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_current_workspace, require_admin
from ..models import StripeWebhookEvent, User, Workspace
from ..services import stripe_billing
from ..services.stripe_billing import BillingConfigurationError
from ..services.trial import (
    InvalidStateError,
    get_trial_state,
    is_in_trial,
    is_trial_expired,
    trial_days_remaining,
)
from ..services.usage_service import report_usage_for_workspace
from ..telemetry import capture_exception

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/billing",
    tags=["Billing"],
    responses={
        401: {"model": schemas.ErrorResponse, "description": "Unauthorized"},
        403: {"model": schemas.ErrorResponse, "description": "Forbidden"},
        404: {"model": schemas.ErrorResponse, "description": "Not Found"},
        500: {"model": schemas.ErrorResponse, "description": "Internal Server Error"},
    },
)

webhook_router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def _is_event_processed(event_id: str, db: Session) -> bool:
    """Stripe retries deliveries; each event id is processed once."""
    existing = (
        db.query(StripeWebhookEvent)
        .filter(StripeWebhookEvent.event_id == event_id)
        .first()
    )
    return existing is not None


def _record_event(event_id: str, event_type: str, result: str, db: Session) -> None:
    db.add(
        StripeWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            processing_result=result,
        )
    )
    db.commit()


def _safe_is_in_trial(workspace: Workspace) -> bool:
    # is_in_trial raises for a missing end date; the status payload reports False
    try:
        return is_in_trial(workspace)
    except InvalidStateError:
        return False


# =============================================================================
# BILLING STATUS ENDPOINT
# =============================================================================


@router.get(
    "/status",
    response_model=schemas.TrialStatusResponse,
    summary="Get trial/subscription status",
    description="""
    Trial and subscription state of the current user's workspace.

    Returns:
        - state: active, trialing, expired or unknown (no trial end date)
        - is_in_trial / is_trial_expired: the raw predicates
        - days_remaining: whole days left in the trial

    Frontend uses this to render the "trial expired" view and the upgrade CTA.
    """,
)
async def get_billing_status(
    workspace: Workspace = Depends(get_current_workspace),
):
    """Get trial status for current workspace."""
    return schemas.TrialStatusResponse(
        workspace_id=str(workspace.id),
        workspace_name=workspace.name,
        state=get_trial_state(workspace),
        subscription_status=workspace.subscription_status,
        trial_end_date=workspace.trial_end_date,
        is_in_trial=_safe_is_in_trial(workspace),
        is_trial_expired=is_trial_expired(workspace),
        days_remaining=trial_days_remaining(workspace),
    )


# =============================================================================
# CHECKOUT CREATION ENDPOINT
# =============================================================================


@router.post(
    "/checkout",
    response_model=schemas.CheckoutCreateResponse,
    summary="Create checkout session",
    description="""
    Create a Stripe checkout session for the workspace subscription.

    Requirements:
        - User must be a workspace admin

    The subscription is activated by the checkout.session.completed webhook,
    not by this call.
    """,
)
def create_checkout(
    payload: Optional[schemas.CheckoutCreateRequest] = None,
    current_user: User = Depends(require_admin),
    workspace: Workspace = Depends(get_current_workspace),
):
    """Create Stripe checkout session."""
    payload = payload or schemas.CheckoutCreateRequest()

    try:
        session = stripe_billing.create_checkout_session(
            user=current_user,
            workspace=workspace,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    except BillingConfigurationError as e:
        logger.error(f"[BILLING] Stripe not configured: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Billing is not configured",
        )
    except stripe.StripeError as e:
        logger.error(f"[BILLING] Stripe checkout creation failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create checkout session",
        )

    return schemas.CheckoutCreateResponse(**session)


# =============================================================================
# USAGE REPORTING ENDPOINT
# =============================================================================


@router.post(
    "/usage/report",
    response_model=schemas.UsageReportResponse,
    summary="Report usage now",
    description="""
    Report the workspace's active deal count to Stripe immediately instead of
    waiting for the monthly job. Admins only. Never fails on Stripe errors;
    `reported` is false when nothing was sent.
    """,
)
def report_usage(
    current_user: User = Depends(require_admin),
    workspace: Workspace = Depends(get_current_workspace),
    db: Session = Depends(get_db),
):
    active_deals = report_usage_for_workspace(db, workspace.id)
    return schemas.UsageReportResponse(
        workspace_id=str(workspace.id),
        reported=active_deals is not None,
        active_deals=active_deals,
    )


# =============================================================================
# WEBHOOK ENDPOINT
# =============================================================================


@webhook_router.post(
    "/stripe",
    response_model=schemas.WebhookResponse,
    summary="Stripe webhook handler",
    description="""
    Receives and processes Stripe webhook events.

    Handled events:
        - checkout.session.completed: activate workspace, store subscription
        - invoice.payment_succeeded: refresh subscription period
        - customer.subscription.deleted: mark subscription canceled

    Security:
        - Stripe-Signature header verified with STRIPE_WEBHOOK_SECRET
        - Idempotent: skips already processed event ids

    Processing failures return 500 and are not recorded, so Stripe retries.

    Testing:
        - stripe listen --forward-to localhost:8000/webhooks/stripe
    """,
)
async def handle_stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
):
    """Process Stripe webhook events.

    Only the body read happens on the event loop; verification, SDK calls and
    database work run in a worker thread.
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature")
    return await asyncio.to_thread(_handle_webhook_payload, body, signature, db)


def _handle_webhook_payload(body: bytes, signature: Optional[str], db: Session) -> schemas.WebhookResponse:
    try:
        event = stripe_billing.verify_webhook(body, signature)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature"
        )
    except ValueError as e:
        logger.warning(f"Invalid webhook payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload"
        )

    event_type = event.get("type", "unknown")
    envelope = event.get("data", {})
    data = envelope.get("object", {}) if isinstance(envelope, dict) else None
    if not isinstance(data, dict):
        logger.warning(f"Webhook {event_type} has a malformed data.object")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload"
        )
    event_id = event.get("id") or f"{event_type}:{data.get('id', 'unknown')}"

    logger.info(f"Received Stripe webhook: {event_type} ({event_id})")

    if _is_event_processed(event_id, db):
        logger.info(f"Skipping duplicate event: {event_id}")
        return schemas.WebhookResponse(event_type=event_type, action="skipped")

    try:
        action = stripe_billing.process_webhook_event(event_type, data, db)
    except Exception as e:
        # Not recorded: Stripe redelivers on 5xx and the retry must not be skipped
        logger.error(f"Webhook processing error for {event_id}: {e}", exc_info=True)
        db.rollback()
        capture_exception(e, extra={"stripe_event_id": event_id, "event_type": event_type})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )

    _record_event(event_id, event_type, "success", db)
    return schemas.WebhookResponse(event_type=event_type, action=action)
