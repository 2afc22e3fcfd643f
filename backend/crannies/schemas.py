"""Pydantic request/response schemas.

Every request body and response the API exposes is declared here so payloads
are validated at the boundary instead of being passed around as loose dicts.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .models import IssueStatusEnum
from .services.trial import TrialState


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str = Field(
        description="Error message",
        examples=["Trial expired"]
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "detail": "Trial expired"
            }
        }
    }


# ==========================================================================
# WORKSPACE SCHEMAS
# ==========================================================================


class WorkspaceCreate(BaseModel):
    """Onboarding payload: creates the caller's workspace on a 7-day trial."""

    name: Optional[str] = Field(None, min_length=1, max_length=200, description="Company name; defaults to \"<first name>'s Workspace\"")
    first_name: Optional[str] = Field(None, description="Used to generate a workspace name when none is given")
    billing_email: Optional[str] = None
    industry: Optional[str] = None
    bio: Optional[str] = None
    logo_url: Optional[str] = None


class WorkspaceOut(BaseModel):
    """Workspace as returned to the frontend."""

    id: UUID
    name: str
    billing_email: Optional[str] = None
    industry: Optional[str] = None
    bio: Optional[str] = None
    logo_url: Optional[str] = None
    subscription_status: Optional[str] = None
    trial_end_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ==========================================================================
# ISSUE SCHEMAS
# ==========================================================================


class IssueCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    description: Optional[str] = None
    status: IssueStatusEnum = IssueStatusEnum.open


class IssueOut(BaseModel):
    id: UUID
    workspace_id: UUID
    issue_number: int
    title: str
    description: Optional[str] = None
    status: IssueStatusEnum
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class IssueListResponse(BaseModel):
    issues: List[IssueOut]
    total: int


# ==========================================================================
# BILLING SCHEMAS (Stripe Integration)
# ==========================================================================
# WHAT: Request/response schemas for workspace trial and subscription state
# WHY: The frontend gates the app shell on this state
# REFERENCES:
#   - crannies/services/trial.py
#   - crannies/routers/billing.py


class TrialStatusResponse(BaseModel):
    """Response from GET /billing/status.

    WHAT: Trial/subscription classification for the caller's workspace
    WHY: Frontend router renders the "trial expired" view when is_trial_expired
    """

    workspace_id: str = Field(description="Workspace UUID")
    workspace_name: str = Field(description="Workspace display name")
    state: TrialState = Field(description="active | trialing | expired | unknown")
    subscription_status: Optional[str] = Field(None, description="Raw workspace subscription status")
    trial_end_date: Optional[datetime] = Field(None, description="When the trial ends")
    is_in_trial: bool = Field(description="Inside the trial window (False when no trial end date)")
    is_trial_expired: bool = Field(description="Trial over without an active subscription")
    days_remaining: Optional[int] = Field(None, description="Whole days left in the trial")


class CheckoutCreateRequest(BaseModel):
    """Request to create a Stripe checkout session.

    success_url/cancel_url default to FRONTEND_URL based redirects.
    """

    success_url: Optional[str] = Field(None, description="Redirect URL after successful checkout")
    cancel_url: Optional[str] = Field(None, description="Redirect URL if checkout is canceled")


class CheckoutCreateResponse(BaseModel):
    """Response with Stripe checkout URL."""

    url: str = Field(description="Stripe checkout page URL")
    session_id: str = Field(description="Stripe checkout session ID")


class WebhookResponse(BaseModel):
    """Standard webhook response.

    WHAT: Acknowledges webhook receipt
    WHY: Stripe expects 2xx; this provides structured response
    """

    received: bool = Field(default=True, description="Webhook received successfully")
    event_type: Optional[str] = Field(None, description="Event type processed")
    action: Optional[str] = Field(None, description="Action taken (processed, skipped, ignored, no_metadata, workspace_not_found, subscription_not_found)")


class UsageReportResponse(BaseModel):
    """Result of reporting metered usage for one workspace."""

    workspace_id: str
    reported: bool = Field(description="Whether a meter event was sent")
    active_deals: Optional[int] = Field(None, description="Count reported to Stripe")
