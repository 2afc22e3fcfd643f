"""SQLAlchemy ORM models and enums.

This module defines the billing-relevant slice of the Crannies schema using
UUID primary keys and explicit relationships. Users come from the external
identity provider; only the fields the API needs are mirrored here.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Text, Boolean, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums ---------------------------------------------------------

class IssueStatusEnum(str, enum.Enum):
    open = "open"
    closed = "closed"
    won = "won"
    lost = "lost"


# Statuses that no longer count toward metered usage
INACTIVE_ISSUE_STATUSES = (IssueStatusEnum.closed.value, IssueStatusEnum.lost.value)


# Core models ----------------------------------------------------

class Workspace(Base):
    """Workspace represents a company/organization account.

    A workspace owns issues (deals) and carries the billing state read by
    crannies.services.trial:
    - subscription_status: free-form; "active" means a paid subscription,
      new workspaces start as "trial"
    - trial_end_date: set once at creation (created_at + 7 days)
    """
    __tablename__ = "workspaces"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    billing_email = Column(String, nullable=True)
    industry = Column(String, nullable=True)
    bio = Column(Text, nullable=True)
    logo_url = Column(String, nullable=True)

    # Billing
    stripe_customer_id = Column(String, nullable=True)
    subscription_status = Column(String, nullable=True)
    trial_end_date = Column(DateTime(timezone=True), nullable=True)

    created_by_id = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    users = relationship("User", back_populates="workspace")
    subscriptions = relationship("WorkspaceSubscription", back_populates="workspace", cascade="all, delete-orphan")
    issues = relationship("Issue", back_populates="workspace", cascade="all, delete-orphan")

    def __str__(self):
        return self.name


class User(Base):
    """User mirrored from the identity provider.

    workspace_id stays NULL until onboarding creates (or joins) a workspace.
    """
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    is_admin = Column(Boolean, default=False)

    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=True)
    workspace = relationship("Workspace", back_populates="users")

    created_at = Column(DateTime(timezone=True), default=_utcnow)

    def __str__(self):
        return f"{self.name} ({self.email})"


class WorkspaceSubscription(Base):
    """Stripe subscription attached to a workspace.

    status mirrors the Stripe subscription status (active, past_due, canceled, ...).
    Usage reporting only meters rows whose status is "active".
    """
    __tablename__ = "workspace_subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)
    stripe_customer_id = Column(String, nullable=True)
    stripe_subscription_id = Column(String, nullable=True, unique=True)
    status = Column(String, nullable=False)
    trial_end_date = Column(DateTime(timezone=True), nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    workspace = relationship("Workspace", back_populates="subscriptions")

    def __str__(self):
        return f"{self.stripe_subscription_id or 'pending'} ({self.status})"


class Issue(Base):
    """Issue (deal) tracked inside a workspace.

    issue_number is sequential per workspace. Open and won issues are
    "active deals" for usage metering.
    """
    __tablename__ = "issues"
    __table_args__ = (UniqueConstraint("workspace_id", "issue_number", name="uq_issue_number_per_workspace"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)
    issue_number = Column(Integer, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=IssueStatusEnum.open.value)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    workspace = relationship("Workspace", back_populates="issues")

    def __str__(self):
        return f"#{self.issue_number} {self.title}"


class StripeWebhookEvent(Base):
    """Processed Stripe webhook events, keyed by Stripe event id for idempotency."""
    __tablename__ = "stripe_webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(String, nullable=False, unique=True, index=True)
    event_type = Column(String, nullable=False)
    processed_at = Column(DateTime(timezone=True), default=_utcnow)
    processing_result = Column(String, default="success")
