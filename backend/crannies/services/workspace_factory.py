"""Workspace Factory Service - Centralized workspace creation logic.

WHAT: Creates workspaces with a consistent 7-day trial setup.
WHY: Every new workspace must start with subscription_status="trial" and a
     trial_end_date derived from its creation time, otherwise the trial gate
     never closes (is_trial_expired treats a missing end date as not expired).

REFERENCES:
    - crannies/services/trial.py (compute_trial_end_date)
    - crannies/routers/workspaces.py (onboarding endpoint)
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from ..models import User, Workspace
from .trial import compute_trial_end_date

logger = logging.getLogger(__name__)

TRIAL_STATUS = "trial"


def create_workspace_with_trial(
    db: Session,
    name: str,
    created_by: Optional[User] = None,
    billing_email: Optional[str] = None,
    industry: Optional[str] = None,
    bio: Optional[str] = None,
    logo_url: Optional[str] = None,
    now: Optional[datetime] = None,
    flush_only: bool = True,
) -> Workspace:
    """Create a new workspace on a 7-day trial.

    Parameters:
        db: Database session
        name: Workspace name (e.g., "Acme Inc")
        created_by: If provided, the user is moved into the workspace as admin
        now: Creation instant (defaults to the current UTC time)
        flush_only: If True, only flush (don't commit). Default True for
                   callers that manage their own transaction.

    Returns:
        Workspace: The created workspace with trial setup

    Example:
        workspace = create_workspace_with_trial(db, name="Acme Inc", created_by=user)
        db.commit()
    """
    created_at = now or datetime.now(timezone.utc)

    workspace = Workspace(
        name=name,
        billing_email=billing_email,
        industry=industry,
        bio=bio,
        logo_url=logo_url,
        subscription_status=TRIAL_STATUS,
        trial_end_date=compute_trial_end_date(created_at),
        created_by_id=created_by.id if created_by else None,
        created_at=created_at,
    )
    db.add(workspace)
    db.flush()  # Get workspace.id without committing

    if created_by:
        created_by.workspace_id = workspace.id
        created_by.is_admin = True

    logger.info(
        f"[TRIAL] Created workspace {workspace.id} on trial until {workspace.trial_end_date.isoformat()}"
    )

    if not flush_only:
        db.commit()
        db.refresh(workspace)

    return workspace


def generate_workspace_name(first_name: Optional[str]) -> str:
    """Generate a workspace name from user's first name.

    Example:
        name = generate_workspace_name("John")  # "John's Workspace"
        name = generate_workspace_name("")      # "My Workspace"
    """
    clean_name = (first_name or "").strip().title()
    if not clean_name:
        return "My Workspace"
    return f"{clean_name}'s Workspace"
