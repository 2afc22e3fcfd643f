"""Workspace onboarding endpoints.

WHAT: Create the caller's workspace (starting the 7-day trial) and read it back
WHY: Onboarding is the only place a trial starts; these routes are not
     trial-gated so an expired workspace can still be loaded
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_current_user, get_current_workspace
from ..models import User, Workspace
from ..services.workspace_factory import create_workspace_with_trial, generate_workspace_name

logger = logging.getLogger(__name__)


router = APIRouter(
    tags=["Workspaces"],
    responses={
        401: {"model": schemas.ErrorResponse, "description": "Unauthorized"},
        404: {"model": schemas.ErrorResponse, "description": "Not Found"},
        409: {"model": schemas.ErrorResponse, "description": "Conflict"},
    },
)


@router.post(
    "/workspaces",
    response_model=schemas.WorkspaceOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create workspace (onboarding)",
    description="""
    Create a workspace for the current user and start its 7-day trial.

    The caller becomes the workspace admin. A user can own one workspace;
    a second call returns 409.
    """,
)
def create_workspace(
    payload: schemas.WorkspaceCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if current_user.workspace_id:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User already has a workspace",
        )

    logger.info(f"[ONBOARDING] Creating workspace for user {current_user.id}")

    workspace = create_workspace_with_trial(
        db,
        name=payload.name or generate_workspace_name(payload.first_name or current_user.name),
        created_by=current_user,
        billing_email=payload.billing_email or current_user.email,
        industry=payload.industry,
        bio=payload.bio,
        logo_url=payload.logo_url,
    )
    db.commit()
    db.refresh(workspace)

    return workspace


@router.get(
    "/workspace",
    response_model=schemas.WorkspaceOut,
    summary="Get current workspace",
)
def get_workspace(workspace: Workspace = Depends(get_current_workspace)):
    return workspace
