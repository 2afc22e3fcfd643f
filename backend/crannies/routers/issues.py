"""Issue (deal) endpoints.

Every route here sits behind the trial gate: once a workspace's trial has
expired without an active subscription these return 402.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import require_workspace_access
from ..models import Issue, Workspace

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/issues",
    tags=["Issues"],
    responses={
        401: {"model": schemas.ErrorResponse, "description": "Unauthorized"},
        402: {"model": schemas.ErrorResponse, "description": "Trial expired"},
        404: {"model": schemas.ErrorResponse, "description": "Not Found"},
    },
)


@router.get(
    "",
    response_model=schemas.IssueListResponse,
    summary="List issues",
)
def list_issues(
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(require_workspace_access),
):
    issues = (
        db.query(Issue)
        .filter(Issue.workspace_id == workspace.id)
        .order_by(desc(Issue.issue_number))
        .all()
    )
    return schemas.IssueListResponse(
        issues=[schemas.IssueOut.model_validate(issue) for issue in issues],
        total=len(issues),
    )


# Concurrent creates can pick the same number; the unique constraint rejects
# the loser, which re-reads the max and tries again.
ISSUE_NUMBER_ATTEMPTS = 3


def _next_issue_number(db: Session, workspace_id) -> int:
    last_number = (
        db.query(func.max(Issue.issue_number))
        .filter(Issue.workspace_id == workspace_id)
        .scalar()
    )
    return (last_number or 0) + 1


@router.post(
    "",
    response_model=schemas.IssueOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create issue",
    responses={
        409: {"model": schemas.ErrorResponse, "description": "Issue number conflict"},
    },
)
def create_issue(
    payload: schemas.IssueCreate,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(require_workspace_access),
):
    """Create an issue with the next per-workspace issue number."""
    workspace_id = workspace.id

    for attempt in range(1, ISSUE_NUMBER_ATTEMPTS + 1):
        issue = Issue(
            workspace_id=workspace_id,
            issue_number=_next_issue_number(db, workspace_id),
            title=payload.title,
            description=payload.description,
            status=payload.status.value,
        )
        db.add(issue)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning(
                f"[ISSUES] Issue #{issue.issue_number} taken in workspace {workspace_id} "
                f"(attempt {attempt}/{ISSUE_NUMBER_ATTEMPTS})"
            )
            continue

        db.refresh(issue)
        logger.info(f"[ISSUES] Created issue #{issue.issue_number} in workspace {workspace_id}")
        return issue

    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail="Could not allocate an issue number, retry the request",
    )
