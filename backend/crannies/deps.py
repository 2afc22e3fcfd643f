"""Dependency providers and settings management."""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import Cookie, Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import User, Workspace
from .security import decode_token
from .services.trial import is_trial_expired
from .telemetry import set_user_context

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"
    FRONTEND_URL: str = "http://localhost:5173"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_PRICE_ID: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    # Must match the meter configured in the Stripe dashboard
    STRIPE_USAGE_METER_EVENT: str = "active_deals"

    # Redis (arq usage worker only)
    REDIS_URL: str = "redis://localhost:6379/0"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_current_user(
    db: Session = Depends(get_db),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
    authorization: Optional[str] = Header(default=None),
) -> User:
    """Resolve the current user from the `access_token` cookie or Authorization header.

    Both accept "Bearer <jwt>". The token subject is the user's email.
    """
    raw = access_token or authorization
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    # Remove optional "Bearer " prefix
    if raw.startswith("Bearer "):
        token = raw[len("Bearer ") :]
    else:
        token = raw

    try:
        payload = decode_token(token)
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = (
        db.query(User)
        .filter(User.email == subject)
        .first()
    )
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    set_user_context(
        user_id=str(user.id),
        email=user.email,
        workspace_id=str(user.workspace_id) if user.workspace_id else None,
    )
    return user


def get_current_workspace(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> Workspace:
    """Return the current user's workspace (404 before onboarding)."""
    if not current_user.workspace_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No workspace")

    workspace = db.query(Workspace).filter(Workspace.id == current_user.workspace_id).first()
    if not workspace:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No workspace")
    return workspace


def require_workspace_access(
    workspace: Workspace = Depends(get_current_workspace),
) -> Workspace:
    """Gate subscription-protected routes on the workspace trial state.

    WHAT: 402 once the trial has expired without an active subscription
    WHY: Backend counterpart of the frontend "trial expired" view. Billing
         routes do not use this gate so an expired workspace can still subscribe.
    """
    if is_trial_expired(workspace):
        logger.info(f"[TRIAL] Blocked request for workspace {workspace.id}: trial expired")
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail="Trial expired")
    return workspace


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Only workspace admins can manage billing."""
    if not current_user.workspace_id or not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    return current_user
