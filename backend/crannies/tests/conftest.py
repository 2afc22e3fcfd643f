"""Pytest configuration for crannies integration tests

WHAT: Provides shared fixtures for HTTP endpoint and service-level tests
WHY: Ensures consistent test setup, database isolation, and Stripe-free runs
REFERENCES:
    - crannies/main.py: FastAPI application
    - crannies/database.py: Database configuration
    - crannies/deps.py: Dependency injection
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before any crannies module reads it at import time
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_PRICE_ID"] = "price_test_123"
# Empty secret = dev mode, webhooks parsed without signature verification
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ.pop("SENTRY_DSN", None)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from crannies.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session."""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = TestingSessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """Create FastAPI test application."""
    from crannies.database import get_db
    from crannies.main import create_app

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_user(test_db_session):
    """User that has not onboarded yet (no workspace)."""
    from crannies.models import User

    user = User(email="owner@example.com", name="Olivia Owner")
    test_db_session.add(user)
    test_db_session.commit()
    test_db_session.refresh(user)
    return user


@pytest.fixture
def test_workspace(test_db_session, test_user):
    """Workspace on a fresh 7-day trial, owned (admin) by test_user."""
    from crannies.services.workspace_factory import create_workspace_with_trial

    workspace = create_workspace_with_trial(
        test_db_session,
        name="Acme Inc",
        created_by=test_user,
        billing_email=test_user.email,
    )
    test_db_session.commit()
    test_db_session.refresh(workspace)
    return workspace


@pytest.fixture
def test_member(test_db_session, test_workspace):
    """Non-admin user in test_workspace."""
    from crannies.models import User

    user = User(
        email="member@example.com",
        name="Max Member",
        is_admin=False,
        workspace_id=test_workspace.id,
    )
    test_db_session.add(user)
    test_db_session.commit()
    test_db_session.refresh(user)
    return user


@pytest.fixture
def expire_trial(test_db_session):
    """Move a workspace's trial end date into the past."""

    def _expire(workspace, days_ago: int = 1):
        workspace.trial_end_date = datetime.now(timezone.utc) - timedelta(days=days_ago)
        test_db_session.commit()
        return workspace

    return _expire


# ============================================================================
# Authentication Fixtures
# ============================================================================

def _headers_for(user) -> dict:
    from crannies.security import create_access_token

    return {"Authorization": f"Bearer {create_access_token(user.email)}"}


@pytest.fixture
def auth_headers(test_user):
    """Auth headers for test_user (admin once test_workspace exists)."""
    return _headers_for(test_user)


@pytest.fixture
def member_headers(test_member):
    return _headers_for(test_member)
