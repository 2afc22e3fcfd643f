"""Trial/subscription lifecycle evaluator.

WHAT:
    Pure classification of a workspace's billing state from its persisted
    fields (subscription_status, trial_end_date), plus derivation of the
    trial end date from a creation timestamp.

WHY:
    - The trial gate (deps.require_workspace_access) blocks the app once a
      trial has expired
    - The usage job skips expired workspaces before metering them
    - GET /billing/status reports the same classification to the frontend

NOTES:
    - is_in_trial raises InvalidStateError when trial_end_date is missing,
      is_trial_expired returns False in that case. Callers that need one
      consistent answer use get_trial_state, which returns TrialState.unknown.
    - At now == trial_end_date a workspace is neither in trial nor expired.
    - Naive datetimes are treated as UTC (SQLite drops tzinfo on read).

REFERENCES:
    - crannies/services/workspace_factory.py (sets trial_end_date on creation)
    - crannies/deps.py (require_workspace_access)
    - crannies/services/usage_service.py
"""

from __future__ import annotations

import enum
import math
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Protocol, TypeVar, Union


TRIAL_DURATION_DAYS = 7
ACTIVE_SUBSCRIPTION_STATUS = "active"

DateLike = TypeVar("DateLike", date, datetime)


class TrialWorkspace(Protocol):
    """Anything with the two fields the evaluator reads (ORM row, schema, test double)."""

    subscription_status: Optional[str]
    trial_end_date: Optional[datetime]


class TrialState(str, enum.Enum):
    active = "active"
    trialing = "trialing"
    expired = "expired"
    unknown = "unknown"


class InvalidStateError(ValueError):
    """Workspace has no trial end date, so trial membership is undefined."""

    def __init__(self, workspace_id: Optional[object] = None):
        self.workspace_id = workspace_id
        if workspace_id is not None:
            message = f"Workspace {workspace_id} has no trial end date"
        else:
            message = "Workspace has no trial end date"
        super().__init__(message)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Union[date, datetime]) -> datetime:
    """Normalize a stored timestamp for comparison.

    Plain dates are taken as midnight UTC, naive datetimes as UTC wall time.
    """
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_active(workspace: TrialWorkspace) -> bool:
    return getattr(workspace, "subscription_status", None) == ACTIVE_SUBSCRIPTION_STATUS


def compute_trial_end_date(creation_date: DateLike) -> DateLike:
    """Return the trial end date: creation date plus 7 calendar days.

    Python adds timedelta(days=...) to aware datetimes in wall-clock time, so
    the time of day and tzinfo survive DST shifts and month/year rollovers
    (2024-01-28 -> 2024-02-04, 2023-12-28 -> 2024-01-04).
    """
    return creation_date + timedelta(days=TRIAL_DURATION_DAYS)


def is_in_trial(workspace: TrialWorkspace, now: Optional[datetime] = None) -> bool:
    """Return True while a non-active workspace is before its trial end date.

    Raises:
        InvalidStateError: If the workspace has no trial_end_date. This check
            runs before the active-subscription check.
    """
    trial_end_date = getattr(workspace, "trial_end_date", None)
    if trial_end_date is None:
        raise InvalidStateError(getattr(workspace, "id", None))

    if _is_active(workspace):
        return False

    current = _as_utc(now) if now is not None else _utc_now()
    return current < _as_utc(trial_end_date)


def is_trial_expired(workspace: TrialWorkspace, now: Optional[datetime] = None) -> bool:
    """Return True once a non-active workspace is past its trial end date.

    A workspace without a trial end date is never expired.
    """
    if _is_active(workspace):
        return False

    trial_end_date = getattr(workspace, "trial_end_date", None)
    if trial_end_date is None:
        return False

    current = _as_utc(now) if now is not None else _utc_now()
    return current > _as_utc(trial_end_date)


def get_trial_state(workspace: TrialWorkspace, now: Optional[datetime] = None) -> TrialState:
    """Collapse the two predicates into one explicit state.

    The boundary instant (neither in trial nor expired) counts as trialing,
    matching the gate, which only blocks on is_trial_expired.
    """
    if _is_active(workspace):
        return TrialState.active
    if getattr(workspace, "trial_end_date", None) is None:
        return TrialState.unknown
    if is_trial_expired(workspace, now=now):
        return TrialState.expired
    return TrialState.trialing


def trial_days_remaining(workspace: TrialWorkspace, now: Optional[datetime] = None) -> Optional[int]:
    """Whole days left in the trial, rounded up. None when not applicable."""
    trial_end_date = getattr(workspace, "trial_end_date", None)
    if _is_active(workspace) or trial_end_date is None:
        return None

    current = _as_utc(now) if now is not None else _utc_now()
    remaining = (_as_utc(trial_end_date) - current).total_seconds()
    if remaining <= 0:
        return 0
    return math.ceil(remaining / 86400)
