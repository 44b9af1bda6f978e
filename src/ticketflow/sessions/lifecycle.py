"""Validated, timestamped status transitions for persisted sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from ticketflow.sessions.models import (
    MISSING,
    AgentSessionCreate,
    Missing,
    SessionSnapshot,
    SessionTransitionPatch,
    SessionView,
)
from ticketflow.sessions.repository import SessionRepository
from ticketflow.sessions.status_machine import (
    TERMINAL_STATUSES,
    SessionStatus,
    is_valid_transition,
    normalize_status,
)
from ticketflow.storage.common import utc_now

logger = logging.getLogger(__name__)

SESSION_LIFECYCLE_CONFLICT_CODE = "INVALID_SESSION_TRANSITION"
SESSION_NOT_FOUND_CODE = "SESSION_NOT_FOUND"
DEFAULT_CANCEL_MESSAGE = "Cancelled by user"


class SessionLifecycleConflict(RuntimeError):
    """Transition rejected by the state machine (or lost to a concurrent one)."""

    code = SESSION_LIFECYCLE_CONFLICT_CODE

    def __init__(self, session_id: str, from_status: str | None, to_status: SessionStatus) -> None:
        super().__init__(
            f"Invalid session transition from {from_status or 'unknown'} to {to_status.value}",
        )
        self.session_id = session_id
        self.from_status = from_status
        self.to_status = to_status


class SessionNotFound(LookupError):
    """Transition targets a session that is not in the store."""

    code = SESSION_NOT_FOUND_CODE

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


@dataclass(slots=True)
class SessionOutcome:
    """Terminal result of a session run as reported by its runner."""

    success: bool
    error: str | None = None


def status_for_api(value: str | None) -> str:
    """Stored status as callers should see it; legacy ``pending`` reads as ``queued``."""

    normalized = normalize_status(value)
    if normalized is not None:
        return normalized.value
    return value or SessionStatus.QUEUED.value


def build_transition_patch(
    snapshot: SessionSnapshot,
    to_status: SessionStatus,
    at: datetime,
    error: str | None | Missing = MISSING,
) -> SessionTransitionPatch:
    """Validate ``snapshot.status -> to_status`` and compute the fields to write.

    ``started_at`` is stamped on the first entry into ``running`` only, and
    ``ended_at``/``completed_at`` on terminal entry only if still empty, so a
    repeated request never moves an existing timestamp.
    """

    from_status = normalize_status(snapshot.status)
    if from_status is None or not is_valid_transition(from_status, to_status):
        raise SessionLifecycleConflict(snapshot.session_id, snapshot.status, to_status)

    patch = SessionTransitionPatch(status=to_status)
    if to_status == SessionStatus.RUNNING and snapshot.started_at is None:
        patch.started_at = at

    if to_status in TERMINAL_STATUSES:
        if snapshot.ended_at is None:
            patch.ended_at = at
        if snapshot.completed_at is None:
            patch.completed_at = at
        if not isinstance(error, Missing):
            patch.error = error
            patch.sets_error = True
        elif to_status == SessionStatus.COMPLETED:
            patch.error = None
            patch.sets_error = True
    return patch


class SessionLifecycleManager:
    """Applies state-machine-checked transitions to the session store."""

    def __init__(self, repository: SessionRepository) -> None:
        self.repository = repository

    def create_queued_session(self, payload: AgentSessionCreate) -> SessionView:
        return self.repository.create_session(payload, status=SessionStatus.QUEUED)

    def transition_session_status(
        self,
        session_id: str,
        to_status: SessionStatus,
        at: datetime | None = None,
        error: str | None | Missing = MISSING,
    ) -> SessionTransitionPatch:
        snapshot = self.repository.get_snapshot(session_id)
        if snapshot is None:
            raise SessionNotFound(session_id)

        patch = build_transition_patch(snapshot, to_status, at or utc_now(), error)
        if not self.repository.apply_patch(
            session_id,
            expected_status=snapshot.status,
            patch=patch,
        ):
            current = self.repository.get_snapshot(session_id)
            if current is None:
                raise SessionNotFound(session_id)
            raise SessionLifecycleConflict(session_id, current.status, to_status)

        logger.debug(
            "Session %s: %s -> %s",
            session_id,
            status_for_api(snapshot.status),
            to_status.value,
        )
        return patch

    def mark_running(self, session_id: str, at: datetime | None = None) -> SessionTransitionPatch:
        return self.transition_session_status(session_id, SessionStatus.RUNNING, at)

    def mark_terminal(
        self,
        session_id: str,
        outcome: SessionOutcome,
        at: datetime | None = None,
    ) -> SessionTransitionPatch:
        return self.transition_session_status(
            session_id,
            SessionStatus.COMPLETED if outcome.success else SessionStatus.FAILED,
            at,
            outcome.error,
        )

    def mark_cancelled(
        self,
        session_id: str,
        error: str = DEFAULT_CANCEL_MESSAGE,
        at: datetime | None = None,
    ) -> SessionTransitionPatch:
        return self.transition_session_status(session_id, SessionStatus.CANCELLED, at, error)
