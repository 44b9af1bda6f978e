"""Single-active-session-per-scope guard over the session store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from ticketflow.sessions.models import (
    ActiveSessionSummary,
    AgentSessionCreate,
    ContentionScope,
    EpicScope,
    SessionView,
)
from ticketflow.sessions.repository import ACTIVE_STATUS_VALUES, build_session_row, to_session_view
from ticketflow.sessions.status_machine import SessionStatus, normalize_status
from ticketflow.storage.common import to_utc_aware_datetime
from ticketflow.storage.database import Database
from ticketflow.storage.sqlmodel_models import AgentSession

logger = logging.getLogger(__name__)

AGENT_ALREADY_RUNNING_CODE = "AGENT_ALREADY_RUNNING"
DEFAULT_ALREADY_RUNNING_MESSAGE = "Another agent is already running for this task."


@dataclass(slots=True)
class GuardResult:
    """Either the inserted session or the session that already holds the scope."""

    inserted: bool
    session: SessionView | None = None
    conflict: ActiveSessionSummary | None = None


class ConcurrencyGuard:
    """Admits at most one queued/running session per contention scope.

    The existence check and the insert share one ``BEGIN IMMEDIATE``
    transaction, so two callers racing for the same scope are serialized by
    SQLite's write lock. A scope frees itself as soon as its session reaches
    a terminal status, because only active statuses are matched.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def find_active_session(self, scope: ContentionScope) -> ActiveSessionSummary | None:
        with self.database.session() as session:
            return _find_active(session, scope)

    def insert_running_session_with_guard(
        self,
        scope: ContentionScope,
        candidate: AgentSessionCreate,
        *,
        status: SessionStatus = SessionStatus.QUEUED,
    ) -> GuardResult:
        _check_candidate_scope(scope, candidate)
        row = build_session_row(candidate, status=status)
        with self.database.session() as session:
            conflict = _find_active(session, scope)
            if conflict is not None:
                session.rollback()
                return GuardResult(inserted=False, conflict=conflict)
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # The partial unique index caught a writer that bypassed the guard.
                session.rollback()
                conflict = _find_active(session, scope)
                if conflict is None:
                    raise
                logger.warning(
                    "Scope %s already held by session %s (unique index).",
                    scope,
                    conflict.session_id,
                )
                return GuardResult(inserted=False, conflict=conflict)
            session.refresh(row)
            return GuardResult(inserted=True, session=to_session_view(row))


def create_already_running_payload(
    scope: ContentionScope,
    active_session: ActiveSessionSummary,
    message: str = DEFAULT_ALREADY_RUNNING_MESSAGE,
) -> dict[str, Any]:
    """Stable, machine-readable description of a scope conflict."""

    return {
        "error": message,
        "code": AGENT_ALREADY_RUNNING_CODE,
        "data": {
            "activeSessionId": active_session.session_id,
            "activeSession": active_session.to_payload(),
            "sessionUrl": session_url(scope.project_id, active_session.session_id),
            "target": scope.to_payload(),
        },
    }


def is_already_running_payload(value: object) -> bool:
    if not isinstance(value, dict):
        return False
    data = value.get("data")
    return (
        value.get("code") == AGENT_ALREADY_RUNNING_CODE
        and isinstance(data, dict)
        and isinstance(data.get("activeSessionId"), str)
    )


def session_url(project_id: str, session_id: str) -> str:
    return f"/projects/{project_id}/sessions/{session_id}"


def _find_active(session: Session, scope: ContentionScope) -> ActiveSessionSummary | None:
    statement = select(AgentSession).where(
        AgentSession.project_id == scope.project_id,
        col(AgentSession.status).in_(ACTIVE_STATUS_VALUES),
    )
    if isinstance(scope, EpicScope):
        statement = statement.where(AgentSession.epic_id == scope.epic_id)
    elif scope.epic_id:
        statement = statement.where(
            or_(
                col(AgentSession.user_story_id) == scope.user_story_id,
                col(AgentSession.epic_id) == scope.epic_id,
            ),
        )
    else:
        statement = statement.where(AgentSession.user_story_id == scope.user_story_id)

    row = session.exec(
        statement.order_by(col(AgentSession.created_at).desc()).limit(1),
    ).first()
    if row is None:
        return None
    return ActiveSessionSummary(
        session_id=row.session_id,
        project_id=row.project_id,
        epic_id=row.epic_id,
        user_story_id=row.user_story_id,
        status=normalize_status(row.status) or SessionStatus.QUEUED,
        mode=row.mode,
        provider=row.provider,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at else None,
    )


def _check_candidate_scope(scope: ContentionScope, candidate: AgentSessionCreate) -> None:
    if candidate.project_id != scope.project_id:
        raise ValueError(
            f"Session project {candidate.project_id!r} does not match scope project "
            f"{scope.project_id!r}.",
        )
    if isinstance(scope, EpicScope):
        if candidate.epic_id != scope.epic_id:
            raise ValueError(f"Session epic {candidate.epic_id!r} is outside scope {scope}.")
    elif candidate.user_story_id != scope.user_story_id:
        raise ValueError(f"Session story {candidate.user_story_id!r} is outside scope {scope}.")
