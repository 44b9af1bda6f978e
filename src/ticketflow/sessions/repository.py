"""Persistence facade for agent session rows."""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import col, select

from ticketflow.sessions.models import (
    AgentSessionCreate,
    SessionSnapshot,
    SessionTransitionPatch,
    SessionView,
)
from ticketflow.sessions.status_machine import (
    ACTIVE_STATUSES,
    LEGACY_STATUS_ALIASES,
    SessionStatus,
    normalize_status,
)
from ticketflow.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from ticketflow.storage.database import Database
from ticketflow.storage.sqlmodel_models import AgentSession

ACTIVE_STATUS_VALUES = tuple(
    sorted({status.value for status in ACTIVE_STATUSES} | set(LEGACY_STATUS_ALIASES)),
)


class SessionRepository:
    """Reads and conditionally updates session rows."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def create_session(
        self,
        payload: AgentSessionCreate,
        *,
        status: SessionStatus = SessionStatus.QUEUED,
    ) -> SessionView:
        """Insert a session row without any scope check."""

        row = build_session_row(payload, status=status)
        with self.database.session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return to_session_view(row)

    def get_session(self, session_id: str) -> SessionView | None:
        with self.database.session() as session:
            row = session.get(AgentSession, session_id)
            return to_session_view(row) if row is not None else None

    def get_snapshot(self, session_id: str) -> SessionSnapshot | None:
        with self.database.session() as session:
            row = session.get(AgentSession, session_id)
            if row is None:
                return None
            return SessionSnapshot(
                session_id=row.session_id,
                status=row.status,
                started_at=_aware(row.started_at),
                ended_at=_aware(row.ended_at),
                completed_at=_aware(row.completed_at),
            )

    def apply_patch(
        self,
        session_id: str,
        *,
        expected_status: str | None,
        patch: SessionTransitionPatch,
    ) -> bool:
        """Write ``patch`` only if the stored status is still ``expected_status``."""

        values = {
            key: to_db_datetime(value) if key.endswith("_at") else value
            for key, value in patch.to_values().items()
        }
        with self.database.session() as session:
            statement = sa_update(AgentSession).where(col(AgentSession.session_id) == session_id)
            if expected_status is None:
                statement = statement.where(col(AgentSession.status).is_(None))
            else:
                statement = statement.where(col(AgentSession.status) == expected_status)
            result = session.exec(statement.values(**values))
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_sessions(
        self,
        *,
        project_id: str | None = None,
        status: SessionStatus | None = None,
        limit: int = 50,
    ) -> list[SessionView]:
        with self.database.session() as session:
            statement = select(AgentSession)
            if project_id is not None:
                statement = statement.where(AgentSession.project_id == project_id)
            if status is not None:
                statement = statement.where(col(AgentSession.status).in_(_stored_values(status)))
            rows = session.exec(
                statement.order_by(
                    col(AgentSession.created_at).desc(),
                    col(AgentSession.session_id).desc(),
                ).limit(max(1, limit)),
            ).all()
            return [to_session_view(row) for row in rows]

    def list_active_sessions(self, project_id: str) -> list[SessionView]:
        with self.database.session() as session:
            rows = session.exec(
                select(AgentSession)
                .where(
                    AgentSession.project_id == project_id,
                    col(AgentSession.status).in_(ACTIVE_STATUS_VALUES),
                )
                .order_by(col(AgentSession.created_at).desc()),
            ).all()
            return [to_session_view(row) for row in rows]


def build_session_row(payload: AgentSessionCreate, *, status: SessionStatus) -> AgentSession:
    return AgentSession(
        session_id=payload.session_id or str(uuid4()),
        project_id=payload.project_id,
        epic_id=payload.epic_id,
        user_story_id=payload.user_story_id,
        status=status.value,
        mode=payload.mode,
        provider=payload.provider,
        prompt=payload.prompt,
        logs_path=payload.logs_path,
        created_at=utc_now(),
    )


def to_session_view(row: AgentSession) -> SessionView:
    return SessionView(
        session_id=row.session_id,
        project_id=row.project_id,
        epic_id=row.epic_id,
        user_story_id=row.user_story_id,
        status=normalize_status(row.status) or SessionStatus.QUEUED,
        mode=row.mode,
        provider=row.provider,
        prompt=row.prompt,
        logs_path=row.logs_path,
        started_at=_aware(row.started_at),
        ended_at=_aware(row.ended_at),
        completed_at=_aware(row.completed_at),
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _stored_values(status: SessionStatus) -> tuple[str, ...]:
    aliases = tuple(legacy for legacy, target in LEGACY_STATUS_ALIASES.items() if target == status)
    return (status.value, *aliases)


def _aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None
