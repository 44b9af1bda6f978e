from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import col

from ticketflow.sessions.lifecycle import (
    SessionLifecycleConflict,
    SessionLifecycleManager,
    SessionNotFound,
    SessionOutcome,
    build_transition_patch,
    status_for_api,
)
from ticketflow.sessions.models import AgentSessionCreate, SessionSnapshot
from ticketflow.sessions.repository import SessionRepository
from ticketflow.sessions.status_machine import SessionStatus
from ticketflow.storage.database import Database
from ticketflow.storage.sqlmodel_models import AgentSession

pytestmark = [
    allure.epic("Agent Sessions"),
    allure.feature("Lifecycle Manager"),
]

T0 = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


def _manager(database: Database) -> SessionLifecycleManager:
    return SessionLifecycleManager(SessionRepository(database))


def test_build_transition_patch_stamps_started_at_once() -> None:
    fresh = build_transition_patch(
        SessionSnapshot(session_id="s1", status="queued"),
        SessionStatus.RUNNING,
        T0,
    )
    assert fresh.started_at == T0
    assert fresh.to_values() == {"status": "running", "started_at": T0}


def test_build_transition_patch_keeps_existing_terminal_timestamps() -> None:
    earlier = T0 - timedelta(minutes=5)
    patch = build_transition_patch(
        SessionSnapshot(session_id="s1", status="running", started_at=earlier, ended_at=earlier),
        SessionStatus.FAILED,
        T0,
        "boom",
    )

    assert patch.ended_at is None
    assert patch.completed_at == T0
    assert patch.to_values() == {"status": "failed", "completed_at": T0, "error": "boom"}


def test_build_transition_patch_error_defaults() -> None:
    running = SessionSnapshot(session_id="s1", status="running", started_at=T0)

    completed = build_transition_patch(running, SessionStatus.COMPLETED, T0)
    failed = build_transition_patch(running, SessionStatus.FAILED, T0)
    explicit_none = build_transition_patch(running, SessionStatus.FAILED, T0, None)

    assert completed.to_values()["error"] is None
    assert "error" not in failed.to_values()
    assert explicit_none.to_values()["error"] is None


def test_build_transition_patch_rejects_illegal_transition() -> None:
    with pytest.raises(SessionLifecycleConflict) as error:
        build_transition_patch(SessionSnapshot(session_id="s1", status="completed"), SessionStatus.RUNNING, T0)

    assert error.value.session_id == "s1"
    assert error.value.from_status == "completed"
    assert error.value.to_status == SessionStatus.RUNNING
    assert str(error.value) == "Invalid session transition from completed to running"


def test_lifecycle_round_trip_persists_timestamps(database: Database) -> None:
    manager = _manager(database)
    session = manager.create_queued_session(AgentSessionCreate(project_id="p1", epic_id="E1"))

    manager.mark_running(session.session_id, at=T0)
    manager.mark_terminal(session.session_id, SessionOutcome(success=True), at=T0 + timedelta(seconds=30))

    stored = manager.repository.get_session(session.session_id)
    assert stored is not None
    assert stored.status == SessionStatus.COMPLETED
    assert stored.started_at == T0
    assert stored.ended_at == T0 + timedelta(seconds=30)
    assert stored.completed_at == T0 + timedelta(seconds=30)
    assert stored.error is None


def test_mark_cancelled_from_queued_uses_default_message(database: Database) -> None:
    manager = _manager(database)
    session = manager.create_queued_session(AgentSessionCreate(project_id="p1", epic_id="E1"))

    patch = manager.mark_cancelled(session.session_id, at=T0)

    stored = manager.repository.get_session(session.session_id)
    assert patch.status == SessionStatus.CANCELLED
    assert stored is not None
    assert stored.error == "Cancelled by user"
    assert stored.started_at is None


def test_second_terminal_transition_is_a_conflict(database: Database) -> None:
    manager = _manager(database)
    session = manager.create_queued_session(AgentSessionCreate(project_id="p1", epic_id="E1"))
    manager.mark_running(session.session_id)
    manager.mark_cancelled(session.session_id)

    with pytest.raises(SessionLifecycleConflict):
        manager.mark_terminal(session.session_id, SessionOutcome(success=True))

    stored = manager.repository.get_session(session.session_id)
    assert stored is not None
    assert stored.status == SessionStatus.CANCELLED


def test_transition_unknown_session_raises_not_found(database: Database) -> None:
    with pytest.raises(SessionNotFound, match="Session not found: ghost"):
        _manager(database).mark_running("ghost")


def test_legacy_pending_rows_are_read_as_queued_and_can_start(database: Database) -> None:
    manager = _manager(database)
    session = manager.create_queued_session(AgentSessionCreate(project_id="p1", epic_id="E1"))
    with database.session() as db_session:
        db_session.exec(
            sa_update(AgentSession)
            .where(col(AgentSession.session_id) == session.session_id)
            .values(status="pending"),
        )
        db_session.commit()

    snapshot = manager.repository.get_snapshot(session.session_id)
    assert snapshot is not None
    assert snapshot.status == "pending"
    assert status_for_api(snapshot.status) == "queued"

    manager.mark_running(session.session_id)
    stored = manager.repository.get_session(session.session_id)
    assert stored is not None
    assert stored.status == SessionStatus.RUNNING


def test_apply_patch_is_conditional_on_observed_status(database: Database) -> None:
    repository = SessionRepository(database)
    session = repository.create_session(AgentSessionCreate(project_id="p1", epic_id="E1"))
    patch = build_transition_patch(
        SessionSnapshot(session_id=session.session_id, status="queued"),
        SessionStatus.RUNNING,
        T0,
    )

    assert repository.apply_patch(session.session_id, expected_status="queued", patch=patch) is True
    assert repository.apply_patch(session.session_id, expected_status="queued", patch=patch) is False
