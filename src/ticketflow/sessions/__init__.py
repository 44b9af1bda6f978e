"""Persisted agent sessions: state machine, lifecycle, scope guard and logs."""

from ticketflow.sessions.concurrency import (
    AGENT_ALREADY_RUNNING_CODE,
    ConcurrencyGuard,
    GuardResult,
    create_already_running_payload,
)
from ticketflow.sessions.lifecycle import (
    SessionLifecycleConflict,
    SessionLifecycleManager,
    SessionNotFound,
    SessionOutcome,
    build_transition_patch,
)
from ticketflow.sessions.log_writer import LogWriterRegistry, SessionLogWriter, read_log_entries
from ticketflow.sessions.models import AgentSessionCreate, EpicScope, StoryScope
from ticketflow.sessions.repository import SessionRepository
from ticketflow.sessions.status_machine import (
    InvalidTransitionError,
    SessionStatus,
    assert_valid_transition,
    is_terminal_status,
    is_valid_transition,
)

__all__ = [
    "AGENT_ALREADY_RUNNING_CODE",
    "AgentSessionCreate",
    "ConcurrencyGuard",
    "EpicScope",
    "GuardResult",
    "InvalidTransitionError",
    "LogWriterRegistry",
    "SessionLifecycleConflict",
    "SessionLifecycleManager",
    "SessionLogWriter",
    "SessionNotFound",
    "SessionOutcome",
    "SessionRepository",
    "SessionStatus",
    "StoryScope",
    "assert_valid_transition",
    "build_transition_patch",
    "create_already_running_payload",
    "is_terminal_status",
    "is_valid_transition",
    "read_log_entries",
]
