"""Session status state machine.

Enforces legal transitions between session states so the session store and
the in-memory process tracker never disagree about what happened.
"""

from __future__ import annotations

from enum import Enum


class SessionStatus(str, Enum):
    """Lifecycle states shared by persisted sessions and tracked processes."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


LEGACY_STATUS_ALIASES = {"pending": SessionStatus.QUEUED}

_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.QUEUED: frozenset(
        {SessionStatus.RUNNING, SessionStatus.CANCELLED, SessionStatus.FAILED},
    ),
    SessionStatus.RUNNING: frozenset(
        {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED},
    ),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in _TRANSITIONS.items() if not targets)
ACTIVE_STATUSES = frozenset(_TRANSITIONS) - TERMINAL_STATUSES


class InvalidTransitionError(ValueError):
    """Requested status change is not in the transition table."""

    def __init__(self, session_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Invalid session status transition for {session_id}: {from_status} -> {to_status}",
        )
        self.session_id = session_id
        self.from_status = from_status
        self.to_status = to_status


def normalize_status(value: str | SessionStatus | None) -> SessionStatus | None:
    """Map a stored value (including legacy ``pending``) to a status, or ``None``."""

    if value is None:
        return None
    if isinstance(value, SessionStatus):
        return value
    if value in LEGACY_STATUS_ALIASES:
        return LEGACY_STATUS_ALIASES[value]
    try:
        return SessionStatus(value)
    except ValueError:
        return None


def is_valid_transition(from_status: str | SessionStatus, to_status: str | SessionStatus) -> bool:
    source = normalize_status(from_status)
    target = normalize_status(to_status)
    if source is None or target is None:
        return False
    return target in _TRANSITIONS[source]


def assert_valid_transition(
    session_id: str,
    from_status: str | SessionStatus,
    to_status: str | SessionStatus,
) -> SessionStatus:
    """Return the target status, or raise :class:`InvalidTransitionError`."""

    source = normalize_status(from_status)
    target = normalize_status(to_status)
    if source is None or target is None or target not in _TRANSITIONS[source]:
        raise InvalidTransitionError(session_id, _label(from_status), _label(to_status))
    return target


def is_terminal_status(status: str | SessionStatus) -> bool:
    normalized = normalize_status(status)
    return normalized is not None and normalized in TERMINAL_STATUSES


def _label(status: str | SessionStatus) -> str:
    return status.value if isinstance(status, SessionStatus) else str(status)
