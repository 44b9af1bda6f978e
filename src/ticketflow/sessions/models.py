"""Domain models for persisted agent sessions and their contention scopes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from typing import Any

from ticketflow.sessions.status_machine import SessionStatus


class Missing(Enum):
    TOKEN = auto()


MISSING = Missing.TOKEN
"""Marker for "argument not supplied" where ``None`` is a meaningful value."""


@dataclass(slots=True, frozen=True)
class EpicScope:
    """Contention scope covering a whole epic."""

    project_id: str
    epic_id: str

    @property
    def kind(self) -> str:
        return "epic"

    def to_payload(self) -> dict[str, Any]:
        return {"scope": "epic", "projectId": self.project_id, "epicId": self.epic_id}


@dataclass(slots=True, frozen=True)
class StoryScope:
    """Contention scope covering one user story (and, if given, its epic)."""

    project_id: str
    user_story_id: str
    epic_id: str | None = None

    @property
    def kind(self) -> str:
        return "story"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "scope": "story",
            "projectId": self.project_id,
            "storyId": self.user_story_id,
        }
        if self.epic_id:
            payload["epicId"] = self.epic_id
        return payload


ContentionScope = EpicScope | StoryScope


@dataclass(slots=True)
class AgentSessionCreate:
    """Input payload for a new session row."""

    project_id: str
    epic_id: str | None = None
    user_story_id: str | None = None
    mode: str = "code"
    provider: str = "claude-code"
    prompt: str | None = None
    logs_path: str | None = None
    session_id: str | None = None


@dataclass(slots=True)
class SessionSnapshot:
    """The lifecycle fields of a stored session, as read before a transition."""

    session_id: str
    status: str | None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class SessionTransitionPatch:
    """Field updates produced by one validated status transition."""

    status: SessionStatus
    started_at: datetime | None = None
    ended_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    sets_error: bool = False

    def to_values(self) -> dict[str, Any]:
        values: dict[str, Any] = {"status": self.status.value}
        if self.started_at is not None:
            values["started_at"] = self.started_at
        if self.ended_at is not None:
            values["ended_at"] = self.ended_at
        if self.completed_at is not None:
            values["completed_at"] = self.completed_at
        if self.sets_error:
            values["error"] = self.error
        return values


@dataclass(slots=True)
class ActiveSessionSummary:
    """Compact description of the session currently holding a scope."""

    session_id: str
    project_id: str
    epic_id: str | None
    user_story_id: str | None
    status: SessionStatus
    mode: str | None
    provider: str | None
    started_at: datetime | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.session_id,
            "projectId": self.project_id,
            "epicId": self.epic_id,
            "userStoryId": self.user_story_id,
            "status": self.status.value,
            "mode": self.mode,
            "provider": self.provider,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
        }


@dataclass(slots=True)
class SessionView:
    """Readable session view for services and the CLI."""

    session_id: str
    project_id: str
    epic_id: str | None
    user_story_id: str | None
    status: SessionStatus
    mode: str
    provider: str
    prompt: str | None
    logs_path: str | None
    started_at: datetime | None
    ended_at: datetime | None
    completed_at: datetime | None
    error: str | None
    created_at: datetime
