"""Domain views for tickets and dependency edges."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TicketKind(str, Enum):
    EPIC = "epic"
    STORY = "story"


@dataclass(slots=True)
class TicketCreate:
    """Input payload for a new ticket."""

    project_id: str
    title: str = ""
    kind: TicketKind = TicketKind.EPIC
    epic_id: str | None = None
    ticket_id: str | None = None


@dataclass(slots=True)
class TicketView:
    ticket_id: str
    project_id: str
    kind: TicketKind
    epic_id: str | None
    title: str
    created_at: datetime


@dataclass(slots=True)
class DependencyView:
    dependency_id: str
    ticket_id: str
    depends_on_ticket_id: str
    project_id: str
    created_at: datetime
