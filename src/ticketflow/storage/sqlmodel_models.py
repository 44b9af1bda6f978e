"""SQLModel ORM tables for tickets, dependency edges and agent sessions."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Ticket(SQLModel, table=True):
    __tablename__ = "tickets"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tickets_project_kind", "project_id", "kind"),)

    ticket_id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    kind: str = Field(default="epic")
    epic_id: str | None = Field(default=None, index=True)
    title: str = ""
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketDependency(SQLModel, table=True):
    __tablename__ = "ticket_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "ticket_id",
            "depends_on_ticket_id",
            name="uq_ticket_dependencies_edge",
        ),
    )

    dependency_id: str = Field(primary_key=True)
    ticket_id: str = Field(
        sa_column=Column(
            ForeignKey("tickets.ticket_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    depends_on_ticket_id: str = Field(
        sa_column=Column(
            ForeignKey("tickets.ticket_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    project_id: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentSession(SQLModel, table=True):
    # The partial unique index on active sessions per scope is created by migration
    # 20261018_0002 as an expression index (coalesce over nullable scope columns).
    __tablename__ = "agent_sessions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_sessions_project_status", "project_id", "status"),)

    session_id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    epic_id: str | None = Field(default=None, index=True)
    user_story_id: str | None = Field(default=None, index=True)
    status: str = Field(default="queued", index=True)
    mode: str = Field(default="code")
    provider: str = Field(default="claude-code")
    prompt: str | None = Field(default=None, sa_column=Column(Text))
    logs_path: str | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
