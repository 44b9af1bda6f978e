"""Initial schema: tickets, dependency edges, agent sessions."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tickets",
        sa.Column("ticket_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False, server_default="epic"),
        sa.Column("epic_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("ticket_id"),
    )
    op.create_index("ix_tickets_project_id", "tickets", ["project_id"])
    op.create_index("ix_tickets_epic_id", "tickets", ["epic_id"])
    op.create_index("idx_tickets_project_kind", "tickets", ["project_id", "kind"])

    op.create_table(
        "ticket_dependencies",
        sa.Column("dependency_id", sa.String(), nullable=False),
        sa.Column("ticket_id", sa.String(), nullable=False),
        sa.Column("depends_on_ticket_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["ticket_id"], ["tickets.ticket_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["depends_on_ticket_id"],
            ["tickets.ticket_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("dependency_id"),
        sa.UniqueConstraint(
            "ticket_id",
            "depends_on_ticket_id",
            name="uq_ticket_dependencies_edge",
        ),
    )
    op.create_index("ix_ticket_dependencies_ticket_id", "ticket_dependencies", ["ticket_id"])
    op.create_index(
        "ix_ticket_dependencies_depends_on_ticket_id",
        "ticket_dependencies",
        ["depends_on_ticket_id"],
    )
    op.create_index("ix_ticket_dependencies_project_id", "ticket_dependencies", ["project_id"])

    op.create_table(
        "agent_sessions",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("epic_id", sa.String(), nullable=True),
        sa.Column("user_story_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("mode", sa.String(), nullable=False, server_default="code"),
        sa.Column("provider", sa.String(), nullable=False, server_default="claude-code"),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("logs_path", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index("ix_agent_sessions_project_id", "agent_sessions", ["project_id"])
    op.create_index("ix_agent_sessions_epic_id", "agent_sessions", ["epic_id"])
    op.create_index("ix_agent_sessions_user_story_id", "agent_sessions", ["user_story_id"])
    op.create_index("ix_agent_sessions_status", "agent_sessions", ["status"])
    op.create_index(
        "idx_agent_sessions_project_status",
        "agent_sessions",
        ["project_id", "status"],
    )


def downgrade() -> None:
    op.drop_table("agent_sessions")
    op.drop_table("ticket_dependencies")
    op.drop_table("tickets")
