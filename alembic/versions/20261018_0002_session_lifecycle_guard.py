"""Session lifecycle: ended_at, queued status, single active session per scope."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("agent_sessions") as batch_op:
        batch_op.add_column(sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True))

    op.execute(sa.text("UPDATE agent_sessions SET status = 'queued' WHERE status = 'pending'"))
    op.execute(
        sa.text(
            """
            UPDATE agent_sessions
            SET ended_at = completed_at
            WHERE ended_at IS NULL AND completed_at IS NOT NULL
            """,
        ),
    )
    # Keep the newest active row per scope, fail older duplicates.
    op.execute(
        sa.text(
            """
            WITH ranked AS (
                SELECT
                    session_id,
                    ROW_NUMBER() OVER (
                        PARTITION BY
                            project_id,
                            COALESCE(epic_id, ''),
                            COALESCE(user_story_id, '')
                        ORDER BY created_at DESC, session_id DESC
                    ) AS rn
                FROM agent_sessions
                WHERE status IN ('queued', 'running')
            )
            UPDATE agent_sessions
            SET
                status = 'failed',
                ended_at = COALESCE(ended_at, CURRENT_TIMESTAMP),
                completed_at = COALESCE(completed_at, CURRENT_TIMESTAMP),
                error = COALESCE(error, 'Auto-closed during migration: duplicate active sessions.')
            WHERE session_id IN (SELECT session_id FROM ranked WHERE rn > 1)
            """,
        ),
    )
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_agent_sessions_active_scope
            ON agent_sessions (
                project_id,
                COALESCE(epic_id, ''),
                COALESCE(user_story_id, '')
            )
            WHERE status IN ('queued', 'running', 'pending')
            """,
        ),
    )


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS uq_agent_sessions_active_scope"))
    with op.batch_alter_table("agent_sessions") as batch_op:
        batch_op.drop_column("ended_at")
