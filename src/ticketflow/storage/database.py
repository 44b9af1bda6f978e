"""Shared SQLite database handle used by the repositories."""

from __future__ import annotations

from pathlib import Path

from sqlmodel import Session

from ticketflow.storage.alembic_runner import upgrade_head
from ticketflow.storage.common import build_sqlite_engine

DEFAULT_BUSY_TIMEOUT_MS = 5_000


class Database:
    """Owns the engine for one SQLite file; repositories borrow sessions from it."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def session(self) -> Session:
        return Session(self.engine)

    def close(self) -> None:
        self.engine.dispose()
