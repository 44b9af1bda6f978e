"""SQLite persistence for tickets, dependency edges and agent sessions."""

from ticketflow.storage.database import Database

__all__ = ["Database"]
