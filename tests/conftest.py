"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from ticketflow.dependencies.models import TicketCreate, TicketKind
from ticketflow.dependencies.repository import TicketRepository
from ticketflow.runtime.backend import SUPPORTED_PROVIDERS
from ticketflow.storage.database import Database

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m ticketflow.runtime.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture()
def database(tmp_path: Path) -> Iterator[Database]:
    db = Database(tmp_path / "ticketflow.db")
    db.init_schema()
    yield db
    db.close()


@pytest.fixture()
def seed_tickets(database: Database):
    """Create epics in a project; returns a helper taking ids."""

    repository = TicketRepository(database)

    def _seed(project_id: str, *ticket_ids: str) -> list[str]:
        for ticket_id in ticket_ids:
            repository.create_ticket(
                TicketCreate(
                    project_id=project_id,
                    title=f"Ticket {ticket_id}",
                    kind=TicketKind.EPIC,
                    ticket_id=ticket_id,
                ),
            )
        return list(ticket_ids)

    return _seed


@pytest.fixture()
def echo_agent(monkeypatch, tmp_path: Path) -> None:
    """Point every provider at the local echo agent."""

    for provider in SUPPORTED_PROVIDERS:
        suffix = provider.upper().replace("-", "_")
        monkeypatch.setenv(f"TICKETFLOW_{suffix}_COMMAND", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("TICKETFLOW_LOGS_ROOT", str(tmp_path / "sessions"))
