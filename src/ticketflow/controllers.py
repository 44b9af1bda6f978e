"""Controllers for ticketflow CLI commands."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ticketflow.config import Settings
from ticketflow.dependencies.graph import DependencyEdge
from ticketflow.dependencies.models import TicketCreate, TicketKind
from ticketflow.dependencies.repository import DependencyRepository, TicketRepository
from ticketflow.dependencies.scheduler import BatchScheduler, TicketExecutionStatus
from ticketflow.runtime.activity_registry import ActivityRegistry
from ticketflow.runtime.backend import SUPPORTED_PROVIDERS, CliAgentBackend
from ticketflow.runtime.process_manager import ProcessManager
from ticketflow.services import TicketRunService
from ticketflow.sessions.concurrency import ConcurrencyGuard
from ticketflow.sessions.lifecycle import SessionNotFound, status_for_api
from ticketflow.sessions.log_writer import LogWriterRegistry, read_log_entries
from ticketflow.sessions.repository import SessionRepository
from ticketflow.sessions.status_machine import normalize_status
from ticketflow.storage.database import Database

ECHO_AGENT_TEMPLATE = sys.executable + " -m ticketflow.runtime.echo_agent --prompt-file {prompt_file}"


@dataclass(slots=True)
class TicketAddCommand:
    db_path: Path | None
    project_id: str
    title: str
    kind: str
    epic_id: str | None
    ticket_id: str | None


@dataclass(slots=True)
class TicketListCommand:
    db_path: Path | None
    project_id: str


@dataclass(slots=True)
class DependencyAddCommand:
    db_path: Path | None
    project_id: str
    ticket_id: str
    depends_on: tuple[str, ...]
    replace: bool = False


@dataclass(slots=True)
class DependencyRemoveCommand:
    db_path: Path | None
    ticket_id: str
    depends_on: str


@dataclass(slots=True)
class DependencyListCommand:
    db_path: Path | None
    project_id: str
    ticket_id: str | None = None


@dataclass(slots=True)
class PlanCommand:
    db_path: Path | None
    project_id: str
    ticket_ids: tuple[str, ...]
    include_prerequisites: bool


@dataclass(slots=True)
class RunCommand:
    """CLI input for a DAG-ordered batch run."""

    db_path: Path | None
    project_id: str
    ticket_ids: tuple[str, ...]
    include_prerequisites: bool
    provider: str | None
    use_echo_agent: bool


@dataclass(slots=True)
class RunResult:
    """Batch report to render in CLI."""

    lines: list[str]
    success: bool


@dataclass(slots=True)
class SessionListCommand:
    db_path: Path | None
    project_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class SessionCancelCommand:
    db_path: Path | None
    session_id: str


@dataclass(slots=True)
class SessionLogsCommand:
    db_path: Path | None
    session_id: str


class TicketflowCliController:
    """Coordinates ticket, dependency, run and session CLI operations."""

    def add_ticket(self, command: TicketAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            ticket = TicketRepository(database).create_ticket(
                TicketCreate(
                    project_id=command.project_id,
                    title=command.title,
                    kind=TicketKind(command.kind),
                    epic_id=command.epic_id,
                    ticket_id=command.ticket_id,
                ),
            )
        return [f"Ticket created: {ticket.ticket_id} kind={ticket.kind.value} project={ticket.project_id}"]

    def list_tickets(self, command: TicketListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            tickets = TicketRepository(database).list_tickets(command.project_id)
        if not tickets:
            return [f"No tickets in project {command.project_id}."]
        return [
            f"{ticket.ticket_id} kind={ticket.kind.value}"
            + (f" epic={ticket.epic_id}" if ticket.epic_id else "")
            + f" title={ticket.title!r}"
            for ticket in tickets
        ]

    def add_dependencies(self, command: DependencyAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        edges = [DependencyEdge(command.ticket_id, depends_on) for depends_on in command.depends_on]
        with _database(settings) as database:
            repository = DependencyRepository(database)
            if command.replace:
                created = repository.set_ticket_dependencies(command.project_id, command.ticket_id, command.depends_on)
            else:
                created = repository.create_dependencies(command.project_id, edges)
        return [
            f"Dependencies stored for {command.ticket_id}: {len(created)} new edge(s)",
            *(f"  {edge.ticket_id} -> {edge.depends_on_ticket_id}" for edge in created),
        ]

    def remove_dependency(self, command: DependencyRemoveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            removed = DependencyRepository(database).remove_dependency_edge(command.ticket_id, command.depends_on)
        if not removed:
            return [f"No dependency {command.ticket_id} -> {command.depends_on}."]
        return [f"Dependency removed: {command.ticket_id} -> {command.depends_on}"]

    def list_dependencies(self, command: DependencyListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            repository = DependencyRepository(database)
            if command.ticket_id is None:
                edges = repository.list_project_dependencies(command.project_id)
            else:
                edges = repository.get_ticket_dependencies(command.ticket_id)
        if not edges:
            return ["No dependencies."]
        return [f"{edge.ticket_id} -> {edge.depends_on_ticket_id}" for edge in edges]

    def plan(self, command: PlanCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            dependencies = DependencyRepository(database)
            ticket_ids = list(command.ticket_ids) or [
                ticket.ticket_id for ticket in TicketRepository(database).list_tickets(command.project_id)
            ]
            if command.include_prerequisites:
                extra = dependencies.get_transitive_dependencies(command.project_id, ticket_ids)
                ticket_ids.extend(sorted(extra - set(ticket_ids)))
            cycle = dependencies.find_cycle(command.project_id, ticket_ids)
            if cycle is not None:
                return [f"Dependency cycle detected: {' → '.join(cycle)}"]
            plan = BatchScheduler(dependencies).build_execution_plan(command.project_id, ticket_ids)
        return [
            f"Layer {index}: {', '.join(layer)}"
            for index, layer in enumerate(plan.layers, start=1)
        ] or ["Nothing to run."]

    def run(self, command: RunCommand) -> RunResult:
        settings = Settings.from_env(db_path=command.db_path)
        if command.use_echo_agent:
            settings.agent.command_templates = dict.fromkeys(SUPPORTED_PROVIDERS, ECHO_AGENT_TEMPLATE)
        if command.provider is not None:
            settings.agent.default_provider = command.provider
        settings.validate()

        lines: list[str] = []

        def on_status_change(ticket_id: str, status: TicketExecutionStatus, reason: str | None) -> None:
            lines.append(f"{ticket_id}: {status.value}" + (f" ({reason})" if reason else ""))

        with _database(settings) as database:
            service = build_run_service(database, settings)
            ticket_ids = command.ticket_ids or tuple(
                ticket.ticket_id for ticket in service.tickets.list_tickets(command.project_id)
            )
            outcome = service.run_batch(
                command.project_id,
                ticket_ids,
                include_prerequisites=command.include_prerequisites,
                on_status_change=on_status_change,
            )

        for ticket_id, conflict in outcome.plan.conflicts.items():
            data = conflict["data"]
            lines.append(f"{ticket_id}: active session {data['activeSessionId']} at {data['sessionUrl']}")
        counts: dict[str, int] = {}
        for status in outcome.plan.ticket_status.values():
            counts[status.value] = counts.get(status.value, 0) + 1
        summary = " ".join(f"{name}={count}" for name, count in sorted(counts.items()))
        lines.append(f"Batch summary: {summary}")
        return RunResult(lines=lines, success=outcome.succeeded)

    def list_sessions(self, command: SessionListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = normalize_status(command.status) if command.status else None
        if command.status and status is None:
            raise ValueError(f"Unknown session status: {command.status!r}")
        with _database(settings) as database:
            sessions = SessionRepository(database).list_sessions(
                project_id=command.project_id,
                status=status,
                limit=command.limit,
            )
        if not sessions:
            return ["No sessions."]
        return [
            f"{session.session_id} status={status_for_api(session.status.value)} "
            f"project={session.project_id} epic={session.epic_id or '-'} "
            f"story={session.user_story_id or '-'} provider={session.provider}"
            + (f" error={session.error!r}" if session.error else "")
            for session in sessions
        ]

    def cancel_session(self, command: SessionCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            cancelled = build_run_service(database, settings).cancel_session(command.session_id)
        if not cancelled:
            return [f"Session {command.session_id} already finished."]
        return [f"Session cancelled: {command.session_id}"]

    def show_logs(self, command: SessionLogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _database(settings) as database:
            session = SessionRepository(database).get_session(command.session_id)
        if session is None:
            raise SessionNotFound(command.session_id)
        if not session.logs_path:
            return ["No log file recorded for this session."]
        lines = []
        for entry in read_log_entries(Path(session.logs_path)):
            extra = {key: value for key, value in entry.items() if key not in {"_type", "ts", "seq", "sessionId"}}
            lines.append(f"[{entry['seq']}] {entry['ts']} {entry['_type']} {extra}")
        return lines or ["Log is empty."]


def build_run_service(database: Database, settings: Settings) -> TicketRunService:
    """Wire a run service with fresh in-memory registries."""

    backend = CliAgentBackend(
        settings.agent.command_templates,
        kill_grace_seconds=settings.agent.kill_grace_seconds,
    )
    return TicketRunService(
        tickets=TicketRepository(database),
        dependencies=DependencyRepository(database),
        sessions=SessionRepository(database),
        guard=ConcurrencyGuard(database),
        processes=ProcessManager(backend, default_provider=settings.agent.default_provider),
        log_writers=LogWriterRegistry(),
        activities=ActivityRegistry(),
        logs_root=settings.logs_root,
        agent=settings.agent,
        max_parallel_launches=settings.scheduler.max_parallel_launches,
    )


@contextmanager
def _database(settings: Settings) -> Iterator[Database]:
    database = Database(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms)
    database.init_schema()
    try:
        yield database
    finally:
        database.close()
