"""CLI entrypoint for ticketflow."""

import logging
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Any

import rich_click as click

from ticketflow import __version__
from ticketflow.controllers import (
    DependencyAddCommand,
    DependencyListCommand,
    DependencyRemoveCommand,
    PlanCommand,
    RunCommand,
    SessionCancelCommand,
    SessionListCommand,
    SessionLogsCommand,
    TicketAddCommand,
    TicketflowCliController,
    TicketListCommand,
)
from ticketflow.dependencies.graph import DependencyValidationError
from ticketflow.runtime.backend import SUPPORTED_PROVIDERS, BackendRunError
from ticketflow.sessions.lifecycle import SessionNotFound

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TicketflowCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


def _cli_errors(func: Callable[..., None]) -> Callable[..., None]:
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            func(*args, **kwargs)
        except (DependencyValidationError, SessionNotFound, BackendRunError, ValueError) as error:
            raise click.ClickException(str(error)) from error

    return wrapper


@click.group()
@click.version_option(version=__version__, prog_name="ticketflow")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def ticketflow(verbose: bool) -> None:
    """Dependency-aware ticket runs with guarded agent sessions."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@ticketflow.group()
def tickets() -> None:
    """Ticket commands."""


@tickets.command("add")
@DB_PATH_OPTION
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option("--title", default="", help="Ticket title.")
@click.option(
    "--kind",
    type=click.Choice(["epic", "story"]),
    default="epic",
    show_default=True,
    help="Ticket kind.",
)
@click.option("--epic", "epic_id", default=None, help="Parent epic id (required for stories).")
@click.option("--id", "ticket_id", default=None, help="Explicit ticket id.")
@_cli_errors
def tickets_add(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    title: str,
    kind: str,
    epic_id: str | None,
    ticket_id: str | None,
) -> None:
    """Create an epic or user story."""

    _emit_lines(
        CONTROLLER.add_ticket(
            TicketAddCommand(
                db_path=db_path,
                project_id=project_id,
                title=title,
                kind=kind,
                epic_id=epic_id,
                ticket_id=ticket_id,
            ),
        ),
    )


@tickets.command("list")
@DB_PATH_OPTION
@click.option("--project", "project_id", required=True, help="Project id.")
def tickets_list(db_path: Path | None, project_id: str) -> None:
    """List project tickets."""

    _emit_lines(CONTROLLER.list_tickets(TicketListCommand(db_path=db_path, project_id=project_id)))


@ticketflow.group()
def deps() -> None:
    """Dependency commands."""


@deps.command("add")
@DB_PATH_OPTION
@click.option("--project", "project_id", required=True, help="Project id.")
@click.argument("ticket_id")
@click.argument("depends_on", nargs=-1, required=True)
@click.option(
    "--replace/--no-replace",
    default=False,
    show_default=True,
    help="Replace all existing prerequisites of the ticket.",
)
@_cli_errors
def deps_add(
    db_path: Path | None,
    project_id: str,
    ticket_id: str,
    depends_on: tuple[str, ...],
    replace: bool,
) -> None:
    """Declare that TICKET_ID depends on each DEPENDS_ON ticket."""

    _emit_lines(
        CONTROLLER.add_dependencies(
            DependencyAddCommand(
                db_path=db_path,
                project_id=project_id,
                ticket_id=ticket_id,
                depends_on=depends_on,
                replace=replace,
            ),
        ),
    )


@deps.command("rm")
@DB_PATH_OPTION
@click.argument("ticket_id")
@click.argument("depends_on")
def deps_rm(db_path: Path | None, ticket_id: str, depends_on: str) -> None:
    """Remove one dependency edge."""

    _emit_lines(
        CONTROLLER.remove_dependency(
            DependencyRemoveCommand(db_path=db_path, ticket_id=ticket_id, depends_on=depends_on),
        ),
    )


@deps.command("list")
@DB_PATH_OPTION
@click.option("--project", "project_id", required=True, help="Project id.")
@click.option("--ticket", "ticket_id", default=None, help="Only prerequisites of this ticket.")
def deps_list(db_path: Path | None, project_id: str, ticket_id: str | None) -> None:
    """List dependency edges."""

    _emit_lines(
        CONTROLLER.list_dependencies(
            DependencyListCommand(db_path=db_path, project_id=project_id, ticket_id=ticket_id),
        ),
    )


@ticketflow.command("plan")
@DB_PATH_OPTION
@click.option("--project", "project_id", required=True, help="Project id.")
@click.argument("ticket_ids", nargs=-1)
@click.option(
    "--with-prerequisites/--without-prerequisites",
    "include_prerequisites",
    default=False,
    show_default=True,
    help="Pull in transitive prerequisites of the selected tickets.",
)
@_cli_errors
def plan(
    db_path: Path | None,
    project_id: str,
    ticket_ids: tuple[str, ...],
    include_prerequisites: bool,
) -> None:
    """Show execution layers without launching anything."""

    _emit_lines(
        CONTROLLER.plan(
            PlanCommand(
                db_path=db_path,
                project_id=project_id,
                ticket_ids=ticket_ids,
                include_prerequisites=include_prerequisites,
            ),
        ),
    )


@ticketflow.command("run")
@DB_PATH_OPTION
@click.option("--project", "project_id", required=True, help="Project id.")
@click.argument("ticket_ids", nargs=-1)
@click.option(
    "--with-prerequisites/--without-prerequisites",
    "include_prerequisites",
    default=False,
    show_default=True,
    help="Pull in transitive prerequisites of the selected tickets.",
)
@click.option(
    "--provider",
    type=click.Choice(list(SUPPORTED_PROVIDERS)),
    default=None,
    help="Agent provider override.",
)
@click.option(
    "--use-echo-agent/--use-configured-agent",
    default=False,
    show_default=True,
    help="Use the local echo agent instead of the configured provider command.",
)
@_cli_errors
def run(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    ticket_ids: tuple[str, ...],
    include_prerequisites: bool,
    provider: str | None,
    use_echo_agent: bool,
) -> None:
    """Run tickets layer by layer; a failed ticket skips its dependents.

    With no TICKET_IDS every ticket in the project is run.
    """

    result = CONTROLLER.run(
        RunCommand(
            db_path=db_path,
            project_id=project_id,
            ticket_ids=ticket_ids,
            include_prerequisites=include_prerequisites,
            provider=provider,
            use_echo_agent=use_echo_agent,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Batch run finished with failed or skipped tickets.")


@ticketflow.group()
def sessions() -> None:
    """Agent session commands."""


@sessions.command("list")
@DB_PATH_OPTION
@click.option("--project", "project_id", default=None, help="Project id filter.")
@click.option("--status", default=None, help="Status filter: queued|running|completed|failed|cancelled.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max sessions to print.",
)
@_cli_errors
def sessions_list(db_path: Path | None, project_id: str | None, status: str | None, limit: int) -> None:
    """List agent sessions, newest first."""

    _emit_lines(
        CONTROLLER.list_sessions(
            SessionListCommand(db_path=db_path, project_id=project_id, status=status, limit=limit),
        ),
    )


@sessions.command("cancel")
@DB_PATH_OPTION
@click.argument("session_id")
@_cli_errors
def sessions_cancel(db_path: Path | None, session_id: str) -> None:
    """Mark a session cancelled."""

    _emit_lines(CONTROLLER.cancel_session(SessionCancelCommand(db_path=db_path, session_id=session_id)))


@sessions.command("logs")
@DB_PATH_OPTION
@click.argument("session_id")
@_cli_errors
def sessions_logs(db_path: Path | None, session_id: str) -> None:
    """Print a session's NDJSON log in seq order."""

    _emit_lines(CONTROLLER.show_logs(SessionLogsCommand(db_path=db_path, session_id=session_id)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ticketflow()
