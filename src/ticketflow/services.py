"""Use-case services: launching tickets as guarded agent sessions."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from ticketflow.config import AgentSettings
from ticketflow.dependencies.graph import CycleError, TicketNotFoundError
from ticketflow.dependencies.models import TicketKind, TicketView
from ticketflow.dependencies.repository import DependencyRepository, TicketRepository
from ticketflow.dependencies.scheduler import (
    BatchScheduler,
    ExecutionPlan,
    LaunchResult,
    StatusCallback,
    TicketExecutionStatus,
)
from ticketflow.runtime.activity_registry import Activity, ActivityRegistry
from ticketflow.runtime.backend import SpawnRequest
from ticketflow.runtime.process_manager import ProcessManager, TrackedProcess
from ticketflow.sessions.concurrency import (
    DEFAULT_ALREADY_RUNNING_MESSAGE,
    ConcurrencyGuard,
    create_already_running_payload,
)
from ticketflow.sessions.lifecycle import (
    SessionLifecycleConflict,
    SessionLifecycleManager,
    SessionNotFound,
    SessionOutcome,
)
from ticketflow.sessions.log_writer import LogWriterRegistry
from ticketflow.sessions.models import AgentSessionCreate, ContentionScope, EpicScope, StoryScope
from ticketflow.sessions.repository import SessionRepository
from ticketflow.sessions.status_machine import SessionStatus, is_terminal_status, normalize_status

logger = logging.getLogger(__name__)

AGENT_SESSION_ACTIVITY = "agent_session"
LOG_FILE_NAME = "logs.ndjson"


@dataclass(slots=True)
class BatchRunOutcome:
    """Final plan of a batch run, statuses and skip/failure reasons included."""

    project_id: str
    plan: ExecutionPlan

    @property
    def succeeded(self) -> bool:
        return all(status == TicketExecutionStatus.DONE for status in self.plan.ticket_status.values())


class TicketRunService:
    """Runs tickets as agent sessions, one guarded session per ticket."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        tickets: TicketRepository,
        dependencies: DependencyRepository,
        sessions: SessionRepository,
        guard: ConcurrencyGuard,
        processes: ProcessManager,
        log_writers: LogWriterRegistry,
        activities: ActivityRegistry,
        logs_root: Path,
        agent: AgentSettings,
        max_parallel_launches: int | None = None,
    ) -> None:
        self.tickets = tickets
        self.dependencies = dependencies
        self.sessions = sessions
        self.lifecycle = SessionLifecycleManager(sessions)
        self.guard = guard
        self.processes = processes
        self.log_writers = log_writers
        self.activities = activities
        self.logs_root = logs_root
        self.agent = agent
        self.scheduler = BatchScheduler(dependencies, max_workers=max_parallel_launches)

    def launch_ticket(
        self,
        ticket_id: str,
        *,
        provider: str | None = None,
        prompt: str | None = None,
    ) -> LaunchResult:
        """Run one ticket to completion and report how it ended.

        Expected refusals (unknown ticket, scope already busy) come back as a
        failed ``LaunchResult``; storage errors propagate.
        """

        ticket = self.tickets.get_ticket(ticket_id)
        if ticket is None:
            return LaunchResult(ticket_id=ticket_id, success=False, error=f"Ticket not found: {ticket_id}")

        provider_name = provider or self.agent.default_provider
        session_id = str(uuid4())
        session_dir = self.logs_root / session_id
        log_path = session_dir / LOG_FILE_NAME
        effective_prompt = prompt or _default_prompt(ticket)
        scope = _scope_for(ticket)

        guarded = self.guard.insert_running_session_with_guard(
            scope,
            AgentSessionCreate(
                project_id=ticket.project_id,
                epic_id=ticket.epic_id if ticket.kind == TicketKind.STORY else ticket.ticket_id,
                user_story_id=ticket.ticket_id if ticket.kind == TicketKind.STORY else None,
                mode=self.agent.mode,
                provider=provider_name,
                prompt=effective_prompt,
                logs_path=str(log_path),
                session_id=session_id,
            ),
        )
        if not guarded.inserted:
            payload = None
            if guarded.conflict is not None:
                payload = create_already_running_payload(scope, guarded.conflict)
                logger.info(
                    "Ticket %s not launched: scope held by session %s",
                    ticket_id,
                    payload["data"]["activeSessionId"],
                )
            return LaunchResult(
                ticket_id=ticket_id,
                success=False,
                error=payload["error"] if payload is not None else DEFAULT_ALREADY_RUNNING_MESSAGE,
                conflict=payload,
            )

        writer = self.log_writers.get_log_writer(session_id, log_path)
        try:
            self.lifecycle.mark_running(session_id)
            writer.write_header(
                {
                    "projectId": ticket.project_id,
                    "ticketId": ticket.ticket_id,
                    "provider": provider_name,
                    "mode": self.agent.mode,
                },
            )
            final = self._run_process(ticket, session_id, session_dir, provider_name, effective_prompt)
            if final.result is not None and final.result.output:
                writer.append("agent_output", {"text": final.result.output})
            duration_ms = final.result.duration_ms if final.result is not None else None
            writer.end(final.status.value, final.error, duration_ms)
            self._persist_outcome(session_id, final)
        except Exception as error:
            self._fail_after_error(session_id, error)
            raise
        finally:
            self.log_writers.release_log_writer(session_id)

        success = final.status == SessionStatus.COMPLETED
        logger.info("Ticket %s finished as %s (session %s)", ticket_id, final.status.value, session_id)
        return LaunchResult(
            ticket_id=ticket_id,
            success=success,
            session_id=session_id,
            error=None if success else final.error,
        )

    def cancel_session(self, session_id: str) -> bool:
        """Kill the session's process if this runtime owns one and persist ``cancelled``."""

        killed = self.processes.cancel(session_id)
        snapshot = self.sessions.get_snapshot(session_id)
        if snapshot is None:
            raise SessionNotFound(session_id)
        status = normalize_status(snapshot.status)
        if status is not None and is_terminal_status(status):
            return killed
        try:
            self.lifecycle.mark_cancelled(session_id)
        except SessionLifecycleConflict as error:
            logger.info("Session %s settled before cancel: %s", session_id, error)
            return killed
        return True

    def cancel_project(self, project_id: str) -> int:
        """Cancel every in-flight session of ``project_id``; returns how many."""

        cancelled = 0
        for activity in self.activities.list_by_project(project_id):
            if self.activities.cancel(activity.activity_id):
                cancelled += 1
        return cancelled

    def run_batch(
        self,
        project_id: str,
        ticket_ids: Iterable[str],
        *,
        include_prerequisites: bool = False,
        on_status_change: StatusCallback | None = None,
    ) -> BatchRunOutcome:
        requested = list(dict.fromkeys(ticket_ids))
        for ticket_id in requested:
            ticket = self.tickets.get_ticket(ticket_id)
            if ticket is None or ticket.project_id != project_id:
                raise TicketNotFoundError(ticket_id)
        if include_prerequisites:
            extra = self.dependencies.get_transitive_dependencies(project_id, requested)
            requested.extend(sorted(extra - set(requested)))

        cycle = self.dependencies.find_cycle(project_id, requested)
        if cycle is not None:
            raise CycleError(cycle)

        plan = self.scheduler.build_execution_plan(project_id, requested)
        logger.info("Batch for %s: %d tickets in %d layers", project_id, len(requested), len(plan.layers))
        self.scheduler.execute_dag_plan(project_id, plan, self.launch_ticket, on_status_change)
        return BatchRunOutcome(project_id=project_id, plan=plan)

    def _run_process(
        self,
        ticket: TicketView,
        session_id: str,
        session_dir: Path,
        provider: str,
        prompt: str,
    ) -> TrackedProcess:
        request = SpawnRequest(
            session_id=session_id,
            prompt=prompt,
            workdir=session_dir,
            mode=self.agent.mode,
            model=self.agent.models.get(provider, ""),
            timeout_seconds=self.agent.timeout_seconds,
        )
        started = self.processes.start(session_id, request, provider)
        if started.status != SessionStatus.RUNNING:
            self.processes.remove(session_id)
            return started

        self.activities.register(
            Activity(
                activity_id=session_id,
                project_id=ticket.project_id,
                kind=AGENT_SESSION_ACTIVITY,
                kill=lambda: self.cancel_session(session_id),
                label=ticket.title or ticket.ticket_id,
                provider=provider,
            ),
        )
        try:
            final = self.processes.wait(session_id)
        finally:
            self.activities.unregister(session_id)
        self.processes.remove(session_id)
        return final or started

    def _fail_after_error(self, session_id: str, error: Exception) -> None:
        logger.exception("Launch of session %s aborted", session_id)
        self.processes.cancel(session_id)
        self.processes.remove(session_id)
        try:
            self.lifecycle.mark_terminal(
                session_id,
                SessionOutcome(success=False, error=str(error) or "Unknown error"),
            )
        except (SessionLifecycleConflict, SessionNotFound):
            logger.warning("Could not mark session %s failed", session_id)

    def _persist_outcome(self, session_id: str, final: TrackedProcess) -> None:
        try:
            if final.status == SessionStatus.CANCELLED:
                self.lifecycle.mark_cancelled(session_id)
            else:
                self.lifecycle.mark_terminal(
                    session_id,
                    SessionOutcome(success=final.status == SessionStatus.COMPLETED, error=final.error),
                )
        except SessionLifecycleConflict as error:
            # cancel_session may already have stored the terminal status.
            logger.info("Session %s already settled: %s", session_id, error)


def _scope_for(ticket: TicketView) -> ContentionScope:
    if ticket.kind == TicketKind.STORY:
        return StoryScope(project_id=ticket.project_id, user_story_id=ticket.ticket_id)
    return EpicScope(project_id=ticket.project_id, epic_id=ticket.ticket_id)


def _default_prompt(ticket: TicketView) -> str:
    label = "user story" if ticket.kind == TicketKind.STORY else "epic"
    title = ticket.title or ticket.ticket_id
    return f"Implement {label} {ticket.ticket_id}: {title}"
