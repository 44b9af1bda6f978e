"""DAG-aware batch execution of tickets, one topological layer at a time."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ticketflow.dependencies.repository import DependencyRepository

logger = logging.getLogger(__name__)

PREREQUISITE_FAILED_REASON = "Prerequisite failed"
UNKNOWN_ERROR = "Unknown error"


class TicketExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class LaunchResult:
    """Outcome reported by a launch function for one ticket."""

    ticket_id: str
    success: bool
    session_id: str | None = None
    error: str | None = None
    conflict: dict[str, Any] | None = None


@dataclass(slots=True)
class ExecutionPlan:
    """Topological layers plus the mutable per-ticket status map."""

    layers: list[list[str]]
    ticket_status: dict[str, TicketExecutionStatus]
    prerequisites: dict[str, set[str]] = field(default_factory=dict)
    reasons: dict[str, str] = field(default_factory=dict)
    conflicts: dict[str, dict[str, Any]] = field(default_factory=dict)


LaunchFn = Callable[[str], LaunchResult]
StatusCallback = Callable[[str, TicketExecutionStatus, str | None], None]


def new_execution_plan(
    layers: list[list[str]],
    ticket_ids: Iterable[str],
    prerequisites: Mapping[str, Iterable[str]],
) -> ExecutionPlan:
    return ExecutionPlan(
        layers=layers,
        ticket_status=dict.fromkeys(ticket_ids, TicketExecutionStatus.PENDING),
        prerequisites={ticket_id: set(deps) for ticket_id, deps in prerequisites.items()},
    )


def execute_dag_plan(
    plan: ExecutionPlan,
    launch_fn: LaunchFn,
    on_status_change: StatusCallback | None = None,
    *,
    max_workers: int | None = None,
) -> dict[str, TicketExecutionStatus]:
    """Run ``plan`` layer by layer and return the final status map.

    Tickets with a failed or skipped prerequisite are skipped without being
    launched. The rest of a layer is launched concurrently and the next layer
    starts only after every launch in this one has settled. A failing launch,
    raised or reported, only marks its own ticket failed.
    """

    def set_status(ticket_id: str, status: TicketExecutionStatus, reason: str | None = None) -> None:
        plan.ticket_status[ticket_id] = status
        if reason is None:
            plan.reasons.pop(ticket_id, None)
        else:
            plan.reasons[ticket_id] = reason
        if on_status_change is not None:
            on_status_change(ticket_id, status, reason)

    def has_failed_prerequisite(ticket_id: str) -> bool:
        return any(
            plan.ticket_status.get(dep)
            in (TicketExecutionStatus.FAILED, TicketExecutionStatus.SKIPPED)
            for dep in plan.prerequisites.get(ticket_id, ())
        )

    for index, layer in enumerate(plan.layers):
        launchable: list[str] = []
        for ticket_id in layer:
            if has_failed_prerequisite(ticket_id):
                set_status(ticket_id, TicketExecutionStatus.SKIPPED, PREREQUISITE_FAILED_REASON)
            else:
                launchable.append(ticket_id)
        if not launchable:
            continue

        for ticket_id in launchable:
            set_status(ticket_id, TicketExecutionStatus.RUNNING)

        logger.info("Launching layer %d: %s", index, ", ".join(launchable))
        workers = min(len(launchable), max_workers or len(launchable))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ticket-launch") as pool:
            futures = [pool.submit(launch_fn, ticket_id) for ticket_id in launchable]
            wait(futures)

        for ticket_id, future in zip(launchable, futures, strict=True):
            status, reason = _settle(ticket_id, future)
            conflict = future.result().conflict if future.exception() is None else None
            if conflict is not None:
                plan.conflicts[ticket_id] = conflict
            set_status(ticket_id, status, reason)

    return plan.ticket_status


def _settle(ticket_id: str, future: Future[LaunchResult]) -> tuple[TicketExecutionStatus, str | None]:
    error = future.exception()
    if error is not None:
        logger.warning("Launch of ticket %s raised: %s", ticket_id, error)
        return TicketExecutionStatus.FAILED, str(error) or UNKNOWN_ERROR
    result = future.result()
    if result.success:
        return TicketExecutionStatus.DONE, None
    return TicketExecutionStatus.FAILED, result.error or UNKNOWN_ERROR


class BatchScheduler:
    """Builds and runs execution plans against the stored dependency graph."""

    def __init__(self, dependencies: DependencyRepository, *, max_workers: int | None = None) -> None:
        self.dependencies = dependencies
        self.max_workers = max_workers

    def build_execution_plan(self, project_id: str, ticket_ids: Iterable[str]) -> ExecutionPlan:
        ordered = list(dict.fromkeys(ticket_ids))
        prerequisites = self.dependencies.edges_for_tickets(project_id, ordered)
        layers = self.dependencies.topological_sort(project_id, ordered)
        return new_execution_plan(layers, ordered, prerequisites)

    def execute_dag_plan(
        self,
        project_id: str,
        plan: ExecutionPlan,
        launch_fn: LaunchFn,
        on_status_change: StatusCallback | None = None,
    ) -> dict[str, TicketExecutionStatus]:
        plan.prerequisites = self.dependencies.edges_for_tickets(project_id, plan.ticket_status)
        return execute_dag_plan(
            plan,
            launch_fn,
            on_status_change,
            max_workers=self.max_workers,
        )
