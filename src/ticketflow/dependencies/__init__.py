"""Ticket dependency graph, validation and DAG-aware batch scheduling."""

from ticketflow.dependencies.graph import (
    CrossProjectError,
    CycleError,
    DependencyCheck,
    DependencyCheckKind,
    DependencyEdge,
    DependencyValidationError,
    TicketNotFoundError,
    detect_cycle,
    topological_layers,
)
from ticketflow.dependencies.repository import DependencyRepository, TicketRepository
from ticketflow.dependencies.scheduler import (
    BatchScheduler,
    ExecutionPlan,
    LaunchResult,
    TicketExecutionStatus,
    execute_dag_plan,
)

__all__ = [
    "BatchScheduler",
    "CrossProjectError",
    "CycleError",
    "DependencyCheck",
    "DependencyCheckKind",
    "DependencyEdge",
    "DependencyRepository",
    "DependencyValidationError",
    "ExecutionPlan",
    "LaunchResult",
    "TicketExecutionStatus",
    "TicketNotFoundError",
    "TicketRepository",
    "detect_cycle",
    "execute_dag_plan",
    "topological_layers",
]
