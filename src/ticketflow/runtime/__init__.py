"""Agent process runtime: spawning, tracking and cancellation."""

from ticketflow.runtime.activity_registry import Activity, ActivityRegistry
from ticketflow.runtime.backend import (
    SUPPORTED_PROVIDERS,
    AgentBackend,
    AgentRunResult,
    BackendRunError,
    CliAgentBackend,
    SpawnHandle,
    SpawnRequest,
)
from ticketflow.runtime.process_manager import ProcessAlreadyRunningError, ProcessManager, TrackedProcess

__all__ = [
    "SUPPORTED_PROVIDERS",
    "Activity",
    "ActivityRegistry",
    "AgentBackend",
    "AgentRunResult",
    "BackendRunError",
    "CliAgentBackend",
    "ProcessAlreadyRunningError",
    "ProcessManager",
    "SpawnHandle",
    "SpawnRequest",
    "TrackedProcess",
]
