"""In-memory tracking of agent processes keyed by session id."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from datetime import datetime

from ticketflow.runtime.backend import AgentBackend, AgentRunResult, SpawnRequest
from ticketflow.sessions.status_machine import SessionStatus, is_terminal_status
from ticketflow.storage.common import utc_now

logger = logging.getLogger(__name__)


class ProcessAlreadyRunningError(RuntimeError):
    """Raised when a session id is started twice while still running."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} already has a running process.")
        self.session_id = session_id


@dataclass(slots=True)
class TrackedProcess:
    session_id: str
    provider: str
    status: SessionStatus
    started_at: datetime
    completed_at: datetime | None = None
    result: AgentRunResult | None = None
    error: str | None = None
    command: str = ""


@dataclass(slots=True)
class _Entry:
    info: TrackedProcess
    future: Future[AgentRunResult] | None
    kill: Callable[[], None] | None


class ProcessManager:
    """Start, cancel and observe agent processes.

    A cancelled or already-terminal entry is never overwritten by a late
    completion of its future.
    """

    def __init__(self, backend: AgentBackend, *, default_provider: str = "claude-code") -> None:
        self._backend = backend
        self._default_provider = default_provider
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def start(self, session_id: str, request: SpawnRequest, provider: str | None = None) -> TrackedProcess:
        provider_name = provider or self._default_provider
        with self._lock:
            existing = self._entries.get(session_id)
            if existing is not None and existing.info.status == SessionStatus.RUNNING:
                raise ProcessAlreadyRunningError(session_id)
            info = TrackedProcess(
                session_id=session_id,
                provider=provider_name,
                status=SessionStatus.RUNNING,
                started_at=utc_now(),
            )
            entry = _Entry(info=info, future=None, kill=None)
            self._entries[session_id] = entry

        try:
            handle = self._backend.spawn(provider_name, request)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to spawn %s for session %s: %s", provider_name, session_id, error)
            with self._lock:
                if self._entries.get(session_id) is entry:
                    info.status = SessionStatus.FAILED
                    info.error = str(error) or "Unknown error"
                    info.completed_at = utc_now()
                return replace(info)

        with self._lock:
            entry.future = handle.future
            entry.kill = handle.kill
            info.command = handle.command
            cancelled_during_spawn = info.status == SessionStatus.CANCELLED
            snapshot = replace(info)
        if cancelled_during_spawn:
            # cancel() ran before there was anything to kill.
            self._kill(session_id, handle.kill)
        handle.future.add_done_callback(lambda future: self._on_done(entry, future))
        return snapshot

    def cancel(self, session_id: str) -> bool:
        """Kill the process and mark it cancelled; ``False`` if not running."""

        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None or entry.info.status != SessionStatus.RUNNING:
                return False
            entry.info.status = SessionStatus.CANCELLED
            entry.info.completed_at = utc_now()
            entry.info.error = "Cancelled by user"
            kill = entry.kill
        if kill is not None:
            self._kill(session_id, kill)
        logger.info("Cancelled process for session %s", session_id)
        return True

    def get_status(self, session_id: str) -> TrackedProcess | None:
        with self._lock:
            entry = self._entries.get(session_id)
            return replace(entry.info) if entry is not None else None

    def list_active(self) -> list[TrackedProcess]:
        with self._lock:
            return [replace(e.info) for e in self._entries.values() if e.info.status == SessionStatus.RUNNING]

    def list_all(self) -> list[TrackedProcess]:
        with self._lock:
            return [replace(e.info) for e in self._entries.values()]

    def remove(self, session_id: str) -> bool:
        """Forget a terminal entry. Running entries are kept."""

        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None or not is_terminal_status(entry.info.status):
                return False
            del self._entries[session_id]
            return True

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._entries.values() if e.info.status == SessionStatus.RUNNING)

    def wait(self, session_id: str, timeout: float | None = None) -> TrackedProcess | None:
        """Block until the process settles; returns the final snapshot."""

        with self._lock:
            entry = self._entries.get(session_id)
            future = entry.future if entry is not None else None
        if entry is None:
            return None
        if future is not None:
            try:
                future.exception(timeout=timeout)
            except FutureTimeoutError:
                pass
            else:
                # Waiters wake before done-callbacks run.
                self._on_done(entry, future)
        with self._lock:
            return replace(entry.info)

    def _kill(self, session_id: str, kill: Callable[[], None]) -> None:
        try:
            kill()
        except OSError as error:
            logger.warning("Failed to kill process for session %s: %s", session_id, error)

    def _on_done(self, entry: _Entry, future: Future[AgentRunResult]) -> None:
        error = future.exception()
        with self._lock:
            info = entry.info
            if info.status != SessionStatus.RUNNING:
                return
            info.completed_at = utc_now()
            if error is not None:
                info.status = SessionStatus.FAILED
                info.error = str(error) or "Unknown error"
                return
            result = future.result()
            info.result = result
            if result.success:
                info.status = SessionStatus.COMPLETED
            else:
                info.status = SessionStatus.FAILED
                info.error = result.error or "Unknown error"
