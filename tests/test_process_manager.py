from __future__ import annotations

import threading
from concurrent.futures import Future
from pathlib import Path

import allure
import pytest

from ticketflow.runtime.backend import AgentRunResult, BackendRunError, SpawnHandle, SpawnRequest
from ticketflow.runtime.process_manager import ProcessAlreadyRunningError, ProcessManager
from ticketflow.sessions.status_machine import SessionStatus

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Process Manager"),
]


class FakeBackend:
    """Hands out unresolved futures that tests settle by hand."""

    def __init__(self) -> None:
        self.futures: dict[str, Future[AgentRunResult]] = {}
        self.killed: list[str] = []
        self.fail_with: Exception | None = None

    def spawn(self, provider: str, request: SpawnRequest) -> SpawnHandle:
        if self.fail_with is not None:
            raise self.fail_with
        future: Future[AgentRunResult] = Future()
        self.futures[request.session_id] = future
        return SpawnHandle(
            future=future,
            kill=lambda: self.killed.append(request.session_id),
            command=f"{provider} run",
        )


def _request(session_id: str, tmp_path: Path) -> SpawnRequest:
    return SpawnRequest(session_id=session_id, prompt="do it", workdir=tmp_path / session_id)


def test_start_registers_running_process(tmp_path: Path) -> None:
    manager = ProcessManager(FakeBackend(), default_provider="codex")

    info = manager.start("s1", _request("s1", tmp_path))

    assert info.status == SessionStatus.RUNNING
    assert info.provider == "codex"
    assert info.command == "codex run"
    assert manager.active_count() == 1
    assert [process.session_id for process in manager.list_active()] == ["s1"]


def test_completion_moves_process_to_completed(tmp_path: Path) -> None:
    backend = FakeBackend()
    manager = ProcessManager(backend)
    manager.start("s1", _request("s1", tmp_path))

    backend.futures["s1"].set_result(AgentRunResult(success=True, exit_code=0, output="ok"))

    info = manager.get_status("s1")
    assert info is not None
    assert info.status == SessionStatus.COMPLETED
    assert info.result is not None
    assert info.result.output == "ok"
    assert info.completed_at is not None
    assert manager.active_count() == 0


def test_reported_failure_and_exception_mark_failed(tmp_path: Path) -> None:
    backend = FakeBackend()
    manager = ProcessManager(backend)
    manager.start("s1", _request("s1", tmp_path))
    manager.start("s2", _request("s2", tmp_path))

    backend.futures["s1"].set_result(AgentRunResult(success=False, exit_code=2, error="exit 2"))
    backend.futures["s2"].set_exception(RuntimeError(""))

    first = manager.get_status("s1")
    second = manager.get_status("s2")
    assert first is not None
    assert second is not None
    assert (first.status, first.error) == (SessionStatus.FAILED, "exit 2")
    assert (second.status, second.error) == (SessionStatus.FAILED, "Unknown error")


def test_spawn_failure_marks_failed_immediately(tmp_path: Path) -> None:
    backend = FakeBackend()
    backend.fail_with = BackendRunError("CLI backend command not found: claude", transient=False)
    manager = ProcessManager(backend)

    info = manager.start("s1", _request("s1", tmp_path))

    assert info.status == SessionStatus.FAILED
    assert info.error == "CLI backend command not found: claude"
    assert manager.active_count() == 0


def test_duplicate_start_while_running_is_rejected(tmp_path: Path) -> None:
    backend = FakeBackend()
    manager = ProcessManager(backend)
    manager.start("s1", _request("s1", tmp_path))

    with pytest.raises(ProcessAlreadyRunningError):
        manager.start("s1", _request("s1", tmp_path))

    backend.futures["s1"].set_result(AgentRunResult(success=True))
    assert manager.start("s1", _request("s1", tmp_path)).status == SessionStatus.RUNNING


def test_cancel_is_not_overwritten_by_late_completion(tmp_path: Path) -> None:
    backend = FakeBackend()
    manager = ProcessManager(backend)
    manager.start("s1", _request("s1", tmp_path))

    assert manager.cancel("s1") is True
    backend.futures["s1"].set_result(AgentRunResult(success=True))

    info = manager.get_status("s1")
    assert info is not None
    assert info.status == SessionStatus.CANCELLED
    assert info.result is None
    assert backend.killed == ["s1"]
    assert manager.cancel("s1") is False


class SlowSpawnBackend(FakeBackend):
    """Blocks inside ``spawn`` until the test releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def spawn(self, provider: str, request: SpawnRequest) -> SpawnHandle:
        self.entered.set()
        self.release.wait(timeout=5)
        return super().spawn(provider, request)


def test_cancel_during_spawn_kills_process_once_spawned(tmp_path: Path) -> None:
    backend = SlowSpawnBackend()
    manager = ProcessManager(backend)
    started: list[SessionStatus] = []
    starter = threading.Thread(
        target=lambda: started.append(manager.start("s1", _request("s1", tmp_path)).status),
    )
    starter.start()
    assert backend.entered.wait(timeout=5)

    assert manager.cancel("s1") is True
    assert backend.killed == []
    backend.release.set()
    starter.join(timeout=5)

    assert started == [SessionStatus.CANCELLED]
    assert backend.killed == ["s1"]
    info = manager.get_status("s1")
    assert info is not None
    assert info.status == SessionStatus.CANCELLED
    backend.futures["s1"].set_result(AgentRunResult(success=True))
    assert manager.get_status("s1") == info


def test_sessions_are_independent(tmp_path: Path) -> None:
    backend = FakeBackend()
    manager = ProcessManager(backend)
    manager.start("s1", _request("s1", tmp_path))
    manager.start("s2", _request("s2", tmp_path))

    manager.cancel("s1")
    backend.futures["s2"].set_result(AgentRunResult(success=True))

    statuses = {info.session_id: info.status for info in manager.list_all()}
    assert statuses == {"s1": SessionStatus.CANCELLED, "s2": SessionStatus.COMPLETED}
    assert backend.killed == ["s1"]


def test_remove_only_forgets_terminal_entries(tmp_path: Path) -> None:
    backend = FakeBackend()
    manager = ProcessManager(backend)
    manager.start("s1", _request("s1", tmp_path))

    assert manager.remove("s1") is False
    backend.futures["s1"].set_result(AgentRunResult(success=True))
    assert manager.remove("s1") is True
    assert manager.get_status("s1") is None
    assert manager.remove("missing") is False


def test_wait_returns_settled_snapshot(tmp_path: Path) -> None:
    backend = FakeBackend()
    manager = ProcessManager(backend)
    manager.start("s1", _request("s1", tmp_path))

    pending = manager.wait("s1", timeout=0.01)
    assert pending is not None
    assert pending.status == SessionStatus.RUNNING

    backend.futures["s1"].set_result(AgentRunResult(success=True))
    settled = manager.wait("s1", timeout=1)
    assert settled is not None
    assert settled.status == SessionStatus.COMPLETED
    assert manager.wait("missing") is None
