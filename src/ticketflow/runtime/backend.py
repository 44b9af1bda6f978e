"""Spawn capability for CLI agents: one subprocess per session."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, TextIO

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("claude-code", "codex", "gemini-cli")
TIMEOUT_EXIT_CODE = 124
_OUTPUT_TAIL_CHARS = 4_000


class BackendRunError(RuntimeError):
    """Spawn failure with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class SpawnRequest:
    """Inputs required to start one agent run."""

    session_id: str
    prompt: str
    workdir: Path
    mode: str = "code"
    model: str = ""
    timeout_seconds: int | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AgentRunResult:
    """How an agent run ended."""

    success: bool
    exit_code: int | None = None
    duration_ms: int = 0
    output: str = ""
    error: str | None = None
    timed_out: bool = False


@dataclass(slots=True)
class SpawnHandle:
    """A started run: its eventual result plus a way to stop it."""

    future: Future[AgentRunResult]
    kill: Callable[[], None]
    command: str = ""


class AgentBackend(Protocol):
    """Protocol implemented by spawn capabilities."""

    def spawn(self, provider: str, request: SpawnRequest) -> SpawnHandle:
        """Start a run for ``provider`` and return immediately."""


class CliAgentBackend:
    """Run a per-provider command template as a subprocess.

    Templates may use ``{prompt}``, ``{prompt_file}``, ``{model}`` and
    ``{session_id}``; values are shell-quoted before splitting.
    """

    def __init__(
        self,
        command_templates: Mapping[str, str],
        *,
        kill_grace_seconds: float = 2.0,
    ) -> None:
        self.command_templates = dict(command_templates)
        self.kill_grace_seconds = kill_grace_seconds

    def spawn(self, provider: str, request: SpawnRequest) -> SpawnHandle:
        template = self.command_templates.get(provider)
        if template is None:
            raise BackendRunError(f"No command template configured for provider {provider!r}.", transient=False)

        request.workdir.mkdir(parents=True, exist_ok=True)
        prompt_file = request.workdir / "prompt.txt"
        prompt_file.write_text(request.prompt, "utf-8")
        run_args = build_run_args(
            command_template=template,
            prompt=request.prompt,
            prompt_file=prompt_file,
            model=request.model,
            session_id=request.session_id,
        )

        env = os.environ.copy()
        env.update(request.env)
        env["TICKETFLOW_SESSION_ID"] = request.session_id
        env["TICKETFLOW_AGENT_MODE"] = request.mode
        env["TICKETFLOW_AGENT_PROVIDER"] = provider

        stdout_path = request.workdir / "agent_stdout.log"
        stderr_path = request.workdir / "agent_stderr.log"
        stdout_handle = stdout_path.open("w", encoding="utf-8")
        stderr_handle = stderr_path.open("w", encoding="utf-8")
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=request.workdir,
                env=env,
                stdout=stdout_handle,
                stderr=stderr_handle,
                text=True,
            )
        except FileNotFoundError as error:
            stdout_handle.close()
            stderr_handle.close()
            raise BackendRunError(
                f"CLI backend command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            stdout_handle.close()
            stderr_handle.close()
            raise BackendRunError(f"CLI backend failed to start: {error}", transient=True) from error

        run = _ProcessRun(
            process=process,
            timeout_seconds=request.timeout_seconds,
            kill_grace_seconds=self.kill_grace_seconds,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            handles=(stdout_handle, stderr_handle),
        )
        run.start()
        command = shlex.join(run_args)
        logger.info("Spawned %s for session %s (pid=%s)", provider, request.session_id, process.pid)
        return SpawnHandle(future=run.future, kill=run.kill, command=command)


class _ProcessRun:
    """Waits for one subprocess on a daemon thread and resolves its future."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        process: subprocess.Popen[str],
        timeout_seconds: int | None,
        kill_grace_seconds: float,
        stdout_path: Path,
        stderr_path: Path,
        handles: tuple[TextIO, ...],
    ) -> None:
        self.process = process
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.stdout_path = stdout_path
        self.stderr_path = stderr_path
        self.handles = handles
        self.future: Future[AgentRunResult] = Future()
        self._killed = threading.Event()
        self._started = time.monotonic()

    def start(self) -> None:
        threading.Thread(
            target=self._wait,
            daemon=True,
            name=f"agent-run-{self.process.pid}",
        ).start()

    def kill(self) -> None:
        self._killed.set()
        _terminate_process(self.process, grace_seconds=self.kill_grace_seconds)

    def _wait(self) -> None:
        timed_out = False
        try:
            try:
                exit_code = self.process.wait(timeout=self.timeout_seconds)
            except subprocess.TimeoutExpired:
                timed_out = True
                _terminate_process(self.process, grace_seconds=self.kill_grace_seconds)
                exit_code = TIMEOUT_EXIT_CODE
        except Exception as error:  # noqa: BLE001
            self._close_handles()
            self.future.set_exception(error)
            return
        self._close_handles()
        self.future.set_result(self._result(exit_code, timed_out=timed_out))

    def _result(self, exit_code: int, *, timed_out: bool) -> AgentRunResult:
        duration_ms = int((time.monotonic() - self._started) * 1000)
        output = _read_tail(self.stdout_path)
        if self._killed.is_set():
            return AgentRunResult(
                success=False,
                exit_code=exit_code,
                duration_ms=duration_ms,
                output=output,
                error="Process was cancelled by user.",
            )
        if timed_out:
            return AgentRunResult(
                success=False,
                exit_code=exit_code,
                duration_ms=duration_ms,
                output=output,
                error=f"Agent timed out after {self.timeout_seconds}s.",
                timed_out=True,
            )
        if exit_code != 0:
            stderr = _read_tail(self.stderr_path).strip()
            return AgentRunResult(
                success=False,
                exit_code=exit_code,
                duration_ms=duration_ms,
                output=output,
                error=stderr or f"Agent exited with code {exit_code}.",
            )
        return AgentRunResult(
            success=True,
            exit_code=exit_code,
            duration_ms=duration_ms,
            output=output,
        )

    def _close_handles(self) -> None:
        for handle in self.handles:
            handle.close()


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    model: str,
    session_id: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("CLI backend command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "CLI backend command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            model=shlex.quote(model),
            session_id=shlex.quote(session_id),
        )
    except KeyError as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("CLI backend command template rendered empty command.", transient=False)
    return argv


def _read_tail(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")[-_OUTPUT_TAIL_CHARS:]
    except OSError:
        return ""


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    if process.poll() is not None:
        return
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=grace_seconds)
