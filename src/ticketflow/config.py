"""Runtime configuration for ticket scheduling and agent sessions."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from ticketflow.runtime.backend import SUPPORTED_PROVIDERS

DEFAULT_COMMAND_TEMPLATES = {
    "claude-code": "claude -p --model {model} --permission-mode acceptEdits -- {prompt}",
    "codex": "codex exec --sandbox workspace-write --model {model} {prompt}",
    "gemini-cli": "gemini --model {model} --approval-mode auto_edit --prompt {prompt}",
}

DEFAULT_MODELS = {
    "claude-code": "sonnet",
    "codex": "gpt-5-codex",
    "gemini-cli": "gemini-2.5-pro",
}


@dataclass(slots=True)
class AgentSettings:
    """Agent launch settings."""

    default_provider: str = "claude-code"
    command_templates: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_COMMAND_TEMPLATES))
    models: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODELS))
    mode: str = "code"
    timeout_seconds: int = 3_600
    kill_grace_seconds: float = 2.0


@dataclass(slots=True)
class SchedulerSettings:
    max_parallel_launches: int = 4


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".ticketflow.db")
    logs_root: Path = Path(".ticketflow/sessions")
    busy_timeout_ms: int = 5_000
    agent: AgentSettings = field(default_factory=AgentSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``TICKETFLOW_*`` variables with local defaults."""

        templates = dict(DEFAULT_COMMAND_TEMPLATES)
        models = dict(DEFAULT_MODELS)
        for provider in SUPPORTED_PROVIDERS:
            suffix = _env_suffix(provider)
            template = os.getenv(f"TICKETFLOW_{suffix}_COMMAND", "").strip()
            if template:
                templates[provider] = template
            model = os.getenv(f"TICKETFLOW_{suffix}_MODEL", "").strip()
            if model:
                models[provider] = model

        return cls(
            db_path=db_path or Path(os.getenv("TICKETFLOW_DB_PATH", ".ticketflow.db")),
            logs_root=Path(os.getenv("TICKETFLOW_LOGS_ROOT", ".ticketflow/sessions")),
            busy_timeout_ms=int(os.getenv("TICKETFLOW_BUSY_TIMEOUT_MS", "5000")),
            agent=AgentSettings(
                default_provider=os.getenv("TICKETFLOW_DEFAULT_PROVIDER", "claude-code").strip(),
                command_templates=templates,
                models=models,
                mode=os.getenv("TICKETFLOW_AGENT_MODE", "code").strip(),
                timeout_seconds=int(os.getenv("TICKETFLOW_AGENT_TIMEOUT_SECONDS", "3600")),
                kill_grace_seconds=float(os.getenv("TICKETFLOW_KILL_GRACE_SECONDS", "2.0")),
            ),
            scheduler=SchedulerSettings(
                max_parallel_launches=int(os.getenv("TICKETFLOW_MAX_PARALLEL_LAUNCHES", "4")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot use."""

        if self.agent.default_provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unsupported TICKETFLOW_DEFAULT_PROVIDER: {self.agent.default_provider!r}. "
                f"Expected one of: {', '.join(SUPPORTED_PROVIDERS)}.",
            )
        if self.busy_timeout_ms <= 0:
            raise ValueError("TICKETFLOW_BUSY_TIMEOUT_MS must be > 0.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("TICKETFLOW_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.kill_grace_seconds < 0:
            raise ValueError("TICKETFLOW_KILL_GRACE_SECONDS must be >= 0.")
        if self.scheduler.max_parallel_launches <= 0:
            raise ValueError("TICKETFLOW_MAX_PARALLEL_LAUNCHES must be a positive integer.")
        for provider, template in self.agent.command_templates.items():
            if "{prompt}" not in template and "{prompt_file}" not in template:
                raise ValueError(
                    f"Command template for {provider} must include {{prompt}} or {{prompt_file}}.",
                )


def _env_suffix(provider: str) -> str:
    return provider.upper().replace("-", "_")
