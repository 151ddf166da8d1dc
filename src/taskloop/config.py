"""Runtime configuration for the task loop."""

from __future__ import annotations

import os
import string
from dataclasses import dataclass, field
from pathlib import Path

from taskloop.orchestrator.backend.cli_backend import (
    AGENT_COMMAND_PLACEHOLDERS,
    DEFAULT_AGENT_COMMAND,
)
from taskloop.orchestrator.commit_format import COMMIT_PLACEHOLDERS, unknown_commit_placeholders


@dataclass(slots=True)
class AgentSettings:
    """How the coding agent is launched."""

    command_template: str = DEFAULT_AGENT_COMMAND
    timeout_seconds: int = 0


@dataclass(slots=True)
class LoopSettings:
    """Budgets and pacing of the run loop."""

    max_iterations: int = 10
    token_limit: int | None = None
    cost_limit: float | None = None
    iteration_delay_seconds: float = 1.0
    progress_buffer: int = 256


@dataclass(slots=True)
class CheckpointSettings:
    """Git checkpointing settings."""

    git_enabled: bool = True
    commit_template: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    workspace: Path = Path(".")
    agent: AgentSettings = field(default_factory=AgentSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    checkpoint: CheckpointSettings = field(default_factory=CheckpointSettings)

    @classmethod
    def from_env(cls, workspace: Path | None = None) -> Settings:
        """Load settings from ``TASKLOOP_*`` environment variables with local defaults."""

        return cls(
            workspace=workspace or Path(os.getenv("TASKLOOP_WORKSPACE", ".")),
            agent=AgentSettings(
                command_template=os.getenv("TASKLOOP_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                timeout_seconds=int(os.getenv("TASKLOOP_AGENT_TIMEOUT_SECONDS", "0")),
            ),
            loop=LoopSettings(
                max_iterations=int(os.getenv("TASKLOOP_MAX_ITERATIONS", "10")),
                token_limit=_env_optional_int("TASKLOOP_TOKEN_LIMIT"),
                cost_limit=_env_optional_float("TASKLOOP_COST_LIMIT"),
                iteration_delay_seconds=float(
                    os.getenv("TASKLOOP_ITERATION_DELAY_SECONDS", "1.0"),
                ),
                progress_buffer=int(os.getenv("TASKLOOP_PROGRESS_BUFFER", "256")),
            ),
            checkpoint=CheckpointSettings(
                git_enabled=_env_bool("TASKLOOP_GIT_ENABLED", True),
                commit_template=os.getenv("TASKLOOP_COMMIT_TEMPLATE") or None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the run loop cannot work with."""

        if self.loop.max_iterations <= 0:
            raise ValueError("TASKLOOP_MAX_ITERATIONS must be > 0.")
        if self.loop.token_limit is not None and self.loop.token_limit < 0:
            raise ValueError("TASKLOOP_TOKEN_LIMIT must be >= 0.")
        if self.loop.cost_limit is not None and self.loop.cost_limit < 0:
            raise ValueError("TASKLOOP_COST_LIMIT must be >= 0.")
        if self.loop.iteration_delay_seconds < 0:
            raise ValueError("TASKLOOP_ITERATION_DELAY_SECONDS must be >= 0.")
        if self.loop.progress_buffer <= 0:
            raise ValueError("TASKLOOP_PROGRESS_BUFFER must be > 0.")
        if self.agent.timeout_seconds < 0:
            raise ValueError("TASKLOOP_AGENT_TIMEOUT_SECONDS must be >= 0.")

        if not self.agent.command_template.strip():
            raise ValueError("TASKLOOP_AGENT_COMMAND must not be empty.")
        unknown = _unknown_placeholders(self.agent.command_template)
        if unknown:
            raise ValueError(
                "TASKLOOP_AGENT_COMMAND has unsupported placeholders: "
                f"{', '.join(unknown)}. Use {{workspace}} or {{prompt_file}}.",
            )

        unknown = unknown_commit_placeholders(self.checkpoint.commit_template or "")
        if unknown:
            raise ValueError(
                "TASKLOOP_COMMIT_TEMPLATE has unsupported placeholders: "
                f"{', '.join(unknown)}. "
                f"Use {' '.join(COMMIT_PLACEHOLDERS)}.",
            )


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return int(value.replace(",", "").replace("_", ""))
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _unknown_placeholders(template: str) -> list[str]:
    names = [name for _, name, _, _ in string.Formatter().parse(template) if name is not None]
    return [f"{{{name}}}" for name in names if name not in AGENT_COMMAND_PLACEHOLDERS]
