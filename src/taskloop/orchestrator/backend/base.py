"""Backend interface for agent invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from taskloop.orchestrator.models import ErrorKind, TokenUsage
from taskloop.orchestrator.progress import ProgressChannel


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to run the agent on one task."""

    prompt: str
    workdir: Path
    progress: ProgressChannel | None = None
    timeout_seconds: int | None = None
    abort_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Aggregated outcome of one agent invocation."""

    success: bool
    output_text: str
    duration_ms: int
    error_message: str | None = None
    error_kind: ErrorKind | None = None
    usage: TokenUsage | None = None
    exit_code: int | None = None
    agent_session_id: str | None = None


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the agent once and return the aggregated result."""
