"""Agent backends."""

from taskloop.orchestrator.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from taskloop.orchestrator.backend.cli_backend import (
    DEFAULT_AGENT_COMMAND,
    BackendRunError,
    CliAgentBackend,
)

__all__ = [
    "DEFAULT_AGENT_COMMAND",
    "AgentBackend",
    "AgentRunRequest",
    "AgentRunResult",
    "BackendRunError",
    "CliAgentBackend",
]
