"""Domain models for task documents, iteration records and run sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states as written in the task document."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"


class TaskPriority(str, Enum):
    """Task priority; lower rank is scheduled first."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.HIGH: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.LOW: 2,
}


class ExitStatus(str, Enum):
    """Outcome of one iteration."""

    SUCCESS = "success"
    ERROR = "error"
    PARTIAL = "partial"
    INTERRUPTED = "interrupted"


class ErrorKind(str, Enum):
    """Normalized agent failure kinds."""

    RATE_LIMIT = "rate_limit"
    API_OVERLOAD = "api_overload"
    AUTH_ERROR = "auth_error"
    NETWORK_ERROR = "network_error"
    TASK_FAILURE = "task_failure"
    UNKNOWN = "unknown"


class SessionPhase(str, Enum):
    """Which phase a workspace session is in."""

    INIT = "init"
    RUN = "run"


@dataclass(slots=True, frozen=True)
class Task:
    """One unit of work parsed from the task document."""

    id: str
    title: str
    status: TaskStatus
    priority: TaskPriority
    dependencies: tuple[str, ...] = ()
    description: str = ""


@dataclass(slots=True)
class TaskDocument:
    """Parsed task document: metadata plus tasks in document order."""

    project_name: str
    created: str
    author: str
    tasks: list[Task] = field(default_factory=list)

    def by_status(self, status: TaskStatus) -> list[Task]:
        return [task for task in self.tasks if task.status == status]

    def done_ids(self) -> set[str]:
        return {task.id for task in self.tasks if task.status == TaskStatus.DONE}


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token and cost counters reported by the agent for one invocation."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cost_usd=self.cost_usd + other.cost_usd,
        )

    def price_per_million(self) -> float:
        if self.total_tokens == 0:
            return 0.0
        return self.cost_usd / self.total_tokens * 1_000_000


@dataclass(slots=True, frozen=True)
class IterationRecord:
    """Immutable ledger entry for one iteration."""

    iteration: int
    timestamp: datetime
    task_completed: str | None
    summary: str
    duration_seconds: int
    exit_status: ExitStatus
    error_kind: ErrorKind | None = None
    error_detail: str | None = None
    usage: TokenUsage | None = None

    @property
    def counts_as_completion(self) -> bool:
        return self.exit_status == ExitStatus.SUCCESS and self.task_completed is not None


@dataclass(slots=True)
class Ledger:
    """Aggregate progress counters plus the ordered iteration history."""

    total_tasks: int
    completed: int
    remaining: int
    last_updated: datetime
    iterations: list[IterationRecord] = field(default_factory=list)


@dataclass(slots=True)
class RunSession:
    """Per-workspace (or per-feature) session bookkeeping."""

    phase: SessionPhase
    started_at: datetime
    last_iteration: int = 0
    agent_session_id: str | None = None
    feature: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "phase": self.phase.value,
            "sessionId": self.agent_session_id,
            "lastIteration": self.last_iteration,
            "startedAt": self.started_at.isoformat(),
        }
        if self.feature is not None:
            payload["feature"] = self.feature
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RunSession:
        return cls(
            phase=SessionPhase(str(payload.get("phase", SessionPhase.INIT.value))),
            started_at=datetime.fromisoformat(str(payload["startedAt"])),
            last_iteration=int(payload.get("lastIteration", 0)),
            agent_session_id=payload.get("sessionId"),
            feature=payload.get("feature"),
        )
