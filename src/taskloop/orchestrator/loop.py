"""Run loop: select a task, run the agent, record the outcome, checkpoint, repeat."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from taskloop.orchestrator.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from taskloop.orchestrator.checkpoint import CommitOutcome, GitCheckpointer, InterruptedWork
from taskloop.orchestrator.commit_format import commit_template_remediation
from taskloop.orchestrator.errors import MalformedDocumentError
from taskloop.orchestrator.failure_classifier import is_api_level_error
from taskloop.orchestrator.ledger import append_iteration, read_ledger, resume_point, usage_totals
from taskloop.orchestrator.models import (
    ErrorKind,
    ExitStatus,
    IterationRecord,
    SessionPhase,
    Task,
    TaskDocument,
    TokenUsage,
)
from taskloop.orchestrator.progress import ProgressChannel
from taskloop.orchestrator.prompts import build_task_prompt
from taskloop.orchestrator.session import SessionStore
from taskloop.orchestrator.shutdown import ShutdownController
from taskloop.orchestrator.tasks import (
    BlockedTask,
    blocked_tasks,
    load_task_document,
    next_runnable,
    pending_tasks,
)
from taskloop.orchestrator.workspace import STATE_DIR_NAME, WorkspaceLayout

logger = logging.getLogger(__name__)

_INTERRUPTED_PREVIEW_FILES = 10


class RunOutcome(str, Enum):
    """Why the run loop returned."""

    COMPLETED = "completed"
    BLOCKED = "blocked"
    STOPPED = "stopped"
    BUDGET_EXHAUSTED = "budget_exhausted"
    FATAL_ERROR = "fatal_error"


@dataclass(slots=True)
class RunConfig:
    """Per-run inputs resolved from settings and CLI options."""

    layout: WorkspaceLayout
    max_iterations: int = 10
    token_limit: int | None = None
    cost_limit: float | None = None
    iteration_delay_seconds: float = 1.0
    agent_timeout_seconds: int | None = None
    fresh_session: bool = True
    dry_run: bool = False


@dataclass(slots=True)
class RunReport:
    """Summary of one invocation of :meth:`RunLoop.run`."""

    outcome: RunOutcome
    start_iteration: int = 1
    iterations_run: int = 0
    completed_this_run: list[str] = field(default_factory=list)
    blocked: list[BlockedTask] = field(default_factory=list)
    error_kind: ErrorKind | None = None
    message: str = ""
    session_usage: TokenUsage = field(default_factory=TokenUsage)
    project_usage: TokenUsage = field(default_factory=TokenUsage)
    next_task: Task | None = None


@dataclass(slots=True)
class _IterationStep:
    record: IterationRecord
    result: AgentRunResult
    interrupted: bool


class RunLoop:
    """Drives iterations until the task list is done, blocked, stopped or out of budget.

    Ordering per iteration: the ledger entry for iteration N is written before
    commit N, and commit N finishes before iteration N+1 selects its task.
    """

    def __init__(
        self,
        config: RunConfig,
        backend: AgentBackend,
        checkpointer: GitCheckpointer | None = None,
        progress: ProgressChannel | None = None,
        shutdown: ShutdownController | None = None,
    ) -> None:
        self.config = config
        self.backend = backend
        self.checkpointer = checkpointer
        self.progress = progress if progress is not None else ProgressChannel()
        self.shutdown = shutdown if shutdown is not None else ShutdownController()
        self.sessions = SessionStore(config.layout)

    def run(self) -> RunReport:
        with self.shutdown.install():
            return self._run()

    def _run(self) -> RunReport:
        config = self.config
        layout = config.layout
        report = RunReport(outcome=RunOutcome.COMPLETED)

        git_ready = False
        interrupted = InterruptedWork(present=False)
        if not config.dry_run:
            git_ready = self._prepare_repository()
            if git_ready:
                interrupted = self._detect_interrupted_work()
            # Session files are written only after the interrupted-work check.
            self.sessions.begin(SessionPhase.RUN, fresh=config.fresh_session)

        ledger = read_ledger(layout.ledger_path)
        report.start_iteration = resume_point(ledger)
        report.project_usage = usage_totals(ledger)
        if ledger is not None and ledger.iterations:
            self.progress.info(
                f"Resuming from iteration {report.start_iteration} "
                f"({ledger.completed} tasks completed so far); "
                f"up to {config.max_iterations} more iterations.",
            )
            if report.project_usage.total_tokens:
                self.progress.info(
                    f"Project usage: {report.project_usage.total_tokens:,} tokens, "
                    f"${report.project_usage.cost_usd:.4f}",
                )

        iteration = report.start_iteration
        while True:
            if self.shutdown.stop_requested:
                report.outcome = RunOutcome.STOPPED
                report.message = "Stopped as requested."
                break

            try:
                document = load_task_document(layout.document_path)
            except MalformedDocumentError as error:
                report.outcome = RunOutcome.FATAL_ERROR
                report.message = f"Cannot read task document: {error}"
                break

            if not pending_tasks(document):
                report.outcome = RunOutcome.COMPLETED
                done = len(document.done_ids())
                report.message = f"All tasks completed ({done}/{len(document.tasks)})."
                break

            task = next_runnable(document)
            if task is None:
                report.outcome = RunOutcome.BLOCKED
                report.blocked = blocked_tasks(document)
                report.message = "No runnable tasks: every pending task has unmet dependencies."
                break

            exhausted = self._budget_exhausted(report)
            if exhausted is not None:
                report.outcome = RunOutcome.BUDGET_EXHAUSTED
                report.message = exhausted
                break

            if config.dry_run:
                report.outcome = RunOutcome.STOPPED
                report.next_task = task
                report.message = f"Dry run: iteration {iteration} would execute {task.id} - {task.title}."
                break

            if interrupted.present:
                self.progress.info(f"Committing interrupted work (likely from {task.id})")
                leftover = self._commit_interrupted(task)
                if not leftover.committed:
                    report.outcome = RunOutcome.FATAL_ERROR
                    report.message = (
                        self._hook_failure_guidance(leftover)
                        if leftover.hook_failure
                        else _interrupted_commit_guidance()
                    )
                    break
                interrupted = InterruptedWork(present=False)

            step = self._run_iteration(iteration, task, document)
            report.iterations_run += 1
            usage = step.result.usage
            if usage is not None:
                report.session_usage = report.session_usage + usage
                report.project_usage = report.project_usage + usage
            if step.record.counts_as_completion:
                report.completed_this_run.append(task.id)

            commit = None
            if git_ready:
                commit = self.checkpointer.commit_iteration(
                    layout.root,
                    iteration,
                    None if step.interrupted else task.id,
                    None if step.interrupted else task.title,
                    success=step.record.exit_status == ExitStatus.SUCCESS,
                    feature=layout.feature,
                )

            if commit is not None and commit.hook_failure:
                report.outcome = RunOutcome.FATAL_ERROR
                report.message = self._hook_failure_guidance(commit)
                if step.interrupted:
                    report.message = f"Stopped during {task.id}.\n{report.message}"
                break

            if step.interrupted:
                report.outcome = RunOutcome.STOPPED
                report.message = (
                    f"Stopped during {task.id}; the task was not marked complete. "
                    "Run `taskloop continue` to retry it."
                )
                break

            if not step.result.success and is_api_level_error(step.result.error_kind):
                report.outcome = RunOutcome.FATAL_ERROR
                report.error_kind = step.result.error_kind
                report.message = (
                    f"API-level error ({step.result.error_kind.value}) while running {task.id}: "
                    f"{step.result.error_message}\n"
                    "This is not a task failure; resolve it before continuing."
                )
                break

            iteration += 1
            self.shutdown.wait(config.iteration_delay_seconds)

        logger.info(
            "Run finished: outcome=%s iterations=%d completed=%d",
            report.outcome.value,
            report.iterations_run,
            len(report.completed_this_run),
        )
        return report

    def _prepare_repository(self) -> bool:
        if self.checkpointer is None:
            self.progress.warning("Git: checkpointing disabled")
            return False
        status = self.checkpointer.ensure_repository(self.config.layout.root)
        if not status.available:
            self.progress.warning("Git: not available, changes will not be versioned")
            return False
        if status.was_initialized and status.initial_commit:
            self.progress.info("Git: repository initialized with a baseline commit")
        elif status.was_initialized:
            reason = (status.baseline_error or "").strip().splitlines() or ["unknown error"]
            self.progress.warning(f"Git: repository initialized, baseline commit failed: {reason[0]}")
            for line in commit_template_remediation(self.config.layout.root, "Initial commit"):
                self.progress.warning(line)
        return True

    def _detect_interrupted_work(self) -> InterruptedWork:
        interrupted = self.checkpointer.detect_interrupted_work(
            self.config.layout.root,
            ignore_subpaths=(f"{STATE_DIR_NAME}/",),
        )
        if interrupted.present:
            self.progress.warning("Detected uncommitted changes (possible interrupted work):")
            for path in interrupted.files[:_INTERRUPTED_PREVIEW_FILES]:
                self.progress.warning(f"  - {path}")
            hidden = len(interrupted.files) - _INTERRUPTED_PREVIEW_FILES
            if hidden > 0:
                self.progress.warning(f"  ... and {hidden} more files")
        return interrupted

    def _commit_interrupted(self, task: Task) -> CommitOutcome:
        return self.checkpointer.commit_interrupted(self.config.layout.root, task.id, task.title)

    def _budget_exhausted(self, report: RunReport) -> str | None:
        config = self.config
        if report.iterations_run >= config.max_iterations:
            return f"Iteration limit reached ({config.max_iterations} this run)."
        tokens = report.session_usage.total_tokens
        if config.token_limit is not None and tokens >= config.token_limit:
            return f"Token limit reached: {tokens:,} / {config.token_limit:,} this run."
        cost = report.session_usage.cost_usd
        if config.cost_limit is not None and cost >= config.cost_limit:
            return f"Cost limit reached: ${cost:.4f} / ${config.cost_limit:.4f} this run."
        return None

    def _run_iteration(self, iteration: int, task: Task, document: TaskDocument) -> _IterationStep:
        layout = self.config.layout
        started_at = datetime.now(tz=UTC)
        self.progress.info(f"Iteration {iteration}: {task.id} - {task.title}")

        prompt = build_task_prompt(
            task=task,
            workspace=layout.root,
            document_path=layout.document_path,
            ledger_path=layout.ledger_path,
            iteration=iteration,
        )
        result = self.backend.run(
            AgentRunRequest(
                prompt=prompt,
                workdir=layout.root,
                progress=self.progress,
                timeout_seconds=self.config.agent_timeout_seconds,
                abort_requested=lambda: self.shutdown.force_requested,
            ),
        )
        duration_seconds = round(result.duration_ms / 1000)

        interrupted = self.shutdown.stop_requested
        if interrupted:
            # The agent may have exited cleanly, but the task is never credited.
            record = IterationRecord(
                iteration=iteration,
                timestamp=started_at,
                task_completed=None,
                summary=f"Interrupted: {task.title} (stop requested)",
                duration_seconds=duration_seconds,
                exit_status=ExitStatus.INTERRUPTED,
                usage=result.usage,
            )
            self.progress.warning(f"{task.id} interrupted by stop request")
        elif result.success:
            record = IterationRecord(
                iteration=iteration,
                timestamp=started_at,
                task_completed=task.id,
                summary=f"Completed {task.title}",
                duration_seconds=duration_seconds,
                exit_status=ExitStatus.SUCCESS,
                usage=result.usage,
            )
            self.progress.info(f"Completed {task.id} ({duration_seconds}s){_usage_suffix(result.usage)}")
        else:
            detail = result.error_message or "Unknown error"
            record = IterationRecord(
                iteration=iteration,
                timestamp=started_at,
                task_completed=None,
                summary=f"Failed: {detail.splitlines()[0] if detail.strip() else 'Unknown error'}",
                duration_seconds=duration_seconds,
                exit_status=ExitStatus.ERROR,
                error_kind=result.error_kind,
                error_detail=detail,
                usage=result.usage,
            )
            self.progress.warning(f"Failed {task.id}: {record.summary.removeprefix('Failed: ')}")

        append_iteration(layout.ledger_path, len(document.tasks), record)
        self.sessions.record_iteration(iteration, agent_session_id=result.agent_session_id)
        return _IterationStep(record=record, result=result, interrupted=interrupted)

    def _hook_failure_guidance(self, commit: CommitOutcome) -> str:
        lines = [
            "Commit rejected by a repository hook; stopping.",
            (commit.error or "").strip(),
            f"Rejected message: {commit.message}",
            "Save a commit template the hook accepts, then run `taskloop continue`:",
            *commit_template_remediation(self.config.layout.root, commit.action),
        ]
        return "\n".join(line for line in lines if line)


def _interrupted_commit_guidance() -> str:
    return "\n".join(
        [
            "Detected uncommitted changes but could not commit them. Resolve this manually:",
            '  1. Run "git status" to see the uncommitted changes',
            '  2. Either commit them: git add -A && git commit -m "message"',
            "  3. Or discard them: git checkout -- . && git clean -fd",
            "  4. Then run `taskloop continue` to resume",
        ],
    )


def _usage_suffix(usage: TokenUsage | None) -> str:
    if usage is None:
        return ""
    return f" [{usage.total_tokens:,} tokens, ${usage.cost_usd:.4f}]"
