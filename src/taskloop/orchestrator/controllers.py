"""Controllers for task loop CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskloop.config import Settings
from taskloop.orchestrator.backend import CliAgentBackend
from taskloop.orchestrator.checkpoint import GitCheckpointer
from taskloop.orchestrator.commit_format import COMMIT_PLACEHOLDERS, save_commit_template
from taskloop.orchestrator.errors import MalformedDocumentError, SessionNotFoundError
from taskloop.orchestrator.ledger import read_ledger, usage_totals
from taskloop.orchestrator.loop import RunConfig, RunLoop, RunOutcome, RunReport
from taskloop.orchestrator.models import ExitStatus, Ledger, SessionPhase, TaskStatus, TokenUsage
from taskloop.orchestrator.progress import ProgressChannel, ProgressEvent, display_thread
from taskloop.orchestrator.session import SessionStore
from taskloop.orchestrator.tasks import (
    blocked_tasks,
    load_task_document,
    next_runnable,
    pending_tasks,
    render_task_template,
)
from taskloop.orchestrator.workspace import (
    CONFIG_KEYS,
    WorkspaceLayout,
    list_features,
    read_workspace_config,
    resolve_layout,
    write_workspace_config,
)

_SUCCESSFUL_OUTCOMES = {RunOutcome.COMPLETED, RunOutcome.STOPPED, RunOutcome.BUDGET_EXHAUSTED}
_NO_FEATURES_LINES = (
    "No features found in the requirements/ directory.",
    "Create one with `taskloop init --feature <name>`, or use `taskloop init` for a single task list.",
)


@dataclass(slots=True)
class RunCommand:
    """CLI input for ``run`` and ``continue``."""

    workspace: Path | None
    feature: str | None
    max_iterations: int | None = None
    token_limit: int | None = None
    cost_limit: float | None = None
    dry_run: bool = False
    fresh_session: bool = True


@dataclass(slots=True)
class StatusCommand:
    """CLI input for workspace status."""

    workspace: Path | None
    feature: str | None
    as_json: bool = False


@dataclass(slots=True)
class InitCommand:
    """CLI input for writing a starter task document."""

    workspace: Path | None
    feature: str | None
    project_name: str
    force: bool = False


@dataclass(slots=True)
class FeatureCommand:
    """CLI input for ``feature list`` and ``feature status``."""

    workspace: Path | None


@dataclass(slots=True)
class ConfigCommand:
    """CLI input for ``config set|get|unset|list``."""

    workspace: Path | None
    key: str | None = None
    value: str | None = None
    action: str | None = None


@dataclass(slots=True)
class RunResult:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool
    outcome: RunOutcome | None = None
    report: RunReport | None = None


@dataclass(slots=True)
class StatusResult:
    lines: list[str]
    payload: dict[str, Any] = field(default_factory=dict)


class TaskLoopCliController:
    """Coordinates run, status, init, feature and config CLI operations."""

    def run(
        self,
        command: RunCommand,
        emit: Callable[[str], None] = print,
    ) -> RunResult:
        settings = Settings.from_env(workspace=command.workspace)
        if command.max_iterations is not None:
            settings.loop.max_iterations = command.max_iterations
        if command.token_limit is not None:
            settings.loop.token_limit = command.token_limit
        if command.cost_limit is not None:
            settings.loop.cost_limit = command.cost_limit
        settings.validate()

        layout = resolve_layout(settings.workspace, command.feature)
        if not layout.document_path.exists():
            return RunResult(
                lines=[
                    f"Task document not found: {layout.document_path}",
                    "Run `taskloop init` to create one.",
                ],
                success=False,
            )
        if not command.fresh_session and SessionStore(layout).read() is None:
            raise SessionNotFoundError(
                f"No session to continue in {layout.root}. Start one with `taskloop run`.",
            )

        commit_template = (
            settings.checkpoint.commit_template or read_workspace_config(layout).commit_template
        )
        checkpointer = (
            GitCheckpointer(commit_template=commit_template)
            if settings.checkpoint.git_enabled
            else None
        )
        progress = ProgressChannel(maxsize=settings.loop.progress_buffer)
        loop = RunLoop(
            config=RunConfig(
                layout=layout,
                max_iterations=settings.loop.max_iterations,
                token_limit=settings.loop.token_limit,
                cost_limit=settings.loop.cost_limit,
                iteration_delay_seconds=settings.loop.iteration_delay_seconds,
                agent_timeout_seconds=settings.agent.timeout_seconds or None,
                fresh_session=command.fresh_session,
                dry_run=command.dry_run,
            ),
            backend=CliAgentBackend(settings.agent.command_template),
            checkpointer=checkpointer,
            progress=progress,
        )

        for line in _run_header(layout, settings, dry_run=command.dry_run):
            emit(line)
        with display_thread(progress, lambda event: emit(_render_event(event))):
            report = loop.run()

        return RunResult(
            lines=_report_lines(report, read_ledger(layout.ledger_path)),
            success=report.outcome in _SUCCESSFUL_OUTCOMES,
            outcome=report.outcome,
            report=report,
        )

    def status(self, command: StatusCommand) -> StatusResult:
        settings = Settings.from_env(workspace=command.workspace)
        layout = resolve_layout(settings.workspace, command.feature)
        payload = _status_payload(layout, settings)
        if command.as_json:
            return StatusResult(lines=[json.dumps(payload, indent=2)], payload=payload)
        return StatusResult(lines=_status_lines(payload), payload=payload)

    def init(self, command: InitCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        layout = resolve_layout(settings.workspace, command.feature)
        path = layout.document_path
        if path.exists() and not command.force:
            return [f"Task document already exists: {path} (use --force to overwrite)"]

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_task_template(command.project_name), "utf-8")
        SessionStore(layout).begin(SessionPhase.INIT, fresh=True)
        return [
            f"Task document written: {path}",
            "Edit the tasks, then start with `taskloop run`.",
        ]

    def feature_list(self, command: FeatureCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        summaries = _feature_summaries(settings)
        if not summaries:
            return list(_NO_FEATURES_LINES)
        lines = [f"Workspace: {settings.workspace.expanduser().resolve()}", ""]
        for name, payload in summaries:
            lines.append(f"{name}:")
            if "tasks" not in payload:
                lines.append(f"  Error: {payload.get('error', 'unreadable task document')}")
                lines.append("")
                continue
            done, total = payload["tasks"]["done"], payload["total_tasks"]
            lines.append(f"  Tasks: {done}/{total} ({_percentage(done, total)}%)")
            session = payload.get("session")
            if session is not None:
                lines.append(f"  Phase: {session['phase']}")
                if session["lastIteration"] > 0:
                    lines.append(f"  Last iteration: {session['lastIteration']}")
            if "last_activity" in payload:
                lines.append(f"  Last activity: {payload['last_activity']}")
            lines.append("")
        return lines

    def feature_status(self, command: FeatureCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        summaries = [
            (name, payload) for name, payload in _feature_summaries(settings) if "tasks" in payload
        ]
        if not summaries:
            return list(_NO_FEATURES_LINES)

        rows = []
        for name, payload in summaries:
            done, total = payload["tasks"]["done"], payload["total_tasks"]
            active = payload.get("session", {}).get("phase") == SessionPhase.RUN.value
            rows.append((name, done, total, _percentage(done, total), active))
        rows.sort(key=lambda row: (-row[3], row[0]))

        lines = [f"Workspace: {settings.workspace.expanduser().resolve()}", "", "Features:"]
        for name, done, total, percentage, active in rows:
            marker = "*" if active else " "
            lines.append(
                f"  {marker} {name:<20} {_progress_bar(percentage, 20)} {percentage}% ({done}/{total})",
            )
        total_done = sum(row[1] for row in rows)
        total_tasks = sum(row[2] for row in rows)
        overall = _percentage(total_done, total_tasks)
        lines.extend(
            [
                "",
                "Overall progress:",
                f"  {_progress_bar(overall, 40)} {overall}%",
                f"  Total: {total_done}/{total_tasks} tasks completed",
            ],
        )
        return lines

    def config_set(self, command: ConfigCommand) -> list[str]:
        layout = self._config_layout(command)
        if command.value is None:
            raise ValueError("A value is required.")
        template = save_commit_template(layout, command.value, command.action or "")
        return [f"Set {command.key} = {template}"]

    def config_get(self, command: ConfigCommand) -> list[str]:
        layout = self._config_layout(command)
        template = read_workspace_config(layout).commit_template
        return [f"{command.key}: {template if template is not None else '(not set)'}"]

    def config_unset(self, command: ConfigCommand) -> list[str]:
        layout = self._config_layout(command)
        config = read_workspace_config(layout)
        config.commit_template = None
        write_workspace_config(layout, config)
        return [f"Unset {command.key}"]

    def config_list(self, command: ConfigCommand) -> list[str]:
        settings = Settings.from_env(workspace=command.workspace)
        layout = resolve_layout(settings.workspace)
        template = read_workspace_config(layout).commit_template
        lines = [f"Workspace: {layout.root}", ""]
        for key in CONFIG_KEYS:
            lines.append(f"{key}: {template if template is not None else '(not set)'}")
        if settings.checkpoint.commit_template:
            lines.append(
                f"TASKLOOP_COMMIT_TEMPLATE overrides it: {settings.checkpoint.commit_template}",
            )
        lines.extend(
            [
                "",
                f"Placeholders for commitTemplate: {' '.join(COMMIT_PLACEHOLDERS)}",
                '  {action} is what taskloop is doing, e.g. "Initial commit",',
                '  "Complete TASK-001 - Fix the bug" or "Attempted TASK-002 - Add feature".',
                "",
                "Example:",
                "  taskloop config set commitTemplate 'chore(loop): {action}'",
            ],
        )
        return lines

    def _config_layout(self, command: ConfigCommand) -> WorkspaceLayout:
        if command.key not in CONFIG_KEYS:
            raise ValueError(
                f"Unknown config key: {command.key}. Valid keys: {', '.join(CONFIG_KEYS)}.",
            )
        settings = Settings.from_env(workspace=command.workspace)
        return resolve_layout(settings.workspace)


def _feature_summaries(settings: Settings) -> list[tuple[str, dict[str, Any]]]:
    root = settings.workspace.expanduser().resolve()
    summaries = []
    for name in list_features(root):
        try:
            layout = resolve_layout(root, name)
        except ValueError as error:
            summaries.append((name, {"error": str(error)}))
            continue
        summaries.append((name, _status_payload(layout, settings, include_uncommitted=False)))
    return summaries


def _percentage(done: int, total: int) -> int:
    return round(done / total * 100) if total else 0


def _progress_bar(percentage: int, width: int) -> str:
    filled = round(percentage / 100 * width)
    return "#" * filled + "." * (width - filled)


def _run_header(layout: WorkspaceLayout, settings: Settings, *, dry_run: bool) -> list[str]:
    lines = [f"Workspace: {layout.root}"]
    if layout.feature:
        lines.append(f"Feature: {layout.feature}")
    lines.extend(
        [
            f"Task document: {layout.document_path}",
            f"Progress log: {layout.ledger_path}",
            f"Max iterations: {settings.loop.max_iterations}",
        ],
    )
    if settings.loop.token_limit is not None:
        lines.append(f"Token limit: {settings.loop.token_limit:,} (this run)")
    if settings.loop.cost_limit is not None:
        lines.append(f"Cost limit: ${settings.loop.cost_limit:.2f} (this run)")
    if dry_run:
        lines.append("DRY RUN: no agent runs, no files written")
    lines.append("Press Ctrl+C to stop after the current task.")
    return lines


def _render_event(event: ProgressEvent) -> str:
    if event.kind == "activity":
        return f"  - {event.text}"
    if event.kind == "warning":
        return f"! {event.text}"
    return event.text


def _report_lines(report: RunReport, ledger: Ledger | None) -> list[str]:
    lines = [f"Run finished: {report.outcome.value}"]
    if report.message:
        lines.extend(report.message.splitlines())
    for blocked in report.blocked:
        lines.append(
            f"  - {blocked.task.id}: waiting on {', '.join(blocked.unmet_dependencies)}",
        )
    lines.append(
        f"Iterations this run: {report.iterations_run} "
        f"(completed: {', '.join(report.completed_this_run) or 'none'})",
    )
    if report.session_usage.total_tokens:
        lines.append(f"Run usage: {_usage_text(report.session_usage)}")
    if report.project_usage.total_tokens:
        lines.append(f"Project usage: {_usage_text(report.project_usage)}")
    if ledger is not None:
        lines.append(f"Tasks completed: {ledger.completed}/{ledger.total_tasks}")
    if report.outcome in {RunOutcome.STOPPED, RunOutcome.BUDGET_EXHAUSTED} and report.next_task is None:
        lines.append("Use `taskloop continue` to resume.")
    return lines


def _usage_text(usage: TokenUsage) -> str:
    return (
        f"{usage.total_tokens:,} tokens, ${usage.cost_usd:.4f} "
        f"(~${usage.price_per_million():.2f}/M)"
    )


def _status_payload(
    layout: WorkspaceLayout,
    settings: Settings,
    *,
    include_uncommitted: bool = True,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "workspace": str(layout.root),
        "feature": layout.feature,
        "document": str(layout.document_path),
    }
    try:
        document = load_task_document(layout.document_path)
    except MalformedDocumentError as error:
        payload["error"] = str(error)
        document = None

    if document is not None:
        payload["project"] = document.project_name
        payload["tasks"] = {status.value: len(document.by_status(status)) for status in TaskStatus}
        payload["total_tasks"] = len(document.tasks)
        task = next_runnable(document)
        if task is not None:
            payload["next_task"] = {"id": task.id, "title": task.title}
        elif pending_tasks(document):
            payload["blocked"] = {
                blocked.task.id: list(blocked.unmet_dependencies)
                for blocked in blocked_tasks(document)
            }

    ledger = read_ledger(layout.ledger_path)
    if ledger is not None:
        usage = usage_totals(ledger)
        payload["iterations"] = len(ledger.iterations)
        payload["completed"] = ledger.completed
        payload["usage"] = {"total_tokens": usage.total_tokens, "cost_usd": usage.cost_usd}
        if ledger.iterations:
            payload["last_activity"] = ledger.iterations[-1].timestamp.isoformat()
        failures = [record for record in ledger.iterations if record.exit_status == ExitStatus.ERROR]
        if failures:
            last = failures[-1]
            payload["last_failure"] = {
                "iteration": last.iteration,
                "error_kind": last.error_kind.value if last.error_kind else None,
                "summary": last.summary,
            }

    session = SessionStore(layout).read()
    if session is not None:
        payload["session"] = session.to_payload()

    if include_uncommitted and settings.checkpoint.git_enabled and layout.root.exists():
        diff = GitCheckpointer().uncommitted_diff(layout.root)
        if diff:
            payload["uncommitted"] = diff.rstrip()
    return payload


def _status_lines(payload: dict[str, Any]) -> list[str]:
    lines = [f"Workspace: {payload['workspace']}"]
    if payload.get("feature"):
        lines.append(f"Feature: {payload['feature']}")
    if "error" in payload:
        lines.append(f"Task document: {payload['error']}")
    if "project" in payload:
        counts = payload["tasks"]
        lines.append(f"Project: {payload['project']}")
        lines.append(
            f"Tasks: {payload['total_tasks']} total, {counts['done']} done, "
            f"{counts['in-progress']} in progress, {counts['pending']} pending",
        )
        if "next_task" in payload:
            lines.append(f"Next task: {payload['next_task']['id']} - {payload['next_task']['title']}")
        elif "blocked" in payload:
            lines.append("Next task: none (blocked)")
            for task_id, unmet in payload["blocked"].items():
                lines.append(f"  - {task_id}: waiting on {', '.join(unmet)}")
        else:
            lines.append("Next task: none (all tasks done)")
    if "iterations" in payload:
        usage = payload["usage"]
        lines.append(f"Iterations: {payload['iterations']} ({payload['completed']} completed tasks)")
        lines.append(f"Usage: {usage['total_tokens']:,} tokens, ${usage['cost_usd']:.4f}")
    else:
        lines.append("Iterations: none yet")
    if "last_failure" in payload:
        failure = payload["last_failure"]
        lines.append(
            f"Last failure: iteration {failure['iteration']} "
            f"[{failure['error_kind'] or 'unknown'}] {failure['summary']}",
        )
    if "session" in payload:
        session = payload["session"]
        lines.append(f"Session: phase={session['phase']} last_iteration={session['lastIteration']}")
    if "uncommitted" in payload:
        lines.append("Uncommitted changes:")
        lines.extend(f"  {line}" for line in payload["uncommitted"].splitlines())
    return lines
