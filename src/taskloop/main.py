"""CLI entrypoint for taskloop."""

import logging
from pathlib import Path

import rich_click as click

from taskloop import __version__
from taskloop.orchestrator.backend import BackendRunError
from taskloop.orchestrator.controllers import (
    ConfigCommand,
    FeatureCommand,
    InitCommand,
    RunCommand,
    StatusCommand,
    TaskLoopCliController,
)
from taskloop.orchestrator.errors import SessionNotFoundError
from taskloop.orchestrator.workspace import CONFIG_KEYS

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskLoopCliController()

_workspace_option = click.option(
    "--workspace",
    "-w",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Workspace directory (default: TASKLOOP_WORKSPACE or the current directory).",
)
_feature_option = click.option(
    "--feature",
    "-f",
    default=None,
    help="Feature name; uses requirements/<feature>.md and progress/<feature>.md.",
)


def _budget_options(func):
    func = click.option(
        "--verbose",
        "-v",
        is_flag=True,
        default=False,
        help="Debug logging.",
    )(func)
    func = click.option(
        "--dry-run",
        is_flag=True,
        default=False,
        help="Select and show the next task without running the agent or writing files.",
    )(func)
    func = click.option(
        "--cost-limit",
        type=click.FloatRange(min=0),
        default=None,
        help="Stop once this run has spent this many USD.",
    )(func)
    func = click.option(
        "--token-limit",
        type=click.IntRange(min=0),
        default=None,
        help="Stop once this run has used this many tokens.",
    )(func)
    func = click.option(
        "--max-iterations",
        "-n",
        type=click.IntRange(min=1),
        default=None,
        help="Iterations to run from the resume point (default: TASKLOOP_MAX_ITERATIONS or 10).",
    )(func)
    func = _feature_option(func)
    return _workspace_option(func)


@click.group()
@click.version_option(version=__version__, prog_name="taskloop")
def taskloop() -> None:
    """Run a coding agent over a task list, one task per iteration."""


@taskloop.command("run")
@_budget_options
def run(  # noqa: PLR0913
    workspace: Path | None,
    feature: str | None,
    max_iterations: int | None,
    token_limit: int | None,
    cost_limit: float | None,
    dry_run: bool,
    verbose: bool,
) -> None:
    """Start a fresh run session and work through pending tasks."""

    _configure_logging(verbose)
    _run(
        RunCommand(
            workspace=workspace,
            feature=feature,
            max_iterations=max_iterations,
            token_limit=token_limit,
            cost_limit=cost_limit,
            dry_run=dry_run,
            fresh_session=True,
        ),
    )


@taskloop.command("continue")
@_budget_options
def continue_(  # noqa: PLR0913
    workspace: Path | None,
    feature: str | None,
    max_iterations: int | None,
    token_limit: int | None,
    cost_limit: float | None,
    dry_run: bool,
    verbose: bool,
) -> None:
    """Resume the existing run session from the next iteration."""

    _configure_logging(verbose)
    _run(
        RunCommand(
            workspace=workspace,
            feature=feature,
            max_iterations=max_iterations,
            token_limit=token_limit,
            cost_limit=cost_limit,
            dry_run=dry_run,
            fresh_session=False,
        ),
    )


@taskloop.command("status")
@_workspace_option
@_feature_option
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit JSON.")
def status(workspace: Path | None, feature: str | None, as_json: bool) -> None:
    """Show task counts, next task, iterations, usage and uncommitted changes."""

    try:
        result = CONTROLLER.status(
            StatusCommand(workspace=workspace, feature=feature, as_json=as_json),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)


@taskloop.command("init")
@_workspace_option
@_feature_option
@click.option("--project", "project_name", default="My Project", show_default=True)
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing document.")
def init(workspace: Path | None, feature: str | None, project_name: str, force: bool) -> None:
    """Write a starter task document."""

    try:
        lines = CONTROLLER.init(
            InitCommand(
                workspace=workspace,
                feature=feature,
                project_name=project_name,
                force=force,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@taskloop.group("feature")
def feature() -> None:
    """Inspect features kept under `requirements/<feature>.md`."""


@feature.command("list")
@_workspace_option
def feature_list(workspace: Path | None) -> None:
    """List every feature with its task progress, phase and last activity."""

    _emit_or_fail(CONTROLLER.feature_list, FeatureCommand(workspace=workspace))


@feature.command("status")
@_workspace_option
def feature_status(workspace: Path | None) -> None:
    """Summarize progress across all features; `*` marks a feature with an active run."""

    _emit_or_fail(CONTROLLER.feature_status, FeatureCommand(workspace=workspace))


_config_key = click.argument("key", type=click.Choice(CONFIG_KEYS))


@taskloop.group("config")
def config() -> None:
    """Manage workspace configuration stored in `.taskloop/config.json`."""


@config.command("set")
@_config_key
@click.argument("value")
@click.option(
    "--action",
    default=None,
    help=(
        "Treat VALUE as a commit message the repository accepted for this action "
        "(e.g. `Initial commit`) and save it with the action text replaced by `{action}`."
    ),
)
@_workspace_option
def config_set(key: str, value: str, action: str | None, workspace: Path | None) -> None:
    """Set a configuration value.

    Placeholders: `{action} {feature} {iteration} {status} {taskId} {title}`.
    """

    _emit_or_fail(
        CONTROLLER.config_set,
        ConfigCommand(workspace=workspace, key=key, value=value, action=action),
    )


@config.command("get")
@_config_key
@_workspace_option
def config_get(key: str, workspace: Path | None) -> None:
    """Show a configuration value."""

    _emit_or_fail(CONTROLLER.config_get, ConfigCommand(workspace=workspace, key=key))


@config.command("unset")
@_config_key
@_workspace_option
def config_unset(key: str, workspace: Path | None) -> None:
    """Remove a configuration value."""

    _emit_or_fail(CONTROLLER.config_unset, ConfigCommand(workspace=workspace, key=key))


@config.command("list")
@_workspace_option
def config_list(workspace: Path | None) -> None:
    """List configuration values and the available placeholders."""

    _emit_or_fail(CONTROLLER.config_list, ConfigCommand(workspace=workspace))


def _emit_or_fail(handler, command) -> None:
    try:
        lines = handler(command)
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _run(command: RunCommand) -> None:
    try:
        result = CONTROLLER.run(command, emit=click.echo)
    except (BackendRunError, SessionNotFoundError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        outcome = result.outcome.value if result.outcome is not None else "error"
        raise click.ClickException(f"Run ended: {outcome}")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskloop()
