"""Shared test fixtures."""

from __future__ import annotations

import shlex
import shutil
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def echo_agent_command(*flags: str) -> str:
    """Agent command template running the in-repo fake agent."""

    parts = [shlex.quote(sys.executable), "-m", "taskloop.orchestrator.backend.echo_agent", *flags]
    return " ".join(parts)


def task_block(
    task_id: str,
    title: str,
    *,
    status: str = "pending",
    priority: str = "medium",
    dependencies: str = "none",
    description: str = "Do the thing",
) -> str:
    return (
        f"### {task_id}: {title}\n"
        f"- **Status**: {status}\n"
        f"- **Priority**: {priority}\n"
        f"- **Dependencies**: {dependencies}\n"
        f"- **Description**: {description}\n"
    )


def task_document_text(*blocks: str, project: str = "Demo") -> str:
    header = (
        "# Project Requirements\n\n"
        "## Metadata\n"
        f"- **Project**: {project}\n"
        "- **Created**: 2026-01-05\n"
        "- **Author**: Tester\n\n"
        "## Tasks\n\n"
    )
    return header + "\n".join(blocks)


@pytest.fixture()
def write_tasks(tmp_path: Path) -> Callable[..., Path]:
    """Write a task document into the test workspace and return its path."""

    def _write(*blocks: str, path: Path | None = None) -> Path:
        target = path or tmp_path / "requirements.md"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(task_document_text(*blocks), "utf-8")
        return target

    return _write


@pytest.fixture(autouse=True)
def _isolated_git(monkeypatch, tmp_path_factory) -> None:
    """Keep git commits deterministic and independent of the user's git config."""

    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(home / ".gitconfig"))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")
    for name in (
        "TASKLOOP_WORKSPACE",
        "TASKLOOP_AGENT_COMMAND",
        "TASKLOOP_AGENT_TIMEOUT_SECONDS",
        "TASKLOOP_PROGRESS_BUFFER",
        "TASKLOOP_MAX_ITERATIONS",
        "TASKLOOP_TOKEN_LIMIT",
        "TASKLOOP_COST_LIMIT",
        "TASKLOOP_COMMIT_TEMPLATE",
        "TASKLOOP_GIT_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TASKLOOP_ITERATION_DELAY_SECONDS", "0")
