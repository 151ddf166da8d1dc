"""Git checkpointing: one commit per iteration plus recovery of interrupted work."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from taskloop.orchestrator.commit_format import (
    DEFAULT_COMMIT_TEMPLATE,
    CommitVariables,
    format_action_commit,
    format_commit_message,
)
from taskloop.orchestrator.workspace import STATE_DIR_NAME

logger = logging.getLogger(__name__)

HOOK_INDICATORS = (
    "hook",
    "pre-commit",
    "commit-msg",
    "husky",
    "commitlint",
    "conventional commit",
    "commit message",
    "does not match",
)
IGNORE_MARKER = "# Added by taskloop"
CRITICAL_IGNORE_PATTERNS = ("node_modules/", ".env", "__pycache__/", ".venv/")
DEFAULT_IGNORE_PATTERNS = """\
# Dependencies
node_modules/
vendor/
.pnp/
.pnp.js

# Build outputs
dist/
build/
out/
*.tsbuildinfo

# Environment files
.env
.env.local
.env.*.local

# Python
__pycache__/
*.py[cod]
.venv/
venv/
*.egg-info/
.pytest_cache/
.mypy_cache/

# IDE and editor files
.idea/
.vscode/
*.swp
*.swo
*~

# OS files
.DS_Store
Thumbs.db

# Logs
*.log
npm-debug.log*
yarn-debug.log*
yarn-error.log*

# Test coverage
coverage/
.nyc_output/
.coverage
htmlcov/

# Misc
*.bak
*.tmp
"""


@dataclass(slots=True, frozen=True)
class GitResult:
    ok: bool
    stdout: str
    stderr: str


@dataclass(slots=True, frozen=True)
class RepositoryStatus:
    available: bool
    was_initialized: bool = False
    initial_commit: bool = False
    baseline_error: str | None = None


@dataclass(slots=True, frozen=True)
class InterruptedWork:
    present: bool
    files: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class CommitResult:
    committed: bool
    error: str | None = None
    hook_failure: bool = False


@dataclass(slots=True, frozen=True)
class CommitOutcome:
    committed: bool
    hook_failure: bool = False
    error: str | None = None
    action: str = ""
    message: str = ""


class GitRunner:
    """Thin wrapper over the ``git`` executable."""

    TIMEOUT = 30

    def __init__(self, executable: str = "git", *, timeout: int = TIMEOUT) -> None:
        self.executable = executable
        self.timeout = timeout
        self._available: bool | None = None

    def run(self, args: Sequence[str], cwd: Path) -> GitResult:
        try:
            completed = subprocess.run(  # noqa: S603
                [self.executable, *args],
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except subprocess.TimeoutExpired:
            return GitResult(ok=False, stdout="", stderr=f"git {' '.join(args)} timed out")
        except OSError as error:
            return GitResult(ok=False, stdout="", stderr=str(error))
        return GitResult(
            ok=completed.returncode == 0,
            stdout=completed.stdout,
            stderr=completed.stderr.strip(),
        )

    def available(self) -> bool:
        if self._available is None:
            self._available = self.run(["--version"], Path.cwd()).ok
        return self._available


@dataclass(slots=True)
class GitCheckpointer:
    """Commits the workspace after each iteration; every call degrades to a no-op without git."""

    runner: GitRunner = field(default_factory=GitRunner)
    commit_template: str | None = None

    def is_repository(self, workspace: Path) -> bool:
        result = self.runner.run(["rev-parse", "--is-inside-work-tree"], workspace)
        return result.ok and result.stdout.strip() == "true"

    def git_root(self, workspace: Path) -> Path | None:
        result = self.runner.run(["rev-parse", "--show-toplevel"], workspace)
        root = result.stdout.strip()
        return Path(root) if result.ok and root else None

    def _usable(self, workspace: Path) -> bool:
        return self.runner.available() and self.is_repository(workspace)

    def ensure_repository(self, workspace: Path) -> RepositoryStatus:
        if not self.runner.available():
            logger.warning("git is not available; checkpointing is disabled")
            return RepositoryStatus(available=False)

        if self.is_repository(workspace):
            self.ensure_ignore_file(workspace)
            return RepositoryStatus(available=True)

        init = self.runner.run(["init"], workspace)
        if not init.ok:
            logger.warning("git init failed in %s: %s", workspace, init.stderr)
            return RepositoryStatus(available=True)

        self.ensure_ignore_file(workspace)
        baseline = self.commit(workspace, format_action_commit(self.commit_template, "Initial commit"))
        if baseline.error:
            logger.warning("Repository initialized but baseline commit failed: %s", baseline.error)
        return RepositoryStatus(
            available=True,
            was_initialized=True,
            initial_commit=baseline.committed,
            baseline_error=baseline.error,
        )

    def ensure_ignore_file(self, workspace: Path) -> bool:
        """Create ``.gitignore`` at the repository root or append missing critical patterns."""

        target = (self.git_root(workspace) or workspace) / ".gitignore"
        try:
            existing = target.read_text("utf-8")
        except FileNotFoundError:
            existing = ""

        if not existing:
            target.write_text(DEFAULT_IGNORE_PATTERNS, "utf-8")
            logger.info("Created %s", target)
            return True

        present = {line.strip().rstrip("/") for line in existing.splitlines()}
        missing = [pattern for pattern in CRITICAL_IGNORE_PATTERNS if pattern.rstrip("/") not in present]
        if not missing:
            return False

        separator = "" if existing.endswith("\n") else "\n"
        addition = f"{separator}\n{IGNORE_MARKER}\n" + "\n".join(missing) + "\n"
        with target.open("a", encoding="utf-8") as handle:
            handle.write(addition)
        logger.info("Added to %s: %s", target, ", ".join(missing))
        return True

    def detect_interrupted_work(
        self,
        workspace: Path,
        ignore_subpaths: Sequence[str] = (f"{STATE_DIR_NAME}/",),
    ) -> InterruptedWork:
        if not self._usable(workspace):
            return InterruptedWork(present=False)

        status = self.runner.run(["status", "--porcelain"], workspace)
        if not status.ok:
            logger.warning("git status failed: %s", status.stderr)
            return InterruptedWork(present=False)

        files = []
        for line in status.stdout.splitlines():
            path = _porcelain_path(line)
            if not path:
                continue
            normalized = path.replace("\\", "/")
            if any(ignored in normalized for ignored in ignore_subpaths):
                continue
            files.append(path)
        return InterruptedWork(present=bool(files), files=tuple(files))

    def commit_interrupted(
        self,
        workspace: Path,
        task_id: str | None = None,
        title: str | None = None,
    ) -> CommitOutcome:
        if not self._usable(workspace):
            return CommitOutcome(committed=False)

        if task_id and title:
            action = f"Interrupted work on {task_id} - {title}"
        elif task_id:
            action = f"Interrupted work on {task_id}"
        else:
            action = "Interrupted work from previous session"

        message = format_action_commit(self.commit_template, action)
        result = self.commit(workspace, message)
        if result.error:
            logger.warning("Failed to commit interrupted work: %s", result.error)
        return CommitOutcome(
            committed=result.committed,
            hook_failure=result.hook_failure,
            error=result.error,
            action=action,
            message=message,
        )

    def commit_iteration(  # noqa: PLR0913
        self,
        workspace: Path,
        iteration: int,
        task_id: str | None,
        title: str | None,
        *,
        success: bool,
        feature: str | None = None,
    ) -> CommitOutcome:
        if not self._usable(workspace):
            return CommitOutcome(committed=False)

        prefix = f"[{feature}] " if feature else ""
        verb = "Complete" if success else "Attempted"
        if task_id and title:
            action = f"{prefix}{verb} {task_id} - {title}"
        else:
            action = f"{prefix}Iteration {iteration}"
        variables = CommitVariables(
            iteration=iteration,
            status=verb,
            task_id=task_id or "",
            title=title or "",
            feature=feature,
            action=action,
        )
        message = format_commit_message(self.commit_template or DEFAULT_COMMIT_TEMPLATE, variables)

        result = self.commit(workspace, message)
        if result.error and not result.hook_failure:
            logger.warning("Commit for iteration %s failed: %s", iteration, result.error)
        return CommitOutcome(
            committed=result.committed,
            hook_failure=result.hook_failure,
            error=result.error,
            action=action,
            message=message,
        )

    def commit(self, workspace: Path, message: str) -> CommitResult:
        """Stage everything and commit; an empty index is not an error."""

        added = self.runner.run(["add", "-A"], workspace)
        if not added.ok:
            return CommitResult(committed=False, error=added.stderr or "git add failed")

        status = self.runner.run(["status", "--porcelain"], workspace)
        if not status.ok:
            return CommitResult(committed=False, error=status.stderr or "git status failed")
        if not status.stdout.strip():
            logger.debug("Nothing to commit in %s", workspace)
            return CommitResult(committed=False)

        committed = self.runner.run(["commit", "-m", message], workspace)
        if committed.ok:
            return CommitResult(committed=True)

        error = committed.stderr or committed.stdout.strip() or "git commit failed"
        return CommitResult(committed=False, error=error, hook_failure=is_hook_failure(error))

    def uncommitted_diff(self, workspace: Path) -> str | None:
        if not self._usable(workspace):
            return None
        diff = self.runner.run(["diff", "HEAD", "--stat"], workspace)
        if diff.ok and diff.stdout.strip():
            return diff.stdout
        unstaged = self.runner.run(["diff", "--stat"], workspace)
        if unstaged.ok and unstaged.stdout.strip():
            return unstaged.stdout
        return None


def is_hook_failure(error: str) -> bool:
    lowered = error.lower()
    return any(indicator in lowered for indicator in HOOK_INDICATORS)


def _porcelain_path(line: str) -> str:
    # "XY path" or "XY old -> new" for renames.
    path = line[3:].strip()
    if " -> " in path:
        path = path.split(" -> ", 1)[1]
    if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
        path = path[1:-1]
    return path
