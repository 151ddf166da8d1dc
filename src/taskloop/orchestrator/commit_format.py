"""Commit message templates and detection of a repository's commit conventions."""

from __future__ import annotations

import json
import logging
import re
import shlex
from dataclasses import dataclass
from pathlib import Path

from taskloop.orchestrator.workspace import (
    WorkspaceLayout,
    read_workspace_config,
    write_workspace_config,
)

logger = logging.getLogger(__name__)

DEFAULT_COMMIT_TEMPLATE = "taskloop: {action}"
ACTION_PLACEHOLDER = "{action}"
COMMIT_PLACEHOLDERS = ("{action}", "{feature}", "{iteration}", "{status}", "{taskId}", "{title}")

_CONVENTIONAL = "feat({feature}): {title}"
_TICKET = "[{taskId}] {status} - {title}"

_COMMITLINT_FILES = (
    ".commitlintrc",
    ".commitlintrc.json",
    ".commitlintrc.js",
    "commitlint.config.js",
)
_CONVENTIONAL_HOOK = re.compile(r"\^?\(feat\|fix\|docs\|chore\)", re.IGNORECASE)
_TICKET_HOOK = re.compile(r"\^?\[A-Z\]\+-\\d\+", re.IGNORECASE)
_PLACEHOLDER = re.compile(r"\{[^{}]*\}")


@dataclass(slots=True)
class CommitVariables:
    """Values substituted into a per-task commit template."""

    iteration: int
    status: str
    task_id: str
    title: str
    feature: str | None = None
    action: str = ""


@dataclass(slots=True, frozen=True)
class CommitTemplateSuggestion:
    """Template inferred from the repository's commit tooling."""

    template: str
    source: str


def format_commit_message(template: str, variables: CommitVariables) -> str:
    """Literal placeholder substitution; unknown placeholders are left untouched."""

    replacements = {
        "{action}": variables.action,
        "{feature}": variables.feature or "",
        "{iteration}": str(variables.iteration),
        "{status}": variables.status,
        "{taskId}": variables.task_id,
        "{title}": variables.title,
    }
    message = template
    for placeholder, value in replacements.items():
        message = message.replace(placeholder, value)
    return message.strip()


def format_action_commit(template: str | None, action: str) -> str:
    return (template or DEFAULT_COMMIT_TEMPLATE).replace(ACTION_PLACEHOLDER, action).strip()


def derive_commit_template(user_message: str, default_action: str) -> str:
    """Turn an accepted commit message back into a reusable template.

    When the message embeds the action text, that text becomes ``{action}``;
    otherwise the message is kept literally.
    """

    if default_action and default_action in user_message:
        return user_message.replace(default_action, ACTION_PLACEHOLDER, 1)
    return user_message


def unknown_commit_placeholders(template: str) -> list[str]:
    return [token for token in _PLACEHOLDER.findall(template) if token not in COMMIT_PLACEHOLDERS]


def validate_commit_template(template: str) -> str:
    value = template.strip()
    if not value:
        raise ValueError("Commit template must not be empty.")
    unknown = unknown_commit_placeholders(value)
    if unknown:
        raise ValueError(
            f"Commit template has unsupported placeholders: {', '.join(unknown)}. "
            f"Use {' '.join(COMMIT_PLACEHOLDERS)}.",
        )
    return value


def save_commit_template(layout: WorkspaceLayout, user_message: str, default_action: str = "") -> str:
    """Persist a template, deriving it from an accepted message when ``default_action`` is given."""

    template = validate_commit_template(derive_commit_template(user_message, default_action))
    config = read_workspace_config(layout)
    config.commit_template = template
    write_workspace_config(layout, config)
    logger.info("Saved commit template %r to %s", template, layout.config_path)
    return template


def detect_commit_template(workspace: Path) -> CommitTemplateSuggestion | None:
    """Suggest a template from commitlint config, git hooks or husky, in that order."""

    for name in _COMMITLINT_FILES:
        if (workspace / name).exists():
            return CommitTemplateSuggestion(_CONVENTIONAL, source="commitlint")

    for hook in ("commit-msg", "pre-commit"):
        content = _read_text(workspace / ".git" / "hooks" / hook)
        if content is None:
            continue
        if _CONVENTIONAL_HOOK.search(content):
            return CommitTemplateSuggestion(_CONVENTIONAL, source="git hook")
        if _TICKET_HOOK.search(content):
            return CommitTemplateSuggestion(_TICKET, source="git hook")

    husky_hook = _read_text(workspace / ".husky" / "commit-msg")
    if husky_hook is not None and "commitlint" in husky_hook:
        return CommitTemplateSuggestion(_CONVENTIONAL, source="husky")

    package_json = _read_text(workspace / "package.json")
    if package_json is not None:
        try:
            payload = json.loads(package_json)
        except json.JSONDecodeError:
            return None
        husky = payload.get("husky") if isinstance(payload, dict) else None
        hooks = husky.get("hooks") if isinstance(husky, dict) else None
        hook = hooks.get("commit-msg") if isinstance(hooks, dict) else None
        if isinstance(hook, str) and "commitlint" in hook:
            return CommitTemplateSuggestion(_CONVENTIONAL, source="husky")
    return None


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text("utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def commit_template_remediation(workspace: Path, action: str) -> list[str]:
    """Commands an operator can run to save a template the repository hooks accept."""

    target = shlex.quote(str(workspace))
    lines = [
        f"  taskloop config set commitTemplate '<template>' -w {target}",
        (
            f"  taskloop config set commitTemplate '<message the hook accepts>' "
            f"--action {shlex.quote(action)} -w {target}"
        ),
        f"Placeholders: {' '.join(COMMIT_PLACEHOLDERS)}. TASKLOOP_COMMIT_TEMPLATE overrides the saved one.",
    ]
    suggestion = detect_commit_template(workspace)
    if suggestion is not None:
        lines.append(f"Suggested template (from {suggestion.source}): {suggestion.template}")
        lines.append(
            f"  taskloop config set commitTemplate {shlex.quote(suggestion.template)} -w {target}",
        )
    return lines
