"""Workspace file layout and the per-workspace configuration file."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path

STATE_DIR_NAME = ".taskloop"
AGENT_SETTINGS_DIR_NAME = ".claude"
DOCUMENT_FILE_NAME = "requirements.md"
LEDGER_FILE_NAME = "progress.md"
SESSION_FILE_NAME = "session.json"
CONFIG_FILE_NAME = "config.json"
CONFIG_KEYS = ("commitTemplate",)

_FEATURE_NAME = re.compile(r"^[A-Za-z0-9_-]+$")
_FEATURE_PATH = re.compile(r"^requirements/([^/]+)\.md$")


@dataclass(slots=True, frozen=True)
class WorkspaceLayout:
    """Deterministic paths for one workspace, optionally scoped to a feature."""

    root: Path
    feature: str | None = None

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIR_NAME

    @property
    def document_path(self) -> Path:
        if self.feature is None:
            return self.root / DOCUMENT_FILE_NAME
        return self.root / "requirements" / f"{self.feature}.md"

    @property
    def ledger_path(self) -> Path:
        if self.feature is None:
            return self.root / LEDGER_FILE_NAME
        return self.root / "progress" / f"{self.feature}.md"

    @property
    def session_path(self) -> Path:
        if self.feature is None:
            return self.state_dir / SESSION_FILE_NAME
        return self.state_dir / "features" / f"{self.feature}.json"

    @property
    def config_path(self) -> Path:
        return self.state_dir / CONFIG_FILE_NAME


def resolve_layout(workspace: Path, feature: str | None = None) -> WorkspaceLayout:
    """Build the layout, accepting ``auth``, ``auth.md`` or ``requirements/auth.md``."""

    root = workspace.expanduser().resolve()
    if feature is None:
        return WorkspaceLayout(root=root)
    return WorkspaceLayout(root=root, feature=normalize_feature_name(feature))


def normalize_feature_name(raw: str) -> str:
    value = raw.strip()
    if "/" in value or "\\" in value:
        match = _FEATURE_PATH.match(value.replace("\\", "/"))
        if match is None:
            raise ValueError(
                f"Invalid feature path: {raw!r}. "
                "Expected requirements/<name>.md or the short form <name>.",
            )
        value = match.group(1)
    else:
        value = value.removesuffix(".md")
    if not _FEATURE_NAME.match(value):
        raise ValueError(
            f"Invalid feature name: {raw!r}. "
            "Feature names must be alphanumeric with hyphens or underscores only.",
        )
    return value


def list_features(workspace: Path) -> list[str]:
    requirements_dir = workspace / "requirements"
    if not requirements_dir.is_dir():
        return []
    return sorted(path.stem for path in requirements_dir.glob("*.md"))


@dataclass(slots=True)
class WorkspaceConfig:
    """Settings persisted inside the workspace state directory."""

    commit_template: str | None = None


def read_workspace_config(layout: WorkspaceLayout) -> WorkspaceConfig:
    try:
        payload = json.loads(layout.config_path.read_text("utf-8"))
    except FileNotFoundError:
        return WorkspaceConfig()
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid workspace config {layout.config_path}: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"Invalid workspace config {layout.config_path}: expected an object")
    template = payload.get("commitTemplate")
    return WorkspaceConfig(commit_template=str(template) if template else None)


def write_workspace_config(layout: WorkspaceLayout, config: WorkspaceConfig) -> None:
    payload: dict[str, str] = {}
    if config.commit_template:
        payload["commitTemplate"] = config.commit_template
    layout.config_path.parent.mkdir(parents=True, exist_ok=True)
    layout.config_path.write_text(json.dumps(payload, indent=2) + "\n", "utf-8")
