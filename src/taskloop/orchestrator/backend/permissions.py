"""Workspace-scoped permission manifest handed to the agent."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from taskloop.orchestrator.workspace import AGENT_SETTINGS_DIR_NAME

SETTINGS_FILE_NAME = "settings.json"

_ALLOWED_COMMANDS = (
    "npm",
    "npx",
    "node",
    "git",
    "tsc",
    "python",
    "python3",
    "pytest",
    "pip",
    "uv",
    "mkdir",
    "ls",
    "cat",
    "echo",
)
_ALLOWED_TOOLS = ("Read", "Write", "Edit", "Glob", "Grep")
_DENIED_COMMANDS = (
    "Bash(rm -rf /)",
    "Bash(rm -rf ~)",
    "Bash(rm -rf ..)",
    "Bash(sudo:*)",
    "Bash(chmod:*)",
    "Bash(chown:*)",
)


def build_permission_manifest(workspace: Path) -> dict[str, Any]:
    root = str(workspace.resolve())
    allow = [f"Bash(cd:{root})", f"Bash(cd:{root}/**)"]
    allow.extend(f"Bash({command}:*)" for command in _ALLOWED_COMMANDS)
    allow.extend(_ALLOWED_TOOLS)
    return {
        "permissions": {
            "allow": allow,
            "deny": list(_DENIED_COMMANDS),
        },
        "restrictToWorkspace": True,
    }


def write_permission_manifest(workspace: Path) -> Path:
    """Write the manifest to ``<workspace>/.claude/settings.json`` and return its path."""

    path = workspace / AGENT_SETTINGS_DIR_NAME / SETTINGS_FILE_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(build_permission_manifest(workspace), indent=2) + "\n",
        "utf-8",
    )
    return path
