"""Prompt rendering for one agent iteration."""

from __future__ import annotations

from pathlib import Path

from taskloop.orchestrator.models import Task

TASK_ID_LABEL = "Task ID"
DOCUMENT_LABEL = "Task document"
LEDGER_LABEL = "Progress log"


def build_task_prompt(
    *,
    task: Task,
    workspace: Path,
    document_path: Path,
    ledger_path: Path,
    iteration: int,
) -> str:
    """Instructions for implementing exactly one task inside ``workspace``."""

    description = task.description.strip() or "(no description)"
    dependencies = ", ".join(task.dependencies) if task.dependencies else "none"
    return (
        f"You are working on iteration {iteration} of an automated task run.\n"
        f"\n"
        f"{TASK_ID_LABEL}: {task.id}\n"
        f"Title: {task.title}\n"
        f"Priority: {task.priority.value}\n"
        f"Dependencies: {dependencies}\n"
        f"Description: {description}\n"
        f"\n"
        f"{DOCUMENT_LABEL}: {document_path}\n"
        f"{LEDGER_LABEL}: {ledger_path}\n"
        f"Workspace: {workspace}\n"
        f"\n"
        f"Steps:\n"
        f"1. Read the task document to understand the project and how this task fits in.\n"
        f"2. Implement {task.id} and nothing else.\n"
        f"3. Verify your work with the project's own build or test commands when they exist.\n"
        f"4. When the task is finished, change its status line in the task document to\n"
        f"   `- **Status**: done`. Leave the status as is if the task is not finished.\n"
        f"5. End with a one-line summary of what you did.\n"
        f"\n"
        f"Only create, modify or delete files inside {workspace}. Do not touch anything\n"
        f"outside this directory and do not edit the progress log. Do not commit; the\n"
        f"run commits your changes after this iteration.\n"
    )
