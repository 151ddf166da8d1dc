"""Task document parsing and dependency/priority-aware task selection."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from taskloop.orchestrator.errors import MalformedDocumentError
from taskloop.orchestrator.models import Task, TaskDocument, TaskPriority, TaskStatus

_TASK_HEADER = re.compile(r"^###\s+([A-Z][A-Z0-9]*-\d+):\s*(.+?)\s*$")
_FIELD = re.compile(r"^\s*-\s*\*\*(Status|Priority|Dependencies|Description)\*\*:\s*(.*)$", re.I)
_PROJECT = re.compile(r"\*\*Project\*\*:\s*(.+)")
_CREATED = re.compile(r"\*\*Created\*\*:\s*(.+)")
_AUTHOR = re.compile(r"\*\*Author\*\*:\s*(.+)")
_TITLE = re.compile(r"^#\s+([^-\n]+)", re.M)

_REQUIRED_FIELDS = ("status", "priority", "dependencies", "description")


@dataclass(slots=True)
class BlockedTask:
    """Pending task together with the dependency ids that are not done yet."""

    task: Task
    unmet_dependencies: tuple[str, ...]


def load_task_document(path: Path) -> TaskDocument:
    """Read and parse the task document at ``path``."""

    try:
        text = path.read_text("utf-8")
    except OSError as error:
        raise MalformedDocumentError(f"Cannot read task document {path}: {error}") from error
    return parse_task_document(text)


def parse_task_document(text: str) -> TaskDocument:
    """Parse markdown task blocks; every block must carry the four labelled fields."""

    blocks: list[tuple[str, str, dict[str, str]]] = []
    current: tuple[str, str, dict[str, str]] | None = None

    for line in text.splitlines():
        header = _TASK_HEADER.match(line)
        if header is not None:
            current = (header.group(1), header.group(2), {})
            blocks.append(current)
            continue
        if current is None:
            continue
        field_match = _FIELD.match(line)
        if field_match is None:
            continue
        label = field_match.group(1).lower()
        current[2].setdefault(label, field_match.group(2).strip())

    tasks: list[Task] = []
    seen: set[str] = set()
    for task_id, title, fields in blocks:
        if task_id in seen:
            raise MalformedDocumentError(f"Duplicate task id {task_id}", task_id=task_id)
        seen.add(task_id)
        tasks.append(_build_task(task_id, title, fields))

    project = _PROJECT.search(text)
    title_match = _TITLE.search(text)
    created = _CREATED.search(text)
    author = _AUTHOR.search(text)
    project_name = (
        project.group(1).strip()
        if project
        else (title_match.group(1).strip() if title_match else "Unknown Project")
    )
    return TaskDocument(
        project_name=project_name,
        created=created.group(1).strip() if created else datetime.now(tz=UTC).date().isoformat(),
        author=author.group(1).strip() if author else "Unknown",
        tasks=tasks,
    )


def _build_task(task_id: str, title: str, fields: dict[str, str]) -> Task:
    missing = [name for name in _REQUIRED_FIELDS if name not in fields]
    if missing:
        labels = ", ".join(name.capitalize() for name in missing)
        raise MalformedDocumentError(f"Task {task_id} is missing: {labels}", task_id=task_id)

    status_raw = fields["status"].split()[0].lower() if fields["status"] else ""
    priority_raw = fields["priority"].split()[0].lower() if fields["priority"] else ""
    try:
        status = TaskStatus(status_raw)
    except ValueError as error:
        raise MalformedDocumentError(
            f"Task {task_id} has invalid status {fields['status']!r}",
            task_id=task_id,
        ) from error
    try:
        priority = TaskPriority(priority_raw)
    except ValueError as error:
        raise MalformedDocumentError(
            f"Task {task_id} has invalid priority {fields['priority']!r}",
            task_id=task_id,
        ) from error

    return Task(
        id=task_id,
        title=title,
        status=status,
        priority=priority,
        dependencies=_parse_dependencies(fields["dependencies"]),
        description=fields["description"],
    )


def _parse_dependencies(raw: str) -> tuple[str, ...]:
    value = raw.strip()
    if not value or value.lower() == "none":
        return ()
    deps: list[str] = []
    for part in value.split(","):
        dep = part.strip()
        if dep and dep not in deps:
            deps.append(dep)
    return tuple(deps)


def pending_tasks(document: TaskDocument) -> list[Task]:
    """Pending tasks in scheduling order: priority rank, then id."""

    return sorted(
        document.by_status(TaskStatus.PENDING),
        key=lambda task: (task.priority.rank, task.id),
    )


def next_runnable(document: TaskDocument) -> Task | None:
    """First pending task whose dependencies are all done.

    ``None`` means either nothing is pending (completed) or everything pending
    is blocked; callers tell the two apart with :func:`pending_tasks`.
    """

    done = document.done_ids()
    for task in pending_tasks(document):
        if all(dep in done for dep in task.dependencies):
            return task
    return None


def blocked_tasks(document: TaskDocument) -> list[BlockedTask]:
    done = document.done_ids()
    blocked: list[BlockedTask] = []
    for task in pending_tasks(document):
        unmet = tuple(dep for dep in task.dependencies if dep not in done)
        if unmet:
            blocked.append(BlockedTask(task=task, unmet_dependencies=unmet))
    return blocked


def render_task_template(project_name: str) -> str:
    """Starter task document with three example tasks."""

    today = datetime.now(tz=UTC).date().isoformat()
    return f"""# Project Requirements

## Metadata
- **Project**: {project_name}
- **Created**: {today}
- **Author**: Developer

## Tasks

### TASK-001: Example task one
- **Status**: pending
- **Priority**: high
- **Dependencies**: none
- **Description**: Replace with your actual task description.

### TASK-002: Example task two
- **Status**: pending
- **Priority**: medium
- **Dependencies**: TASK-001
- **Description**: Runs only after TASK-001 is done.

### TASK-003: Example task three
- **Status**: pending
- **Priority**: low
- **Dependencies**: none
- **Description**: Independent task with no dependencies.
"""
