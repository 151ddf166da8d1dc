from __future__ import annotations

from pathlib import Path

import allure
import pytest

from conftest import task_block, task_document_text
from taskloop.orchestrator.errors import MalformedDocumentError
from taskloop.orchestrator.models import TaskPriority, TaskStatus
from taskloop.orchestrator.tasks import (
    blocked_tasks,
    load_task_document,
    next_runnable,
    parse_task_document,
    pending_tasks,
    render_task_template,
)

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Task Graph"),
]


def test_parse_reads_metadata_and_tasks_in_document_order() -> None:
    document = parse_task_document(
        task_document_text(
            task_block("TASK-002", "Second", priority="low", dependencies="TASK-001"),
            task_block("TASK-001", "First", status="done", priority="high"),
        ),
    )

    assert document.project_name == "Demo"
    assert document.created == "2026-01-05"
    assert document.author == "Tester"
    assert [task.id for task in document.tasks] == ["TASK-002", "TASK-001"]
    second = document.tasks[0]
    assert second.priority == TaskPriority.LOW
    assert second.dependencies == ("TASK-001",)
    assert document.tasks[1].status == TaskStatus.DONE


def test_parse_ignores_prose_and_accepts_case_insensitive_labels() -> None:
    text = (
        "# Shop\n\nSome intro prose.\n\n"
        "### API-7: Build cart\n"
        "Notes the agent wrote here.\n"
        "- **status**: Pending\n"
        "- **PRIORITY**: High\n"
        "- **Dependencies**: API-1,  API-2 , API-1\n"
        "- **Description**: Cart endpoints\n"
    )

    document = parse_task_document(text)

    assert document.project_name == "Shop"
    assert document.author == "Unknown"
    task = document.tasks[0]
    assert task.id == "API-7"
    assert task.status == TaskStatus.PENDING
    assert task.priority == TaskPriority.HIGH
    assert task.dependencies == ("API-1", "API-2")


def test_parse_without_title_falls_back_to_unknown_project() -> None:
    document = parse_task_document(task_block("TASK-001", "Only"))
    assert document.project_name == "Unknown Project"


@pytest.mark.parametrize(
    ("block", "message"),
    [
        (
            "### TASK-001: Broken\n- **Status**: pending\n- **Priority**: high\n"
            "- **Description**: no deps line\n",
            "missing: Dependencies",
        ),
        (task_block("TASK-001", "Broken", status="finished"), "invalid status"),
        (task_block("TASK-001", "Broken", priority="urgent"), "invalid priority"),
    ],
)
def test_parse_rejects_incomplete_task_blocks(block: str, message: str) -> None:
    with pytest.raises(MalformedDocumentError, match=message) as error:
        parse_task_document(task_document_text(block))
    assert error.value.task_id == "TASK-001"


def test_parse_rejects_duplicate_ids() -> None:
    with pytest.raises(MalformedDocumentError, match="Duplicate task id TASK-001"):
        parse_task_document(
            task_document_text(task_block("TASK-001", "A"), task_block("TASK-001", "B")),
        )


def test_load_missing_document_is_malformed(tmp_path: Path) -> None:
    with pytest.raises(MalformedDocumentError, match="Cannot read task document"):
        load_task_document(tmp_path / "requirements.md")


def test_next_runnable_orders_by_priority_then_id() -> None:
    document = parse_task_document(
        task_document_text(
            task_block("TASK-004", "Low", priority="low"),
            task_block("TASK-003", "Medium b", priority="medium"),
            task_block("TASK-002", "Medium a", priority="medium"),
            task_block("TASK-009", "High", priority="high", status="done"),
        ),
    )

    assert [task.id for task in pending_tasks(document)] == ["TASK-002", "TASK-003", "TASK-004"]
    assert next_runnable(document).id == "TASK-002"


def test_next_runnable_skips_tasks_with_unmet_dependencies() -> None:
    document = parse_task_document(
        task_document_text(
            task_block("TASK-001", "Base", status="in-progress"),
            task_block("TASK-002", "Needs base", priority="high", dependencies="TASK-001"),
            task_block("TASK-003", "Free", priority="low"),
        ),
    )

    assert next_runnable(document).id == "TASK-003"


def test_in_progress_is_neither_pending_nor_done() -> None:
    document = parse_task_document(
        task_document_text(
            task_block("TASK-001", "Half done", status="in-progress"),
            task_block("TASK-002", "Waiting", dependencies="TASK-001"),
        ),
    )

    assert next_runnable(document) is None
    assert [blocked.task.id for blocked in blocked_tasks(document)] == ["TASK-002"]


def test_blocked_report_lists_unmet_dependencies_only() -> None:
    document = parse_task_document(
        task_document_text(
            task_block("TASK-001", "Done", status="done"),
            task_block("TASK-002", "A", dependencies="TASK-001, TASK-003"),
            task_block("TASK-003", "B", dependencies="TASK-002"),
        ),
    )

    assert next_runnable(document) is None
    report = {blocked.task.id: blocked.unmet_dependencies for blocked in blocked_tasks(document)}
    assert report == {"TASK-002": ("TASK-003",), "TASK-003": ("TASK-002",)}


def test_dependency_on_unknown_task_blocks_forever() -> None:
    document = parse_task_document(
        task_document_text(task_block("TASK-001", "Orphan", dependencies="TASK-404")),
    )

    assert next_runnable(document) is None
    assert blocked_tasks(document)[0].unmet_dependencies == ("TASK-404",)


def test_nothing_pending_means_no_runnable_and_no_blocked() -> None:
    document = parse_task_document(
        task_document_text(task_block("TASK-001", "Done", status="done")),
    )

    assert pending_tasks(document) == []
    assert next_runnable(document) is None
    assert blocked_tasks(document) == []


def test_starter_template_parses() -> None:
    document = parse_task_document(render_task_template("Widget"))

    assert document.project_name == "Widget"
    assert [task.id for task in document.tasks] == ["TASK-001", "TASK-002", "TASK-003"]
    assert next_runnable(document).id == "TASK-001"
