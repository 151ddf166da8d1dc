from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import allure

from taskloop.orchestrator.ledger import (
    append_iteration,
    build_ledger,
    parse_ledger,
    read_ledger,
    render_ledger,
    resume_point,
    usage_totals,
)
from taskloop.orchestrator.models import (
    ErrorKind,
    ExitStatus,
    IterationRecord,
    TokenUsage,
)

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Iteration Ledger"),
]

_T0 = datetime(2026, 3, 1, 9, 30, 15, tzinfo=UTC)


def _record(iteration: int, **overrides) -> IterationRecord:
    values = {
        "iteration": iteration,
        "timestamp": _T0 + timedelta(minutes=iteration),
        "task_completed": f"TASK-{iteration:03d}",
        "summary": f"Completed task {iteration}",
        "duration_seconds": 12,
        "exit_status": ExitStatus.SUCCESS,
    }
    values.update(overrides)
    return IterationRecord(**values)


def test_missing_ledger_reads_as_none_and_resumes_at_one(tmp_path: Path) -> None:
    ledger = read_ledger(tmp_path / "progress.md")
    assert ledger is None
    assert resume_point(ledger) == 1
    assert usage_totals(ledger) == TokenUsage()


def test_append_recomputes_counters_from_records(tmp_path: Path) -> None:
    path = tmp_path / "progress.md"

    append_iteration(path, 3, _record(1))
    append_iteration(
        path,
        3,
        _record(2, task_completed=None, summary="Failed: boom", exit_status=ExitStatus.ERROR),
    )
    ledger = append_iteration(path, 4, _record(3))

    assert ledger.total_tasks == 4
    assert ledger.completed == 2
    assert ledger.remaining == 2
    assert [record.iteration for record in ledger.iterations] == [1, 2, 3]
    assert resume_point(read_ledger(path)) == 4


def test_interrupted_iteration_never_counts_as_completion(tmp_path: Path) -> None:
    path = tmp_path / "progress.md"
    ledger = append_iteration(
        path,
        1,
        _record(1, task_completed=None, exit_status=ExitStatus.INTERRUPTED),
    )
    assert ledger.completed == 0
    assert ledger.remaining == 1


def test_completed_requires_success_and_task() -> None:
    ledger = build_ledger(
        total_tasks=2,
        iterations=[
            _record(1, exit_status=ExitStatus.PARTIAL),
            _record(2, task_completed=None),
            _record(3),
        ],
    )
    assert ledger.completed == 1


def test_render_uses_markdown_layout() -> None:
    ledger = build_ledger(
        total_tasks=2,
        iterations=[
            _record(
                1,
                usage=TokenUsage(
                    input_tokens=1000,
                    output_tokens=200,
                    cache_creation_tokens=30,
                    cache_read_tokens=4,
                    total_tokens=1234,
                    cost_usd=0.0123,
                ),
            ),
        ],
        last_updated=_T0,
    )

    text = render_ledger(ledger)

    assert text.startswith("# Progress Log\n\n## Summary\n- **Total Tasks**: 2\n")
    assert "- **Completed**: 1\n- **Remaining**: 1\n" in text
    assert "### Iteration 1 - 2026-03-01T09:31:15+00:00\n" in text
    assert "- **Task Completed**: TASK-001\n" in text
    assert "- **Duration**: 12s\n- **Exit Status**: success\n" in text
    assert "- **Tokens**: 1,234 total (1,000 in, 200 out, 30 cache-create, 4 cache-read)\n" in text
    assert "- **Cost**: $0.0123\n" in text


def test_round_trip_preserves_every_field_set() -> None:
    detail = "Traceback:\n```python\nboom()\n```\nexit 1"
    original = build_ledger(
        total_tasks=5,
        iterations=[
            _record(1, usage=TokenUsage(10, 20, 3, 4, 37, 0.1 + 0.2)),
            _record(
                2,
                timestamp=datetime(2026, 3, 1, 12, 0, tzinfo=timezone(timedelta(hours=2))),
                task_completed=None,
                summary="Failed: Rate limit",
                exit_status=ExitStatus.ERROR,
                error_kind=ErrorKind.RATE_LIMIT,
                error_detail=detail,
            ),
            _record(
                3,
                task_completed=None,
                summary="Interrupted: Build cart (stop requested)",
                duration_seconds=0,
                exit_status=ExitStatus.INTERRUPTED,
            ),
        ],
        last_updated=_T0,
    )

    parsed = parse_ledger(render_ledger(original))

    assert parsed == original
    assert parsed.iterations[0].usage.cost_usd == 0.1 + 0.2
    assert parsed.iterations[1].error_detail == detail


def test_empty_error_detail_round_trips() -> None:
    record = _record(
        1,
        task_completed=None,
        exit_status=ExitStatus.ERROR,
        error_kind=ErrorKind.TASK_FAILURE,
        error_detail="",
    )
    ledger = build_ledger(total_tasks=1, iterations=[record], last_updated=_T0)
    assert parse_ledger(render_ledger(ledger)).iterations == [record]


def test_multiline_summary_is_flattened() -> None:
    ledger = build_ledger(
        total_tasks=1,
        iterations=[_record(1, summary="first\nsecond")],
        last_updated=_T0,
    )
    assert parse_ledger(render_ledger(ledger)).iterations[0].summary == "first second"


def test_unreadable_blocks_are_skipped() -> None:
    text = (
        "# Progress Log\n\n## Summary\n- **Total Tasks**: 2\n- **Completed**: 0\n"
        "- **Remaining**: 2\n- **Last Updated**: 2026-03-01T09:30:15+00:00\n\n"
        "## Iteration Log\n\n"
        "### Iteration 1 - not-a-date\n- **Task Completed**: none\n"
        "- **Summary**: x\n- **Duration**: 1s\n- **Exit Status**: error\n\n"
        "### Iteration 2 - 2026-03-01T09:31:15\n- **Task Completed**: TASK-001\n"
        "- **Summary**: ok\n- **Duration**: 3s\n- **Exit Status**: success\n"
    )

    ledger = parse_ledger(text)

    assert [record.iteration for record in ledger.iterations] == [2]
    assert ledger.iterations[0].timestamp.tzinfo is not None
    assert resume_point(ledger) == 2


def test_usage_totals_sums_recorded_usage() -> None:
    ledger = build_ledger(
        total_tasks=2,
        iterations=[
            _record(1, usage=TokenUsage(1, 2, 3, 4, 10, 0.5)),
            _record(2),
            _record(3, usage=TokenUsage(10, 20, 30, 40, 100, 0.25)),
        ],
    )
    totals = usage_totals(ledger)
    assert totals.total_tokens == 110
    assert totals.input_tokens == 11
    assert totals.cost_usd == 0.75


def test_iteration_header_inside_error_detail_stays_in_the_detail() -> None:
    detail = (
        "log:\n### Iteration 9 - 2026-03-01T10:00:00+00:00\n- **Task Completed**: TASK-009\n"
        "- **Summary**: fake\n- **Duration**: 1s\n- **Exit Status**: success\nend"
    )
    record = _record(
        1,
        task_completed=None,
        exit_status=ExitStatus.ERROR,
        error_kind=ErrorKind.TASK_FAILURE,
        error_detail=detail,
    )
    ledger = build_ledger(total_tasks=1, iterations=[record], last_updated=_T0)

    parsed = parse_ledger(render_ledger(ledger))

    assert parsed.iterations == [record]
    assert resume_point(parsed) == 2


def test_field_lines_inside_error_detail_are_not_read_as_fields() -> None:
    record = _record(
        1,
        task_completed=None,
        exit_status=ExitStatus.ERROR,
        error_detail="- **Tokens**: 5 total (2 in, 3 out)\n- **Error Type**: rate_limit",
    )
    ledger = build_ledger(total_tasks=1, iterations=[record], last_updated=_T0)

    parsed = parse_ledger(render_ledger(ledger)).iterations[0]

    assert parsed.usage is None
    assert parsed.error_kind is None
    assert parsed == record


def test_carriage_returns_in_error_detail_survive_the_file(tmp_path: Path) -> None:
    path = tmp_path / "progress.md"
    detail = "line1\r\nline2\rline3"
    record = _record(
        1,
        task_completed=None,
        exit_status=ExitStatus.ERROR,
        error_kind=ErrorKind.UNKNOWN,
        error_detail=detail,
    )

    append_iteration(path, 1, record)
    ledger = read_ledger(path)

    assert ledger.iterations[0].error_detail == detail
    assert ledger.iterations[0] == record
