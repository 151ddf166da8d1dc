"""Append-only progress ledger stored as a human-readable markdown report.

The ledger is small (tens to low hundreds of iterations) and is rewritten as
a whole on every append.  Counters in the summary block are always recomputed
from the iteration list, so a ledger can be rebuilt by replaying its
iterations against the current task count.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from taskloop.orchestrator.models import (
    ErrorKind,
    ExitStatus,
    IterationRecord,
    Ledger,
    TokenUsage,
)

logger = logging.getLogger(__name__)

_TOTAL = re.compile(r"\*\*Total Tasks\*\*:\s*(-?\d+)")
_COMPLETED = re.compile(r"\*\*Completed\*\*:\s*(-?\d+)")
_REMAINING = re.compile(r"\*\*Remaining\*\*:\s*(-?\d+)")
_LAST_UPDATED = re.compile(r"\*\*Last Updated\*\*:\s*(.+)")
_BLOCK_START = re.compile(r"### Iteration \d+")
_FENCE = re.compile(r"`{3,}")
_DETAIL_LABEL = "- **Error Detail**:"

_HEADER = re.compile(r"^### Iteration (\d+) - (.+)$", re.M)
_TASK = re.compile(r"^- \*\*Task Completed\*\*: (\S+)$", re.M)
_SUMMARY = re.compile(r"^- \*\*Summary\*\*: (.*)$", re.M)
_DURATION = re.compile(r"^- \*\*Duration\*\*: (\d+)s$", re.M)
_STATUS = re.compile(r"^- \*\*Exit Status\*\*: (\w+)$", re.M)
_ERROR_KIND = re.compile(r"^- \*\*Error Type\*\*: (\w+)$", re.M)
_TOKENS = re.compile(
    r"^- \*\*Tokens\*\*: ([\d,]+) total \(([\d,]+) in, ([\d,]+) out"
    r"(?:, ([\d,]+) cache-create, ([\d,]+) cache-read)?\)$",
    re.M,
)
_COST = re.compile(r"^- \*\*Cost\*\*: \$(\S+)$", re.M)
_BACKTICK_RUN = re.compile(r"`+")


def read_ledger(path: Path) -> Ledger | None:
    """Load the ledger; a missing file means a fresh workspace."""

    try:
        with path.open("r", encoding="utf-8", newline="") as handle:
            text = handle.read()
    except FileNotFoundError:
        return None
    return parse_ledger(text)


def append_iteration(path: Path, total_tasks: int, record: IterationRecord) -> Ledger:
    """Append one record and rewrite the ledger with recomputed counters."""

    ledger = read_ledger(path)
    iterations = list(ledger.iterations) if ledger is not None else []
    iterations.append(record)
    updated = build_ledger(total_tasks=total_tasks, iterations=iterations)
    write_ledger(path, updated)
    logger.debug(
        "Ledger %s: iteration=%d completed=%d remaining=%d",
        path,
        record.iteration,
        updated.completed,
        updated.remaining,
    )
    return updated


def build_ledger(
    *,
    total_tasks: int,
    iterations: list[IterationRecord],
    last_updated: datetime | None = None,
) -> Ledger:
    completed = sum(1 for record in iterations if record.counts_as_completion)
    return Ledger(
        total_tasks=total_tasks,
        completed=completed,
        remaining=total_tasks - completed,
        last_updated=last_updated or datetime.now(tz=UTC),
        iterations=iterations,
    )


def resume_point(ledger: Ledger | None) -> int:
    """Iteration number the next run starts at."""

    if ledger is None:
        return 1
    return len(ledger.iterations) + 1


def usage_totals(ledger: Ledger | None) -> TokenUsage:
    total = TokenUsage()
    if ledger is None:
        return total
    for record in ledger.iterations:
        if record.usage is not None:
            total = total + record.usage
    return total


def write_ledger(path: Path, ledger: Ledger) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        handle.write(render_ledger(ledger))


def render_ledger(ledger: Ledger) -> str:
    lines = [
        "# Progress Log",
        "",
        "## Summary",
        f"- **Total Tasks**: {ledger.total_tasks}",
        f"- **Completed**: {ledger.completed}",
        f"- **Remaining**: {ledger.remaining}",
        f"- **Last Updated**: {ledger.last_updated.isoformat()}",
        "",
        "## Iteration Log",
        "",
    ]
    for record in ledger.iterations:
        lines.extend(_render_record(record))
        lines.append("")
    return "\n".join(lines)


def _render_record(record: IterationRecord) -> list[str]:
    summary = " ".join(record.summary.splitlines())
    lines = [
        f"### Iteration {record.iteration} - {record.timestamp.isoformat()}",
        f"- **Task Completed**: {record.task_completed or 'none'}",
        f"- **Summary**: {summary}",
        f"- **Duration**: {record.duration_seconds}s",
        f"- **Exit Status**: {record.exit_status.value}",
    ]
    if record.usage is not None:
        usage = record.usage
        lines.append(
            f"- **Tokens**: {usage.total_tokens:,} total "
            f"({usage.input_tokens:,} in, {usage.output_tokens:,} out, "
            f"{usage.cache_creation_tokens:,} cache-create, "
            f"{usage.cache_read_tokens:,} cache-read)",
        )
        lines.append(f"- **Cost**: ${float(usage.cost_usd)!r}")
    if record.error_kind is not None:
        lines.append(f"- **Error Type**: {record.error_kind.value}")
    if record.error_detail is not None:
        fence = _fence_for(record.error_detail)
        lines.extend(["- **Error Detail**:", fence, record.error_detail, fence])
    return lines


def _fence_for(detail: str) -> str:
    longest = max((len(run) for run in _BACKTICK_RUN.findall(detail)), default=0)
    return "`" * max(3, longest + 1)


def parse_ledger(text: str) -> Ledger:
    """Parse a rendered ledger; iteration blocks missing required fields are skipped."""

    head, blocks = _split_blocks(text)

    iterations: list[IterationRecord] = []
    for block in blocks:
        record = _parse_record(block)
        if record is None:
            logger.warning("Skipping unreadable ledger block: %s", block.fields[0])
            continue
        iterations.append(record)

    total = _TOTAL.search(head)
    completed = _COMPLETED.search(head)
    remaining = _REMAINING.search(head)
    last_updated = _LAST_UPDATED.search(head)
    return Ledger(
        total_tasks=int(total.group(1)) if total else 0,
        completed=int(completed.group(1)) if completed else 0,
        remaining=int(remaining.group(1)) if remaining else 0,
        last_updated=(
            _parse_datetime(last_updated.group(1).strip())
            if last_updated
            else datetime.now(tz=UTC)
        ),
        iterations=iterations,
    )


@dataclass(slots=True)
class _Block:
    """One iteration block: its field lines and the fenced error detail kept apart."""

    fields: list[str]
    detail: str | None = None

    @property
    def text(self) -> str:
        return "\n".join(self.fields)


def _split_blocks(text: str) -> tuple[str, list[_Block]]:
    """Split on iteration headers, never looking inside fenced error details.

    Lines are split on ``\\n`` only so carriage returns inside a detail survive.
    """

    lines = text.split("\n")
    head: list[str] = []
    blocks: list[_Block] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        index += 1
        if _BLOCK_START.match(line):
            blocks.append(_Block(fields=[line]))
            continue
        if not blocks:
            head.append(line)
            continue
        block = blocks[-1]
        if line == _DETAIL_LABEL and index < len(lines) and _FENCE.fullmatch(lines[index]):
            fence = lines[index]
            try:
                end = lines.index(fence, index + 1)
            except ValueError:
                logger.warning("Unterminated error detail in ledger block: %s", block.fields[0])
                continue
            block.detail = "\n".join(lines[index + 1 : end])
            index = end + 1
            continue
        block.fields.append(line)
    return "\n".join(head), blocks


def _parse_record(block: _Block) -> IterationRecord | None:
    text = block.text
    header = _HEADER.search(text)
    task = _TASK.search(text)
    summary = _SUMMARY.search(text)
    duration = _DURATION.search(text)
    status = _STATUS.search(text)
    if not (header and task and summary and duration and status):
        return None
    try:
        exit_status = ExitStatus(status.group(1))
        timestamp = _parse_datetime(header.group(2).strip())
    except ValueError:
        return None

    error_kind_match = _ERROR_KIND.search(text)
    error_kind: ErrorKind | None = None
    if error_kind_match is not None:
        try:
            error_kind = ErrorKind(error_kind_match.group(1))
        except ValueError:
            error_kind = ErrorKind.UNKNOWN

    return IterationRecord(
        iteration=int(header.group(1)),
        timestamp=timestamp,
        task_completed=None if task.group(1) == "none" else task.group(1),
        summary=summary.group(1),
        duration_seconds=int(duration.group(1)),
        exit_status=exit_status,
        error_kind=error_kind,
        error_detail=block.detail,
        usage=_parse_usage(text),
    )


def _parse_usage(text: str) -> TokenUsage | None:
    tokens = _TOKENS.search(text)
    if tokens is None:
        return None
    cost = _COST.search(text)
    return TokenUsage(
        total_tokens=_int(tokens.group(1)),
        input_tokens=_int(tokens.group(2)),
        output_tokens=_int(tokens.group(3)),
        cache_creation_tokens=_int(tokens.group(4)),
        cache_read_tokens=_int(tokens.group(5)),
        cost_usd=float(cost.group(1)) if cost is not None else 0.0,
    )


def _int(raw: str | None) -> int:
    if not raw:
        return 0
    return int(raw.replace(",", ""))


def _parse_datetime(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
