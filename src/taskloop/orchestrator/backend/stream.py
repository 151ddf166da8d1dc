"""Incremental parser for the agent's newline-delimited JSON event stream."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from taskloop.orchestrator.models import TokenUsage
from taskloop.orchestrator.usage import extract_usage

logger = logging.getLogger(__name__)

ACTIVITY_DETAIL_MAX_CHARS = 40
_QUERY_PREFIX_CHARS = 30

_TOOL_VERBS: dict[str, tuple[str, str]] = {
    "read": ("Reading {}", "Reading file"),
    "write": ("Writing {}", "Writing file"),
    "edit": ("Editing {}", "Editing file"),
    "glob": ("Finding {}", "Searching files"),
    "grep": ("Searching: {}", "Searching in files"),
    "bash": ("Running {}", "Running command"),
    "websearch": ("Searching: {}", "Searching web"),
}


def format_tool_activity(tool_name: str, tool_input: Mapping[str, Any] | None) -> str:
    """Short human-readable description of a tool call."""

    detail = _salient_detail(tool_input)
    if len(detail) > ACTIVITY_DETAIL_MAX_CHARS:
        detail = "..." + detail[-(ACTIVITY_DETAIL_MAX_CHARS - 3) :]

    name = tool_name.lower()
    if name == "webfetch":
        return "Fetching URL"
    if name == "task":
        return "Running sub-task"
    verbs = _TOOL_VERBS.get(name)
    if verbs is None:
        return f"Using {tool_name}"
    with_detail, without_detail = verbs
    return with_detail.format(detail) if detail else without_detail


def _salient_detail(tool_input: Mapping[str, Any] | None) -> str:
    if not isinstance(tool_input, Mapping):
        return ""
    for key in ("file_path", "path", "pattern"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    command = tool_input.get("command")
    if isinstance(command, str) and command:
        return command.split("\n")[0].split(" ")[0]
    for key in ("query", "url"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value[:_QUERY_PREFIX_CHARS]
    return ""


class StreamParser:
    """Feeds raw stdout chunks, emits activity strings and captures the final result.

    A line may span several reads, so the trailing partial line is buffered
    until its newline arrives.  Lines that are not JSON objects are dropped.
    """

    def __init__(self, on_activity: Callable[[str], None] | None = None) -> None:
        self._on_activity = on_activity
        self._buffer = ""
        self.result_seen = False
        self.result_text = ""
        self.is_error = False
        self.usage: TokenUsage | None = None
        self.session_id: str | None = None
        self.dropped_lines = 0

    def feed(self, chunk: str) -> None:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._handle_line(line)

    def finish(self) -> None:
        """Give the residual buffered line one last parse attempt."""

        residual, self._buffer = self._buffer, ""
        if residual.strip():
            self._handle_line(residual)

    def _handle_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            self.dropped_lines += 1
            logger.debug("Dropping non-JSON agent output line: %.120s", stripped)
            return
        if not isinstance(event, dict):
            self.dropped_lines += 1
            return
        self._handle_event(event)

    def _handle_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        session_id = event.get("session_id")
        if isinstance(session_id, str) and session_id:
            self.session_id = session_id

        if event_type == "content_block_start":
            block = event.get("content_block")
            if isinstance(block, Mapping):
                self._tool_use(block)
        elif event_type == "assistant":
            message = event.get("message")
            content = message.get("content") if isinstance(message, Mapping) else None
            if isinstance(content, list):
                for block in content:
                    if isinstance(block, Mapping):
                        self._tool_use(block)
        elif event_type == "result":
            self.result_seen = True
            result = event.get("result")
            self.result_text = result if isinstance(result, str) else self.result_text
            self.is_error = event.get("is_error") is True
            self.usage = extract_usage(event) or self.usage

    def _tool_use(self, block: Mapping[str, Any]) -> None:
        if block.get("type") != "tool_use":
            return
        name = block.get("name")
        if not isinstance(name, str) or not name:
            return
        if self._on_activity is None:
            return
        tool_input = block.get("input")
        self._on_activity(
            format_tool_activity(name, tool_input if isinstance(tool_input, Mapping) else None),
        )
