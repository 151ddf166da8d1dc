from __future__ import annotations

import json
import logging
import shlex
import sys
from pathlib import Path

import allure
import pytest

from conftest import echo_agent_command
from taskloop.orchestrator.backend import AgentRunRequest, BackendRunError, CliAgentBackend
from taskloop.orchestrator.backend.cli_backend import ABORTED_MESSAGE, _build_run_args
from taskloop.orchestrator.backend.permissions import build_permission_manifest
from taskloop.orchestrator.backend.stream import format_tool_activity
from taskloop.orchestrator.models import ErrorKind
from taskloop.orchestrator.progress import ProgressChannel

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Agent Backend"),
]

_PROMPT = "Task ID: TASK-001\nTask document: {document}\n"
_SLEEPER = f"{shlex.quote(sys.executable)} -c 'import time; time.sleep(30)'"


def _request(tmp_path: Path, **overrides) -> AgentRunRequest:
    document = tmp_path / "requirements.md"
    values = {"prompt": _PROMPT.format(document=document), "workdir": tmp_path}
    values.update(overrides)
    return AgentRunRequest(**values)


def test_build_run_args_quotes_placeholders() -> None:
    args = _build_run_args(
        command_template="agent --dir {workspace} --prompt {prompt_file}",
        workspace=Path("/tmp/my project"),
        prompt_file=Path("/tmp/p.md"),
    )
    assert args == ["agent", "--dir", "/tmp/my project", "--prompt", "/tmp/p.md"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent {model}", "placeholder"),
        ("agent {0}", "placeholder"),
    ],
)
def test_invalid_templates_are_rejected_up_front(template: str, message: str) -> None:
    with pytest.raises(BackendRunError, match=message):
        CliAgentBackend(template)


def test_successful_run_streams_activity_and_usage(tmp_path: Path) -> None:
    progress = ProgressChannel()
    backend = CliAgentBackend(echo_agent_command("--tokens", "120", "--cost", "0.5"))

    result = backend.run(_request(tmp_path, progress=progress))

    assert result.success is True
    assert result.exit_code == 0
    assert result.output_text == "Worked on TASK-001"
    assert result.error_kind is None
    assert result.usage is not None
    assert result.usage.total_tokens == 120
    assert result.usage.cost_usd == 0.5
    assert result.agent_session_id
    activities = [event.text for event in progress.drain()]
    assert activities == [
        format_tool_activity("Read", {"file_path": str(tmp_path / "requirements.md")}),
    ]


def test_run_writes_workspace_permission_manifest(tmp_path: Path) -> None:
    CliAgentBackend(echo_agent_command()).run(_request(tmp_path))

    manifest = json.loads((tmp_path / ".claude" / "settings.json").read_text("utf-8"))
    assert manifest == build_permission_manifest(tmp_path)
    assert manifest["restrictToWorkspace"] is True
    assert "Bash(sudo:*)" in manifest["permissions"]["deny"]
    assert f"Bash(cd:{tmp_path.resolve()})" in manifest["permissions"]["allow"]


def test_permission_manifest_can_be_skipped(tmp_path: Path) -> None:
    CliAgentBackend(echo_agent_command(), write_permissions=False).run(_request(tmp_path))
    assert not (tmp_path / ".claude").exists()


def test_task_failure_uses_stderr(tmp_path: Path) -> None:
    result = CliAgentBackend(echo_agent_command("--fail")).run(_request(tmp_path))

    assert result.success is False
    assert result.exit_code == 1
    assert result.error_message == "Could not finish TASK-001"
    assert result.error_kind == ErrorKind.TASK_FAILURE
    assert result.usage is not None


def test_api_error_result_text_is_classified(tmp_path: Path) -> None:
    result = CliAgentBackend(echo_agent_command("--api-error")).run(_request(tmp_path))

    assert result.success is False
    assert result.error_message == "API Error: 529 overloaded"
    assert result.error_kind == ErrorKind.API_OVERLOAD


def test_silent_failure_reports_unknown_error(tmp_path: Path) -> None:
    template = f"{shlex.quote(sys.executable)} -c 'import sys; sys.exit(3)'"

    result = CliAgentBackend(template).run(_request(tmp_path))

    assert result.success is False
    assert result.exit_code == 3
    assert result.error_message == "Unknown error"
    assert result.error_kind == ErrorKind.TASK_FAILURE


def test_missing_result_event_and_plain_output_are_logged(tmp_path: Path, caplog) -> None:
    template = f"{shlex.quote(sys.executable)} -c 'print(\"hello\"); print(\"world\")'"

    with caplog.at_level(logging.INFO, logger="taskloop.orchestrator.backend.cli_backend"):
        result = CliAgentBackend(template).run(_request(tmp_path))

    assert result.success is True
    assert "Agent wrote 2 non-JSON stdout lines" in caplog.text
    assert "Agent output ended without a result event (exit code 0)" in caplog.text


def test_missing_executable_is_a_classified_start_failure(tmp_path: Path) -> None:
    result = CliAgentBackend("taskloop-no-such-agent-binary -p").run(_request(tmp_path))

    assert result.success is False
    assert result.exit_code is None
    assert "taskloop-no-such-agent-binary" in result.error_message
    assert result.error_kind == ErrorKind.TASK_FAILURE


def test_timeout_terminates_the_agent(tmp_path: Path) -> None:
    result = CliAgentBackend(_SLEEPER).run(_request(tmp_path, timeout_seconds=1))

    assert result.success is False
    assert result.error_message.startswith("Agent timed out after 1s")
    assert result.error_kind == ErrorKind.TASK_FAILURE
    assert result.duration_ms < 10_000


def test_abort_hook_terminates_the_agent(tmp_path: Path) -> None:
    result = CliAgentBackend(_SLEEPER).run(_request(tmp_path, abort_requested=lambda: True))

    assert result.success is False
    assert result.error_message == ABORTED_MESSAGE
    assert result.error_kind == ErrorKind.TASK_FAILURE


def test_prompt_file_is_removed_after_the_run(tmp_path: Path) -> None:
    marker = tmp_path / "prompt-path.txt"
    template = (
        f"{shlex.quote(sys.executable)} -c "
        "'import pathlib, sys; pathlib.Path(sys.argv[2]).write_text(sys.argv[1])' "
        f"{{prompt_file}} {shlex.quote(str(marker))}"
    )

    result = CliAgentBackend(template).run(_request(tmp_path))

    assert result.success is True
    prompt_file = Path(marker.read_text("utf-8"))
    assert prompt_file.name.startswith("taskloop-prompt-")
    assert not prompt_file.exists()
