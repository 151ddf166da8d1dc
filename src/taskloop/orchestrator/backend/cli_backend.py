"""Subprocess-based backend running a CLI coding agent in stream-json mode."""

from __future__ import annotations

import logging
import shlex
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from taskloop.orchestrator.backend.base import AgentRunRequest, AgentRunResult
from taskloop.orchestrator.backend.permissions import write_permission_manifest
from taskloop.orchestrator.backend.stream import StreamParser
from taskloop.orchestrator.failure_classifier import classify
from taskloop.orchestrator.models import ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = "claude -p - --output-format stream-json --verbose --add-dir {workspace}"
AGENT_COMMAND_PLACEHOLDERS = ("workspace", "prompt_file")
UNKNOWN_ERROR_MESSAGE = "Unknown error"
ABORTED_MESSAGE = "Agent terminated on forced stop"

_POLL_SECONDS = 0.1
_READER_JOIN_SECONDS = 5.0


class BackendRunError(RuntimeError):
    """Agent command template cannot be turned into a command line."""


class CliAgentBackend:
    """Spawn the agent once per task, feed the prompt on stdin and parse its event stream."""

    def __init__(
        self,
        command_template: str = DEFAULT_AGENT_COMMAND,
        *,
        write_permissions: bool = True,
    ) -> None:
        self.command_template = command_template.strip()
        self.write_permissions = write_permissions
        # Surface template problems before the first task is attempted.
        _build_run_args(
            command_template=self.command_template,
            workspace=Path("workspace"),
            prompt_file=Path("prompt.md"),
        )

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        started = time.monotonic()
        workdir = request.workdir
        if self.write_permissions:
            write_permission_manifest(workdir)

        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            prefix="taskloop-prompt-",
            suffix=".md",
            delete=False,
        ) as handle:
            handle.write(request.prompt)
            prompt_file = Path(handle.name)

        try:
            run_args = _build_run_args(
                command_template=self.command_template,
                workspace=workdir,
                prompt_file=prompt_file,
            )
            try:
                with prompt_file.open("r", encoding="utf-8") as stdin_handle:
                    process = subprocess.Popen(  # noqa: S603
                        run_args,
                        cwd=workdir,
                        stdin=stdin_handle,
                        stdout=subprocess.PIPE,
                        stderr=subprocess.PIPE,
                        text=True,
                        encoding="utf-8",
                        errors="replace",
                        start_new_session=True,
                    )
            except FileNotFoundError:
                return _start_failure(f"Agent command not found: {run_args[0]}", started)
            except OSError as error:
                return _start_failure(f"Agent failed to start: {error}", started)

            return _collect(process, request, started)
        finally:
            prompt_file.unlink(missing_ok=True)


def _build_run_args(
    *,
    command_template: str,
    workspace: Path,
    prompt_file: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Agent command template is empty.")
    try:
        rendered = stripped.format(
            workspace=shlex.quote(str(workspace)),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("Agent command template rendered empty command.")
    return argv


def _start_failure(message: str, started: float) -> AgentRunResult:
    logger.warning("%s", message)
    return AgentRunResult(
        success=False,
        output_text="",
        duration_ms=_elapsed_ms(started),
        error_message=message,
        error_kind=classify(message),
    )


def _collect(
    process: subprocess.Popen[str],
    request: AgentRunRequest,
    started: float,
) -> AgentRunResult:
    progress = request.progress
    parser = StreamParser(on_activity=progress.activity if progress is not None else None)
    stderr_chunks: list[str] = []

    readers = [
        threading.Thread(
            target=_pump,
            args=(process.stdout, parser.feed),
            daemon=True,
            name="taskloop-agent-stdout",
        ),
        threading.Thread(
            target=_pump,
            args=(process.stderr, stderr_chunks.append),
            daemon=True,
            name="taskloop-agent-stderr",
        ),
    ]
    for reader in readers:
        reader.start()

    timeout = request.timeout_seconds if request.timeout_seconds else None
    timed_out = False
    aborted = False
    while process.poll() is None:
        if timeout is not None and time.monotonic() - started >= timeout:
            _terminate_process(process)
            timed_out = True
            break
        if request.abort_requested is not None and request.abort_requested():
            _terminate_process(process)
            aborted = True
            break
        time.sleep(_POLL_SECONDS)

    for reader in readers:
        reader.join(timeout=_READER_JOIN_SECONDS)
    parser.finish()
    duration_ms = _elapsed_ms(started)
    stderr_text = "".join(stderr_chunks).strip()
    if parser.dropped_lines:
        logger.info("Agent wrote %d non-JSON stdout lines", parser.dropped_lines)
    if not parser.result_seen:
        logger.warning("Agent output ended without a result event (exit code %s)", process.returncode)

    if timed_out or aborted:
        message = f"Agent timed out after {timeout}s" if timed_out else ABORTED_MESSAGE
        if stderr_text:
            message = f"{message}\n{stderr_text}"
        return AgentRunResult(
            success=False,
            output_text=parser.result_text,
            duration_ms=duration_ms,
            error_message=message,
            error_kind=ErrorKind.TASK_FAILURE,
            usage=parser.usage,
            exit_code=process.returncode,
            agent_session_id=parser.session_id,
        )

    success = process.returncode == 0 and not parser.is_error
    if success:
        return AgentRunResult(
            success=True,
            output_text=parser.result_text,
            duration_ms=duration_ms,
            usage=parser.usage,
            exit_code=process.returncode,
            agent_session_id=parser.session_id,
        )

    parts = [stderr_text] if stderr_text else []
    if "API Error" in parser.result_text:
        parts.append(parser.result_text.strip())
    message = "\n".join(parts) or UNKNOWN_ERROR_MESSAGE
    return AgentRunResult(
        success=False,
        output_text=parser.result_text,
        duration_ms=duration_ms,
        error_message=message,
        error_kind=classify(message),
        usage=parser.usage,
        exit_code=process.returncode,
        agent_session_id=parser.session_id,
    )


def _pump(stream: IO[str] | None, sink: Callable[[str], None]) -> None:
    if stream is None:
        return
    with stream:
        for line in iter(stream.readline, ""):
            sink(line)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
