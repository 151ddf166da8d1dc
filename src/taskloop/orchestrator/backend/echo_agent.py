"""Local stand-in agent for backend and run loop integration tests.

Reads the prompt from stdin, emits stream-json events like the real agent and,
with ``--complete``, marks the prompted task done in the task document.
"""

from __future__ import annotations

import argparse
import json
import re
import sys
import uuid
from pathlib import Path

from taskloop.orchestrator.prompts import DOCUMENT_LABEL, TASK_ID_LABEL

_STATUS_LINE = re.compile(r"^(- \*\*Status\*\*:[ \t]*)\S+", re.IGNORECASE | re.MULTILINE)


def main(argv: list[str] | None = None) -> int:
    """Run one deterministic fake iteration."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--complete", action="store_true")
    parser.add_argument("--fail", action="store_true")
    parser.add_argument("--api-error", action="store_true")
    parser.add_argument("--touch", default=None, help="file to create in the working directory")
    parser.add_argument("--tokens", type=int, default=100)
    parser.add_argument("--cost", type=float, default=0.001)
    args = parser.parse_args(argv)

    prompt = sys.stdin.read()
    task_id = _prompt_field(prompt, TASK_ID_LABEL)
    document = _prompt_field(prompt, DOCUMENT_LABEL)
    session_id = str(uuid.uuid4())

    _emit({"type": "system", "subtype": "init", "session_id": session_id})
    if document:
        _emit(
            {
                "type": "assistant",
                "session_id": session_id,
                "message": {
                    "content": [
                        {"type": "tool_use", "name": "Read", "input": {"file_path": document}},
                    ],
                },
            },
        )

    if args.touch:
        Path(args.touch).write_text(f"{task_id or 'unknown'}\n", "utf-8")
    if args.complete and task_id and document:
        _mark_done(Path(document), task_id)

    if args.api_error:
        _emit_result(session_id, is_error=True, text="API Error: 529 overloaded", args=args)
        return 1
    if args.fail:
        sys.stderr.write(f"Could not finish {task_id}\n")
        _emit_result(session_id, is_error=True, text="Task failed", args=args)
        return 1

    _emit_result(session_id, is_error=False, text=f"Worked on {task_id}", args=args)
    return 0


def _prompt_field(prompt: str, label: str) -> str | None:
    match = re.search(rf"^{re.escape(label)}:\s*(.+)$", prompt, re.MULTILINE)
    return match.group(1).strip() if match else None


def _mark_done(document: Path, task_id: str) -> None:
    text = document.read_text("utf-8")
    header = re.search(rf"^###\s+{re.escape(task_id)}:", text, re.MULTILINE)
    if header is None:
        return
    end = text.find("\n###", header.end())
    end = len(text) if end == -1 else end
    block = _STATUS_LINE.sub(r"\g<1>done", text[header.end() : end], count=1)
    document.write_text(text[: header.end()] + block + text[end:], "utf-8")


def _emit_result(session_id: str, *, is_error: bool, text: str, args: argparse.Namespace) -> None:
    half = args.tokens // 2
    _emit(
        {
            "type": "result",
            "session_id": session_id,
            "is_error": is_error,
            "result": text,
            "total_cost_usd": args.cost,
            "usage": {
                "input_tokens": half,
                "output_tokens": args.tokens - half,
                "cache_creation_input_tokens": 0,
                "cache_read_input_tokens": 0,
            },
        },
    )


def _emit(event: dict) -> None:
    sys.stdout.write(json.dumps(event) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
