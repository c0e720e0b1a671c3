"""Tool executor for model-issued shell commands and patches."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from polycodex.core.approvals import (
    ApplyPatchCommand,
    ApprovalPolicy,
    CommandConfirmation,
    ReviewDecision,
    classify_command,
    is_apply_patch,
    requires_confirmation,
)
from polycodex.core.cancellation import AbortedError, AbortSignal
from polycodex.core.config import PolycodexConfig
from polycodex.core.items import ConversationItem, text_message
from polycodex.core.parsers import ExecInput
from polycodex.core.patch import PatchError, apply_patch

logger = logging.getLogger(__name__)

DENIED_OUTPUT = "denied by user"
ABORTED_OUTPUT = "aborted"
DEFAULT_DENY_MESSAGE = "No, don't do that. Keep going though."
TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127

SHELL_TOOL: dict[str, Any] = {
    "type": "function",
    "name": "shell",
    "description": "Runs a shell command, and returns its output.",
    "strict": False,
    "parameters": {
        "type": "object",
        "properties": {
            "command": {"type": "array", "items": {"type": "string"}},
            "workdir": {"type": "string", "description": "The working directory for the command."},
            "timeout": {
                "type": "number",
                "description": "The maximum time to wait for the command to complete in milliseconds.",
            },
        },
        "required": ["command"],
        "additionalProperties": False,
    },
}

ConfirmationCallback = Callable[[list[str], ApplyPatchCommand | None], Awaitable[CommandConfirmation]]


@dataclass(slots=True)
class ExecResult:
    output_text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    additional_items: list[ConversationItem] = field(default_factory=list)


def _result(output: str, exit_code: int, started: float, **extra: Any) -> ExecResult:
    metadata = {"exit_code": exit_code, "duration_seconds": round(time.monotonic() - started, 3)}
    return ExecResult(output_text=output, metadata=metadata, **extra)


def truncate_output(text: str, *, max_lines: int, max_bytes: int) -> str:
    lines = text.splitlines()
    kept: list[str] = []
    size = 0
    for line in lines[:max_lines]:
        encoded = len(line.encode("utf-8")) + 1
        if size + encoded > max_bytes:
            break
        kept.append(line)
        size += encoded
    if len(kept) == len(lines):
        return text
    remaining = len(lines) - len(kept)
    return "\n".join(kept) + f"\n... ({remaining} more lines truncated)"


async def handle_exec_command(
    args: ExecInput,
    config: PolycodexConfig,
    policy: ApprovalPolicy,
    get_command_confirmation: ConfirmationCallback,
    abort_signal: AbortSignal,
) -> ExecResult:
    """Run one tool call to completion, denial or abort; never raises for command failures."""

    started = time.monotonic()
    command = list(args.cmd)
    patch = ApplyPatchCommand(patch=command[1]) if is_apply_patch(command) else None
    kind = classify_command(command)

    if requires_confirmation(kind, policy):
        try:
            confirmation = await abort_signal.race(get_command_confirmation(command, patch))
        except AbortedError:
            return _result(ABORTED_OUTPUT, 1, started)
        if confirmation.review is ReviewDecision.DENY:
            note = confirmation.custom_deny_message or DEFAULT_DENY_MESSAGE
            return _result(DENIED_OUTPUT, 1, started, additional_items=[text_message("user", note)])
        if confirmation.review is ReviewDecision.EXPLAIN:
            return _result(_explain_request(command), 1, started)
        if patch is not None and confirmation.apply_patch is not None:
            patch = confirmation.apply_patch

    if abort_signal.aborted:
        return _result(ABORTED_OUTPUT, 1, started)

    if patch is not None:
        output, exit_code = _run_patch(patch, args.workdir)
    else:
        timeout_ms = args.timeout_ms or config.exec_timeout_ms
        output, exit_code = await _run_process(command, args.workdir, timeout_ms / 1000, abort_signal)
        output = truncate_output(output, max_lines=config.max_output_lines, max_bytes=config.max_output_bytes)
    return _result(output, exit_code, started)


def _explain_request(command: list[str]) -> str:
    return (
        "The user asked for an explanation before running this command. "
        f"Explain what `{shlex.join(command)}` does and why it is needed, "
        "then request it again if it is still appropriate."
    )


def _run_patch(patch: ApplyPatchCommand, workdir: str | None) -> tuple[str, int]:
    try:
        touched = apply_patch(patch.patch, workdir)
    except (PatchError, UnicodeError, OSError) as exc:
        logger.info("apply_patch failed: %s", exc)
        return f"apply_patch failed: {exc}", 1
    logger.debug("apply_patch updated %s", ", ".join(touched))
    return "Done!", 0


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


def _format_output(stdout: bytes, stderr: bytes) -> str:
    out = stdout.decode("utf-8", errors="replace").rstrip()
    err = stderr.decode("utf-8", errors="replace").rstrip()
    if out and err:
        return f"{out}\n{err}"
    return out or err


async def _run_process(
    command: list[str],
    workdir: str | None,
    timeout_seconds: float,
    abort_signal: AbortSignal,
) -> tuple[str, int]:
    cwd = Path(workdir).expanduser() if workdir else None
    if cwd is not None and not cwd.is_dir():
        return f"Working directory not found: {cwd}", 1
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except FileNotFoundError:
        return f"command not found: {command[0]}", NOT_FOUND_EXIT_CODE
    except PermissionError as exc:
        return f"permission denied: {exc}", 126

    communicate = asyncio.ensure_future(process.communicate())
    aborted = asyncio.ensure_future(abort_signal.wait())
    try:
        done, _ = await asyncio.wait(
            {communicate, aborted},
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        _kill_process_group(process)
        communicate.cancel()
        raise
    finally:
        aborted.cancel()

    if communicate in done:
        stdout, stderr = communicate.result()
        return _format_output(stdout, stderr), process.returncode if process.returncode is not None else 1

    _kill_process_group(process)
    stdout, stderr = await communicate
    partial = _format_output(stdout, stderr)
    if abort_signal.aborted:
        logger.info("Command aborted: %s", shlex.join(command))
        message = ABORTED_OUTPUT
        exit_code = 1
    else:
        logger.info("Command timed out after %.1fs: %s", timeout_seconds, shlex.join(command))
        message = f"command timed out after {timeout_seconds:g} seconds"
        exit_code = TIMEOUT_EXIT_CODE
    return (f"{partial}\n{message}" if partial else message), exit_code


__all__ = [
    "ABORTED_OUTPUT",
    "DENIED_OUTPUT",
    "SHELL_TOOL",
    "ConfirmationCallback",
    "ExecResult",
    "handle_exec_command",
    "truncate_output",
]
