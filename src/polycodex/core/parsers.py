"""Parsing of model-issued tool-call arguments."""

from __future__ import annotations

import json
import logging
import shlex
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecInput:
    cmd: list[str]
    workdir: str | None = None
    timeout_ms: int | None = None


def parse_tool_call_arguments(raw: str) -> ExecInput | None:
    """Decode shell tool arguments; return `None` when they are unusable."""

    try:
        data = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        logger.debug("Tool call arguments are not valid JSON: %s", raw)
        return None
    if not isinstance(data, dict):
        return None

    command = data.get("cmd", data.get("command"))
    if isinstance(command, str):
        try:
            command = shlex.split(command)
        except ValueError:
            return None
    if not isinstance(command, list) or not command or not all(isinstance(part, str) for part in command):
        return None

    workdir = data.get("workdir")
    timeout = data.get("timeout", data.get("timeout_ms"))
    timeout_ms: int | None = None
    if isinstance(timeout, (int, float)) and not isinstance(timeout, bool) and timeout > 0:
        timeout_ms = int(timeout)
    return ExecInput(
        cmd=list(command),
        workdir=workdir if isinstance(workdir, str) and workdir else None,
        timeout_ms=timeout_ms,
    )


__all__ = ["ExecInput", "parse_tool_call_arguments"]
