"""Approval policy and command classification for tool calls."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum

APPLY_PATCH_COMMANDS: frozenset[str] = frozenset({"apply_patch", "applypatch"})

# Commands that only inspect the workspace.
READ_ONLY_COMMANDS: frozenset[str] = frozenset(
    {"cat", "cd", "echo", "find", "grep", "head", "ls", "pwd", "rg", "tail", "wc", "which"}
)


class ApprovalPolicy(str, Enum):
    SUGGEST = "suggest"
    AUTO_EDIT = "auto-edit"
    FULL_AUTO = "full-auto"

    @classmethod
    def parse(cls, value: str | ApprovalPolicy) -> ApprovalPolicy:
        if isinstance(value, ApprovalPolicy):
            return value
        normalized = value.strip().lower().replace("_", "-")
        return cls(normalized)


class CommandKind(str, Enum):
    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    DENY = "deny"
    EXPLAIN = "explain"


@dataclass(slots=True)
class ApplyPatchCommand:
    """Patch descriptor handed to the confirmation callback."""

    patch: str


@dataclass(slots=True)
class CommandConfirmation:
    review: ReviewDecision
    custom_deny_message: str | None = None
    apply_patch: ApplyPatchCommand | None = None


def is_apply_patch(command: list[str]) -> bool:
    return len(command) >= 2 and command[0] in APPLY_PATCH_COMMANDS


def classify_command(command: list[str]) -> CommandKind:
    if not command:
        return CommandKind.EXECUTE
    if is_apply_patch(command):
        return CommandKind.WRITE
    program = os.path.basename(command[0])
    if program in READ_ONLY_COMMANDS:
        return CommandKind.READ
    return CommandKind.EXECUTE


def requires_confirmation(kind: CommandKind, policy: ApprovalPolicy) -> bool:
    if policy is ApprovalPolicy.FULL_AUTO:
        return False
    if policy is ApprovalPolicy.AUTO_EDIT:
        return kind is not CommandKind.WRITE
    return True


__all__ = [
    "APPLY_PATCH_COMMANDS",
    "ApplyPatchCommand",
    "ApprovalPolicy",
    "CommandConfirmation",
    "CommandKind",
    "ReviewDecision",
    "classify_command",
    "is_apply_patch",
    "requires_confirmation",
]
