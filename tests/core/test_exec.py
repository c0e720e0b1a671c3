from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from polycodex.core.approvals import (
    ApplyPatchCommand,
    ApprovalPolicy,
    CommandConfirmation,
    CommandKind,
    ReviewDecision,
    classify_command,
    requires_confirmation,
)
from polycodex.core.cancellation import AbortSignal
from polycodex.core.config import PolycodexConfig
from polycodex.core.exec import (
    ABORTED_OUTPUT,
    DENIED_OUTPUT,
    handle_exec_command,
    truncate_output,
)
from polycodex.core.parsers import ExecInput


class Confirmer:
    def __init__(self, review: ReviewDecision = ReviewDecision.APPROVE, message: str | None = None) -> None:
        self.review = review
        self.message = message
        self.seen: list[tuple[list[str], ApplyPatchCommand | None]] = []

    async def __call__(self, command: list[str], patch: ApplyPatchCommand | None) -> CommandConfirmation:
        self.seen.append((command, patch))
        return CommandConfirmation(review=self.review, custom_deny_message=self.message)


def test_classify_and_policy_matrix() -> None:
    assert classify_command(["ls", "-la"]) is CommandKind.READ
    assert classify_command(["/bin/cat", "README.md"]) is CommandKind.READ
    assert classify_command(["apply_patch", "*** Begin Patch"]) is CommandKind.WRITE
    assert classify_command(["pytest"]) is CommandKind.EXECUTE

    assert requires_confirmation(CommandKind.READ, ApprovalPolicy.SUGGEST)
    assert not requires_confirmation(CommandKind.WRITE, ApprovalPolicy.AUTO_EDIT)
    assert requires_confirmation(CommandKind.EXECUTE, ApprovalPolicy.AUTO_EDIT)
    assert not requires_confirmation(CommandKind.EXECUTE, ApprovalPolicy.FULL_AUTO)
    assert ApprovalPolicy.parse("full_auto") is ApprovalPolicy.FULL_AUTO


@pytest.mark.asyncio
async def test_approved_command_runs_and_reports_exit_code(tmp_path: Path) -> None:
    confirm = Confirmer()
    args = ExecInput(cmd=[sys.executable, "-c", "import sys; print('out'); sys.exit(3)"], workdir=str(tmp_path))

    result = await handle_exec_command(args, PolycodexConfig(), ApprovalPolicy.SUGGEST, confirm, AbortSignal())

    assert result.output_text == "out"
    assert result.metadata["exit_code"] == 3
    assert "duration_seconds" in result.metadata
    assert len(confirm.seen) == 1


@pytest.mark.asyncio
async def test_denied_command_carries_user_note() -> None:
    confirm = Confirmer(ReviewDecision.DENY)

    result = await handle_exec_command(
        ExecInput(cmd=["rm", "-rf", "/tmp/nothing"]), PolycodexConfig(), ApprovalPolicy.SUGGEST, confirm, AbortSignal()
    )

    assert result.output_text == DENIED_OUTPUT
    assert result.metadata["exit_code"] == 1
    assert [item.text for item in result.additional_items] == ["No, don't do that. Keep going though."]


@pytest.mark.asyncio
async def test_explain_asks_model_to_justify() -> None:
    confirm = Confirmer(ReviewDecision.EXPLAIN)

    result = await handle_exec_command(
        ExecInput(cmd=["make", "deploy"]), PolycodexConfig(), ApprovalPolicy.SUGGEST, confirm, AbortSignal()
    )

    assert "make deploy" in result.output_text
    assert result.metadata["exit_code"] == 1


@pytest.mark.asyncio
async def test_full_auto_skips_confirmation() -> None:
    confirm = Confirmer(ReviewDecision.DENY)

    result = await handle_exec_command(
        ExecInput(cmd=["echo", "hi"]), PolycodexConfig(), ApprovalPolicy.FULL_AUTO, confirm, AbortSignal()
    )

    assert confirm.seen == []
    assert result.output_text == "hi"
    assert result.metadata["exit_code"] == 0


@pytest.mark.asyncio
async def test_missing_program_and_workdir() -> None:
    policy = ApprovalPolicy.FULL_AUTO
    missing = await handle_exec_command(
        ExecInput(cmd=["definitely-not-a-real-binary-xyz"]), PolycodexConfig(), policy, Confirmer(), AbortSignal()
    )
    assert missing.metadata["exit_code"] == 127

    no_dir = await handle_exec_command(
        ExecInput(cmd=["ls"], workdir="/no/such/dir/for/polycodex"), PolycodexConfig(), policy, Confirmer(), AbortSignal()
    )
    assert no_dir.metadata["exit_code"] == 1
    assert "Working directory not found" in no_dir.output_text


@pytest.mark.asyncio
async def test_timeout_kills_command() -> None:
    args = ExecInput(cmd=[sys.executable, "-c", "import time; time.sleep(5)"], timeout_ms=200)

    result = await handle_exec_command(args, PolycodexConfig(), ApprovalPolicy.FULL_AUTO, Confirmer(), AbortSignal())

    assert result.metadata["exit_code"] == 124
    assert "timed out" in result.output_text


@pytest.mark.asyncio
async def test_abort_stops_running_command() -> None:
    signal = AbortSignal()
    args = ExecInput(cmd=[sys.executable, "-c", "import time; time.sleep(5)"])
    task = asyncio.create_task(
        handle_exec_command(args, PolycodexConfig(), ApprovalPolicy.FULL_AUTO, Confirmer(), signal)
    )
    await asyncio.sleep(0.2)
    signal.abort()

    result = await asyncio.wait_for(task, timeout=2)

    assert result.output_text.endswith(ABORTED_OUTPUT)
    assert result.metadata["exit_code"] == 1


@pytest.mark.asyncio
async def test_abort_during_confirmation_returns_aborted() -> None:
    signal = AbortSignal()

    async def never_answers(command, patch) -> CommandConfirmation:
        await asyncio.Event().wait()
        raise AssertionError("unreachable")

    task = asyncio.create_task(
        handle_exec_command(ExecInput(cmd=["ls"]), PolycodexConfig(), ApprovalPolicy.SUGGEST, never_answers, signal)
    )
    await asyncio.sleep(0.01)
    signal.abort()

    result = await asyncio.wait_for(task, timeout=1)

    assert result.output_text == ABORTED_OUTPUT


@pytest.mark.asyncio
async def test_apply_patch_is_auto_approved_in_auto_edit(tmp_path: Path) -> None:
    (tmp_path / "hello.py").write_text("def hello():\n    return 1\n", encoding="utf-8")
    patch = "\n".join(
        [
            "*** Begin Patch",
            "*** Update File: hello.py",
            "@@ def hello():",
            "-    return 1",
            "+    return 2",
            "*** End Patch",
        ]
    )
    confirm = Confirmer(ReviewDecision.DENY)

    result = await handle_exec_command(
        ExecInput(cmd=["apply_patch", patch], workdir=str(tmp_path)),
        PolycodexConfig(),
        ApprovalPolicy.AUTO_EDIT,
        confirm,
        AbortSignal(),
    )

    assert confirm.seen == []
    assert result.output_text == "Done!"
    assert (tmp_path / "hello.py").read_text(encoding="utf-8") == "def hello():\n    return 2\n"


@pytest.mark.asyncio
async def test_apply_patch_failure_is_reported(tmp_path: Path) -> None:
    patch = "*** Begin Patch\n*** Update File: missing.py\n@@\n-a\n+b\n*** End Patch"

    result = await handle_exec_command(
        ExecInput(cmd=["apply_patch", patch], workdir=str(tmp_path)),
        PolycodexConfig(),
        ApprovalPolicy.FULL_AUTO,
        Confirmer(),
        AbortSignal(),
    )

    assert result.output_text.startswith("apply_patch failed:")
    assert result.metadata["exit_code"] == 1


@pytest.mark.asyncio
async def test_apply_patch_on_binary_file_is_reported(tmp_path: Path) -> None:
    (tmp_path / "bin.txt").write_bytes(b"\xff\xfe old\n")
    patch = "*** Begin Patch\n*** Update File: bin.txt\n@@\n- old\n+ new\n*** End Patch"

    result = await handle_exec_command(
        ExecInput(cmd=["apply_patch", patch], workdir=str(tmp_path)),
        PolycodexConfig(),
        ApprovalPolicy.FULL_AUTO,
        Confirmer(),
        AbortSignal(),
    )

    assert result.output_text.startswith("apply_patch failed:")
    assert "not valid UTF-8" in result.output_text
    assert result.metadata["exit_code"] == 1
    assert (tmp_path / "bin.txt").read_bytes() == b"\xff\xfe old\n"


def test_truncate_output_limits_lines_and_bytes() -> None:
    text = "\n".join(f"line{i}" for i in range(10))

    assert truncate_output(text, max_lines=20, max_bytes=1024) == text
    truncated = truncate_output(text, max_lines=3, max_bytes=1024)
    assert truncated.splitlines()[:3] == ["line0", "line1", "line2"]
    assert "7 more lines truncated" in truncated
    assert "more lines truncated" in truncate_output(text, max_lines=20, max_bytes=12)
