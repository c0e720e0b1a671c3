"""Parser and applier for the `*** Begin Patch` envelope used by apply_patch."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

BEGIN_MARKER = "*** Begin Patch"
END_MARKER = "*** End Patch"
ADD_PREFIX = "*** Add File: "
DELETE_PREFIX = "*** Delete File: "
UPDATE_PREFIX = "*** Update File: "
MOVE_PREFIX = "*** Move to: "
END_OF_FILE = "*** End of File"


class PatchError(ValueError):
    """Raised when a patch cannot be parsed or applied."""


@dataclass(slots=True)
class FileChange:
    action: str
    path: str
    lines: list[str] = field(default_factory=list)
    move_to: str | None = None


def parse_patch(text: str) -> list[FileChange]:
    lines = text.strip().splitlines()
    if not lines or lines[0].strip() != BEGIN_MARKER:
        raise PatchError("invalid patch: missing '*** Begin Patch'")
    if lines[-1].strip() != END_MARKER:
        raise PatchError("invalid patch: missing '*** End Patch'")

    changes: list[FileChange] = []
    current: FileChange | None = None
    for line in lines[1:-1]:
        if line.startswith(ADD_PREFIX):
            current = FileChange("add", line[len(ADD_PREFIX):].strip())
            changes.append(current)
        elif line.startswith(DELETE_PREFIX):
            current = FileChange("delete", line[len(DELETE_PREFIX):].strip())
            changes.append(current)
        elif line.startswith(UPDATE_PREFIX):
            current = FileChange("update", line[len(UPDATE_PREFIX):].strip())
            changes.append(current)
        elif line.startswith(MOVE_PREFIX):
            if current is None or current.action != "update" or current.lines:
                raise PatchError(f"unexpected move directive: {line}")
            current.move_to = line[len(MOVE_PREFIX):].strip()
        elif current is None:
            if line.strip():
                raise PatchError(f"unexpected line outside a file section: {line}")
        else:
            current.lines.append(line)
    if not changes:
        raise PatchError("patch contains no file changes")
    return changes


def _parse_hunks(change_lines: list[str]) -> list[list[str]]:
    hunks: list[list[str]] = []
    current: list[str] = []
    for line in change_lines:
        if line.startswith("@@"):
            if current:
                hunks.append(current)
                current = []
            continue
        if line.startswith(END_OF_FILE):
            continue
        if line[:1] in (" ", "+", "-"):
            current.append(line)
        elif line == "":
            current.append(" ")
        else:
            raise PatchError(f"invalid patch line: {line}")
    if current:
        hunks.append(current)
    if not hunks:
        raise PatchError("no changes found in update section")
    return hunks


def _find_sublist(haystack: list[str], needle: list[str], start: int = 0) -> int:
    limit = len(haystack) - len(needle) + 1
    for idx in range(start, limit):
        if haystack[idx : idx + len(needle)] == needle:
            return idx
    # Retry ignoring surrounding whitespace.
    stripped = [line.strip() for line in needle]
    for idx in range(start, limit):
        if [line.strip() for line in haystack[idx : idx + len(needle)]] == stripped:
            return idx
    return -1


def apply_hunks(text_lines: list[str], hunks: list[list[str]]) -> list[str]:
    cursor = 0
    for hunk in hunks:
        before = [line[1:] for line in hunk if line[:1] in (" ", "-")]
        after = [line[1:] for line in hunk if line[:1] in (" ", "+")]
        if not before:
            # Pure additions append to the end of the file.
            text_lines = text_lines + after
            cursor = len(text_lines)
            continue
        start = _find_sublist(text_lines, before, cursor)
        if start < 0:
            start = _find_sublist(text_lines, before)
        if start < 0:
            raise PatchError("patch context not found:\n" + "\n".join(before))
        text_lines = text_lines[:start] + after + text_lines[start + len(before) :]
        cursor = start + len(after)
    return text_lines


def _resolve(root: Path, relative: str) -> Path:
    path = Path(relative)
    return path if path.is_absolute() else root / path


def apply_patch(text: str, workdir: str | Path | None = None) -> list[str]:
    """Apply `text` relative to `workdir` and return the touched paths.

    Every section is validated before any file is written.
    """

    root = Path(workdir) if workdir else Path.cwd()
    changes = parse_patch(text)
    writes: list[tuple[Path, str | None]] = []
    touched: list[str] = []
    for change in changes:
        target = _resolve(root, change.path)
        if change.action == "add":
            if target.exists():
                raise PatchError(f"file already exists: {change.path}")
            content: list[str] = []
            for line in change.lines:
                if line.startswith(END_OF_FILE):
                    continue
                if not line.startswith("+"):
                    raise PatchError(f"invalid add line: {line}")
                content.append(line[1:])
            writes.append((target, "\n".join(content) + ("\n" if content else "")))
        elif change.action == "delete":
            if not target.exists():
                raise PatchError(f"file not found: {change.path}")
            writes.append((target, None))
        else:
            if not target.exists():
                raise PatchError(f"file not found: {change.path}")
            try:
                original = target.read_text(encoding="utf-8")
            except UnicodeDecodeError as exc:
                raise PatchError(f"file is not valid UTF-8: {change.path}") from exc
            updated_lines = apply_hunks(original.splitlines(), _parse_hunks(change.lines))
            updated = "\n".join(updated_lines)
            if original.endswith("\n") or not original:
                updated += "\n"
            if change.move_to:
                writes.append((_resolve(root, change.move_to), updated))
                writes.append((target, None))
            else:
                writes.append((target, updated))
        touched.append(change.move_to or change.path)

    for path, content in writes:
        if content is None:
            path.unlink(missing_ok=True)
            logger.debug("Deleted %s", path)
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
            logger.debug("Wrote %s", path)
    return touched


__all__ = ["FileChange", "PatchError", "apply_hunks", "apply_patch", "parse_patch"]
