"""Unified diff application for editFile.

Hunks are applied in order. Each hunk's context and removed lines must match
the current content exactly; a hunk may be found at an offset from its
declared line number (as `patch` does), but never before the previous hunk.
"""

import re
from dataclasses import dataclass, field

from taskpilot.core.errors import PatchApplyError

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_NO_NEWLINE = "\\ No newline at end of file"


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[tuple[str, str]] = field(default_factory=list)

    @property
    def old_lines(self) -> list[str]:
        return [text for op, text in self.lines if op in (" ", "-")]

    @property
    def new_lines(self) -> list[str]:
        return [text for op, text in self.lines if op in (" ", "+")]


def parse_patch(patch: str) -> tuple[list[Hunk], bool | None]:
    """Parse hunks from a unified diff.

    Returns the hunks and the trailing-newline state of the new file when the
    patch says so explicitly (None otherwise).
    """
    hunks: list[Hunk] = []
    eof_newline: bool | None = None
    lines = patch.splitlines()
    i = 0
    while i < len(lines):
        match = _HUNK_HEADER.match(lines[i])
        if not match:
            i += 1
            continue
        old_start, old_count, new_start, new_count = match.groups()
        hunk = Hunk(
            old_start=int(old_start),
            old_count=int(old_count) if old_count is not None else 1,
            new_start=int(new_start),
            new_count=int(new_count) if new_count is not None else 1,
        )
        i += 1
        old_seen = new_seen = 0
        while i < len(lines) and (old_seen < hunk.old_count or new_seen < hunk.new_count):
            line = lines[i]
            if line.startswith(_NO_NEWLINE[:2]):
                prev_op = hunk.lines[-1][0] if hunk.lines else " "
                eof_newline = prev_op == "-"
                i += 1
                continue
            # Editors often strip the single space of empty context lines
            op, text = (line[0], line[1:]) if line else (" ", "")
            if op not in (" ", "-", "+"):
                raise PatchApplyError(f"Malformed hunk line {i + 1}: {line!r}")
            hunk.lines.append((op, text))
            if op in (" ", "-"):
                old_seen += 1
            if op in (" ", "+"):
                new_seen += 1
            i += 1
        if old_seen != hunk.old_count or new_seen != hunk.new_count:
            raise PatchApplyError(
                f"Hunk at line {hunk.old_start} is truncated: expected "
                f"-{hunk.old_count} +{hunk.new_count}, found -{old_seen} +{new_seen}"
            )
        while i < len(lines) and lines[i].startswith(_NO_NEWLINE[:2]):
            prev_op = hunk.lines[-1][0] if hunk.lines else " "
            eof_newline = prev_op == "-"
            i += 1
        hunks.append(hunk)

    if not hunks:
        raise PatchApplyError("Patch contains no hunks")
    return hunks, eof_newline


def _find_block(content: list[str], block: list[str], expected: int, floor: int) -> int | None:
    """Find block nearest to expected, at or after floor."""
    if not block:
        return max(floor, min(expected, len(content)))
    limit = len(content) - len(block)
    if limit < floor:
        return None
    # Declared line numbers past either end still search the whole window
    expected = max(floor, min(expected, limit))
    for distance in range(0, len(content) + 1):
        for pos in (expected - distance, expected + distance):
            if floor <= pos <= limit and content[pos : pos + len(block)] == block:
                return pos
        if expected - distance < floor and expected + distance > limit:
            break
    return None


def apply_patch(original: str, patch: str) -> str:
    """Apply a unified diff to original text.

    Raises:
        PatchApplyError: If the patch is malformed or a hunk does not match
    """
    hunks, eof_newline = parse_patch(patch)
    content = original.splitlines()
    trailing_newline = original.endswith("\n") or not original

    offset = 0
    floor = 0
    for number, hunk in enumerate(hunks, 1):
        old_block = hunk.old_lines
        if hunk.old_count == 0:
            expected = hunk.old_start + offset
        else:
            expected = hunk.old_start - 1 + offset
        pos = _find_block(content, old_block, expected, floor)
        if pos is None:
            raise PatchApplyError(
                f"Hunk #{number} (line {hunk.old_start}) does not match the file content"
            )
        new_block = hunk.new_lines
        content[pos : pos + len(old_block)] = new_block
        offset += len(new_block) - len(old_block) + (pos - expected)
        floor = pos + len(new_block)

    if eof_newline is not None:
        trailing_newline = eof_newline
    if not content:
        return ""
    return "\n".join(content) + ("\n" if trailing_newline else "")
