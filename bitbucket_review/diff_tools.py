"""Unified-diff text helpers: file stats, per-file extraction and filters."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

FILE_HEADER_PREFIX = "diff --git"
HUNK_HEADER_PREFIX = "@@"
NEW_FILE_MARKER = "new file mode"
DELETED_FILE_MARKER = "deleted file mode"
FILE_HEADER_PATTERN = re.compile(r"^diff --git a/(?P<old_path>.+?) b/(?P<new_path>.+)$")
DEFAULT_CHARS_PER_TOKEN = 4.0
NO_CHANGES_MESSAGE = "No changes found for file: {file_path}"


class ChangeStatus(StrEnum):
    """Per-file change classification."""

    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    RENAMED = "renamed"


@dataclass(frozen=True, slots=True)
class FileChangeStat:
    """Change summary for one file of a diff."""

    old_path: str | None
    new_path: str | None
    status: ChangeStatus
    lines_added: int
    lines_removed: int

    @property
    def path(self) -> str:
        return self.new_path or self.old_path or "unknown"

    @property
    def total_changes(self) -> int:
        return self.lines_added + self.lines_removed


def parse_file_header(line: str) -> tuple[str, str] | None:
    """Return (old_path, new_path) from a `diff --git` header line."""
    line = line.rstrip("\r")
    match = FILE_HEADER_PATTERN.match(line)
    if match is not None:
        return match.group("old_path"), match.group("new_path")
    if not line.startswith(FILE_HEADER_PREFIX):
        return None
    parts = line[len(FILE_HEADER_PREFIX) :].split()
    if len(parts) >= 2:
        return parts[0], parts[-1]
    if parts:
        return parts[0], parts[0]
    return None


def _is_added_line(line: str) -> bool:
    return line.startswith("+") and not line.startswith("+++")


def _is_removed_line(line: str) -> bool:
    return line.startswith("-") and not line.startswith("---")


def parse_diff_file_stats(diff_text: str) -> tuple[FileChangeStat, ...]:
    """Derive per-file change stats from raw unified-diff text.

    One record is produced per `diff --git` header, in order of appearance.
    Only header lines and the first character of content lines are inspected;
    hunk offsets are not modelled.
    """
    stats: list[FileChangeStat] = []
    in_file = False
    old_path: str | None = None
    new_path: str | None = None
    status = ChangeStatus.MODIFIED
    added = 0
    removed = 0

    def flush() -> None:
        stats.append(
            FileChangeStat(
                old_path=old_path,
                new_path=new_path,
                status=status,
                lines_added=added,
                lines_removed=removed,
            )
        )

    for line in diff_text.split("\n"):
        if line.startswith(FILE_HEADER_PREFIX):
            if in_file:
                flush()
            in_file = True
            header_paths = parse_file_header(line)
            old_path, new_path = header_paths if header_paths is not None else (None, None)
            status = ChangeStatus.MODIFIED if old_path == new_path else ChangeStatus.RENAMED
            added = 0
            removed = 0
            continue

        if not in_file:
            continue

        if _is_added_line(line):
            added += 1
        elif _is_removed_line(line):
            removed += 1
        elif line.startswith(NEW_FILE_MARKER):
            status = ChangeStatus.ADDED
            old_path = None
        elif line.startswith(DELETED_FILE_MARKER):
            status = ChangeStatus.REMOVED
            new_path = None

    if in_file:
        flush()
    return tuple(stats)


def _normalize_path(path: str) -> str:
    return path.strip().strip("/")


def _paths_match(header_path: str, target: str) -> bool:
    """Lenient path comparison tolerating prefix differences."""
    candidate = _normalize_path(header_path)
    if not candidate or not target:
        return False
    return (
        candidate == target
        or candidate.endswith(target)
        or target.endswith(candidate)
        or target in candidate
        or candidate in target
    )


def _header_matches_path(line: str, target: str) -> bool:
    header_paths = parse_file_header(line)
    if header_paths is None:
        return False
    return any(_paths_match(path, target) for path in header_paths)


def _header_matches_basename(line: str, basename: str) -> bool:
    return bool(basename) and basename in line


def _collect_blocks(diff_text: str, matches_header: Callable[[str], bool]) -> list[str]:
    blocks: list[str] = []
    current: list[str] = []
    in_target = False

    def flush() -> None:
        while current and current[-1] == "":
            current.pop()
        if current:
            blocks.append("\n".join(current))

    for line in diff_text.split("\n"):
        if line.startswith(FILE_HEADER_PREFIX):
            if in_target:
                flush()
            current = [line]
            in_target = matches_header(line)
        else:
            current.append(line)

    if in_target:
        flush()
    return blocks


def find_file_blocks(diff_text: str, file_path: str) -> list[str]:
    """Return the diff sections that belong to one file, in encounter order."""
    target = _normalize_path(file_path)
    if not target:
        return []
    blocks = _collect_blocks(diff_text, lambda line: _header_matches_path(line, target))
    if blocks:
        return blocks
    basename = target.rsplit("/", maxsplit=1)[-1]
    return _collect_blocks(diff_text, lambda line: _header_matches_basename(line, basename))


def extract_file_diff(diff_text: str, file_path: str) -> str:
    """Isolate one file's sections from a multi-file diff."""
    blocks = find_file_blocks(diff_text, file_path)
    if not blocks:
        return NO_CHANGES_MESSAGE.format(file_path=file_path)
    return "\n\n".join(blocks)


def _is_header_line(line: str) -> bool:
    return (
        line.startswith(FILE_HEADER_PREFIX)
        or line.startswith("---")
        or line.startswith("+++")
        or line.startswith(HUNK_HEADER_PREFIX)
    )


def suppress_whitespace_changes(diff_text: str) -> str:
    """Drop added/removed lines whose content is blank."""
    kept: list[str] = []
    for line in diff_text.split("\n"):
        if _is_header_line(line):
            kept.append(line)
            continue
        if line[:1] in {"+", "-"} and not line[1:].strip():
            continue
        kept.append(line)
    return "\n".join(kept)


def trim_context_lines(diff_text: str, context_lines: int) -> str:
    """Keep at most `context_lines` unchanged lines after each hunk start or change."""
    kept: list[str] = []
    in_hunk = False
    context_count = 0

    for line in diff_text.split("\n"):
        if line.startswith(HUNK_HEADER_PREFIX):
            in_hunk = True
            context_count = 0
            kept.append(line)
        elif line.startswith(FILE_HEADER_PREFIX):
            in_hunk = False
            kept.append(line)
        elif not in_hunk or line.startswith("---") or line.startswith("+++"):
            kept.append(line)
        elif line[:1] in {"+", "-"}:
            kept.append(line)
            context_count = 0
        elif line.startswith("\\"):
            kept.append(line)
        elif context_count < context_lines:
            kept.append(line)
            context_count += 1

    return "\n".join(kept)


def apply_diff_filters(
    diff_text: str,
    *,
    ignore_whitespace: bool = False,
    context_lines: int | None = None,
) -> str:
    """Run the opt-in post-filters: whitespace suppression, then context trimming."""
    filtered = diff_text
    if ignore_whitespace:
        filtered = suppress_whitespace_changes(filtered)
    if context_lines is not None and context_lines >= 0:
        filtered = trim_context_lines(filtered, context_lines)
    return filtered


def estimate_tokens(text: str, *, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN) -> float:
    """Approximate token count from character length."""
    return len(text) / chars_per_token
