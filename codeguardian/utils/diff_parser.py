"""Unified diff parser.

Parses raw ``git diff`` / GitHub ``.diff`` output into typed ``FileDiff``
objects, then applies path filters and the max-files ceiling.
"""

import hashlib
import logging
import re
from collections.abc import Iterable

from codeguardian.exceptions import ParseError
from codeguardian.models.diff import (
    ChangeKind,
    DiffLine,
    FileDiff,
    FileParseFailure,
    FilteredFile,
    Hunk,
    LineKind,
    ParsedDiff,
    SkipReason,
)
from codeguardian.utils.filters import PathFilter

logger = logging.getLogger(__name__)

FILE_HEADER = re.compile(r"^diff --git a/(.+?) b/(.+)$")
HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@ ?(.*)$")
INDEX_LINE = re.compile(r"^index ([0-9a-fA-F]+)\.\.([0-9a-fA-F]+)")
OLD_FILE = re.compile(r"^--- (.+?)\t?$")
NEW_FILE = re.compile(r"^\+\+\+ (.+?)\t?$")
RENAME_FROM = re.compile(r"^rename from (.+)$")
RENAME_TO = re.compile(r"^rename to (.+)$")
NEW_FILE_MODE = re.compile(r"^new file mode")
DELETED_FILE_MODE = re.compile(r"^deleted file mode")
BINARY_FILE = re.compile(r"^(Binary files .* differ|GIT binary patch)")

DEV_NULL = "/dev/null"
NO_NEWLINE_MARKER = "\\"


def _strip_prefix(name: str) -> str:
    if name.startswith(("a/", "b/")):
        return name[2:]
    return name


def split_file_sections(raw_diff: str) -> list[list[str]]:
    """Split a multi-file diff into one list of lines per file."""
    lines = raw_diff.splitlines()
    has_git_headers = any(line.startswith("diff --git ") for line in lines)

    sections: list[list[str]] = []
    current: list[str] | None = None
    for index, line in enumerate(lines):
        if has_git_headers:
            starts_file = line.startswith("diff --git ")
        else:
            next_line = lines[index + 1] if index + 1 < len(lines) else ""
            starts_file = line.startswith("--- ") and next_line.startswith("+++ ")
        if starts_file:
            current = [line]
            sections.append(current)
        elif current is not None:
            current.append(line)
    return sections


def _section_path(section: list[str]) -> str | None:
    """Best-effort path of a section, read before the full parse."""
    match = FILE_HEADER.match(section[0]) if section else None
    new_name = old_name = None
    for line in section:
        if line.startswith("@@"):
            break
        if new_match := NEW_FILE.match(line):
            new_name = new_match.group(1)
        elif old_match := OLD_FILE.match(line):
            old_name = old_match.group(1)
    if new_name and new_name != DEV_NULL:
        return _strip_prefix(new_name)
    if old_name and old_name != DEV_NULL:
        return _strip_prefix(old_name)
    return match.group(2) if match else None


def compute_digest(path: str, hunks: Iterable[Hunk]) -> str:
    """SHA-256 over the post-change side of a file's hunks."""
    sha = hashlib.sha256(path.encode("utf-8"))
    for hunk in hunks:
        for line in hunk.lines:
            if line.kind is not LineKind.REMOVED:
                sha.update(b"\n")
                sha.update(line.text.encode("utf-8"))
    return f"sha256:{sha.hexdigest()}"


def parse_file_section(section: list[str]) -> FileDiff:
    """Parse one file section of a unified diff.

    Raises:
        ParseError: If the section is malformed
    """
    path = _section_path(section)
    if path is None:
        raise ParseError("Could not determine file path from diff header")

    old_path: str | None = None
    change_kind = ChangeKind.MODIFIED
    is_binary = False
    old_blob = new_blob = None

    index = 0
    while index < len(section) and not section[index].startswith("@@"):
        line = section[index]
        if index_match := INDEX_LINE.match(line):
            old_blob, new_blob = index_match.groups()
        elif NEW_FILE_MODE.match(line):
            change_kind = ChangeKind.ADDED
        elif DELETED_FILE_MODE.match(line):
            change_kind = ChangeKind.REMOVED
        elif BINARY_FILE.match(line):
            is_binary = True
        elif rename_from := RENAME_FROM.match(line):
            change_kind = ChangeKind.RENAMED
            old_path = rename_from.group(1)
        elif RENAME_TO.match(line):
            change_kind = ChangeKind.RENAMED
        elif old_match := OLD_FILE.match(line):
            if old_match.group(1) == DEV_NULL:
                change_kind = ChangeKind.ADDED
        elif new_match := NEW_FILE.match(line):
            if new_match.group(1) == DEV_NULL:
                change_kind = ChangeKind.REMOVED
        index += 1

    hunks: list[Hunk] = []
    position = 0
    while index < len(section):
        line = section[index]
        header = HUNK_HEADER.match(line)
        if header is None:
            if line.strip():
                raise ParseError(f"Unexpected line outside hunk: {line[:80]!r}", path)
            index += 1
            continue

        if hunks:
            # later hunk headers occupy a position of their own
            position += 1
        hunk, index, position = _parse_hunk(section, index, header, position, path)
        if hunks and hunk.target_start < hunks[-1].target_start:
            raise ParseError(
                f"Hunk target start {hunk.target_start} precedes "
                f"{hunks[-1].target_start}",
                path,
            )
        hunks.append(hunk)

    if new_blob and set(new_blob) != {"0"}:
        digest = f"blob:{new_blob}"
    elif change_kind is ChangeKind.REMOVED and old_blob:
        digest = f"removed:{old_blob}"
    else:
        digest = compute_digest(path, hunks)

    return FileDiff(
        path=path,
        old_path=old_path,
        change_kind=change_kind,
        hunks=tuple(hunks),
        digest=digest,
        is_binary=is_binary,
    )


def _parse_hunk(
    section: list[str],
    index: int,
    header: re.Match[str],
    position: int,
    path: str,
) -> tuple[Hunk, int, int]:
    source_start = int(header.group(1))
    source_length = int(header.group(2) or "1")
    target_start = int(header.group(3))
    target_length = int(header.group(4) or "1")
    section_text = header.group(5).strip()

    source_remaining = source_length
    target_remaining = target_length
    source_line = source_start
    target_line = target_start
    lines: list[DiffLine] = []
    index += 1

    while source_remaining > 0 or target_remaining > 0:
        if index >= len(section):
            raise ParseError(
                f"Hunk {header.group(0)!r} ended early "
                f"({source_remaining} source / {target_remaining} target lines missing)",
                path,
            )
        raw = section[index]
        index += 1
        position += 1
        if raw.startswith(NO_NEWLINE_MARKER):
            continue

        prefix, text = (raw[:1], raw[1:]) if raw else (" ", "")
        if prefix == " " and source_remaining > 0 and target_remaining > 0:
            lines.append(
                DiffLine(
                    kind=LineKind.CONTEXT,
                    text=text,
                    position=position,
                    source_line=source_line,
                    target_line=target_line,
                )
            )
            source_line += 1
            target_line += 1
            source_remaining -= 1
            target_remaining -= 1
        elif prefix == "-" and source_remaining > 0:
            lines.append(
                DiffLine(
                    kind=LineKind.REMOVED,
                    text=text,
                    position=position,
                    source_line=source_line,
                )
            )
            source_line += 1
            source_remaining -= 1
        elif prefix == "+" and target_remaining > 0:
            lines.append(
                DiffLine(
                    kind=LineKind.ADDED,
                    text=text,
                    position=position,
                    target_line=target_line,
                )
            )
            target_line += 1
            target_remaining -= 1
        else:
            raise ParseError(
                f"Line {raw[:80]!r} is inconsistent with hunk {header.group(0)!r}",
                path,
            )

    # trailing "\ No newline at end of file" markers still count as positions
    while index < len(section) and section[index].startswith(NO_NEWLINE_MARKER):
        index += 1
        position += 1

    hunk = Hunk(
        source_start=source_start,
        source_length=source_length,
        target_start=target_start,
        target_length=target_length,
        section=section_text,
        lines=tuple(lines),
    )
    return hunk, index, position


def parse_diff(
    raw_diff: str,
    path_filter: PathFilter | Iterable[str] = (),
    max_files: int = 0,
) -> ParsedDiff:
    """Parse a raw pull request diff into reviewable files.

    Files rejected by the path filter are dropped before counting toward
    ``max_files``. Once the ceiling is reached the remaining files are kept
    in ``skipped_by_limit`` so the summary can still mention them.

    Args:
        raw_diff: Unified diff text
        path_filter: A ``PathFilter`` or ordered glob rules
        max_files: Maximum number of files to review, ``<= 0`` for unlimited

    Returns:
        ParsedDiff with files in diff order
    """
    if not isinstance(path_filter, PathFilter):
        path_filter = PathFilter(path_filter)

    result = ParsedDiff()
    for section in split_file_sections(raw_diff):
        path = _section_path(section)
        if path is not None and not path_filter.check(path):
            logger.debug(f"Skipping {path}: excluded by path filters")
            result.filtered_out.append(
                FilteredFile(path=path, reason=SkipReason.FILTERED)
            )
            continue

        try:
            file_diff = parse_file_section(section)
        except ParseError as e:
            failed_path = e.path or path or "<unknown>"
            logger.warning(f"Failed to parse diff for {failed_path}: {e}")
            result.failures.append(FileParseFailure(path=failed_path, error=str(e)))
            continue

        if file_diff.is_binary or not file_diff.hunks:
            result.filtered_out.append(
                FilteredFile(path=file_diff.path, reason=SkipReason.NO_CHANGES)
            )
            continue

        if max_files > 0 and len(result.files) >= max_files:
            result.skipped_by_limit.append(file_diff)
            continue

        result.files.append(file_diff)

    logger.info(
        f"Parsed diff: {len(result.files)} reviewable, "
        f"{len(result.skipped_by_limit)} over limit, "
        f"{len(result.filtered_out)} filtered, {len(result.failures)} failed"
    )
    return result
