"""Typed representation of a parsed unified diff."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class LineKind(str, Enum):
    """Kind of a line inside a hunk, valued by its diff prefix."""

    CONTEXT = " "
    ADDED = "+"
    REMOVED = "-"


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"


class SkipReason(str, Enum):
    """Why a changed file is not sent for review.

    A skip is a deliberate decision, not an error.
    """

    FILTERED = "filtered"
    NO_CHANGES = "no_changes"
    MAX_FILES = "max_files"
    UNCHANGED_SINCE_LAST_REVIEW = "unchanged_since_last_review"
    TRIVIAL = "trivial"
    REVIEW_DISABLED = "review_disabled"


class DiffLine(BaseModel):
    """A single rendered line of a hunk.

    ``position`` is the diff-relative position GitHub anchors comments to:
    the line below a file's first ``@@`` header is position 1 and counting
    continues through later hunk headers.
    """

    model_config = ConfigDict(frozen=True)

    kind: LineKind
    text: str
    position: int
    source_line: int | None = None
    target_line: int | None = None

    def render(self) -> str:
        return f"{self.kind.value}{self.text}"


class Hunk(BaseModel):
    """A contiguous diff region of one file."""

    model_config = ConfigDict(frozen=True)

    source_start: int
    source_length: int
    target_start: int
    target_length: int
    section: str = ""
    lines: tuple[DiffLine, ...] = ()

    @property
    def header(self) -> str:
        header = (
            f"@@ -{self.source_start},{self.source_length} "
            f"+{self.target_start},{self.target_length} @@"
        )
        return f"{header} {self.section}" if self.section else header

    @property
    def changed_lines(self) -> list[DiffLine]:
        return [line for line in self.lines if line.kind is not LineKind.CONTEXT]

    @property
    def target_range(self) -> range:
        """Target lines spanned by the hunk (at least one line wide)."""
        return range(self.target_start, self.target_start + max(self.target_length, 1))

    def render(self) -> str:
        return "\n".join([self.header, *(line.render() for line in self.lines)])


class Chunk(BaseModel):
    """A token-bounded slice of a hunk.

    Keeps the hunk header and each line's diff position so it stays
    addressable back to absolute diff coordinates on its own.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    hunk_header: str
    hunk_target_start: int
    hunk_target_length: int
    index: int
    lines: tuple[DiffLine, ...]

    @property
    def chunk_id(self) -> str:
        return (
            f"{self.path}:{self.hunk_target_start},{self.hunk_target_length}"
            f"#{self.index}"
        )

    @property
    def line_count(self) -> int:
        return len(self.lines)

    @property
    def has_changes(self) -> bool:
        return any(line.kind is not LineKind.CONTEXT for line in self.lines)

    def line_at(self, relative_line: int) -> DiffLine | None:
        """Return the 1-based ``relative_line`` of this chunk, if it exists."""
        if 1 <= relative_line <= len(self.lines):
            return self.lines[relative_line - 1]
        return None

    def render_numbered(self) -> str:
        """Render the chunk with 1-based relative line numbers for prompting."""
        width = len(str(len(self.lines)))
        numbered = [
            f"{index:>{width}}: {line.render()}"
            for index, line in enumerate(self.lines, start=1)
        ]
        return "\n".join([self.hunk_header, *numbered])


class FileDiff(BaseModel):
    """One changed file of a pull request."""

    model_config = ConfigDict(frozen=True)

    path: str
    old_path: str | None = None
    change_kind: ChangeKind = ChangeKind.MODIFIED
    hunks: tuple[Hunk, ...] = ()
    digest: str = ""
    is_binary: bool = False

    @property
    def lines_added(self) -> int:
        return sum(
            1 for hunk in self.hunks for line in hunk.lines if line.kind is LineKind.ADDED
        )

    @property
    def lines_removed(self) -> int:
        return sum(
            1
            for hunk in self.hunks
            for line in hunk.lines
            if line.kind is LineKind.REMOVED
        )

    def render(self) -> str:
        return "\n".join(hunk.render() for hunk in self.hunks)

    def with_hunks(self, hunks: tuple[Hunk, ...]) -> "FileDiff":
        return self.model_copy(update={"hunks": hunks})


class FileParseFailure(BaseModel):
    path: str
    error: str


class FilteredFile(BaseModel):
    path: str
    reason: SkipReason


class ParsedDiff(BaseModel):
    """Result of parsing, filtering and capping a raw pull request diff."""

    files: list[FileDiff] = Field(default_factory=list)
    skipped_by_limit: list[FileDiff] = Field(default_factory=list)
    filtered_out: list[FilteredFile] = Field(default_factory=list)
    failures: list[FileParseFailure] = Field(default_factory=list)

    @property
    def truncated(self) -> bool:
        """True when the max-files ceiling left some files unreviewed."""
        return bool(self.skipped_by_limit)

    @property
    def all_paths(self) -> list[str]:
        return [f.path for f in self.files] + [f.path for f in self.skipped_by_limit]
