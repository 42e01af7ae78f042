"""Output models for review and summarization results."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from codeguardian.models.diff import SkipReason


class ReviewComment(BaseModel):
    """A single line-anchored review comment.

    ``position`` is diff-relative (see ``DiffLine.position``), not an
    absolute file line. ``provenance`` is the chunk id it came from and is
    used to avoid posting the same comment twice.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    position: int
    body: str
    provenance: str
    line: int | None = None
    side: str = "RIGHT"


class ParseWarning(BaseModel):
    """Model output that could not be turned into a comment."""

    provenance: str
    message: str
    raw: str = ""


class Triage(str, Enum):
    NEEDS_REVIEW = "NEEDS_REVIEW"
    APPROVED = "APPROVED"


class FileSummary(BaseModel):
    path: str
    summary: str
    triage: Triage = Triage.NEEDS_REVIEW


class PullRequestSummary(BaseModel):
    summary: str
    release_notes: str | None = None


class FileFailure(BaseModel):
    path: str
    stage: str
    error: str


class RunStatus(str, Enum):
    SUCCESS = "success"
    SUCCESS_WITH_WARNINGS = "success_with_warnings"
    SKIPPED = "skipped"
    FAILED = "failed"


class ReviewRunResult(BaseModel):
    """Everything one review run produced or decided.

    Contains the comments, summaries and per-file decisions, so callers can
    report partial success without digging through logs.
    """

    status: RunStatus = RunStatus.SUCCESS
    reviewed_files: list[str] = Field(default_factory=list)
    skipped_files: dict[str, SkipReason] = Field(default_factory=dict)
    failures: list[FileFailure] = Field(default_factory=list)
    comments: list[ReviewComment] = Field(default_factory=list)
    posted_comments: int = 0
    duplicate_comments: int = 0
    warnings: list[ParseWarning] = Field(default_factory=list)
    file_summaries: list[FileSummary] = Field(default_factory=list)
    summary: PullRequestSummary | None = None
    model_calls: int = 0
    state_conflict: str | None = None
    message: str = ""

    @property
    def total_comments(self) -> int:
        return len(self.comments)

    @property
    def has_errors(self) -> bool:
        return len(self.failures) > 0

    def finalize_status(self) -> "ReviewRunResult":
        """Derive the status from recorded failures."""
        if self.status in (RunStatus.FAILED, RunStatus.SKIPPED):
            return self
        self.status = (
            RunStatus.SUCCESS_WITH_WARNINGS if self.failures else RunStatus.SUCCESS
        )
        return self
