"""Incremental review state and its SQLAlchemy persistence model."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from codeguardian.models.conversation import Base


class IncrementalReviewState(BaseModel):
    """
    What has already been reviewed on a pull request.

    Read once when a run starts and replaced once when it ends; a run never
    mutates it in place.
    """

    model_config = ConfigDict(frozen=True)

    head_sha: str | None = None
    file_digests: dict[str, str] = Field(default_factory=dict)
    file_summaries: dict[str, str] = Field(default_factory=dict)
    reviewed_commit_ids: tuple[str, ...] = ()
    version: str = "1.0"

    @property
    def is_empty(self) -> bool:
        return self.head_sha is None and not self.file_digests


class ReviewStateRecord(Base):
    """
    Tracks the review state for each pull request.

    Used to implement incremental reviews - only reviewing files changed
    since the last review instead of re-reviewing the entire PR on each commit.
    """

    __tablename__ = "review_states"
    __table_args__ = (
        UniqueConstraint("repo_full_name", "pr_number", name="uq_review_state_pr"),
    )

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # GitHub identifiers
    repo_full_name: Mapped[str] = mapped_column(
        String(255), nullable=False, index=True, comment="e.g., 'owner/repo'"
    )
    pr_number: Mapped[int] = mapped_column(
        Integer, nullable=False, index=True, comment="Pull request number"
    )

    # Review state tracking
    last_reviewed_commit_sha: Mapped[str | None] = mapped_column(
        String(40),
        nullable=True,
        comment="SHA of the last head commit that was reviewed (40 char Git SHA)",
    )
    file_digests: Mapped[dict[str, str]] = mapped_column(
        JSON,
        nullable=False,
        default=lambda: {},
        comment="Path -> digest of the file content when it was last reviewed",
    )
    file_summaries: Mapped[dict[str, str]] = mapped_column(
        JSON,
        nullable=False,
        default=lambda: {},
        comment="Path -> cached per-file summary",
    )
    reviewed_commit_ids: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=lambda: [], comment="Commits already reviewed"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        comment="When review tracking started for this PR",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        comment="Last time this PR was reviewed",
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        sha = (self.last_reviewed_commit_sha or "")[:7]
        return (
            f"<ReviewStateRecord(id={self.id}, "
            f"repo={self.repo_full_name}, "
            f"pr={self.pr_number}, "
            f"last_sha={sha}, "
            f"files={len(self.file_digests or {})})>"
        )

    def to_state(self) -> IncrementalReviewState:
        return IncrementalReviewState(
            head_sha=self.last_reviewed_commit_sha,
            file_digests=dict(self.file_digests or {}),
            file_summaries=dict(self.file_summaries or {}),
            reviewed_commit_ids=tuple(self.reviewed_commit_ids or ()),
        )

    def apply_state(self, state: IncrementalReviewState) -> None:
        """
        Overwrite the stored state after a run.

        Args:
            state: The new state produced by the run
        """
        # Re-assign containers so SQLAlchemy detects the change on JSON columns
        self.last_reviewed_commit_sha = state.head_sha
        self.file_digests = dict(state.file_digests)
        self.file_summaries = dict(state.file_summaries)
        self.reviewed_commit_ids = list(state.reviewed_commit_ids)
        self.updated_at = datetime.now(timezone.utc)

    def as_dict(self) -> dict[str, Any]:
        return self.to_state().model_dump()
