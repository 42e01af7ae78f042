"""Capabilities the review core depends on.

The pipelines only talk to these protocols; the GitHub and OpenAI backed
implementations live in ``github_client`` and ``completer`` and tests swap in
in-memory fakes.
"""

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from codeguardian.models.github_types import (
    ExistingComment,
    PullRequestContext,
    SummaryComment,
)
from codeguardian.models.outputs import ReviewComment
from codeguardian.models.review_state import IncrementalReviewState


@runtime_checkable
class DiffSource(Protocol):
    """Read access to the change under review."""

    async def fetch_diff(self, context: PullRequestContext) -> str:
        """Raw unified diff of ``base_sha...head_sha``."""
        ...

    async def fetch_incremental_diff(
        self, context: PullRequestContext, since_sha: str
    ) -> str:
        """Raw unified diff of ``since_sha...head_sha``."""
        ...

    async def fetch_file_content(self, path: str, revision: str) -> str | None:
        """Full file content at ``revision``, or None when it does not exist."""
        ...

    async def is_ancestor(self, old_sha: str, new_sha: str) -> bool: ...


@runtime_checkable
class CommentPublisher(Protocol):
    """Write access to the pull request conversation."""

    async def post_review_comment(self, commit_id: str, comment: ReviewComment) -> int:
        """Publish one comment anchored at ``comment.position``; returns its id."""
        ...

    async def post_review_comments(
        self, commit_id: str, comments: Sequence[ReviewComment]
    ) -> int:
        """Publish line comments as one review; returns how many were posted."""
        ...

    async def post_summary_comment(self, body: str) -> int:
        """Create or update the bot's summary comment; returns its id."""
        ...

    async def find_summary_comment(self) -> SummaryComment | None: ...

    async def list_existing_comments(self) -> list[ExistingComment]: ...

    async def reply_to_comment(self, comment_id: int, body: str) -> int: ...


@runtime_checkable
class StateStore(Protocol):
    """Where incremental review state lives between runs.

    Stores with ``writes_summary`` set keep the state inside the summary
    comment; the run then hands them the rendered summary so both land in
    a single write.
    """

    writes_summary: bool

    async def load(self) -> IncrementalReviewState: ...

    async def save(
        self, state: IncrementalReviewState, summary_body: str | None = None
    ) -> None: ...
