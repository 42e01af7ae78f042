"""Data models for codeguardian."""

from .conversation import ConversationState, ConversationThread
from .diff import FileDiff, Hunk
from .github_types import ExistingComment, PullRequestContext
from .outputs import ReviewComment, ReviewRunResult, RunStatus
from .review_state import IncrementalReviewState, ReviewStateRecord

__all__ = [
    "ConversationState",
    "ConversationThread",
    "ExistingComment",
    "FileDiff",
    "Hunk",
    "IncrementalReviewState",
    "PullRequestContext",
    "ReviewComment",
    "ReviewRunResult",
    "ReviewStateRecord",
    "RunStatus",
]
