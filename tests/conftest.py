"""Pytest configuration and fixtures."""

import asyncio
import hashlib
from collections.abc import Callable, Sequence

import pytest
from fastapi.testclient import TestClient

from codeguardian.config.settings import ReviewOptions, settings
from codeguardian.exceptions import InvalidRequest
from codeguardian.main import app
from codeguardian.models.github_types import (
    ExistingComment,
    PullRequestContext,
    SummaryComment,
)
from codeguardian.models.outputs import ReviewComment
from codeguardian.models.review_state import IncrementalReviewState
from codeguardian.services.completer import ModelTiers
from codeguardian.utils.comment_tracker import SUMMARY_MARKER, embed_marker

BOT_LOGIN = "codeguardian[bot]"


@pytest.fixture
def client() -> TestClient:
    """Return a FastAPI TestClient."""
    return TestClient(app)


@pytest.fixture
def webhook_url() -> str:
    """Return the webhook URL for testing."""
    return "/webhook/github"


@pytest.fixture
def webhook_secret() -> str:
    """Return the webhook secret for testing."""
    if not settings.github_webhook_secret:
        pytest.skip("GITHUB_WEBHOOK_SECRET not set")
    return settings.github_webhook_secret


# =============================================================================
# Diff builders
# =============================================================================


def file_section(
    path: str,
    added: Sequence[str],
    *,
    start: int = 1,
    blob: str | None = None,
) -> str:
    """A one-hunk diff section that adds ``added`` lines at ``start``."""
    blob = blob or hashlib.sha1("\n".join(added).encode()).hexdigest()[:7]
    lines = [
        f"diff --git a/{path} b/{path}",
        f"index 1111111..{blob} 100644",
        f"--- a/{path}",
        f"+++ b/{path}",
        f"@@ -{start},0 +{start},{len(added)} @@",
        *(f"+{line}" for line in added),
    ]
    return "\n".join(lines)


def make_diff(*sections: str) -> str:
    return "\n".join(sections) + "\n"


# =============================================================================
# Fakes for the review collaborators
# =============================================================================


class FakeClock:
    """Clock whose sleeps return immediately and are recorded."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)

    def monotonic(self) -> float:
        return self.now


class FakeCompleter:
    """Completer answering from a responder callable (or a fixed reply)."""

    def __init__(
        self,
        responder: Callable[[str], str | BaseException] | None = None,
        reply: str = "LGTM!",
    ) -> None:
        self.responder = responder
        self.reply = reply
        self.calls: list[dict] = []

    async def complete(self, prompt: str, *, max_tokens: int, history=()) -> str:
        self.calls.append(
            {"prompt": prompt, "max_tokens": max_tokens, "history": list(history)}
        )
        await asyncio.sleep(0)
        answer = self.responder(prompt) if self.responder else self.reply
        if isinstance(answer, BaseException):
            raise answer
        return answer


def default_responder(prompt: str) -> str:
    """Answers every prompt kind the pipelines send."""
    if "## Diff of `" in prompt:
        path = prompt.split("## Diff of `", 1)[1].split("`", 1)[0]
        return f"Changes {path}.\n[TRIAGE]: NEEDS_REVIEW"
    if "## Per-file summaries" in prompt:
        return "This pull request adds a few helpers."
    if "## Summary of changes\n" in prompt:
        return "- New Feature: Added helpers"
    if "CHANGES TO REVIEW" in prompt:
        path = prompt.split("## Summary of changes in `", 1)[1].split("`", 1)[0]
        return f"1:\nCheck the first line of {path}.\n---"
    return "LGTM!"


class FakeDiffSource:
    def __init__(
        self,
        diffs: dict[str, str] | None = None,
        incremental: dict[tuple[str, str], str] | None = None,
        contents: dict[str, str] | None = None,
        ancestry: bool = True,
    ) -> None:
        self.diffs = diffs or {}
        self.incremental = incremental or {}
        self.contents = contents or {}
        self.ancestry = ancestry
        self.diff_requests: list[str] = []
        self.incremental_requests: list[tuple[str, str]] = []
        self.ancestry_checks: list[tuple[str, str]] = []

    async def fetch_diff(self, context: PullRequestContext) -> str:
        self.diff_requests.append(context.head_sha)
        return self.diffs[context.head_sha]

    async def fetch_incremental_diff(
        self, context: PullRequestContext, since_sha: str
    ) -> str:
        key = (since_sha, context.head_sha)
        self.incremental_requests.append(key)
        return self.incremental[key]

    async def fetch_file_content(self, path: str, revision: str) -> str | None:
        return self.contents.get(path)

    async def is_ancestor(self, old_sha: str, new_sha: str) -> bool:
        self.ancestry_checks.append((old_sha, new_sha))
        return self.ancestry


class FakePublisher:
    """In-memory pull request: review comments, one summary comment, replies."""

    def __init__(self, bot_login: str = BOT_LOGIN) -> None:
        self.bot_login = bot_login
        self.reviews: list[tuple[str, list[ReviewComment]]] = []
        self.existing: list[ExistingComment] = []
        self.summary_body: str | None = None
        self.summary_history: list[str] = []
        self.summary_posts = 0
        self.fail_summary = False
        self.replies: list[tuple[int, str]] = []
        self.fail_paths: set[str] = set()
        self._next_id = 100

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    async def post_review_comment(self, commit_id: str, comment: ReviewComment) -> int:
        await self.post_review_comments(commit_id, [comment])
        return self.existing[-1].comment_id

    async def post_review_comments(
        self, commit_id: str, comments: Sequence[ReviewComment]
    ) -> int:
        if any(c.path in self.fail_paths for c in comments):
            raise InvalidRequest(f"cannot comment on {comments[0].path}")
        self.reviews.append((commit_id, list(comments)))
        for comment in comments:
            self.existing.append(
                ExistingComment(
                    comment_id=self._new_id(),
                    path=comment.path,
                    position=comment.position,
                    body=embed_marker(comment),
                    author=self.bot_login,
                )
            )
        return len(comments)

    @property
    def posted_comments(self) -> list[ReviewComment]:
        return [c for _, comments in self.reviews for c in comments]

    async def find_summary_comment(self) -> SummaryComment | None:
        if self.summary_body is None:
            return None
        return SummaryComment(comment_id=1, body=self.summary_body)

    async def post_summary_comment(self, body: str) -> int:
        if self.fail_summary:
            raise InvalidRequest("summary comment is locked")
        if SUMMARY_MARKER not in body:
            body = f"{SUMMARY_MARKER}\n{body}"
        self.summary_body = body
        self.summary_history.append(body)
        self.summary_posts += 1
        return 1

    async def list_existing_comments(self) -> list[ExistingComment]:
        return list(self.existing)

    async def get_review_comment(self, comment_id: int) -> ExistingComment:
        for comment in self.existing:
            if comment.comment_id == comment_id:
                return comment
        raise InvalidRequest(f"comment {comment_id} not found")

    async def reply_to_comment(self, comment_id: int, body: str) -> int:
        self.replies.append((comment_id, body))
        return self._new_id()


class FakeStateStore:
    writes_summary = False

    def __init__(self, state: IncrementalReviewState | None = None) -> None:
        self.state = state or IncrementalReviewState()
        self.loads = 0
        self.saves = 0

    async def load(self) -> IncrementalReviewState:
        self.loads += 1
        return self.state

    async def save(
        self, state: IncrementalReviewState, summary_body: str | None = None
    ) -> None:
        self.saves += 1
        self.state = state


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def fake_state_store() -> FakeStateStore:
    return FakeStateStore()


@pytest.fixture
def fake_tiers() -> ModelTiers:
    return ModelTiers(
        light=FakeCompleter(default_responder), heavy=FakeCompleter(default_responder)
    )


@pytest.fixture
def review_options() -> ReviewOptions:
    return ReviewOptions(model_concurrency=2, platform_concurrency=2, model_retries=3)


@pytest.fixture
def pr_context() -> PullRequestContext:
    return PullRequestContext(
        repo_full_name="acme/widgets",
        pr_number=7,
        base_sha="b" * 40,
        head_sha="1" * 40,
        commit_ids=("1" * 40,),
        title="Add helpers",
        description="Adds helper functions.",
    )
