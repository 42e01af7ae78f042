"""GitHub-backed diff source and comment publisher.

PyGithub is synchronous, so every call is pushed onto a worker thread with
``asyncio.to_thread``; raw diffs are fetched with httpx using GitHub's diff
media type because PyGithub does not expose them.
"""

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

import httpx
from github import (
    Auth,
    BadCredentialsException,
    Github,
    GithubException,
    RateLimitExceededException,
    UnknownObjectException,
)
from github.PullRequest import PullRequest
from github.Repository import Repository

from codeguardian.config.settings import Settings
from codeguardian.exceptions import (
    AuthenticationFailed,
    CallError,
    CallTimeout,
    InvalidRequest,
    ProviderError,
    RateLimited,
)
from codeguardian.models.github_types import (
    ExistingComment,
    PullRequestContext,
    SummaryComment,
)
from codeguardian.models.outputs import ReviewComment
from codeguardian.utils.comment_tracker import SUMMARY_MARKER, embed_marker
from codeguardian.utils.rate_limiter import classify_exception

logger = logging.getLogger(__name__)

DIFF_MEDIA_TYPE = "application/vnd.github.v3.diff"


def _retry_after(headers: Any) -> float | None:
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _classify_status(status: int, message: str, exc: BaseException, headers: Any) -> CallError:
    if status == 429 or (status == 403 and "rate limit" in message.lower()):
        return RateLimited(message, cause=exc, retry_after=_retry_after(headers))
    if status in (401, 403):
        return AuthenticationFailed(message, cause=exc)
    if status >= 500:
        return ProviderError(message, cause=exc)
    return InvalidRequest(message, cause=exc)


def classify_github_error(exc: BaseException) -> CallError:
    """Map PyGithub and httpx failures onto the call error taxonomy."""
    if isinstance(exc, CallError):
        return exc
    if isinstance(exc, RateLimitExceededException):
        return RateLimited(str(exc), cause=exc, retry_after=_retry_after(exc.headers))
    if isinstance(exc, BadCredentialsException):
        return AuthenticationFailed(str(exc), cause=exc)
    if isinstance(exc, GithubException):
        return _classify_status(exc.status, str(exc), exc, exc.headers)
    if isinstance(exc, httpx.TimeoutException):
        return CallTimeout(str(exc), cause=exc)
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return _classify_status(response.status_code, str(exc), exc, response.headers)
    if isinstance(exc, httpx.TransportError):
        return ProviderError(str(exc), cause=exc)
    return classify_exception(exc)


def create_github_client(settings: Settings) -> Github:
    if not settings.github_token:
        raise AuthenticationFailed("GH_TOKEN is not configured")
    return Github(
        auth=Auth.Token(settings.github_token),
        base_url=settings.github_api_url,
        per_page=100,
    )


def build_pull_request_context(repo_full_name: str, pr: PullRequest) -> PullRequestContext:
    """Snapshot the pull request fields a review run needs."""
    return PullRequestContext(
        repo_full_name=repo_full_name,
        pr_number=pr.number,
        base_sha=pr.base.sha,
        head_sha=pr.head.sha,
        commit_ids=tuple(commit.sha for commit in pr.get_commits()),
        title=pr.title or "",
        description=pr.body or "",
    )


class GitHubDiffSource:
    """``DiffSource`` for one repository on GitHub."""

    def __init__(
        self,
        repo: Repository,
        http_client: httpx.AsyncClient,
        token: str | None,
        api_url: str = "https://api.github.com",
    ) -> None:
        self.repo = repo
        self.http_client = http_client
        self.api_url = api_url.rstrip("/")
        self._headers = {"Accept": DIFF_MEDIA_TYPE}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"

    async def _get_diff(self, url: str) -> str:
        response = await self.http_client.get(url, headers=self._headers)
        response.raise_for_status()
        return response.text

    async def fetch_diff(self, context: PullRequestContext) -> str:
        url = f"{self.api_url}/repos/{context.repo_full_name}/pulls/{context.pr_number}"
        diff = await self._get_diff(url)
        logger.info(
            f"Fetched diff for {context.review_key} ({len(diff)} bytes, "
            f"{context.base_sha[:7]}...{context.head_sha[:7]})"
        )
        return diff

    async def fetch_incremental_diff(
        self, context: PullRequestContext, since_sha: str
    ) -> str:
        url = (
            f"{self.api_url}/repos/{context.repo_full_name}/compare/"
            f"{since_sha}...{context.head_sha}"
        )
        diff = await self._get_diff(url)
        logger.info(
            f"Fetched incremental diff {since_sha[:7]}...{context.head_sha[:7]} "
            f"for {context.review_key} ({len(diff)} bytes)"
        )
        return diff

    async def fetch_file_content(self, path: str, revision: str) -> str | None:
        try:
            content = await asyncio.to_thread(self.repo.get_contents, path, ref=revision)
        except UnknownObjectException:
            logger.debug(f"{path} does not exist at {revision[:7]}")
            return None

        # Handle directory case
        if isinstance(content, list):
            return None

        try:
            return str(content.decoded_content.decode("utf-8"))
        except UnicodeDecodeError:
            logger.debug(f"{path} is a binary file, no content context")
            return None

    async def is_ancestor(self, old_sha: str, new_sha: str) -> bool:
        """True when ``new_sha`` contains ``old_sha`` in its history."""
        try:
            comparison = await asyncio.to_thread(self.repo.compare, old_sha, new_sha)
        except GithubException as e:
            # Force-pushed commits may be unreachable or garbage collected
            if e.status in (404, 422):
                logger.info(f"Commit {old_sha[:7]} is unknown to GitHub: {e.status}")
                return False
            raise
        return comparison.status in ("ahead", "identical")


class GitHubCommentPublisher:
    """``CommentPublisher`` for one pull request on GitHub."""

    def __init__(self, repo: Repository, pr: PullRequest, bot_login: str = "") -> None:
        self.repo = repo
        self.pr = pr
        self.bot_login = bot_login

    async def post_review_comment(self, commit_id: str, comment: ReviewComment) -> int:
        review = await self._create_review(commit_id, [comment])
        return int(review.id)

    async def post_review_comments(
        self, commit_id: str, comments: Sequence[ReviewComment]
    ) -> int:
        if not comments:
            return 0
        await self._create_review(commit_id, comments)
        logger.info(
            f"Posted {len(comments)} review comment(s) on {comments[0].path} "
            f"for PR #{self.pr.number}"
        )
        return len(comments)

    async def _create_review(self, commit_id: str, comments: Sequence[ReviewComment]) -> Any:
        commit = await asyncio.to_thread(self.repo.get_commit, commit_id)
        payload = [
            {"path": c.path, "position": c.position, "body": embed_marker(c)}
            for c in comments
        ]
        return await asyncio.to_thread(
            self.pr.create_review,
            commit=commit,
            body="",
            event="COMMENT",
            comments=payload,
        )

    async def find_summary_comment(self) -> SummaryComment | None:
        issue_comments = await asyncio.to_thread(lambda: list(self.pr.get_issue_comments()))
        found: SummaryComment | None = None
        for comment in issue_comments:
            if SUMMARY_MARKER in (comment.body or ""):
                found = SummaryComment(comment_id=comment.id, body=comment.body)
        return found

    async def post_summary_comment(self, body: str) -> int:
        if SUMMARY_MARKER not in body:
            body = f"{SUMMARY_MARKER}\n{body}"

        existing = await self.find_summary_comment()
        if existing is not None:
            issue_comment = await asyncio.to_thread(
                self.pr.get_issue_comment, existing.comment_id
            )
            await asyncio.to_thread(issue_comment.edit, body)
            logger.info(f"Updated summary comment {existing.comment_id} on PR #{self.pr.number}")
            return existing.comment_id

        created = await asyncio.to_thread(self.pr.create_issue_comment, body)
        logger.info(f"Created summary comment {created.id} on PR #{self.pr.number}")
        return int(created.id)

    async def list_existing_comments(self) -> list[ExistingComment]:
        review_comments = await asyncio.to_thread(
            lambda: list(self.pr.get_review_comments())
        )
        return [self._to_existing(c) for c in review_comments]

    async def get_review_comment(self, comment_id: int) -> ExistingComment:
        comment = await asyncio.to_thread(self.pr.get_review_comment, comment_id)
        return self._to_existing(comment)

    async def reply_to_comment(self, comment_id: int, body: str) -> int:
        reply = await asyncio.to_thread(
            self.pr.create_review_comment_reply, comment_id, body
        )
        logger.info(f"Replied to comment {comment_id} on PR #{self.pr.number}")
        return int(reply.id)

    @staticmethod
    def _to_existing(comment: Any) -> ExistingComment:
        return ExistingComment(
            comment_id=comment.id,
            path=comment.path or "",
            position=comment.position,
            body=comment.body or "",
            author=comment.user.login if comment.user else "",
            in_reply_to_id=getattr(comment, "in_reply_to_id", None),
            diff_hunk=comment.diff_hunk or "",
        )
