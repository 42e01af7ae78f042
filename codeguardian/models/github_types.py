"""GitHub-specific type definitions."""

from typing import Any

from pydantic import BaseModel, ConfigDict


class PullRequestContext(BaseModel):
    """Identifies the change under review.

    Immutable for the duration of one review run.
    """

    model_config = ConfigDict(frozen=True)

    repo_full_name: str
    pr_number: int
    base_sha: str
    head_sha: str
    commit_ids: tuple[str, ...] = ()
    title: str = ""
    description: str = ""

    @property
    def review_key(self) -> str:
        return f"{self.repo_full_name}#{self.pr_number}"


class ExistingComment(BaseModel):
    """A review comment already present on the pull request."""

    comment_id: int
    path: str
    position: int | None = None
    body: str
    author: str = ""
    in_reply_to_id: int | None = None
    diff_hunk: str = ""


class SummaryComment(BaseModel):
    """The bot's persistent summary comment on the pull request."""

    comment_id: int
    body: str = ""


class PullRequestEvent(BaseModel):
    """The fields of a ``pull_request`` webhook delivery that decide queueing."""

    model_config = ConfigDict(frozen=True)

    action: str
    repo_full_name: str
    pr_number: int
    head_sha: str = ""
    state: str = "open"
    draft: bool = False
    description: str = ""
    changed_files: int | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PullRequestEvent":
        pull_request = payload.get("pull_request") or {}
        return cls(
            action=payload.get("action") or "",
            repo_full_name=(payload.get("repository") or {}).get("full_name") or "",
            pr_number=pull_request.get("number") or 0,
            head_sha=(pull_request.get("head") or {}).get("sha") or "",
            state=pull_request.get("state") or "open",
            draft=bool(pull_request.get("draft")),
            description=pull_request.get("body") or "",
            changed_files=pull_request.get("changed_files"),
        )

    @property
    def review_key(self) -> str:
        return f"{self.repo_full_name}#{self.pr_number}"

    @property
    def short_sha(self) -> str:
        return self.head_sha[:7]
