"""Conversation state for review comment threads and its SQLAlchemy model."""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict
from sqlalchemy import JSON, BigInteger, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    text: str
    comment_id: int | None = None


class HunkContext(BaseModel):
    """The code and comment a thread is about; replayed on every reply."""

    model_config = ConfigDict(frozen=True)

    path: str
    diff_hunk: str = ""
    original_comment: str = ""


class ConversationState(BaseModel):
    """
    Append-only message log of one review comment thread.

    Grows monotonically: messages are only ever appended, never pruned.
    """

    model_config = ConfigDict(frozen=True)

    thread_id: int
    hunk_context: HunkContext
    messages: tuple[ChatMessage, ...] = ()
    token_budget_remaining: int = 24000

    def append(self, *messages: ChatMessage, tokens_used: int = 0) -> "ConversationState":
        return self.model_copy(
            update={
                "messages": self.messages + messages,
                "token_budget_remaining": self.token_budget_remaining - tokens_used,
            }
        )

    @property
    def history(self) -> list[tuple[str, str]]:
        return [(m.role, m.text) for m in self.messages]


class ConversationThread(Base):
    """
    Tracks multi-turn conversation threads on GitHub PR comments.

    Each thread represents a discussion between the bot and developers
    on a specific inline review comment.
    """

    __tablename__ = "conversation_threads"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # GitHub identifiers for tracking
    repo_full_name: Mapped[str] = mapped_column(
        String(255), nullable=False, index=True, comment="e.g., 'owner/repo'"
    )
    pr_number: Mapped[int] = mapped_column(
        Integer, nullable=False, index=True, comment="Pull request number"
    )
    comment_id: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
        index=True,
        comment="GitHub comment ID that started the thread (the thread id)",
    )

    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="active",
        comment="Status: 'active', 'resolved'",
    )

    # Structure: [{"role": "bot"|"developer", "content": str, "timestamp": str, "comment_id": int}, ...]
    thread_messages: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=lambda: [],
        comment="Array of message objects in chronological order",
    )
    token_budget_remaining: Mapped[int] = mapped_column(
        Integer, nullable=False, default=24000
    )

    # Original context replayed on every reply
    original_file_path: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="File path for inline comments"
    )
    original_diff_hunk: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Diff hunk the comment is anchored to"
    )
    original_suggestion: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Bot's original suggestion/comment"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        comment="Thread creation timestamp",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        comment="Last message timestamp",
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ConversationThread(id={self.id}, "
            f"repo={self.repo_full_name}, "
            f"pr={self.pr_number}, "
            f"comment={self.comment_id}, "
            f"messages={len(self.thread_messages or [])})>"
        )

    def add_message(
        self, role: str, content: str, comment_id: int | None = None
    ) -> None:
        """
        Add a new message to the conversation thread.

        Args:
            role: Either 'bot' or 'developer'
            content: Message content
            comment_id: GitHub comment ID (optional for internal tracking)
        """
        if self.thread_messages is None:
            self.thread_messages = []

        message: dict[str, Any] = {
            "role": role,
            "content": content,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        if comment_id is not None:
            message["comment_id"] = comment_id

        # Re-assign list to ensure SQLAlchemy detects the change
        # (In-place append on JSON types is not always tracked)
        messages = list(self.thread_messages)
        messages.append(message)
        self.thread_messages = messages

        self.updated_at = datetime.now(timezone.utc)

    def to_state(self) -> ConversationState:
        """Load the thread as a ConversationState (bot -> assistant, developer -> user)."""
        messages = tuple(
            ChatMessage(
                role="assistant" if msg["role"] == "bot" else "user",
                text=msg["content"],
                comment_id=msg.get("comment_id"),
            )
            for msg in (self.thread_messages or [])
        )
        return ConversationState(
            thread_id=self.comment_id,
            hunk_context=HunkContext(
                path=self.original_file_path or "",
                diff_hunk=self.original_diff_hunk or "",
                original_comment=self.original_suggestion or "",
            ),
            messages=messages,
            token_budget_remaining=self.token_budget_remaining,
        )

    def sync_from_state(self, state: ConversationState) -> None:
        """Append messages the thread does not have yet; never rewrites history."""
        known = len(self.thread_messages or [])
        for message in state.messages[known:]:
            self.add_message(
                "bot" if message.role == "assistant" else "developer",
                message.text,
                comment_id=message.comment_id,
            )
        self.token_budget_remaining = state.token_budget_remaining
