"""Persistence backends for incremental review state."""

import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from codeguardian.models.review_state import IncrementalReviewState, ReviewStateRecord
from codeguardian.services.interfaces import CommentPublisher
from codeguardian.utils.comment_state import (
    parse_state_from_comment,
    serialize_state_to_comment,
    strip_state_from_comment,
)
from codeguardian.utils.comment_tracker import SUMMARY_MARKER

logger = logging.getLogger(__name__)


class CommentStateStore:
    """Keeps the state as a hidden block inside the bot's summary comment."""

    writes_summary = True

    def __init__(self, publisher: CommentPublisher) -> None:
        self.publisher = publisher

    async def load(self) -> IncrementalReviewState:
        summary = await self.publisher.find_summary_comment()
        if summary is None:
            return IncrementalReviewState()
        state = parse_state_from_comment(summary.body)
        if state is None:
            logger.info(
                f"Summary comment {summary.comment_id} carries no usable state"
            )
            return IncrementalReviewState()
        return state

    async def save(
        self, state: IncrementalReviewState, summary_body: str | None = None
    ) -> None:
        """
        Write the state, and the new summary when given, in one comment edit.

        Without ``summary_body`` the visible part of the current summary is kept.
        """
        if summary_body is None:
            summary = await self.publisher.find_summary_comment()
            summary_body = strip_state_from_comment(summary.body) if summary else SUMMARY_MARKER
        else:
            summary_body = strip_state_from_comment(summary_body)
        await self.publisher.post_summary_comment(
            summary_body + serialize_state_to_comment(state)
        )
        logger.info(f"Saved review state at {(state.head_sha or '')[:7]} in summary comment")


class DatabaseStateStore:
    """Keeps the state in the ``review_states`` table."""

    writes_summary = False

    def __init__(
        self,
        session_factory: Callable[[], Session],
        repo_full_name: str,
        pr_number: int,
    ) -> None:
        self.session_factory = session_factory
        self.repo_full_name = repo_full_name
        self.pr_number = pr_number

    def _query(self, db: Session) -> ReviewStateRecord | None:
        return (
            db.query(ReviewStateRecord)
            .filter(
                ReviewStateRecord.repo_full_name == self.repo_full_name,
                ReviewStateRecord.pr_number == self.pr_number,
            )
            .first()
        )

    async def load(self) -> IncrementalReviewState:
        db = self.session_factory()
        try:
            record = self._query(db)
            return record.to_state() if record else IncrementalReviewState()
        finally:
            db.close()

    async def save(
        self, state: IncrementalReviewState, summary_body: str | None = None
    ) -> None:
        # The summary is posted by the caller; only the state is stored here
        review_key = f"{self.repo_full_name}#{self.pr_number}"
        db = self.session_factory()
        try:
            if record := self._query(db):
                record.apply_state(state)
                logger.info(
                    f"Updated ReviewState for {review_key}: {(state.head_sha or '')[:7]}"
                )
            else:
                record = ReviewStateRecord(
                    repo_full_name=self.repo_full_name, pr_number=self.pr_number
                )
                record.apply_state(state)
                db.add(record)
                logger.info(
                    f"Created ReviewState for {review_key}: {(state.head_sha or '')[:7]}"
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
