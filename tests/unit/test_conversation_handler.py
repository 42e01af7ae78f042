import unittest
from unittest.mock import AsyncMock, patch

import pytest
from conftest import BOT_LOGIN, FakeClock, FakeCompleter, FakePublisher
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from codeguardian.api.handlers.conversation_handler import (
    handle_conversation_reply,
    reply_in_thread,
)
from codeguardian.config.settings import Settings
from codeguardian.exceptions import InvalidRequest, TerminalCallError
from codeguardian.models.conversation import Base, ConversationThread
from codeguardian.models.github_types import ExistingComment
from codeguardian.models.outputs import ReviewComment
from codeguardian.services.completer import ModelTiers
from codeguardian.services.scheduler import TaskScheduler
from codeguardian.utils.comment_tracker import embed_marker

ROOT_ID = 500
DIFF_HUNK = "@@ -1,0 +1,1 @@\n+data = open(path).read()"


def _root_comment(author: str = BOT_LOGIN, marker: bool = True) -> ExistingComment:
    review_comment = ReviewComment(
        path="src/io.py", position=1, body="Close the file.", provenance="src/io.py:1,1#0"
    )
    return ExistingComment(
        comment_id=ROOT_ID,
        path="src/io.py",
        position=1,
        body=embed_marker(review_comment) if marker else "Close the file.",
        author=author,
        diff_hunk=DIFF_HUNK,
    )


def _reply(comment_id: int, body: str) -> dict:
    return {
        "id": comment_id,
        "body": body,
        "user": {"login": "developer", "type": "User"},
        "in_reply_to_id": ROOT_ID,
        "path": "src/io.py",
    }


@pytest.mark.asyncio
class TestReplyInThread(unittest.IsolatedAsyncioTestCase):
    """Tests for replying in a review comment thread and persisting it."""

    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(bind=self.engine)
        self.session_factory = sessionmaker(
            autocommit=False, autoflush=False, bind=self.engine
        )
        self.settings = Settings(bot_login=BOT_LOGIN, bot_name="codeguardian")
        self.publisher = FakePublisher()
        self.heavy = FakeCompleter(reply="Wrap it in a `with` block.")
        self.tiers = ModelTiers(light=FakeCompleter(), heavy=self.heavy)

    def tearDown(self):
        self.engine.dispose()

    async def _reply_in_thread(self, comment: dict) -> dict[str, str]:
        return await reply_in_thread(
            repo_full_name="acme/widgets",
            pr_number=7,
            comment=comment,
            publisher=self.publisher,
            tiers=self.tiers,
            session_factory=self.session_factory,
            app_settings=self.settings,
            scheduler=TaskScheduler.from_options(
                self.settings.review_options(), clock=FakeClock()
            ),
        )

    def _threads(self) -> list[ConversationThread]:
        db = self.session_factory()
        try:
            return db.query(ConversationThread).all()
        finally:
            db.close()

    async def test_reply_is_posted_and_thread_created(self):
        self.publisher.existing.append(_root_comment())

        result = await self._reply_in_thread(_reply(601, "Why?"))

        self.assertEqual(result["status"], "success")
        self.assertEqual(self.publisher.replies, [(ROOT_ID, "Wrap it in a `with` block.")])
        (thread,) = self._threads()
        self.assertEqual(thread.comment_id, ROOT_ID)
        self.assertEqual(thread.original_suggestion, "Close the file.")
        self.assertEqual(thread.original_diff_hunk, DIFF_HUNK)
        self.assertEqual(
            [(m["role"], m["content"]) for m in thread.thread_messages],
            [("developer", "Why?"), ("bot", "Wrap it in a `with` block.")],
        )
        self.assertEqual(thread.thread_messages[0]["comment_id"], 601)
        self.assertLess(
            thread.token_budget_remaining, self.settings.conversation_token_budget
        )

    async def test_follow_up_replays_the_thread(self):
        self.publisher.existing.append(_root_comment())

        await self._reply_in_thread(_reply(601, "Why?"))
        await self._reply_in_thread(_reply(602, "And for sockets?"))

        (thread,) = self._threads()
        self.assertEqual(len(thread.thread_messages), 4)
        history = self.heavy.calls[1]["history"]
        self.assertIn(("user", "Why?"), history)
        self.assertIn(("assistant", "Wrap it in a `with` block."), history)

    async def test_human_thread_is_not_answered(self):
        self.publisher.existing.append(_root_comment(author="alice", marker=False))

        result = await self._reply_in_thread(_reply(601, "I agree with Alice"))

        self.assertEqual(result["status"], "skipped")
        self.assertIn("alice", result["message"])
        self.assertEqual(self.publisher.replies, [])
        self.assertEqual(self.heavy.calls, [])
        self.assertEqual(self._threads(), [])

    async def test_mentioning_the_bot_gets_an_answer(self):
        self.publisher.existing.append(_root_comment(author="alice", marker=False))

        result = await self._reply_in_thread(_reply(601, "@CodeGuardian what do you think?"))

        self.assertEqual(result["status"], "success")
        self.assertEqual(len(self.publisher.replies), 1)

    async def test_failed_model_call_writes_nothing(self):
        self.publisher.existing.append(_root_comment())
        self.heavy.responder = lambda prompt: InvalidRequest("bad request")

        with self.assertRaises(TerminalCallError):
            await self._reply_in_thread(_reply(601, "Why?"))

        self.assertEqual(self.publisher.replies, [])
        self.assertEqual(self._threads(), [])


@pytest.mark.asyncio
class TestHandleConversationReply(unittest.IsolatedAsyncioTestCase):
    """Tests for webhook payload filtering before any GitHub call."""

    def setUp(self):
        self.settings = Settings(bot_login=BOT_LOGIN)
        self.payload = {
            "action": "created",
            "comment": _reply(601, "Why?"),
            "repository": {"full_name": "acme/widgets"},
            "pull_request": {"number": 7},
        }

    async def test_ignores_edited_comments(self):
        self.payload["action"] = "edited"

        result = await handle_conversation_reply(self.payload, app_settings=self.settings)

        self.assertEqual(result["status"], "skipped")

    async def test_ignores_top_level_comments(self):
        self.payload["comment"]["in_reply_to_id"] = None

        result = await handle_conversation_reply(self.payload, app_settings=self.settings)

        self.assertEqual(result["message"], "Not a reply to bot")

    async def test_ignores_bot_self_replies(self):
        self.payload["comment"]["user"] = {"login": BOT_LOGIN, "type": "Bot"}

        result = await handle_conversation_reply(self.payload, app_settings=self.settings)

        self.assertEqual(result["message"], "Bot self-reply ignored")

    @patch("codeguardian.api.handlers.conversation_handler.build_model_tiers")
    @patch("codeguardian.api.handlers.conversation_handler.reply_in_thread", new_callable=AsyncMock)
    @patch("codeguardian.api.handlers.conversation_handler.create_github_client")
    async def test_delegates_and_closes_the_client(self, mock_client, mock_reply, mock_tiers):
        mock_reply.return_value = {"message": "Reply posted successfully", "status": "success"}

        result = await handle_conversation_reply(self.payload, app_settings=self.settings)

        self.assertEqual(result["status"], "success")
        mock_client.return_value.get_repo.assert_called_once_with("acme/widgets")
        self.assertEqual(mock_reply.call_args.kwargs["pr_number"], 7)
        mock_client.return_value.close.assert_called_once()
