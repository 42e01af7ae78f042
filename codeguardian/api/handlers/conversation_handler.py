import asyncio
import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session

from codeguardian.agents.conversation_agent import ConversationAgent
from codeguardian.config.settings import Settings, settings
from codeguardian.database.db import SessionLocal
from codeguardian.models.conversation import ConversationThread
from codeguardian.services.completer import (
    ModelTiers,
    build_model_tiers,
    classify_model_error,
)
from codeguardian.services.github_client import (
    GitHubCommentPublisher,
    create_github_client,
)
from codeguardian.services.interfaces import CommentPublisher
from codeguardian.services.scheduler import TaskScheduler
from codeguardian.utils.comment_tracker import COMMENT_MARKER_PATTERN, is_bot_comment
from codeguardian.utils.rate_limiter import AsyncioClock

logger = logging.getLogger(__name__)


# === MAIN HANDLER ===


async def handle_conversation_reply(
    payload: dict[str, Any],
    session_factory: Callable[[], Session] | None = None,
    app_settings: Settings | None = None,
) -> dict[str, str]:
    """
    Answer a developer's reply under one of the bot's review comments.

    === BEHAVIOR ===
    1. Ignore anything but newly created replies from non-bot users
    2. Connect to GitHub and load the root comment of the thread
    3. Delegate to reply_in_thread (bot-thread check, model call, persistence)
    """
    session_factory = session_factory or SessionLocal
    app_settings = app_settings or settings

    action = payload.get("action")
    comment = payload.get("comment", {})
    repository = payload.get("repository", {})
    pull_request = payload.get("pull_request", {})

    repo_full_name = repository.get("full_name")
    pr_number = pull_request.get("number")
    comment_id = comment.get("id")
    in_reply_to_id = comment.get("in_reply_to_id")
    comment_user = comment.get("user", {})

    logger.info(
        f"Processing comment {comment_id} on PR #{pr_number} in {repo_full_name}"
    )

    if action != "created":
        logger.info(f"Ignoring {action} event (only process 'created')")
        return {"message": f"Ignored non-created event: {action}", "status": "skipped"}

    if in_reply_to_id is None:
        logger.info("Comment is not a reply, skipping")
        return {"message": "Not a reply to bot", "status": "skipped"}

    user_login = comment_user.get("login")
    user_type = comment_user.get("type")
    if user_login == app_settings.bot_login or user_type == "Bot":
        logger.info(
            f"Bot replied to itself (user={user_login}, type={user_type}), preventing loop"
        )
        return {"message": "Bot self-reply ignored", "status": "skipped"}

    github_client = create_github_client(app_settings)
    try:
        repo = await asyncio.to_thread(github_client.get_repo, repo_full_name)
        pr = await asyncio.to_thread(repo.get_pull, pr_number)
        publisher = GitHubCommentPublisher(repo, pr, bot_login=app_settings.bot_login)
        return await reply_in_thread(
            repo_full_name=repo_full_name,
            pr_number=pr_number,
            comment=comment,
            publisher=publisher,
            tiers=build_model_tiers(app_settings),
            session_factory=session_factory,
            app_settings=app_settings,
        )
    finally:
        github_client.close()


async def reply_in_thread(
    repo_full_name: str,
    pr_number: int,
    comment: dict[str, Any],
    publisher: CommentPublisher,
    tiers: ModelTiers,
    session_factory: Callable[[], Session],
    app_settings: Settings,
    scheduler: TaskScheduler | None = None,
) -> dict[str, str]:
    """
    Reply to ``comment`` within its thread and persist the conversation.

    Only threads started by the bot are answered, unless the developer
    mentions the bot by name. The thread is keyed by the root comment id.
    Nothing is written to the database unless the reply was posted.
    """
    root_id: int = comment["in_reply_to_id"]
    comment_id = comment.get("id")
    comment_body = comment.get("body", "")

    root = await publisher.get_review_comment(root_id)
    mentioned = f"@{app_settings.bot_name}".lower() in comment_body.lower()
    if not is_bot_comment(root, app_settings.bot_login) and not mentioned:
        logger.info(
            f"Original comment by {root.author}, not bot ({app_settings.bot_login}). Skipping."
        )
        return {
            "message": f"Not replying to non-bot comment by {root.author}",
            "status": "skipped",
        }

    options = app_settings.review_options()
    scheduler = scheduler or TaskScheduler.from_options(
        options, clock=AsyncioClock(), model_classify=classify_model_error
    )
    agent = ConversationAgent(
        tiers,
        scheduler,
        language=options.language,
        response_token_limit=options.response_token_limit,
    )

    db = session_factory()
    try:
        thread = (
            db.query(ConversationThread)
            .filter(ConversationThread.comment_id == root_id)
            .first()
        )
        if thread:
            logger.info(f"Loaded existing thread {thread.id}")
        else:
            thread = ConversationThread(
                repo_full_name=repo_full_name,
                pr_number=pr_number,
                comment_id=root_id,
                status="active",
                original_file_path=root.path or comment.get("path"),
                original_diff_hunk=root.diff_hunk or comment.get("diff_hunk", ""),
                original_suggestion=_strip_marker(root.body),
                thread_messages=[],
                token_budget_remaining=app_settings.conversation_token_budget,
            )
            db.add(thread)
            logger.info(f"Created new thread for comment {root_id}")

        logger.info(f"Invoking conversation agent for comment {comment_id}")
        reply_text, new_state = await agent.reply(
            root_id, comment_body, thread.to_state(), message_comment_id=comment_id
        )

        await publisher.reply_to_comment(root_id, reply_text)

        thread.sync_from_state(new_state)
        db.commit()
        logger.info(f"Updated conversation thread {thread.id}")
        return {"message": "Reply posted successfully", "status": "success"}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# === HELPER FUNCTIONS ===


def _strip_marker(body: str) -> str:
    return COMMENT_MARKER_PATTERN.sub("", body).strip()
