"""Handlers for specific GitHub webhook event types."""

import logging
from typing import Any

from fastapi import HTTPException, status
from redis.exceptions import ConnectionError as RedisConnectionError

from codeguardian.api.handlers.conversation_handler import handle_conversation_reply
from codeguardian.config.settings import ReviewOptions, Settings, settings
from codeguardian.models.github_types import PullRequestEvent
from codeguardian.queue.config import enqueue_review, lane_for

logger = logging.getLogger(__name__)

REVIEW_ACTIONS = frozenset({"opened", "reopened", "synchronize", "ready_for_review"})


# =============================================================================
# Ping Event
# =============================================================================


def handle_ping_event() -> dict[str, str]:
    """Handle GitHub ping event (webhook setup verification)."""
    logger.info("Received ping event from GitHub")
    return {"message": "pong"}


# =============================================================================
# Pull Request Events
# =============================================================================


def _skip_reason(event: PullRequestEvent, options: ReviewOptions) -> str | None:
    if event.action not in REVIEW_ACTIONS:
        return f"Action {event.action} does not trigger a review"
    if event.state != "open":
        return f"Pull request is {event.state}"
    if event.draft:
        return "Pull request is a draft"
    if not event.head_sha:
        return "Payload has no head revision"
    if options.ignore_keyword and options.ignore_keyword in event.description:
        return "Description contains the ignore keyword"
    return None


def handle_pull_request_event(
    payload: dict[str, Any], app_settings: Settings | None = None
) -> dict[str, str | int]:
    """
    Queue a review of the pushed revision, or say why none is needed.

    Drafts, closed pull requests and descriptions carrying the ignore keyword
    are answered without touching the queue.
    """
    options = (app_settings or settings).review_options()
    event = PullRequestEvent.from_payload(payload)
    logger.info(
        f"Received pull_request {event.action} for {event.review_key} "
        f"at {event.short_sha or 'unknown head'}"
    )

    reason = _skip_reason(event, options)
    if reason is not None:
        logger.info(f"Not queueing {event.review_key}: {reason}")
        return {"message": reason, "status": "skipped"}

    lane = lane_for(event, options)
    try:
        job = enqueue_review(event, lane)
    except RedisConnectionError as exc:
        logger.exception(f"Redis unavailable while queueing {event.review_key}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Queue backend unavailable",
        ) from exc

    return {
        "message": f"Review of {event.review_key} at {event.short_sha} queued",
        "status": "accepted",
        "job_id": job.id,
        "lane": lane.value,
    }


# =============================================================================
# Review Comment Events
# =============================================================================


async def handle_review_comment_event(
    payload: dict[str, Any],
) -> dict[str, str | int]:
    """Handle pull_request_review_comment events (conversation replies)."""
    action = payload.get("action")
    comment = payload.get("comment", {})

    logger.info(f"Received review comment {action} event")

    if action == "created" and comment.get("in_reply_to_id") is not None:
        result: dict[str, Any] = await handle_conversation_reply(payload)
        return result

    logger.info(f"Ignoring review comment {action} event (not a reply)")
    return {"message": f"Review comment {action} ignored"}
