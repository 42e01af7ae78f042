"""Webhook event handlers for GitHub events."""

from .conversation_handler import handle_conversation_reply
from .pr_review_handler import handle_pr_review

__all__ = ["handle_pr_review", "handle_conversation_reply"]
