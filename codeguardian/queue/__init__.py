"""Queue package for background review processing."""

from .config import Lane, ReviewQueues, enqueue_review, lane_for, review_queues, run_review_job

__all__ = [
    "Lane",
    "ReviewQueues",
    "enqueue_review",
    "lane_for",
    "review_queues",
    "run_review_job",
]
