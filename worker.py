"""RQ worker entrypoint: drains the review lanes, high before default before low."""

from __future__ import annotations

import logging
import os
import socket
import sys
import uuid

from redis.exceptions import ConnectionError
from rq import Worker
from rq.job import Job

from codeguardian.config.settings import settings
from codeguardian.queue.config import review_queues
from codeguardian.utils.logging import setup_observability

logger = logging.getLogger(__name__)


def worker_name(base: str | None = None) -> str:
    """Platform replica id when there is one, else hostname plus a short uuid."""
    base = base or settings.worker_name
    replica_id = os.getenv("RAILWAY_REPLICA_ID")
    if replica_id:
        return f"{base}-{replica_id}"
    return f"{base}-{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


def log_failed_review(job: Job, exc_type, exc_value, traceback) -> bool:
    """Name the pull request and revision of a failed review job.

    Returns True so RQ goes on to retry or move the job to the failed registry.
    """
    repo_name, pr_number, head_sha = (list(job.args) + [None] * 3)[:3]
    logger.error(
        f"Review job {job.id} for {repo_name}#{pr_number} at {str(head_sha)[:7]} failed "
        f"({job.retries_left or 0} retries left): {exc_value}"
    )
    return True


def start_worker(run: bool = True) -> Worker:
    """Create and optionally start the RQ worker."""
    setup_observability()

    queues = review_queues.ordered()
    name = worker_name()
    logger.info(f"Starting worker '{name}' for queues: {', '.join(q.name for q in queues)}")
    worker = Worker(
        queues,
        connection=review_queues.connection,
        name=name,
        worker_ttl=settings.worker_job_timeout + 60,
        exception_handlers=[log_failed_review],
    )

    if run:
        try:
            worker.work(
                with_scheduler=settings.worker_with_scheduler,
                logging_level=settings.log_level,
            )
        except ConnectionError:
            logger.exception("Worker lost its Redis connection")
            sys.exit(1)
        logger.info(f"Worker '{name}' exited cleanly")

    return worker


if __name__ == "__main__":
    start_worker(run=True)
