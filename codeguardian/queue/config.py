"""Redis-backed review queues.

Jobs are keyed by pull request and head revision. A repeated delivery for
the same push returns the job already waiting, and a newer push cancels the
job still waiting for an older revision of the same pull request.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from redis import Redis
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job, JobStatus

from codeguardian.config.settings import ReviewOptions, Settings, settings
from codeguardian.models.github_types import PullRequestEvent

logger = logging.getLogger(__name__)

# RQ's Retry.max is the number of retries in addition to the first attempt.
MAX_ATTEMPTS = 3
RETRY_STRATEGY = Retry(max=MAX_ATTEMPTS - 1, interval=[30, 90, 180])

LATEST_JOB_TTL_SECONDS = 7 * 24 * 3600

WAITING_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.DEFERRED, JobStatus.SCHEDULED})
ACTIVE_STATUSES = WAITING_STATUSES | {JobStatus.STARTED}


class Lane(str, Enum):
    """Queue lanes, in the order workers drain them."""

    HIGH = "high"
    DEFAULT = "default"
    LOW = "low"


def lane_for(event: PullRequestEvent, options: ReviewOptions) -> Lane:
    """
    Pick the lane for a review job.

    First reviews of a pull request go to the high lane and follow-up pushes
    to the default lane. Summary-only runs and pull requests over the file
    limit go to the low lane.
    """
    if options.disable_review:
        return Lane.LOW
    if (
        not options.unlimited_files
        and event.changed_files is not None
        and event.changed_files > options.max_files
    ):
        return Lane.LOW
    if event.action in ("opened", "reopened", "ready_for_review"):
        return Lane.HIGH
    return Lane.DEFAULT


def review_job_id(repo_name: str, pr_number: int, head_sha: str) -> str:
    safe_repo = repo_name.replace(":", "-").replace("/", "__")
    return f"review-{safe_repo}-pr-{pr_number}-{head_sha[:12]}"


def _latest_job_key(repo_name: str, pr_number: int) -> str:
    return f"codeguardian:latest-review:{repo_name}#{pr_number}"


def run_review_job(
    repo_name: str, pr_number: int, head_sha: str, action: str = "opened"
) -> dict[str, object]:
    """RQ entrypoint: review ``head_sha`` of the pull request."""
    # Deferred import keeps queue config lightweight for non-worker processes
    from codeguardian.api.handlers.pr_review_handler import handle_pr_review

    result = asyncio.run(
        handle_pr_review(repo_name, pr_number, action, head_sha=head_sha)
    )
    logger.info(
        f"Review job for {repo_name}#{pr_number} at {head_sha[:7]} "
        f"ended with {result.status.value}"
    )
    return {
        "status": result.status.value,
        "message": result.message,
        "reviewed_files": result.reviewed_files,
        "posted_comments": result.posted_comments,
        "failures": len(result.failures),
        "model_calls": result.model_calls,
    }


class ReviewQueues:
    """One RQ queue per lane on a shared Redis connection."""

    def __init__(
        self, connection: Redis, job_timeout: int, lanes: dict[Lane, Queue] | None = None
    ) -> None:
        self.connection = connection
        self.job_timeout = job_timeout
        self.lanes = lanes or {
            lane: Queue(f"reviews:{lane.value}", connection=connection) for lane in Lane
        }

    @classmethod
    def from_settings(cls, app_settings: Settings) -> ReviewQueues:
        if app_settings.redis_url:
            connection = Redis.from_url(app_settings.redis_url, socket_timeout=5)
        else:
            connection = Redis(
                host=app_settings.redis_host,
                port=app_settings.redis_port,
                password=app_settings.redis_password,
                socket_timeout=5,
            )
        return cls(connection, app_settings.worker_job_timeout)

    def ordered(self) -> list[Queue]:
        return [self.lanes[lane] for lane in Lane]

    def counts(self) -> dict[str, int]:
        return {lane.value: queue.count for lane, queue in self.lanes.items()}

    def fetch(self, job_id: str) -> Job | None:
        try:
            return Job.fetch(job_id, connection=self.connection)
        except NoSuchJobError:
            return None

    def latest_job(self, repo_name: str, pr_number: int) -> Job | None:
        """The job most recently queued for a pull request, if Redis still has it."""
        job_id = self.connection.get(_latest_job_key(repo_name, pr_number))
        if job_id is None:
            return None
        if isinstance(job_id, bytes):
            job_id = job_id.decode()
        return self.fetch(job_id)

    def enqueue(self, event: PullRequestEvent, lane: Lane) -> Job:
        """
        Queue a review of the pushed revision on ``lane``.

        Returns the existing job when this revision is already queued or
        running. A job still waiting for an older revision is cancelled.
        """
        job_id = review_job_id(event.repo_full_name, event.pr_number, event.head_sha)

        existing = self.fetch(job_id)
        if existing is not None:
            existing_status = existing.get_status(refresh=True)
            if existing_status in ACTIVE_STATUSES:
                logger.info(
                    f"Review of {event.review_key} at {event.short_sha} already "
                    f"{existing_status} as {job_id}"
                )
                return existing

        self._supersede(event, job_id)

        queue = self.lanes[lane]
        logger.info(
            f"Queueing review of {event.review_key} at {event.short_sha} "
            f"on {queue.name} (action={event.action})"
        )
        job = queue.enqueue(
            run_review_job,
            event.repo_full_name,
            event.pr_number,
            event.head_sha,
            event.action,
            job_id=job_id,
            retry=RETRY_STRATEGY,
            job_timeout=self.job_timeout,
            description=f"review {event.review_key}@{event.short_sha}",
        )
        self.connection.set(
            _latest_job_key(event.repo_full_name, event.pr_number),
            job_id,
            ex=LATEST_JOB_TTL_SECONDS,
        )
        return job

    def _supersede(self, event: PullRequestEvent, job_id: str) -> None:
        previous = self.latest_job(event.repo_full_name, event.pr_number)
        if previous is None or previous.id == job_id:
            return
        if previous.get_status(refresh=True) in WAITING_STATUSES:
            previous.cancel()
            logger.info(
                f"Cancelled {previous.id}: {event.review_key} moved to {event.short_sha}"
            )


review_queues = ReviewQueues.from_settings(settings)


def enqueue_review(event: PullRequestEvent, lane: Lane) -> Job:
    return review_queues.enqueue(event, lane)
