"""GitHub webhook receiver and review queue inspection endpoints."""

import hashlib
import hmac
import logging
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Request, status
from rq import Worker
from rq.job import Job, JobStatus

from codeguardian.api.handlers.webhook_event_handlers import (
    handle_ping_event,
    handle_pull_request_event,
    handle_review_comment_event,
)
from codeguardian.config.settings import settings
from codeguardian.queue.config import review_queues

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhook", tags=["webhooks"])


def _describe_job(job: Job) -> dict[str, Any]:
    repo_name, pr_number, head_sha, action = (list(job.args) + [None] * 4)[:4]
    job_status = job.get_status(refresh=True)
    latest = job.latest_result()
    return {
        "job_id": job.id,
        "status": job_status,
        "pull_request": f"{repo_name}#{pr_number}",
        "head_sha": head_sha,
        "action": action,
        "enqueued_at": job.enqueued_at.isoformat() if job.enqueued_at else None,
        "ended_at": job.ended_at.isoformat() if job.ended_at else None,
        "result": latest.return_value if latest and job_status == JobStatus.FINISHED else None,
        "error": latest.exc_string if latest and job_status == JobStatus.FAILED else None,
    }


@router.get("/queue/status")
async def queue_status() -> dict[str, Any]:
    """Depth and job registries of every review lane."""
    lanes = {
        lane.value: {
            "queued": queue.count,
            "started": queue.started_job_registry.count,
            "failed": queue.failed_job_registry.count,
            "finished": queue.finished_job_registry.count,
        }
        for lane, queue in review_queues.lanes.items()
    }
    return {
        "lanes": lanes,
        "queued": sum(lane["queued"] for lane in lanes.values()),
        "active_workers": len(Worker.all(connection=review_queues.connection)),
    }


@router.get("/queue/job/{job_id}")
async def queue_job(job_id: str) -> dict[str, Any]:
    job = review_queues.fetch(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return _describe_job(job)


@router.get("/queue/pull/{owner}/{repo}/{pr_number}")
async def latest_pull_request_job(owner: str, repo: str, pr_number: int) -> dict[str, Any]:
    """The review job most recently queued for a pull request."""
    job = review_queues.latest_job(f"{owner}/{repo}", pr_number)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No review queued for {owner}/{repo}#{pr_number}",
        )
    return _describe_job(job)


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> None:
    """
    Check GitHub's ``X-Hub-Signature-256`` header against the raw body.

    Raises:
        HTTPException: 401 when the signature is missing or wrong, 500 when
            no webhook secret is configured
    """
    if not signature:
        logger.warning("Missing X-Hub-Signature-256 header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Hub-Signature-256 header",
        )
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )

    expected = f"sha256={hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()}"
    if not hmac.compare_digest(expected, signature):
        logger.warning("Invalid webhook signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature",
        )


@router.post("/github")
async def github_webhook(
    request: Request,
    x_github_event: str | None = Header(None, alias="X-GitHub-Event"),
    x_github_delivery: str | None = Header(None, alias="X-GitHub-Delivery"),
    x_hub_signature_256: str | None = Header(None, alias="X-Hub-Signature-256"),
) -> dict[str, str | int]:
    """Verify a delivery and route it by event type."""
    verify_signature(await request.body(), x_hub_signature_256, settings.github_webhook_secret)

    payload: dict[str, Any] = await request.json()
    logger.debug(f"Delivery {x_github_delivery}: {x_github_event}")

    if x_github_event == "ping":
        return handle_ping_event()

    if x_github_event == "pull_request":
        return handle_pull_request_event(payload)

    if x_github_event == "pull_request_review_comment":
        return await handle_review_comment_event(payload)

    logger.info(f"Ignoring event type: {x_github_event}")
    return {"message": f"Event {x_github_event} not supported"}
