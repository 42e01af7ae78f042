"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from redis.exceptions import RedisError
from rq import Worker

from codeguardian.api import webhooks
from codeguardian.config.settings import settings
from codeguardian.database.db import check_db_connection, init_db
from codeguardian.queue.config import review_queues
from codeguardian.utils.logging import setup_observability

VERSION = "0.1.0"

setup_observability()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the conversation and review-state tables before serving."""
    logger.info(
        f"Starting {settings.bot_name} in {settings.environment} "
        f"(review state in {settings.state_backend})"
    )
    init_db()
    yield
    logger.info(f"Shutting down {settings.bot_name}")


app = FastAPI(
    title="codeguardian",
    description="Incremental pull request reviewer using Pydantic AI and OpenAI",
    version=VERSION,
    lifespan=lifespan,
)

if settings.logfire_token:
    import logfire

    logfire.instrument_fastapi(app)

app.include_router(webhooks.router)


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Configuration, review lanes and workers at a glance."""
    configured = {
        "github_token": bool(settings.github_token),
        "openai_api_key": bool(settings.openai_api_key),
        "webhook_secret": bool(settings.github_webhook_secret),
    }
    redis_connected = False
    lanes: dict[str, int] = {}
    active_workers = 0
    try:
        redis_connected = bool(review_queues.connection.ping())
        lanes = review_queues.counts()
        active_workers = len(Worker.all(connection=review_queues.connection))
    except (RedisError, OSError):
        logger.exception("Health check could not read the review queues")

    missing = [name for name, present in configured.items() if not present]
    return {
        "status": "healthy" if redis_connected and not missing else "degraded",
        "environment": settings.environment,
        "version": VERSION,
        "missing_configuration": missing,
        "state_backend": settings.state_backend,
        "models": {
            "light": settings.openai_light_model,
            "heavy": settings.openai_heavy_model,
        },
        "database_connected": check_db_connection(),
        "redis_connected": redis_connected,
        "queues": lanes,
        "active_workers": active_workers,
    }
