"""Logging and observability setup using Pydantic Logfire."""

import logging
import sys

import logfire

from codeguardian.config.settings import settings


def setup_logging() -> None:
    """Configure application logging.

    Sets up structured logging with appropriate log levels and format.
    Reduces noise from verbose third-party libraries.
    """
    # Get log level from settings
    log_level = getattr(logging, settings.log_level)

    # Configure basic logging
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
        force=True,  # Reconfigure if already setup
    )

    # Reduce noise from verbose libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("github").setLevel(logging.WARNING)


def setup_observability() -> None:
    """Setup logging and observability with Logfire instrumentation.

    Configures standard logging and enables Logfire tracing of model and
    GitHub calls when a token is configured.
    """
    # Setup basic logging first
    setup_logging()

    logger = logging.getLogger(__name__)

    if not settings.logfire_token:
        logger.info("Logfire token not configured, skipping observability setup")
        return

    try:
        logfire.configure(
            token=settings.logfire_token,
            service_name="codeguardian",
            environment=settings.environment,
        )

        # Instrument Pydantic AI agents (every model tier call)
        logfire.instrument_pydantic_ai()

        # Instrument httpx for diff downloads
        logfire.instrument_httpx()

        logger.info(
            f"Logfire observability enabled for {settings.environment} environment"
        )
    except Exception as e:
        logger.error(f"Failed to setup Logfire observability: {e}")
