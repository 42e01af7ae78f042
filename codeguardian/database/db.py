"""Database connection and session management."""

import logging
from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from codeguardian.config.settings import settings
from codeguardian.models.conversation import Base

# Registers the review_states table on Base.metadata
from codeguardian.models.review_state import ReviewStateRecord  # noqa: F401

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine for ``database_url``.

    SQLite (the default, used for the review state of a single instance)
    gets a plain engine; server databases get the pooled configuration.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )

    connect_args: dict[str, Any] = {"connect_timeout": 10}
    if database_url.startswith("postgresql"):
        # Set timezone to UTC for all sessions
        connect_args["options"] = "-c timezone=utc"

    # Connection pool settings optimized for serverless deployment
    return create_engine(
        database_url,
        echo=echo,  # Log SQL queries in debug mode
        pool_pre_ping=True,  # Verify connections before using them
        pool_size=5,  # Maximum number of connections to keep open
        max_overflow=10,  # Connections allowed beyond pool_size
        pool_recycle=3600,  # Recycle connections after 1 hour
        connect_args=connect_args,
    )


engine = create_db_engine(settings.database_url, echo=settings.debug)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    Provides a database session that automatically commits on success
    and rolls back on exceptions.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """
    Initialize database tables.

    Creates the review state and conversation tables if they don't exist.
    This is called during application startup.
    """
    try:
        logger.info("Initializing database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_connection() -> bool:
    """
    Check if database connection is working.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connection check successful")
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
