"""Utility functions and helpers."""

from .filters import should_review_file
from .rate_limiter import AsyncioClock, RetryPolicy

__all__ = [
    "AsyncioClock",
    "RetryPolicy",
    "should_review_file",
]
