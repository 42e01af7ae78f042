"""Utility for fingerprinting review comments to avoid posting them twice.

Every comment the bot publishes carries a hidden marker with its provenance
(the chunk it came from) and a fingerprint of its text:

<!-- codeguardian:comment src/foo.py:10,4#0 3f2a9c1d0b7e -->

When the same pull request is reviewed again, comments already present at the
same path and diff position with the same fingerprint are not reposted.
"""

import hashlib
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from codeguardian.models.github_types import ExistingComment
from codeguardian.models.outputs import ReviewComment

logger = logging.getLogger(__name__)

COMMENT_MARKER_PATTERN = re.compile(
    r"<!--\s*codeguardian:comment\s+(\S+)\s+([0-9a-f]{12})\s*-->"
)
SUMMARY_MARKER = "<!-- codeguardian:summary -->"


@dataclass(frozen=True)
class CommentFingerprint:
    """Unique identifier for a review comment."""

    file_path: str
    position: int | None
    body_hash: str
    provenance: str = ""


def _normalize_body(body: str) -> str:
    body = COMMENT_MARKER_PATTERN.sub("", body)
    return " ".join(body.split()).lower()


def hash_body(body: str) -> str:
    """Short hash of the comment text, insensitive to whitespace and case."""
    return hashlib.sha256(_normalize_body(body).encode()).hexdigest()[:12]


def embed_marker(comment: ReviewComment) -> str:
    """Return the comment body with its provenance marker appended."""
    return (
        f"{comment.body}\n\n<!-- codeguardian:comment {comment.provenance} "
        f"{hash_body(comment.body)} -->"
    )


def fingerprint_comment(comment: ReviewComment) -> CommentFingerprint:
    return CommentFingerprint(
        file_path=comment.path,
        position=comment.position,
        body_hash=hash_body(comment.body),
        provenance=comment.provenance,
    )


def fingerprint_existing(comment: ExistingComment) -> CommentFingerprint:
    """Fingerprint a published comment, preferring its embedded marker."""
    match = COMMENT_MARKER_PATTERN.search(comment.body)
    if match:
        provenance, body_hash = match.group(1), match.group(2)
    else:
        provenance, body_hash = "", hash_body(comment.body)
    return CommentFingerprint(
        file_path=comment.path,
        position=comment.position,
        body_hash=body_hash,
        provenance=provenance,
    )


def is_bot_comment(comment: ExistingComment, bot_login: str) -> bool:
    return comment.author == bot_login or bool(
        COMMENT_MARKER_PATTERN.search(comment.body)
    )


def deduplicate_comments(
    comments: Sequence[ReviewComment],
    existing: Iterable[ExistingComment],
) -> tuple[list[ReviewComment], list[ReviewComment]]:
    """
    Split new comments into those worth posting and duplicates.

    A comment is a duplicate when a comment with the same path, diff
    position and text fingerprint is already on the pull request, or when
    the same comment appears earlier in ``comments``.

    Args:
        comments: Comments produced by this run, in publication order
        existing: Comments already present on the pull request

    Returns:
        Tuple of (comments to post, duplicates)
    """
    seen = {
        (fp.file_path, fp.position, fp.body_hash)
        for fp in map(fingerprint_existing, existing)
        if fp.position is not None
    }
    fresh: list[ReviewComment] = []
    duplicates: list[ReviewComment] = []

    for comment in comments:
        fp = fingerprint_comment(comment)
        key = (fp.file_path, fp.position, fp.body_hash)
        if key in seen:
            duplicates.append(comment)
            continue
        seen.add(key)
        fresh.append(comment)

    if duplicates:
        logger.info(
            f"Skipping {len(duplicates)} duplicate comment(s) already on the PR"
        )
    return fresh, duplicates
