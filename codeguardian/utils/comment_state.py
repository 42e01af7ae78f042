"""Utility for embedding/extracting review state in GitHub comment metadata.

The incremental review state is serialized as a hidden HTML comment at the
end of the bot's summary comment, so no database is needed to review only
what changed since the previous push.

Example format:
<!-- codeguardian:state
{
  "file_digests": {"src/foo.py": "blob:1a2b3c4"},
  "file_summaries": {"src/foo.py": "Adds retry handling"},
  "head_sha": "abc123...",
  "reviewed_commit_ids": ["abc123..."],
  "version": "1.0"
}
-->
"""

import json
import logging
import re

from pydantic import ValidationError

from codeguardian.models.review_state import IncrementalReviewState

logger = logging.getLogger(__name__)

# Marker tags for state embedding
STATE_START_MARKER = "<!-- codeguardian:state"
STATE_END_MARKER = "-->"

STATE_PATTERN = re.compile(
    r"<!--\s*codeguardian:state\s*\r?\n(.*?)\r?\n\s*-->",
    re.DOTALL | re.IGNORECASE,
)


def serialize_state_to_comment(state: IncrementalReviewState) -> str:
    """
    Serialize review state to hidden HTML comment format.

    Args:
        state: Incremental review state to embed

    Returns:
        HTML comment string that can be appended to summary comment body
    """
    # Pretty-print JSON for readability in GitHub source view
    json_str = json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True)
    # "-->" inside a summary would terminate the HTML comment early
    json_str = json_str.replace("-->", "--\\u003e")
    return f"\n\n{STATE_START_MARKER}\n{json_str}\n{STATE_END_MARKER}"


def parse_state_from_comment(body: str | None) -> IncrementalReviewState | None:
    """
    Parse review state from comment body containing hidden HTML metadata.

    Args:
        body: The full comment body text that may contain embedded state

    Returns:
        Parsed state if found and valid, None otherwise
    """
    if not body:
        return None

    match = STATE_PATTERN.search(body)
    if not match:
        logger.debug("No embedded state found in comment body")
        return None

    try:
        data = json.loads(match.group(1).strip())
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse embedded state JSON: {e}")
        return None

    # Validate expected structure
    if not isinstance(data, dict):
        logger.warning(f"Parsed state is not a dict: {type(data)}")
        return None

    try:
        return IncrementalReviewState.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Embedded state has an unexpected shape: {e}")
        return None


def strip_state_from_comment(body: str) -> str:
    """
    Remove embedded state metadata from comment body.

    Args:
        body: The full comment body text that may contain embedded state

    Returns:
        Comment body with state metadata removed
    """
    if not body:
        return body

    # Remove the state block including surrounding whitespace
    cleaned = STATE_PATTERN.sub("", body)
    return cleaned.strip()
