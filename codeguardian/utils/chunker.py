"""
Hunk Chunker

Splits hunks into token-bounded chunks so each model request fits the
provider's context window.
"""

import logging

from codeguardian.exceptions import OversizedLineError
from codeguardian.models.diff import Chunk, DiffLine, FileDiff, Hunk

logger = logging.getLogger(__name__)

# Approximate characters per token (conservative estimate)
CHARS_PER_TOKEN = 4

# Width reserved for the "NNN: " prefix added when a chunk is rendered
LINE_NUMBER_OVERHEAD = 2


def estimate_tokens(text: str) -> int:
    """Estimate token count for text."""
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def line_tokens(line: DiffLine) -> int:
    """Tokens a rendered diff line costs, including its line number and newline."""
    return max(1, estimate_tokens(line.render()) + LINE_NUMBER_OVERHEAD)


def chunk_hunk(hunk: Hunk, path: str, token_budget: int) -> list[Chunk]:
    """
    Split a hunk into chunks that each fit within ``token_budget``.

    Splits only at line boundaries and is a pure function of its inputs, so
    the same hunk and budget always produce the same boundaries. Every chunk
    carries the hunk header, which counts against the budget.

    Raises:
        OversizedLineError: If a single line cannot fit alongside the header
    """
    header_tokens = estimate_tokens(hunk.header) + 1
    chunks: list[Chunk] = []
    current: list[DiffLine] = []
    current_tokens = header_tokens

    def flush() -> None:
        chunks.append(
            Chunk(
                path=path,
                hunk_header=hunk.header,
                hunk_target_start=hunk.target_start,
                hunk_target_length=hunk.target_length,
                index=len(chunks),
                lines=tuple(current),
            )
        )

    for line in hunk.lines:
        cost = line_tokens(line)
        if header_tokens + cost > token_budget:
            raise OversizedLineError(path, line.position, header_tokens + cost, token_budget)

        if current and current_tokens + cost > token_budget:
            flush()
            current = []
            current_tokens = header_tokens

        current.append(line)
        current_tokens += cost

    if current:
        flush()

    if len(chunks) > 1:
        logger.debug(
            f"Split hunk {hunk.header!r} of {path} into {len(chunks)} chunks "
            f"(budget {token_budget} tokens)"
        )
    return chunks


def chunk_file(file_diff: FileDiff, token_budget: int) -> list[Chunk]:
    """Chunk every hunk of a file, preserving hunk order."""
    chunks: list[Chunk] = []
    for hunk in file_diff.hunks:
        chunks.extend(chunk_hunk(hunk, file_diff.path, token_budget))
    return chunks
