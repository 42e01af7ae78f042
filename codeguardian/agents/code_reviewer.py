"""Review pipeline: turns diff chunks into line-anchored review comments."""

import asyncio
import enum
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from codeguardian.config.settings import ReviewOptions
from codeguardian.exceptions import CallError, OversizedLineError
from codeguardian.models.diff import Chunk, ChangeKind, FileDiff, LineKind, SkipReason
from codeguardian.models.github_types import PullRequestContext
from codeguardian.models.outputs import (
    FileFailure,
    FileSummary,
    ParseWarning,
    ReviewComment,
    Triage,
)
from codeguardian.prompts.code_reviewer_prompt import (
    FILE_CONTEXT_TEMPLATE,
    LGTM_MARKERS,
    REVIEW_PROMPT,
)
from codeguardian.services.completer import ModelTier, ModelTiers
from codeguardian.services.interfaces import DiffSource
from codeguardian.services.scheduler import TaskScheduler
from codeguardian.utils.chunker import chunk_file, estimate_tokens

logger = logging.getLogger(__name__)

RANGE_HEADER = re.compile(r"^\s*(\d+)(?:\s*-\s*(\d+))?:\s*(.*)$")
END_OF_COMMENT = "---"

# Tokens reserved for the prompt template around the chunk
PROMPT_OVERHEAD_TOKENS = 600


class ChunkPhase(str, enum.Enum):
    PENDING = "pending"
    REQUESTED = "requested"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ChunkReview:
    """
    Review state of one chunk.

    ``Pending -> Requested -> Completed | Failed``, or ``Pending -> Skipped``
    when policy decides no model call is needed.
    """

    chunk: Chunk
    phase: ChunkPhase = ChunkPhase.PENDING
    skip_reason: SkipReason | None = None
    comments: list[ReviewComment] = field(default_factory=list)
    warnings: list[ParseWarning] = field(default_factory=list)
    error: CallError | None = None

    def _require(self, *phases: ChunkPhase) -> None:
        if self.phase not in phases:
            raise ValueError(
                f"Chunk {self.chunk.chunk_id} cannot leave {self.phase.value} this way"
            )

    def request(self) -> None:
        self._require(ChunkPhase.PENDING)
        self.phase = ChunkPhase.REQUESTED

    def skip(self, reason: SkipReason) -> None:
        self._require(ChunkPhase.PENDING)
        self.phase = ChunkPhase.SKIPPED
        self.skip_reason = reason

    def complete(
        self, comments: list[ReviewComment], warnings: list[ParseWarning]
    ) -> None:
        self._require(ChunkPhase.REQUESTED)
        self.phase = ChunkPhase.COMPLETED
        self.comments = comments
        self.warnings = warnings

    def fail(self, error: CallError) -> None:
        self._require(ChunkPhase.REQUESTED)
        self.phase = ChunkPhase.FAILED
        self.error = error


@dataclass
class FileReviewOutcome:
    path: str
    chunks: list[ChunkReview] = field(default_factory=list)
    failures: list[FileFailure] = field(default_factory=list)

    @property
    def comments(self) -> list[ReviewComment]:
        return [c for chunk in self.chunks for c in chunk.comments]

    @property
    def warnings(self) -> list[ParseWarning]:
        return [w for chunk in self.chunks for w in chunk.warnings]

    @property
    def failed(self) -> bool:
        return bool(self.failures)

    @property
    def requested(self) -> int:
        return sum(
            1
            for c in self.chunks
            if c.phase in (ChunkPhase.COMPLETED, ChunkPhase.FAILED)
        )


def is_lgtm(body: str) -> bool:
    lowered = body.lower()
    return any(marker.lower() in lowered for marker in LGTM_MARKERS)


def is_trivial_chunk(chunk: Chunk) -> bool:
    """True when a chunk has no changes or only whitespace changes."""
    if not chunk.has_changes:
        return True
    added = [
        "".join(line.text.split()) for line in chunk.lines if line.kind is LineKind.ADDED
    ]
    removed = [
        "".join(line.text.split())
        for line in chunk.lines
        if line.kind is LineKind.REMOVED
    ]
    return "".join(added) == "".join(removed)


def _to_comment(chunk: Chunk, end: int, body: str) -> ReviewComment:
    anchor = chunk.line_at(end)
    assert anchor is not None
    if anchor.kind is LineKind.REMOVED:
        side, line = "LEFT", anchor.source_line
    else:
        side, line = "RIGHT", anchor.target_line
    return ReviewComment(
        path=chunk.path,
        position=anchor.position,
        body=body,
        provenance=chunk.chunk_id,
        line=line,
        side=side,
    )


def parse_review_response(
    text: str, chunk: Chunk, review_comment_lgtm: bool = False
) -> tuple[list[ReviewComment], list[ParseWarning]]:
    """
    Parse a model response into comments anchored to the chunk.

    Entries are ``N:`` or ``N-M:`` headers (1-based chunk-relative lines)
    followed by comment text and a ``---`` line. Ranges outside the chunk
    are dropped with a warning, never turned into comments.

    Args:
        text: Raw model response
        chunk: The chunk the response is about
        review_comment_lgtm: Keep comments that only say the code looks good

    Returns:
        Tuple of (comments, warnings)
    """
    comments: list[ReviewComment] = []
    warnings: list[ParseWarning] = []
    entries: list[tuple[int, int, list[str], str]] = []
    current: tuple[int, int, list[str], str] | None = None

    for raw_line in text.splitlines():
        stripped = raw_line.strip()
        if stripped == END_OF_COMMENT:
            if current is not None:
                entries.append(current)
                current = None
            continue

        header = RANGE_HEADER.match(raw_line)
        starts_entry = header is not None and (current is None or not header.group(3))
        if starts_entry and header is not None:
            if current is not None:
                entries.append(current)
            start = int(header.group(1))
            end = int(header.group(2) or start)
            body_lines = [header.group(3)] if header.group(3) else []
            current = (start, end, body_lines, raw_line)
            continue

        if current is not None:
            current[2].append(raw_line)

    if current is not None:
        entries.append(current)

    if not entries:
        if text.strip() and not is_lgtm(text):
            warnings.append(
                ParseWarning(
                    provenance=chunk.chunk_id,
                    message="Response contained no line-anchored comments",
                    raw=text[:500],
                )
            )
        return comments, warnings

    for start, end, body_lines, header_line in entries:
        if start > end:
            start, end = end, start
        body = "\n".join(body_lines).strip()
        if not (1 <= start and end <= chunk.line_count):
            warnings.append(
                ParseWarning(
                    provenance=chunk.chunk_id,
                    message=(
                        f"Lines {start}-{end} are outside the chunk "
                        f"(1-{chunk.line_count})"
                    ),
                    raw=header_line,
                )
            )
            continue
        if not body:
            warnings.append(
                ParseWarning(
                    provenance=chunk.chunk_id,
                    message=f"Empty comment for lines {start}-{end}",
                    raw=header_line,
                )
            )
            continue
        if not review_comment_lgtm and is_lgtm(body):
            logger.debug(f"Dropping LGTM comment on {chunk.chunk_id} lines {start}-{end}")
            continue
        comments.append(_to_comment(chunk, end, body))

    return comments, warnings


class ReviewPipeline:
    """Plans, requests and parses chunk reviews for a set of files."""

    def __init__(
        self,
        tiers: ModelTiers,
        scheduler: TaskScheduler,
        options: ReviewOptions,
        diff_source: DiffSource | None = None,
    ) -> None:
        self.tiers = tiers
        self.scheduler = scheduler
        self.options = options
        self.diff_source = diff_source

    @property
    def chunk_budget(self) -> int:
        return max(
            1,
            self.options.heavy_token_limit
            - self.options.response_token_limit
            - PROMPT_OVERHEAD_TOKENS,
        )

    def plan(self, file: FileDiff, file_summary: FileSummary | None) -> list[ChunkReview]:
        """
        Chunk a file and settle every chunk that needs no model call.

        Raises:
            OversizedLineError: If a line cannot fit in the chunk budget
        """
        reviews = [ChunkReview(chunk) for chunk in chunk_file(file, self.chunk_budget)]
        approved = (
            not self.options.review_simple_changes
            and file_summary is not None
            and file_summary.triage is Triage.APPROVED
        )
        for review in reviews:
            if self.options.disable_review:
                review.skip(SkipReason.REVIEW_DISABLED)
            elif approved:
                review.skip(SkipReason.TRIVIAL)
            elif is_trivial_chunk(review.chunk):
                review.skip(SkipReason.TRIVIAL)
        return reviews

    def build_prompt(
        self,
        context: PullRequestContext,
        chunk: Chunk,
        file_summary: FileSummary | None,
        file_content: str | None = None,
    ) -> str:
        file_context = ""
        if file_content:
            file_context = FILE_CONTEXT_TEMPLATE.format(path=chunk.path, content=file_content)
        return REVIEW_PROMPT.format(
            title=context.title,
            description=context.description,
            path=chunk.path,
            file_summary=file_summary.summary if file_summary else "_No summary available._",
            file_context=file_context,
            line_count=chunk.line_count,
            chunk=chunk.render_numbered(),
            language=self.options.language,
        )

    async def _file_context(
        self, context: PullRequestContext, file: FileDiff, chunks: Sequence[ChunkReview]
    ) -> str | None:
        """Full post-change content, when it fits alongside the largest chunk."""
        if self.diff_source is None or file.change_kind is ChangeKind.REMOVED:
            return None
        if not any(c.phase is ChunkPhase.PENDING for c in chunks):
            return None

        diff_source = self.diff_source
        result = await self.scheduler.platform.submit(
            lambda: diff_source.fetch_file_content(file.path, context.head_sha),
            label=f"content:{file.path}",
        )
        if not result.ok or not result.value:
            return None

        largest = max(estimate_tokens(c.chunk.render_numbered()) for c in chunks)
        if estimate_tokens(result.value) + largest > self.chunk_budget:
            logger.debug(f"Full content of {file.path} too large for context")
            return None
        return result.value

    async def _review_chunk(
        self, context: PullRequestContext, review: ChunkReview, prompt: str
    ) -> ChunkReview:
        review.request()
        heavy = self.tiers.get(ModelTier.HEAVY)
        result = await self.scheduler.model.submit(
            lambda: heavy.complete(prompt, max_tokens=self.options.response_token_limit),
            label=f"review:{review.chunk.chunk_id}",
        )
        if not result.ok:
            assert result.error is not None
            review.fail(result.error)
            return review

        comments, warnings = parse_review_response(
            result.value or "", review.chunk, self.options.review_comment_lgtm
        )
        for warning in warnings:
            logger.warning(f"Review parse warning for {warning.provenance}: {warning.message}")
        review.complete(comments, warnings)
        return review

    async def review_file(
        self,
        context: PullRequestContext,
        file: FileDiff,
        file_summary: FileSummary | None = None,
    ) -> FileReviewOutcome:
        outcome = FileReviewOutcome(path=file.path)
        try:
            outcome.chunks = self.plan(file, file_summary)
        except OversizedLineError as e:
            logger.warning(f"Cannot chunk {file.path}: {e}")
            outcome.failures.append(FileFailure(path=file.path, stage="chunk", error=str(e)))
            return outcome

        pending = [c for c in outcome.chunks if c.phase is ChunkPhase.PENDING]
        if not pending:
            return outcome

        file_content = await self._file_context(context, file, outcome.chunks)
        await asyncio.gather(
            *(
                self._review_chunk(
                    context,
                    review,
                    self.build_prompt(context, review.chunk, file_summary, file_content),
                )
                for review in pending
            )
        )

        for review in outcome.chunks:
            if review.phase is ChunkPhase.FAILED:
                outcome.failures.append(
                    FileFailure(
                        path=file.path,
                        stage=f"review:{review.chunk.chunk_id}",
                        error=str(review.error),
                    )
                )
        return outcome

    async def review_files(
        self,
        context: PullRequestContext,
        files: Sequence[FileDiff],
        summaries: Mapping[str, FileSummary] | None = None,
    ) -> list[FileReviewOutcome]:
        """Review files concurrently; outcomes come back in file order."""
        summaries = summaries or {}
        return list(
            await asyncio.gather(
                *(self.review_file(context, f, summaries.get(f.path)) for f in files)
            )
        )
