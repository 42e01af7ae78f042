"""Unit tests for the review pipeline and review response parsing."""

import pytest
from conftest import (
    FakeClock,
    FakeCompleter,
    FakeDiffSource,
    default_responder,
    file_section,
    make_diff,
)

from codeguardian.agents.code_reviewer import (
    ChunkPhase,
    ChunkReview,
    ReviewPipeline,
    is_trivial_chunk,
    parse_review_response,
)
from codeguardian.config.settings import ReviewOptions
from codeguardian.exceptions import InvalidRequest
from codeguardian.models.diff import Chunk, DiffLine, LineKind, SkipReason
from codeguardian.models.outputs import FileSummary, Triage
from codeguardian.services.completer import ModelTiers
from codeguardian.services.scheduler import TaskScheduler
from codeguardian.utils.diff_parser import parse_diff

OPTIONS = ReviewOptions(model_concurrency=2, model_retries=1, platform_retries=1)


def _chunk(lines: tuple[DiffLine, ...] | None = None) -> Chunk:
    lines = lines or (
        DiffLine(kind=LineKind.CONTEXT, text="def load(path):", position=1, source_line=10, target_line=10),
        DiffLine(kind=LineKind.REMOVED, text="    return open(path).read()", position=2, source_line=11),
        DiffLine(kind=LineKind.ADDED, text="    with open(path) as f:", position=3, target_line=11),
        DiffLine(kind=LineKind.ADDED, text="        return f.read()", position=4, target_line=12),
    )
    return Chunk(
        path="io.py",
        hunk_header="@@ -10,2 +10,3 @@",
        hunk_target_start=10,
        hunk_target_length=3,
        index=0,
        lines=lines,
    )


def _file(path: str = "app.py", added: list[str] | None = None):
    raw = make_diff(file_section(path, added or ["import os", "print(os.getcwd())"]))
    return parse_diff(raw).files[0]


def _pipeline(
    heavy: FakeCompleter,
    options: ReviewOptions = OPTIONS,
    diff_source: FakeDiffSource | None = None,
) -> ReviewPipeline:
    scheduler = TaskScheduler.from_options(options, clock=FakeClock())
    tiers = ModelTiers(light=FakeCompleter(default_responder), heavy=heavy)
    return ReviewPipeline(tiers, scheduler, options, diff_source)


class TestParseReviewResponse:
    def test_ranges_anchor_at_their_last_line(self) -> None:
        text = "3-4:\nUse a context manager here too.\n---\n2:\nThis leaked the handle.\n---"

        comments, warnings = parse_review_response(text, _chunk())

        assert warnings == []
        assert [(c.position, c.line, c.side) for c in comments] == [
            (4, 12, "RIGHT"),
            (2, 11, "LEFT"),
        ]
        assert comments[0].body == "Use a context manager here too."
        assert comments[0].provenance == "io.py:10,3#0"

    def test_reversed_range_is_normalized(self) -> None:
        comments, _ = parse_review_response("4-3:\nSwap these.\n---", _chunk())

        assert comments[0].position == 4

    def test_multi_line_body_may_contain_numbered_steps(self) -> None:
        text = "3:\nTwo fixes:\n1: close the file\n2: handle errors\n---"

        comments, _ = parse_review_response(text, _chunk())

        assert len(comments) == 1
        assert comments[0].body == "Two fixes:\n1: close the file\n2: handle errors"

    def test_last_entry_without_terminator_is_kept(self) -> None:
        comments, _ = parse_review_response("3:\nCheck the mode.", _chunk())

        assert [c.body for c in comments] == ["Check the mode."]

    def test_out_of_range_lines_become_warnings(self) -> None:
        comments, warnings = parse_review_response("3-9:\nToo far.\n---", _chunk())

        assert comments == []
        assert len(warnings) == 1
        assert "outside the chunk (1-4)" in warnings[0].message

    def test_empty_comment_is_a_warning(self) -> None:
        comments, warnings = parse_review_response("3:\n---", _chunk())

        assert comments == []
        assert "Empty comment" in warnings[0].message

    def test_lgtm_comments_are_dropped_unless_enabled(self) -> None:
        text = "3:\nLGTM!\n---"

        assert parse_review_response(text, _chunk())[0] == []
        assert len(parse_review_response(text, _chunk(), review_comment_lgtm=True)[0]) == 1

    def test_plain_lgtm_response(self) -> None:
        assert parse_review_response("LGTM!", _chunk()) == ([], [])

    def test_unanchored_response_is_a_warning(self) -> None:
        comments, warnings = parse_review_response("Consider adding tests.", _chunk())

        assert comments == []
        assert warnings[0].message == "Response contained no line-anchored comments"


class TestIsTrivialChunk:
    def test_whitespace_only_change(self) -> None:
        chunk = _chunk(
            (
                DiffLine(kind=LineKind.REMOVED, text="x=1", position=1, source_line=1),
                DiffLine(kind=LineKind.ADDED, text="x = 1", position=2, target_line=1),
            )
        )

        assert is_trivial_chunk(chunk)

    def test_context_only(self) -> None:
        chunk = _chunk(
            (DiffLine(kind=LineKind.CONTEXT, text="pass", position=1, source_line=1, target_line=1),)
        )

        assert is_trivial_chunk(chunk)

    def test_real_change(self) -> None:
        assert not is_trivial_chunk(_chunk())


class TestChunkReview:
    def test_request_then_complete(self) -> None:
        review = ChunkReview(_chunk())

        review.request()
        review.complete([], [])

        assert review.phase is ChunkPhase.COMPLETED

    def test_cannot_complete_without_request(self) -> None:
        review = ChunkReview(_chunk())

        with pytest.raises(ValueError):
            review.complete([], [])

    def test_cannot_skip_after_request(self) -> None:
        review = ChunkReview(_chunk())
        review.request()

        with pytest.raises(ValueError):
            review.skip(SkipReason.TRIVIAL)


class TestReviewPipelinePlan:
    def test_disable_review_skips_every_chunk(self) -> None:
        pipeline = _pipeline(FakeCompleter(), OPTIONS.model_copy(update={"disable_review": True}))

        plan = pipeline.plan(_file(), None)

        assert [r.skip_reason for r in plan] == [SkipReason.REVIEW_DISABLED]

    def test_approved_file_is_skipped_as_trivial(self) -> None:
        summary = FileSummary(path="app.py", summary="Typo", triage=Triage.APPROVED)

        plan = _pipeline(FakeCompleter()).plan(_file(), summary)

        assert [r.skip_reason for r in plan] == [SkipReason.TRIVIAL]

    def test_review_simple_changes_ignores_triage(self) -> None:
        summary = FileSummary(path="app.py", summary="Typo", triage=Triage.APPROVED)
        options = OPTIONS.model_copy(update={"review_simple_changes": True})

        plan = _pipeline(FakeCompleter(), options).plan(_file(), summary)

        assert [r.phase for r in plan] == [ChunkPhase.PENDING]


class TestReviewPipelineReviewFile:
    @pytest.mark.asyncio
    async def test_review_produces_anchored_comments(self, pr_context) -> None:
        heavy = FakeCompleter(default_responder)
        summary = FileSummary(path="app.py", summary="Prints the working directory.")

        outcome = await _pipeline(heavy).review_file(pr_context, _file(), summary)

        assert not outcome.failed
        assert outcome.requested == 1
        (comment,) = outcome.comments
        assert comment.position == 1
        assert comment.body == "Check the first line of app.py."
        assert comment.provenance == "app.py:1,2#0"
        assert "Prints the working directory." in heavy.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_failed_chunk_is_a_file_failure(self, pr_context) -> None:
        heavy = FakeCompleter(lambda prompt: InvalidRequest("context too long"))

        outcome = await _pipeline(heavy).review_file(pr_context, _file())

        assert outcome.failed
        assert outcome.failures[0].stage == "review:app.py:1,2#0"
        assert outcome.chunks[0].phase is ChunkPhase.FAILED

    @pytest.mark.asyncio
    async def test_full_file_content_is_added_when_it_fits(self, pr_context) -> None:
        heavy = FakeCompleter(default_responder)
        source = FakeDiffSource(contents={"app.py": "import os\nprint(os.getcwd())\n"})

        await _pipeline(heavy, diff_source=source).review_file(pr_context, _file())

        assert "## Full content of `app.py` after the change" in heavy.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_oversized_line_fails_only_that_file(self, pr_context) -> None:
        options = OPTIONS.model_copy(
            update={"heavy_token_limit": 4700, "response_token_limit": 4000}
        )
        heavy = FakeCompleter(default_responder)
        pipeline = _pipeline(heavy, options)

        outcomes = await pipeline.review_files(
            pr_context, [_file("big.py", ["x = '" + "a" * 1000 + "'"]), _file("small.py")]
        )

        assert [o.path for o in outcomes] == ["big.py", "small.py"]
        assert outcomes[0].failures[0].stage == "chunk"
        assert not outcomes[1].failed
        assert len(heavy.calls) == 1

    @pytest.mark.asyncio
    async def test_skipped_file_makes_no_model_calls(self, pr_context) -> None:
        heavy = FakeCompleter(default_responder)
        summary = FileSummary(path="app.py", summary="Typo", triage=Triage.APPROVED)

        outcome = await _pipeline(heavy).review_file(pr_context, _file(), summary)

        assert outcome.comments == []
        assert heavy.calls == []
