"""Summarization pipeline: per-file summaries, the PR summary and release notes."""

import asyncio
import logging
import re
from collections.abc import Sequence

from codeguardian.config.settings import ReviewOptions
from codeguardian.models.diff import FileDiff
from codeguardian.models.github_types import PullRequestContext
from codeguardian.models.outputs import (
    FileFailure,
    FileSummary,
    PullRequestSummary,
    Triage,
)
from codeguardian.prompts.summarizer_prompt import (
    AGGREGATE_PROMPT,
    FILE_SUMMARY_PROMPT,
    RELEASE_NOTES_PROMPT,
    TRIAGE_INSTRUCTIONS,
    UNREVIEWED_NOTE,
)
from codeguardian.services.completer import ModelTier, ModelTiers
from codeguardian.services.scheduler import CallResult, TaskScheduler
from codeguardian.utils.chunker import estimate_tokens
from codeguardian.utils.comment_tracker import SUMMARY_MARKER

logger = logging.getLogger(__name__)

TRIAGE_PATTERN = re.compile(r"^\s*\[TRIAGE\]:\s*(NEEDS_REVIEW|APPROVED)\s*$", re.I | re.M)
CANNOT_PATTERN = re.compile(r"^(i\s+)?(can\s*not|can't|am unable|unable)\b", re.I)

# Tokens reserved for the prompt template around the diff
PROMPT_OVERHEAD_TOKENS = 400


def parse_triage(text: str) -> tuple[str, Triage]:
    """
    Split a summary response into its text and triage verdict.

    A missing or unreadable verdict is treated as NEEDS_REVIEW.
    """
    verdict = Triage.NEEDS_REVIEW
    match = TRIAGE_PATTERN.search(text)
    if match:
        verdict = Triage(match.group(1).upper())
    summary = TRIAGE_PATTERN.sub("", text).strip()
    return summary, verdict


def clean_release_notes(text: str | None) -> str | None:
    """Return None when the model produced nothing usable."""
    if text is None:
        return None
    notes = text.strip()
    if not notes or CANNOT_PATTERN.match(notes):
        return None
    return notes


def _truncate_diff(file: FileDiff, token_budget: int) -> str:
    rendered: list[str] = []
    used = 0
    for hunk in file.hunks:
        text = hunk.render()
        cost = estimate_tokens(text)
        if rendered and used + cost > token_budget:
            rendered.append("... (remaining hunks omitted)")
            break
        rendered.append(text)
        used += cost
    return "\n".join(rendered)


class Summarizer:
    """Runs summary requests through the scheduler's model pool."""

    def __init__(
        self, tiers: ModelTiers, scheduler: TaskScheduler, options: ReviewOptions
    ) -> None:
        self.tiers = tiers
        self.scheduler = scheduler
        self.options = options

    @property
    def diff_budget(self) -> int:
        return max(
            1,
            self.options.light_token_limit
            - self.options.response_token_limit
            - PROMPT_OVERHEAD_TOKENS,
        )

    def build_file_prompt(self, context: PullRequestContext, file: FileDiff) -> str:
        return FILE_SUMMARY_PROMPT.format(
            title=context.title,
            description=context.description,
            path=file.path,
            diff=_truncate_diff(file, self.diff_budget),
            triage_instructions=(
                "" if self.options.review_simple_changes else TRIAGE_INSTRUCTIONS
            ),
            language=self.options.language,
        )

    async def summarize(
        self, context: PullRequestContext, file: FileDiff
    ) -> CallResult[FileSummary]:
        """Summarize one file on the light tier."""
        prompt = self.build_file_prompt(context, file)
        completer = self.tiers.get(ModelTier.LIGHT)

        async def _call() -> FileSummary:
            text = await completer.complete(
                prompt, max_tokens=self.options.response_token_limit
            )
            summary, triage = parse_triage(text)
            if self.options.review_simple_changes:
                triage = Triage.NEEDS_REVIEW
            return FileSummary(path=file.path, summary=summary, triage=triage)

        return await self.scheduler.model.submit(_call, label=f"summarize:{file.path}")

    async def summarize_files(
        self, context: PullRequestContext, files: Sequence[FileDiff]
    ) -> list[CallResult[FileSummary]]:
        """Summarize files concurrently; results come back in file order."""
        if not files:
            return []
        logger.info(f"Summarizing {len(files)} file(s) for {context.review_key}")
        return list(
            await asyncio.gather(*(self.summarize(context, file) for file in files))
        )

    async def aggregate(
        self,
        context: PullRequestContext,
        summaries: Sequence[FileSummary],
        unreviewed_paths: Sequence[str] = (),
    ) -> tuple[PullRequestSummary | None, list[FileFailure]]:
        """
        Combine ordered per-file summaries into the pull request summary.

        Runs once, after every per-file summary has resolved. Uses the light
        tier like the per-file summaries; release notes are a separate request
        unless disabled.

        Returns:
            Tuple of (summary or None if the summary call failed, failures)
        """
        failures: list[FileFailure] = []
        if not summaries:
            return None, failures

        file_summaries = "\n".join(
            f"- `{s.path}`: {s.summary.strip()}" for s in summaries
        )
        unreviewed_note = (
            UNREVIEWED_NOTE.format(paths=", ".join(f"`{p}`" for p in unreviewed_paths))
            if unreviewed_paths
            else ""
        )
        prompt = AGGREGATE_PROMPT.format(
            title=context.title,
            description=context.description,
            file_summaries=file_summaries,
            unreviewed_note=unreviewed_note,
            language=self.options.language,
        )
        light = self.tiers.get(ModelTier.LIGHT)
        result = await self.scheduler.model.submit(
            lambda: light.complete(prompt, max_tokens=self.options.response_token_limit),
            label="aggregate",
        )
        if not result.ok:
            logger.error(f"Failed to aggregate summaries: {result.error}")
            failures.append(
                FileFailure(path="", stage="aggregate", error=str(result.error))
            )
            return None, failures

        summary_text = (result.value or "").strip()
        release_notes: str | None = None
        if not self.options.disable_release_notes:
            release_notes, notes_failure = await self._release_notes(context, summary_text)
            if notes_failure is not None:
                failures.append(notes_failure)

        return PullRequestSummary(summary=summary_text, release_notes=release_notes), failures

    async def _release_notes(
        self, context: PullRequestContext, summary: str
    ) -> tuple[str | None, FileFailure | None]:
        prompt = RELEASE_NOTES_PROMPT.format(
            title=context.title,
            description=context.description,
            summary=summary,
            release_notes_prompt=self.options.release_notes_prompt,
            language=self.options.language,
        )
        light = self.tiers.get(ModelTier.LIGHT)
        result = await self.scheduler.model.submit(
            lambda: light.complete(prompt, max_tokens=self.options.response_token_limit),
            label="release-notes",
        )
        if not result.ok:
            logger.warning(f"Release notes unavailable: {result.error}")
            return None, FileFailure(path="", stage="release_notes", error=str(result.error))
        return clean_release_notes(result.value), None


def _table_cell(text: str) -> str:
    return text.strip().replace("|", "\\|").replace("\n", "<br>")


def _details(title: str, paths: Sequence[str]) -> list[str]:
    if not paths:
        return []
    items = "\n".join(f"* `{path}`" for path in paths)
    return [
        f"<details>\n<summary>{title} ({len(paths)})</summary>\n\n{items}\n\n</details>",
        "",
    ]


def render_summary_comment(
    options: ReviewOptions,
    summary: PullRequestSummary | None,
    file_summaries: Sequence[FileSummary],
    *,
    unreviewed_by_limit: Sequence[str] = (),
    failures: Sequence[FileFailure] = (),
    approved: Sequence[str] = (),
    unchanged: Sequence[str] = (),
    base_sha: str = "",
    head_sha: str = "",
) -> str:
    """
    Render the markdown body of the persistent summary comment.

    Every changed file shows up somewhere: in the change table (files capped
    by the max-files limit are flagged there as not reviewed), or in one of
    the collapsible lists.
    """
    lines = [
        SUMMARY_MARKER,
        f"{options.bot_icon} **{options.bot_name}** summary",
        "",
        "## Walkthrough",
        "",
        summary.summary if summary else "_A summary could not be generated for this run._",
        "",
    ]

    if summary and summary.release_notes:
        lines += ["## Release Notes", "", summary.release_notes, ""]

    if file_summaries or unreviewed_by_limit:
        lines += ["## Changes", "", "| File | Summary |", "| --- | --- |"]
        for file_summary in file_summaries:
            lines.append(f"| `{file_summary.path}` | {_table_cell(file_summary.summary)} |")
        for path in unreviewed_by_limit:
            lines.append(f"| `{path}` | _Not reviewed due to the max files limit_ |")
        lines.append("")

    lines += _details("Files not reviewed due to the max files limit", unreviewed_by_limit)
    lines += _details("Files skipped from review as trivial changes", approved)
    lines += _details("Files unchanged since the last review", unchanged)

    file_failures = [f for f in failures if f.path]
    if file_failures:
        items = "\n".join(f"* `{f.path}` ({f.stage}): {f.error}" for f in file_failures)
        lines += [
            f"<details>\n<summary>Files not processed due to errors ({len(file_failures)})"
            f"</summary>\n\n{items}\n\n</details>",
            "",
        ]

    if head_sha:
        commits = f"{base_sha[:7]}...{head_sha[:7]}" if base_sha else head_sha[:7]
        lines.append(f"_Reviewed commits: {commits}_")

    return "\n".join(lines).rstrip() + "\n"
