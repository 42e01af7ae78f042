"""Pull request review event handler.

This module handles pull_request webhook events (opened, reopened, synchronize)
once they reach a worker. ``run_pr_review`` is the whole review run over
injected collaborators; ``handle_pr_review`` wires the GitHub, OpenAI and
state store implementations around it.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import httpx
from sqlalchemy.orm import Session

from codeguardian.agents.code_reviewer import FileReviewOutcome, ReviewPipeline
from codeguardian.agents.summarizer import Summarizer, render_summary_comment
from codeguardian.config.settings import ReviewOptions, Settings, settings
from codeguardian.models.diff import FileDiff, SkipReason
from codeguardian.models.github_types import PullRequestContext
from codeguardian.models.outputs import (
    FileFailure,
    FileSummary,
    ReviewComment,
    ReviewRunResult,
    RunStatus,
    Triage,
)
from codeguardian.models.review_state import IncrementalReviewState
from codeguardian.services.completer import ModelTiers, build_model_tiers, classify_model_error
from codeguardian.services.github_client import (
    GitHubCommentPublisher,
    GitHubDiffSource,
    build_pull_request_context,
    classify_github_error,
    create_github_client,
)
from codeguardian.services.incremental import (
    StateResolution,
    resolve_state,
    select_new_hunks,
    should_review,
    update_after_run,
)
from codeguardian.services.interfaces import CommentPublisher, DiffSource, StateStore
from codeguardian.services.scheduler import Classifier, TaskScheduler
from codeguardian.services.state_store import CommentStateStore, DatabaseStateStore
from codeguardian.utils.comment_tracker import deduplicate_comments
from codeguardian.utils.diff_parser import parse_diff
from codeguardian.utils.rate_limiter import Clock

logger = logging.getLogger(__name__)


@dataclass
class ReviewCollaborators:
    """Everything a review run talks to, injected by the caller."""

    diff_source: DiffSource
    publisher: CommentPublisher
    state_store: StateStore
    tiers: ModelTiers
    clock: Clock | None = None
    model_classify: Classifier = classify_model_error
    platform_classify: Classifier = classify_github_error
    scheduler: TaskScheduler | None = None


@dataclass
class _FilePlan:
    """Per-run bookkeeping of which files are reviewed and how."""

    to_review: list[tuple[FileDiff, FileDiff]] = field(default_factory=list)
    recorded_digests: dict[str, str] = field(default_factory=dict)
    unchanged: list[str] = field(default_factory=list)


# === MAIN HANDLER ===


async def run_pr_review(
    context: PullRequestContext,
    collaborators: ReviewCollaborators,
    options: ReviewOptions,
    deadline_seconds: float | None = None,
) -> ReviewRunResult:
    """
    Review one pull request head revision.

    === BEHAVIOR ===

    Input:
        context: The pull request and head revision under review
        collaborators: Diff source, publisher, state store and model tiers
        options: Immutable run options
        deadline_seconds: Optional caller-level deadline for model calls

    Output:
        ReviewRunResult with comments, summaries, per-file decisions and status

    Logic Flow:
        SKIP when the description contains the ignore keyword
        LOAD incremental state (once)
        CHECK ancestry of the stored head; a rewritten history means full review
        FETCH and PARSE the PR diff (and the incremental diff when usable)
        PLAN files: unchanged digests are skipped, changed files narrowed to new hunks
        SUMMARIZE changed files (model pool), JOIN, AGGREGATE
        REVIEW pending chunks (model pool), reassemble in file order
        DEDUPLICATE and PUBLISH comments per file, then the summary (platform pool)
        SAVE the new state (once); a comment-backed store writes it together
        with the summary in the same edit

    Edge Cases:
        - Nothing changed since the last review: zero model calls, nothing posted
        - One file fails: recorded, other files still published (success_with_warnings)
        - Quota exhausted: model calls stop, completed work is published, status failed
    """
    result = ReviewRunResult()
    review_key = context.review_key

    if options.ignore_keyword and options.ignore_keyword in (context.description or ""):
        logger.info(f"Skipping review for {review_key}: description contains ignore keyword")
        result.status = RunStatus.SKIPPED
        result.message = "Pull request description contains the ignore keyword"
        return result

    scheduler = collaborators.scheduler or TaskScheduler.from_options(
        options,
        clock=collaborators.clock,
        model_classify=collaborators.model_classify,
        platform_classify=collaborators.platform_classify,
    )
    deadline = scheduler.abort_after(deadline_seconds) if deadline_seconds else None

    try:
        await _run(context, collaborators, options, scheduler, result)
    finally:
        if deadline is not None:
            deadline.cancel()

    result.model_calls = scheduler.model.calls_started
    if scheduler.quota_error is not None:
        result.status = RunStatus.FAILED
        result.message = f"Quota exhausted: {scheduler.quota_error}"
    result.finalize_status()
    logger.info(
        f"Review finished for {review_key}: status={result.status.value}, "
        f"{len(result.reviewed_files)} reviewed, {len(result.skipped_files)} skipped, "
        f"{len(result.failures)} failures, {result.posted_comments} comments posted, "
        f"{result.model_calls} model calls"
    )
    return result


async def _run(
    context: PullRequestContext,
    collaborators: ReviewCollaborators,
    options: ReviewOptions,
    scheduler: TaskScheduler,
    result: ReviewRunResult,
) -> None:
    platform = scheduler.platform
    diff_source = collaborators.diff_source

    stored = await _load_state(collaborators.state_store, scheduler)
    resolution = await _resolve_state(context, diff_source, scheduler, stored)
    if resolution.conflict is not None:
        result.state_conflict = str(resolution.conflict)

    diff_result = await platform.submit(
        lambda: diff_source.fetch_diff(context), label="fetch-diff"
    )
    if not diff_result.ok:
        result.status = RunStatus.FAILED
        result.message = f"Could not fetch the pull request diff: {diff_result.error}"
        logger.error(result.message)
        return

    parsed = parse_diff(diff_result.value or "", options.path_filters, options.max_files)
    for filtered in parsed.filtered_out:
        result.skipped_files[filtered.path] = filtered.reason
    for capped in parsed.skipped_by_limit:
        result.skipped_files[capped.path] = SkipReason.MAX_FILES
    for failure in parsed.failures:
        result.failures.append(FileFailure(path=failure.path, stage="parse", error=failure.error))

    incremental_files = await _fetch_incremental_files(context, diff_source, scheduler, resolution)
    plan = _plan_files(parsed.files, resolution.state, incremental_files)
    for path in plan.unchanged:
        result.skipped_files[path] = SkipReason.UNCHANGED_SINCE_LAST_REVIEW

    if not plan.to_review:
        new_state = update_after_run(
            resolution.state,
            context.head_sha,
            plan.recorded_digests,
            commit_ids=context.commit_ids,
            current_paths=parsed.all_paths,
        )
        if new_state != stored:
            await _save_state(collaborators.state_store, scheduler, new_state, result)
        result.status = RunStatus.SKIPPED
        result.message = "No changes to review since the last review"
        logger.info(f"Nothing to review for {context.review_key}")
        return

    # Summaries: join point before aggregation
    summarizer = Summarizer(collaborators.tiers, scheduler, options)
    summary_results = await summarizer.summarize_files(
        context, [full for full, _ in plan.to_review]
    )
    new_summaries: dict[str, FileSummary] = {}
    failed_paths: set[str] = set()
    for (full, _), summary_result in zip(plan.to_review, summary_results):
        if summary_result.ok and summary_result.value is not None:
            new_summaries[full.path] = summary_result.value
        else:
            failed_paths.add(full.path)
            result.failures.append(
                FileFailure(path=full.path, stage="summarize", error=str(summary_result.error))
            )

    ordered_summaries = _ordered_summaries(parsed.files, new_summaries, resolution.state)
    result.file_summaries = ordered_summaries
    unreviewed = [f.path for f in parsed.skipped_by_limit]
    pr_summary, aggregate_failures = await summarizer.aggregate(
        context, ordered_summaries, unreviewed
    )
    result.summary = pr_summary
    result.failures.extend(aggregate_failures)

    # Reviews
    approved = [
        path
        for path, s in new_summaries.items()
        if s.triage is Triage.APPROVED and not options.review_simple_changes
    ]
    pipeline = ReviewPipeline(collaborators.tiers, scheduler, options, diff_source)
    outcomes = await pipeline.review_files(
        context, [narrowed for _, narrowed in plan.to_review], new_summaries
    )
    for outcome in outcomes:
        result.failures.extend(outcome.failures)
        result.warnings.extend(outcome.warnings)
        result.comments.extend(outcome.comments)
        if outcome.failed:
            failed_paths.add(outcome.path)
    for path in approved:
        result.skipped_files[path] = SkipReason.TRIVIAL
    if options.disable_review:
        for full, _ in plan.to_review:
            result.skipped_files.setdefault(full.path, SkipReason.REVIEW_DISABLED)

    failed_paths |= await _publish_comments(
        context, collaborators.publisher, scheduler, outcomes, result
    )

    for full, _ in plan.to_review:
        if full.path not in failed_paths and full.path not in result.skipped_files:
            result.reviewed_files.append(full.path)

    body = render_summary_comment(
        options,
        pr_summary,
        ordered_summaries,
        unreviewed_by_limit=unreviewed,
        failures=result.failures,
        approved=approved,
        unchanged=plan.unchanged,
        base_sha=context.base_sha,
        head_sha=context.head_sha,
    )
    recorded = dict(plan.recorded_digests)
    for full, _ in plan.to_review:
        if full.path not in failed_paths:
            recorded[full.path] = full.digest
    new_state = update_after_run(
        resolution.state,
        context.head_sha,
        recorded,
        summaries={p: s.summary for p, s in new_summaries.items() if p not in failed_paths},
        commit_ids=context.commit_ids,
        current_paths=parsed.all_paths,
    )

    store = collaborators.state_store
    if store.writes_summary:
        # Summary and state go out in one edit, so the stored state is never absent
        await _save_state(store, scheduler, new_state, result, summary_body=body)
        return

    summary_post = await platform.submit(
        lambda: collaborators.publisher.post_summary_comment(body), label="post-summary"
    )
    if not summary_post.ok:
        result.failures.append(
            FileFailure(path="", stage="publish_summary", error=str(summary_post.error))
        )
    await _save_state(store, scheduler, new_state, result)


# === HELPER FUNCTIONS ===


async def _load_state(store: StateStore, scheduler: TaskScheduler) -> IncrementalReviewState:
    loaded = await scheduler.platform.submit(store.load, label="load-state")
    if not loaded.ok or loaded.value is None:
        logger.warning(f"Could not load review state, reviewing everything: {loaded.error}")
        return IncrementalReviewState()
    return loaded.value


async def _resolve_state(
    context: PullRequestContext,
    diff_source: DiffSource,
    scheduler: TaskScheduler,
    stored: IncrementalReviewState,
) -> StateResolution:
    """
    Check the stored head against the new head.

    Only asks the diff source when the heads differ. A failed ancestry check
    is treated like a rewritten history.
    """
    ancestry_intact = True
    previous = stored.head_sha
    if previous is not None and previous != context.head_sha:
        check = await scheduler.platform.submit(
            lambda: diff_source.is_ancestor(previous, context.head_sha),
            label="ancestry",
        )
        ancestry_intact = bool(check.ok and check.value)
    return resolve_state(stored, context.head_sha, ancestry_intact)


async def _fetch_incremental_files(
    context: PullRequestContext,
    diff_source: DiffSource,
    scheduler: TaskScheduler,
    resolution: StateResolution,
) -> dict[str, FileDiff] | None:
    """
    Files changed between the previous head and the new head.

    Returns None when there is no usable previous head or the fetch failed,
    meaning changed files are reviewed in full.
    """
    previous = resolution.previous_head
    if previous is None or previous == context.head_sha:
        return None

    fetched = await scheduler.platform.submit(
        lambda: diff_source.fetch_incremental_diff(context, previous),
        label="fetch-incremental-diff",
    )
    if not fetched.ok:
        logger.warning(f"Incremental diff unavailable, reviewing changed files in full: {fetched.error}")
        return None
    incremental = parse_diff(fetched.value or "")
    return {f.path: f for f in incremental.files}


def _plan_files(
    files: Sequence[FileDiff],
    state: IncrementalReviewState,
    incremental_files: dict[str, FileDiff] | None,
) -> _FilePlan:
    plan = _FilePlan()
    for file in files:
        if not should_review(file, file.digest, state):
            plan.unchanged.append(file.path)
            plan.recorded_digests[file.path] = file.digest
            continue

        incremental_file = incremental_files.get(file.path) if incremental_files else None
        narrowed = select_new_hunks(file, incremental_file)
        if not narrowed.hunks:
            logger.info(f"{file.path}: no hunks changed since the last review")
            plan.unchanged.append(file.path)
            plan.recorded_digests[file.path] = file.digest
            continue
        plan.to_review.append((file, narrowed))
    return plan


def _ordered_summaries(
    files: Sequence[FileDiff],
    new_summaries: dict[str, FileSummary],
    state: IncrementalReviewState,
) -> list[FileSummary]:
    """New summaries where available, cached ones otherwise, in diff order."""
    ordered: list[FileSummary] = []
    for file in files:
        if file.path in new_summaries:
            ordered.append(new_summaries[file.path])
        elif file.path in state.file_summaries:
            ordered.append(FileSummary(path=file.path, summary=state.file_summaries[file.path]))
    return ordered


async def _publish_comments(
    context: PullRequestContext,
    publisher: CommentPublisher,
    scheduler: TaskScheduler,
    outcomes: Sequence[FileReviewOutcome],
    result: ReviewRunResult,
) -> set[str]:
    """
    Post new comments as one review per file.

    Returns:
        Paths whose comments could not be published
    """
    if not result.comments:
        return set()

    existing = await scheduler.platform.submit(
        publisher.list_existing_comments, label="list-comments"
    )
    if not existing.ok:
        logger.warning(f"Could not list existing comments, duplicates possible: {existing.error}")
    fresh, duplicates = deduplicate_comments(result.comments, existing.value or [])
    result.duplicate_comments = len(duplicates)

    by_path: dict[str, list[ReviewComment]] = {}
    for comment in fresh:
        by_path.setdefault(comment.path, []).append(comment)
    ordered_paths = [o.path for o in outcomes if o.path in by_path]

    def _post(comments: list[ReviewComment]) -> Callable:
        return lambda: publisher.post_review_comments(context.head_sha, comments)

    posts = await scheduler.platform.map_ordered(
        [_post(by_path[path]) for path in ordered_paths],
        labels=[f"publish:{path}" for path in ordered_paths],
    )

    failed: set[str] = set()
    for path, post in zip(ordered_paths, posts):
        if post.ok:
            result.posted_comments += int(post.value or 0)
        else:
            failed.add(path)
            result.failures.append(FileFailure(path=path, stage="publish", error=str(post.error)))
    return failed


async def _save_state(
    store: StateStore,
    scheduler: TaskScheduler,
    state: IncrementalReviewState,
    result: ReviewRunResult,
    summary_body: str | None = None,
) -> None:
    saved = await scheduler.platform.submit(
        lambda: store.save(state, summary_body), label="save-state"
    )
    if not saved.ok:
        logger.error(f"Failed to save review state: {saved.error}")
        if summary_body is not None:
            result.failures.append(
                FileFailure(path="", stage="publish_summary", error=str(saved.error))
            )
        result.failures.append(FileFailure(path="", stage="save_state", error=str(saved.error)))


def build_state_store(
    app_settings: Settings,
    publisher: CommentPublisher,
    repo_name: str,
    pr_number: int,
    session_factory: Callable[[], Session] | None = None,
) -> StateStore:
    """Pick the configured state backend."""
    if app_settings.state_backend == "database":
        if session_factory is None:
            from codeguardian.database.db import SessionLocal

            session_factory = SessionLocal
        return DatabaseStateStore(session_factory, repo_name, pr_number)
    return CommentStateStore(publisher)


async def handle_pr_review(
    repo_name: str,
    pr_number: int,
    action: str = "opened",
    session_factory: Callable[[], Session] | None = None,
    app_settings: Settings | None = None,
    head_sha: str | None = None,
) -> ReviewRunResult:
    """
    Process a PR review job (executed by queue workers).

    Builds the GitHub and OpenAI collaborators, runs the review, and raises
    when the run failed at run level so the queue records the job as failed.
    A job queued for ``head_sha`` is skipped once the pull request has moved
    past it; the job queued for the newer push reviews that revision.

    Raises:
        RuntimeError: If the run failed at run level (quota exhausted, diff unavailable)
    """
    app_settings = app_settings or settings
    review_key = f"{repo_name}#{pr_number}"
    logger.info(f"Starting review job for {review_key} (action={action})")

    github_client = create_github_client(app_settings)
    try:
        repo = await asyncio.to_thread(github_client.get_repo, repo_name)
        pr = await asyncio.to_thread(repo.get_pull, pr_number)
        context = await asyncio.to_thread(build_pull_request_context, repo_name, pr)
        if head_sha and context.head_sha != head_sha:
            logger.info(
                f"{review_key} moved from {head_sha[:7]} to {context.head_sha[:7]}, "
                "skipping the outdated job"
            )
            return ReviewRunResult(
                status=RunStatus.SKIPPED,
                message=f"Superseded by {context.head_sha[:7]}",
            )

        async with httpx.AsyncClient(timeout=app_settings.github_timeout_ms / 1000) as http_client:
            publisher = GitHubCommentPublisher(repo, pr, bot_login=app_settings.bot_login)
            collaborators = ReviewCollaborators(
                diff_source=GitHubDiffSource(
                    repo, http_client, app_settings.github_token, app_settings.github_api_url
                ),
                publisher=publisher,
                state_store=build_state_store(
                    app_settings, publisher, repo_name, pr_number, session_factory
                ),
                tiers=build_model_tiers(app_settings),
            )
            result = await run_pr_review(
                context,
                collaborators,
                app_settings.review_options(),
                # Stop starting model calls before the queue kills the job
                deadline_seconds=max(60, app_settings.worker_job_timeout - 120),
            )
    finally:
        github_client.close()
        logger.info(f"Finished review job for {review_key}")

    if result.status is RunStatus.FAILED:
        raise RuntimeError(f"Review of {review_key} failed: {result.message}")
    return result
