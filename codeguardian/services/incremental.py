"""Incremental review decisions.

Pure functions over ``IncrementalReviewState``: nothing here talks to GitHub
or the database. The orchestrator loads the state once, asks these helpers
what to review, and saves the state returned by ``update_after_run`` once.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from codeguardian.exceptions import StateConflict
from codeguardian.models.diff import FileDiff, Hunk, LineKind
from codeguardian.models.github_types import PullRequestContext
from codeguardian.models.review_state import IncrementalReviewState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateResolution:
    """Which state a run may trust, and against which previous head."""

    state: IncrementalReviewState
    previous_head: str | None = None
    conflict: StateConflict | None = None

    @property
    def is_incremental(self) -> bool:
        return self.previous_head is not None


def resolve_state(
    state: IncrementalReviewState, new_head: str, ancestry_intact: bool
) -> StateResolution:
    """
    Decide whether the stored state can be used for this run.

    A stored head that is not an ancestor of ``new_head`` means history was
    rewritten (force-push); the state is discarded and every file is
    reviewed again. That is a recorded conflict, never a failure.

    Args:
        state: State loaded at the start of the run
        new_head: Head revision being reviewed
        ancestry_intact: Whether ``state.head_sha`` is an ancestor of ``new_head``
    """
    if state.head_sha is None:
        logger.info("No previous review recorded - performing full review")
        return StateResolution(state=IncrementalReviewState())

    if state.head_sha == new_head:
        return StateResolution(state=state, previous_head=new_head)

    if not ancestry_intact:
        conflict = StateConflict(state.head_sha, new_head)
        logger.warning(f"{conflict} - falling back to a full review")
        return StateResolution(state=IncrementalReviewState(), conflict=conflict)

    logger.info(f"Incremental review: comparing {state.head_sha[:7]}..{new_head[:7]}")
    return StateResolution(state=state, previous_head=state.head_sha)


def should_review(
    file: FileDiff, incoming_digest: str, state: IncrementalReviewState
) -> bool:
    """
    True unless the file was already reviewed with identical content.

    ``state`` must come from ``resolve_state`` so that a rewritten history
    has already emptied it.
    """
    previous = state.file_digests.get(file.path)
    if previous is None:
        return True
    return previous != incoming_digest


def _touched_target_lines(incremental_file: FileDiff) -> set[int]:
    touched: set[int] = set()
    for hunk in incremental_file.hunks:
        for line in hunk.lines:
            if line.kind is LineKind.ADDED and line.target_line is not None:
                touched.add(line.target_line)
        # A pure deletion has no target line; anchor it at the hunk position
        if any(line.kind is LineKind.REMOVED for line in hunk.lines):
            touched.update(hunk.target_range)
    return touched


def select_new_hunks(file: FileDiff, incremental_file: FileDiff | None) -> FileDiff:
    """
    Narrow a changed file to the hunks touched since the previous head.

    Args:
        file: The file as it appears in the full pull request diff
        incremental_file: The same file in the previous-head..head diff, or
            None when it is absent there

    Returns:
        ``file`` restricted to hunks whose target range overlaps lines
        changed by the new commits. All hunks are kept when there is no
        incremental diff for the file.
    """
    if incremental_file is None:
        return file

    touched = _touched_target_lines(incremental_file)
    kept: tuple[Hunk, ...] = tuple(
        hunk for hunk in file.hunks if touched.intersection(hunk.target_range)
    )
    if len(kept) != len(file.hunks):
        logger.debug(
            f"{file.path}: {len(kept)}/{len(file.hunks)} hunks changed since last review"
        )
    return file.with_hunks(kept)


def new_commit_ids(
    context: PullRequestContext, state: IncrementalReviewState
) -> list[str]:
    """Commits of the pull request not covered by a previous review."""
    seen = set(state.reviewed_commit_ids)
    return [sha for sha in context.commit_ids if sha not in seen]


def update_after_run(
    state: IncrementalReviewState,
    new_head: str,
    reviewed_files: Mapping[str, str],
    summaries: Mapping[str, str] | None = None,
    commit_ids: Sequence[str] = (),
    current_paths: Iterable[str] | None = None,
) -> IncrementalReviewState:
    """
    Produce the state to persist after a run. Never mutates ``state``.

    Args:
        state: State the run started from (after ``resolve_state``)
        new_head: Head revision that was reviewed
        reviewed_files: Path -> digest for files fully handled by this run.
            Files that failed must not be listed so they are retried.
        summaries: Path -> per-file summary produced by this run
        commit_ids: Commits covered by this run
        current_paths: When given, entries for paths no longer in the pull
            request are dropped
    """
    digests = dict(state.file_digests)
    digests.update(reviewed_files)
    file_summaries = dict(state.file_summaries)
    file_summaries.update(summaries or {})

    if current_paths is not None:
        keep = set(current_paths)
        digests = {path: d for path, d in digests.items() if path in keep}
        file_summaries = {p: s for p, s in file_summaries.items() if p in keep}

    reviewed_commits = list(state.reviewed_commit_ids)
    for sha in commit_ids:
        if sha not in reviewed_commits:
            reviewed_commits.append(sha)

    return IncrementalReviewState(
        head_sha=new_head,
        file_digests=digests,
        file_summaries=file_summaries,
        reviewed_commit_ids=tuple(reviewed_commits),
    )
