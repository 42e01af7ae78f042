"""Unit tests for lane selection and head-keyed review jobs."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
from rq.job import JobStatus

from codeguardian.config.settings import ReviewOptions
from codeguardian.models.github_types import PullRequestEvent
from codeguardian.queue import config
from codeguardian.queue.config import Lane, ReviewQueues, lane_for, review_job_id

OLD_HEAD = "a" * 40
NEW_HEAD = "b" * 40


def _event(action="synchronize", head_sha=NEW_HEAD, changed_files=3) -> PullRequestEvent:
    return PullRequestEvent(
        action=action,
        repo_full_name="acme/widgets",
        pr_number=42,
        head_sha=head_sha,
        changed_files=changed_files,
    )


class FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, bytes] = {}

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value, ex=None):
        self.values[key] = value.encode()


class FakeJob:
    def __init__(self, job_id, status=JobStatus.QUEUED, args=()) -> None:
        self.id = job_id
        self.status = status
        self.args = args
        self.cancelled = False

    def get_status(self, refresh=False):
        return self.status

    def cancel(self):
        self.cancelled = True
        self.status = JobStatus.CANCELED


class FakeQueue:
    def __init__(self, name, jobs) -> None:
        self.name = name
        self.jobs = jobs
        self.count = 0
        self.enqueued: list[dict] = []

    def enqueue(self, func, *args, job_id=None, **kwargs):
        self.enqueued.append({"func": func, "args": args, "job_id": job_id, **kwargs})
        job = FakeJob(job_id, args=args)
        self.jobs[job_id] = job
        self.count += 1
        return job


@pytest.fixture
def queues():
    jobs: dict[str, FakeJob] = {}
    lanes = {lane: FakeQueue(f"reviews:{lane.value}", jobs) for lane in Lane}
    review_queues = ReviewQueues(FakeRedis(), job_timeout=1800, lanes=lanes)
    with patch.object(ReviewQueues, "fetch", lambda self, job_id: jobs.get(job_id)):
        yield review_queues


class TestLaneFor:
    def test_first_reviews_go_first(self) -> None:
        assert lane_for(_event("opened"), ReviewOptions()) is Lane.HIGH
        assert lane_for(_event("reopened"), ReviewOptions()) is Lane.HIGH

    def test_follow_up_pushes_use_the_default_lane(self) -> None:
        assert lane_for(_event("synchronize"), ReviewOptions()) is Lane.DEFAULT

    def test_summary_only_runs_go_last(self) -> None:
        assert lane_for(_event("opened"), ReviewOptions(disable_review=True)) is Lane.LOW

    def test_pull_requests_over_the_file_limit_go_last(self) -> None:
        options = ReviewOptions(max_files=20)

        assert lane_for(_event("opened", changed_files=21), options) is Lane.LOW
        assert lane_for(_event("opened", changed_files=20), options) is Lane.HIGH

    def test_unlimited_files_never_lowers_the_lane(self) -> None:
        options = ReviewOptions(max_files=0)

        assert lane_for(_event("opened", changed_files=5000), options) is Lane.HIGH


def test_job_ids_differ_per_head_revision() -> None:
    assert review_job_id("acme/widgets", 42, OLD_HEAD) == "review-acme__widgets-pr-42-aaaaaaaaaaaa"
    assert review_job_id("acme/widgets", 42, OLD_HEAD) != review_job_id(
        "acme/widgets", 42, NEW_HEAD
    )


class TestEnqueue:
    def test_job_carries_the_head_revision(self, queues) -> None:
        job = queues.enqueue(_event(), Lane.DEFAULT)

        call = queues.lanes[Lane.DEFAULT].enqueued[0]
        assert call["func"] is config.run_review_job
        assert call["args"] == ("acme/widgets", 42, NEW_HEAD, "synchronize")
        assert call["job_timeout"] == 1800
        assert call["retry"] is config.RETRY_STRATEGY
        assert queues.latest_job("acme/widgets", 42) is job

    def test_repeated_delivery_returns_the_waiting_job(self, queues) -> None:
        first = queues.enqueue(_event(), Lane.DEFAULT)
        second = queues.enqueue(_event(), Lane.DEFAULT)

        assert second is first
        assert len(queues.lanes[Lane.DEFAULT].enqueued) == 1

    def test_finished_revision_can_be_queued_again(self, queues) -> None:
        first = queues.enqueue(_event(), Lane.DEFAULT)
        first.status = JobStatus.FINISHED

        queues.enqueue(_event(), Lane.DEFAULT)

        assert len(queues.lanes[Lane.DEFAULT].enqueued) == 2

    def test_newer_push_cancels_the_waiting_older_job(self, queues) -> None:
        old = queues.enqueue(_event("opened", head_sha=OLD_HEAD), Lane.HIGH)

        new = queues.enqueue(_event(head_sha=NEW_HEAD), Lane.DEFAULT)

        assert old.cancelled is True
        assert new.cancelled is False
        assert queues.latest_job("acme/widgets", 42) is new

    def test_running_older_job_is_left_alone(self, queues) -> None:
        old = queues.enqueue(_event("opened", head_sha=OLD_HEAD), Lane.HIGH)
        old.status = JobStatus.STARTED

        queues.enqueue(_event(head_sha=NEW_HEAD), Lane.DEFAULT)

        assert old.cancelled is False

    def test_other_pull_requests_are_untouched(self, queues) -> None:
        other = queues.enqueue(
            PullRequestEvent(
                action="opened", repo_full_name="acme/widgets", pr_number=7, head_sha=OLD_HEAD
            ),
            Lane.HIGH,
        )

        queues.enqueue(_event(), Lane.DEFAULT)

        assert other.cancelled is False


def test_lanes_are_drained_high_first(queues) -> None:
    assert [q.name for q in queues.ordered()] == ["reviews:high", "reviews:default", "reviews:low"]
    assert queues.counts() == {"high": 0, "default": 0, "low": 0}


def test_run_review_job_reviews_the_queued_revision() -> None:
    result = SimpleNamespace(
        status=SimpleNamespace(value="skipped"),
        message="Superseded by bbbbbbb",
        reviewed_files=[],
        posted_comments=0,
        failures=[],
        model_calls=0,
    )

    async def fake_handle(repo_name, pr_number, action, head_sha=None):
        assert (repo_name, pr_number, action, head_sha) == ("acme/widgets", 42, "opened", OLD_HEAD)
        return result

    with patch(
        "codeguardian.api.handlers.pr_review_handler.handle_pr_review", fake_handle
    ):
        summary = config.run_review_job("acme/widgets", 42, OLD_HEAD, "opened")

    assert summary["status"] == "skipped"
    assert summary["message"] == "Superseded by bbbbbbb"
