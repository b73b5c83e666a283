"""Tests for the in-process job queue."""

import threading
import time
import pytest

from workflow_runtime.config import LaneConfig
from workflow_runtime.core.exceptions import ConfigurationError, JobQueueError
from workflow_runtime.core.job_queue import JobQueue
from workflow_runtime.models.core import BackoffPolicy, BackoffType, JobOptions, JobState, QueueName

LANE = QueueName.WORKFLOW_EXECUTION.value


@pytest.fixture
def queue():
    """Single-worker lane with fast fixed backoff."""
    lanes = {
        LANE: LaneConfig(concurrency=1, priority=10, attempts=3, backoff_type=BackoffType.FIXED, backoff_delay=0.01),
        QueueName.NODE_EXECUTION.value: LaneConfig(concurrency=2, attempts=1),
    }
    job_queue = JobQueue(lanes)
    yield job_queue
    job_queue.shutdown(wait=True, timeout=5.0)


class FlakyProcessor:
    """Fails a fixed number of times, then succeeds."""

    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or RuntimeError("transient failure")
        self.calls = 0

    def __call__(self, job):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return {"payload": job.payload, "attempt": job.attempts_made}


class TestJobProcessing:
    """Test attempts, retries and timeouts."""

    def test_job_completes(self, queue):
        completed = []
        queue.on("completed", lambda job, result: completed.append(result))
        queue.register_processor(LANE, lambda job: job.payload * 2)

        job = queue.enqueue(LANE, 21)

        assert job.wait(5)
        assert job.state == JobState.COMPLETED
        assert job.result == 42
        assert job.attempts_made == 1
        assert completed == [42]

    def test_retried_until_success(self, queue):
        failures = []
        queue.on("failed", lambda job, error, final: failures.append(final))
        processor = FlakyProcessor(failures=2)
        queue.register_processor(LANE, processor)

        job = queue.enqueue(LANE, "data", {"attempts": 3})

        assert job.wait(5)
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 3
        assert job.result == {"payload": "data", "attempt": 3}
        assert failures == [False, False]

    def test_attempts_exhausted(self, queue):
        failures = []
        queue.on("failed", lambda job, error, final: failures.append((str(error), final)))
        queue.register_processor(LANE, FlakyProcessor(failures=10))

        job = queue.enqueue(LANE, "data", {"attempts": 2})

        assert job.wait(5)
        assert job.state == JobState.FAILED
        assert job.attempts_made == 2
        assert job.failed_reason == "transient failure"
        assert failures == [("transient failure", False), ("transient failure", True)]
        assert queue.get_stats(LANE)[LANE]["failed"] == 1

    def test_non_recoverable_error_not_retried(self, queue):
        processor = FlakyProcessor(failures=10, error=ConfigurationError("bad config"))
        queue.register_processor(LANE, processor)

        job = queue.enqueue(LANE, "data", {"attempts": 5})

        assert job.wait(5)
        assert job.state == JobState.FAILED
        assert processor.calls == 1

    def test_timeout_counts_as_failed_attempt(self, queue):
        def slow_once(job):
            if job.attempts_made == 1:
                job.abort_event.wait(5)
                return "abandoned"
            return "done"

        queue.register_processor(LANE, slow_once)

        job = queue.enqueue(LANE, None, {"attempts": 2, "timeout": 0.2})

        assert job.wait(5)
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 2
        assert job.result == "done"

    def test_timeout_exhausts_attempts(self, queue):
        def hang(job):
            job.abort_event.wait(5)

        queue.register_processor(LANE, hang)

        job = queue.enqueue(LANE, None, {"attempts": 2, "timeout": 0.1})

        assert job.wait(5)
        assert job.state == JobState.FAILED
        assert "timed out" in job.failed_reason
        assert job.attempts_made == 2

    def test_progress_events(self, queue):
        progress = []
        queue.on("progress", lambda job, value: progress.append(value), queue_name=LANE)

        def report(job):
            job.update_progress(50)
            job.update_progress(100)

        queue.register_processor(LANE, report)
        job = queue.enqueue(LANE, None)

        assert job.wait(5)
        assert progress == [50, 100]
        assert job.progress == 100

    def test_listener_errors_do_not_break_processing(self, queue):
        def broken_listener(job, result):
            raise RuntimeError("listener failed")

        queue.on("completed", broken_listener)
        queue.register_processor(LANE, lambda job: "ok")

        job = queue.enqueue(LANE, None)

        assert job.wait(5)
        assert job.state == JobState.COMPLETED


class ActiveCounter:
    """Counts how many calls are inside ``track`` at the same time."""

    def __init__(self):
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0
        self.calls = 0

    def enter(self):
        with self._lock:
            self.active += 1
            self.calls += 1
            self.peak = max(self.peak, self.active)

    def leave(self):
        with self._lock:
            self.active -= 1

    def track(self, seconds):
        self.enter()
        try:
            time.sleep(seconds)
        finally:
            self.leave()


class TestConcurrency:
    """Test bounded workers per lane and isolation between lanes."""

    def test_lane_never_exceeds_its_concurrency(self, queue):
        lane = QueueName.NODE_EXECUTION.value
        counter = ActiveCounter()
        queue.register_processor(lane, lambda job: counter.track(0.1))

        jobs = [queue.enqueue(lane, index) for index in range(5)]

        for job in jobs:
            assert job.wait(5)
            assert job.state == JobState.COMPLETED
        assert counter.calls == 5
        assert counter.peak == 2

    def test_lanes_progress_independently(self, queue):
        started = threading.Event()
        release = threading.Event()

        def block(job):
            started.set()
            return release.wait(5)

        queue.register_processor(LANE, block)
        queue.register_processor(QueueName.NODE_EXECUTION.value, lambda job: "done")

        blocked = queue.enqueue(LANE, None)
        try:
            assert started.wait(5)
            other = queue.enqueue(QueueName.NODE_EXECUTION, None)

            assert other.wait(5)
            assert other.result == "done"
            assert blocked.state == JobState.ACTIVE
        finally:
            release.set()
        assert blocked.wait(5)

    def test_retry_waits_for_timed_out_attempt(self, queue):
        counter = ActiveCounter()
        queue.register_processor(LANE, lambda job: counter.track(0.3))

        job = queue.enqueue(LANE, None, {"attempts": 2, "timeout": 0.1})

        assert job.wait(5)
        assert job.state == JobState.FAILED
        assert job.attempts_made == 2
        # The second attempt was abandoned too; let it run out
        time.sleep(0.4)
        assert counter.calls == 2
        assert counter.peak == 1


class TestOrdering:
    """Test priority ordering, delays and pausing."""

    def test_lower_priority_value_served_first(self, queue):
        order = []
        for name, priority in (("low", 5), ("high", 1), ("mid", 3), ("mid-2", 3)):
            queue.enqueue(LANE, name, {"priority": priority})

        queue.register_processor(LANE, lambda job: order.append(job.payload))

        for job in queue.get_jobs(LANE):
            assert job.wait(5)
        assert order == ["high", "mid", "mid-2", "low"]

    def test_delayed_job(self, queue):
        queue.register_processor(LANE, lambda job: "ok")

        job = queue.enqueue(LANE, None, {"delay": 0.3})

        assert job.state == JobState.DELAYED
        assert queue.get_stats(LANE)[LANE]["delayed"] == 1
        assert job.wait(5)
        assert job.state == JobState.COMPLETED

    def test_pause_and_resume(self, queue):
        processed = threading.Event()
        queue.register_processor(LANE, lambda job: processed.set())
        queue.pause(LANE)
        time.sleep(0.3)

        job = queue.enqueue(LANE, None)
        time.sleep(0.3)

        assert queue.is_paused(LANE)
        assert job.state == JobState.WAITING
        assert not processed.is_set()

        queue.resume(LANE)
        assert job.wait(5)
        assert processed.is_set()


class TestJobManagement:
    """Test options, de-duplication and management operations."""

    def test_lane_defaults_fill_unset_options(self, queue):
        job = queue.enqueue(LANE, None, JobOptions(attempts=7))
        assert job.options.attempts == 7
        assert job.options.priority == 10
        assert job.options.backoff.type == BackoffType.FIXED

        job = queue.enqueue(LANE, None)
        assert job.options.attempts == 3

    def test_duplicate_job_id_returns_existing_job(self, queue):
        first = queue.enqueue(LANE, "a", {"job_id": "run:1"})
        second = queue.enqueue(LANE, "b", {"job_id": "run:1"})

        assert second is first
        assert len(queue.get_jobs(LANE)) == 1
        assert queue.get_job("run:1").payload == "a"

    def test_unknown_lane(self, queue):
        with pytest.raises(JobQueueError):
            queue.enqueue("no-such-lane", None)

    def test_processor_registered_once(self, queue):
        queue.register_processor(LANE, lambda job: None)
        with pytest.raises(JobQueueError):
            queue.register_processor(LANE, lambda job: None)

    def test_retry_failed_job(self, queue):
        processor = FlakyProcessor(failures=1, error=ConfigurationError("bad config"))
        queue.register_processor(LANE, processor)

        job = queue.enqueue(LANE, "data")
        assert job.wait(5)
        assert job.state == JobState.FAILED

        queue.retry_job(job.id)

        assert job.wait(5)
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 1
        stats = queue.get_stats(LANE)[LANE]
        assert stats["failed"] == 0
        assert stats["completed"] == 1

    def test_only_failed_jobs_retried(self, queue):
        queue.register_processor(LANE, lambda job: "ok")
        job = queue.enqueue(LANE, None)
        assert job.wait(5)

        with pytest.raises(JobQueueError):
            queue.retry_job(job.id)
        with pytest.raises(JobQueueError):
            queue.retry_job("unknown")

    def test_stats_cover_every_lane(self, queue):
        stats = queue.get_stats()
        assert set(stats) == {LANE, QueueName.NODE_EXECUTION.value}
        assert stats[LANE]["concurrency"] == 1
        assert stats[LANE]["workers"] == 0

    def test_submit_and_wait(self, queue):
        queue.register_processor(LANE, FlakyProcessor(failures=1))
        assert queue.submit_and_wait(LANE, "data") == {"payload": "data", "attempt": 2}

    def test_submit_and_wait_raises_last_error(self, queue):
        queue.register_processor(LANE, FlakyProcessor(failures=10, error=ConfigurationError("bad config")))
        with pytest.raises(ConfigurationError, match="bad config"):
            queue.submit_and_wait(LANE, "data")

    def test_enqueue_after_shutdown(self, queue):
        queue.shutdown(wait=False)
        with pytest.raises(JobQueueError):
            queue.enqueue(LANE, None)

    def test_finished_jobs_evicted(self):
        job_queue = JobQueue({LANE: LaneConfig(concurrency=1, attempts=1)}, keep_finished=2)
        try:
            job_queue.register_processor(LANE, lambda job: None)
            jobs = [job_queue.enqueue(LANE, index) for index in range(4)]
            for job in jobs:
                assert job.wait(5)

            assert job_queue.get_job(jobs[0].id) is None
            assert job_queue.get_job(jobs[3].id) is jobs[3]
            assert job_queue.get_stats(LANE)[LANE]["completed"] == 4
        finally:
            job_queue.shutdown(wait=True, timeout=5.0)


class TestBackoffPolicy:
    """Test retry delay computation."""

    def test_exponential(self):
        policy = BackoffPolicy(type=BackoffType.EXPONENTIAL, delay=2.0)
        assert [policy.compute_delay(attempt) for attempt in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_fixed(self):
        policy = BackoffPolicy(type=BackoffType.FIXED, delay=1.5)
        assert policy.compute_delay(1) == policy.compute_delay(4) == 1.5

    def test_capped(self):
        policy = BackoffPolicy(delay=10.0, max_delay=25.0)
        assert policy.compute_delay(5) == 25.0
        assert policy.compute_delay(0) == 0.0
