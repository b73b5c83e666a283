"""
In-process job queue with named lanes.

Each lane has its own priority queue, worker threads and default job options.
Jobs are delivered at least once: a failed or timed-out attempt is retried
with backoff until the job's attempt budget is spent.
"""

import itertools
import threading
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from queue import Empty, PriorityQueue
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from ..config import LaneConfig, default_lanes
from ..models.core import JobOptions, JobState, QueueName, utcnow
from .exceptions import JobQueueError, JobTimeoutError, WorkflowEngineError
from .logging import clear_logging_context, get_logger, set_logging_context

logger = get_logger(__name__)

JOB_EVENTS = ("completed", "failed", "progress")

Processor = Callable[["Job"], Any]
Listener = Callable[..., None]


class Job:
    """A unit of work on one lane, with its attempt history."""

    def __init__(self, queue_name: str, name: str, payload: Any, options: JobOptions,
                 job_id: Optional[str] = None):
        self.id = job_id or str(uuid.uuid4())
        self.queue_name = queue_name
        self.name = name
        self.payload = payload
        self.options = options
        self.attempts_made = 0
        self.state = JobState.WAITING
        self.progress: Any = 0
        self.result: Any = None
        self.failed_reason: Optional[str] = None
        self.error: Optional[Exception] = None
        self.created_at = utcnow()
        self.processed_at = None
        self.finished_at = None
        # Set when the current attempt is abandoned after a timeout
        self.abort_event = threading.Event()
        # Future of a timed-out attempt that may still be running
        self._abandoned: Optional[Future] = None
        self._done = threading.Event()
        self._progress_hook: Optional[Callable[["Job", Any], None]] = None

    @property
    def is_finished(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def update_progress(self, progress: Any) -> None:
        self.progress = progress
        if self._progress_hook is not None:
            self._progress_hook(self, progress)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job completes or fails for good. Returns False on timeout."""
        return self._done.wait(timeout)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "name": self.name,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "max_attempts": self.options.attempts,
            "priority": self.options.priority,
            "progress": self.progress,
            "failed_reason": self.failed_reason,
            "created_at": self.created_at.isoformat(),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class JobQueue:
    """
    Lanes of prioritized jobs served by bounded worker pools.

    Workers for a lane start when its processor is registered; jobs enqueued
    earlier wait until then. Lower priority values are served first, ties in
    enqueue order.
    """

    def __init__(self, lanes: Optional[Dict[str, LaneConfig]] = None, keep_finished: int = 1000):
        self.lanes: Dict[str, LaneConfig] = dict(lanes or default_lanes())
        self.keep_finished = keep_finished

        self._queues: Dict[str, PriorityQueue] = {name: PriorityQueue() for name in self.lanes}
        self._processors: Dict[str, Processor] = {}
        self._workers: Dict[str, List[threading.Thread]] = {}
        self._attempt_executors: Dict[str, ThreadPoolExecutor] = {}
        self._jobs: Dict[str, Job] = {}
        self._finished: Dict[str, Deque[str]] = {name: deque() for name in self.lanes}
        self._counters: Dict[str, Dict[str, int]] = {
            name: {"completed": 0, "failed": 0} for name in self.lanes
        }
        self._listeners: Dict[str, List[Tuple[Optional[str], Listener]]] = {event: [] for event in JOB_EVENTS}
        self._timers: Dict[str, threading.Timer] = {}
        self._resumed: Dict[str, threading.Event] = {}
        for name in self.lanes:
            self._resumed[name] = threading.Event()
            self._resumed[name].set()

        self._lock = threading.RLock()
        self._sequence = itertools.count()
        self._stopping = threading.Event()

        logger.info(f"JobQueue initialized with lanes: {', '.join(self.lanes)}")

    def _lane_name(self, queue_name: Union[str, QueueName]) -> str:
        name = queue_name.value if isinstance(queue_name, QueueName) else str(queue_name)
        if name not in self.lanes:
            raise JobQueueError(f"Unknown queue: {name}", queue_name=name)
        return name

    def _job_options(self, lane: LaneConfig, options: Union[JobOptions, Dict[str, Any], None]) -> JobOptions:
        defaults = lane.default_job_options()
        if options is None:
            return defaults
        if isinstance(options, JobOptions):
            overrides = options.model_dump(exclude_unset=True)
        else:
            overrides = dict(options)
        return JobOptions.model_validate({**defaults.model_dump(), **overrides})

    # Producing

    def enqueue(
        self,
        queue_name: Union[str, QueueName],
        payload: Any,
        options: Union[JobOptions, Dict[str, Any], None] = None,
        name: Optional[str] = None
    ) -> Job:
        """
        Add a job to a lane.

        Options the caller leaves unset take the lane's defaults. A job ID
        that is already known returns the existing job instead of adding a
        new one.

        Raises:
            JobQueueError: If the lane does not exist or the queue is shut down
        """
        lane_name = self._lane_name(queue_name)
        if self._stopping.is_set():
            raise JobQueueError("Job queue is shut down", queue_name=lane_name)

        job_options = self._job_options(self.lanes[lane_name], options)

        with self._lock:
            if job_options.job_id and job_options.job_id in self._jobs:
                existing = self._jobs[job_options.job_id]
                logger.info(f"Job {existing.id} already queued on {existing.queue_name}, not adding a duplicate")
                return existing

            job = Job(lane_name, name or lane_name, payload, job_options, job_id=job_options.job_id)
            job._progress_hook = self._on_job_progress
            self._jobs[job.id] = job

        logger.debug(f"Enqueued job {job.id} on {lane_name} (priority={job_options.priority})")
        self._schedule(job, job_options.delay)
        return job

    def submit_and_wait(
        self,
        queue_name: Union[str, QueueName],
        payload: Any,
        options: Union[JobOptions, Dict[str, Any], None] = None,
        name: Optional[str] = None,
        poll_interval: float = 0.1
    ) -> Any:
        """
        Enqueue a job and block the calling thread until it finishes.

        Returns the job's result. When the job fails for good, the error of
        its last attempt is raised.

        Raises:
            JobQueueError: If the queue shuts down before the job finishes
        """
        job = self.enqueue(queue_name, payload, options, name=name)
        while not job.wait(poll_interval):
            if self._stopping.is_set():
                raise JobQueueError(f"Job queue shut down while waiting for job {job.id}",
                                    queue_name=job.queue_name)

        if job.state == JobState.FAILED:
            if job.error is not None:
                raise job.error
            raise JobQueueError(f"Job {job.id} failed: {job.failed_reason}", queue_name=job.queue_name)
        return job.result

    def _schedule(self, job: Job, delay: float) -> None:
        abandoned, job._abandoned = job._abandoned, None
        if abandoned is not None:
            # A job never has two attempts running at once
            job.state = JobState.DELAYED
            abandoned.add_done_callback(lambda _: self._schedule(job, delay))
            return

        if delay <= 0:
            self._push(job)
            return

        job.state = JobState.DELAYED
        timer = threading.Timer(delay, self._push, args=(job,))
        timer.daemon = True
        with self._lock:
            self._timers[job.id] = timer
        timer.start()

    def _push(self, job: Job) -> None:
        with self._lock:
            self._timers.pop(job.id, None)
            if self._stopping.is_set():
                return
            job.state = JobState.WAITING
            self._queues[job.queue_name].put((job.options.priority, next(self._sequence), job.id))

    # Consuming

    def register_processor(self, queue_name: Union[str, QueueName], processor: Processor) -> None:
        """Attach the function that processes a lane's jobs and start its workers."""
        lane_name = self._lane_name(queue_name)
        with self._lock:
            if lane_name in self._processors:
                raise JobQueueError(f"A processor is already registered for {lane_name}", queue_name=lane_name)
            self._processors[lane_name] = processor

            lane = self.lanes[lane_name]
            self._attempt_executors[lane_name] = ThreadPoolExecutor(
                max_workers=lane.concurrency * 2,
                thread_name_prefix=f"{lane_name}-attempt"
            )
            workers = []
            for index in range(lane.concurrency):
                worker = threading.Thread(
                    target=self._worker_loop,
                    args=(lane_name,),
                    name=f"{lane_name}-worker-{index}",
                    daemon=True
                )
                worker.start()
                workers.append(worker)
            self._workers[lane_name] = workers

        logger.info(f"Started {lane.concurrency} workers for queue {lane_name}")

    def _worker_loop(self, lane_name: str) -> None:
        queue = self._queues[lane_name]
        while not self._stopping.is_set():
            if not self._resumed[lane_name].wait(timeout=0.1):
                continue
            try:
                _, _, job_id = queue.get(timeout=0.1)
            except Empty:
                continue

            try:
                job = self._jobs.get(job_id)
                if job is not None:
                    self._process(job)
            finally:
                queue.task_done()

    def _process(self, job: Job) -> None:
        processor = self._processors[job.queue_name]
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        job.processed_at = utcnow()
        job.abort_event = threading.Event()
        set_logging_context(queue=job.queue_name, job_id=job.id)
        logger.debug(f"Processing job {job.id} (attempt {job.attempts_made}/{job.options.attempts})")

        try:
            try:
                result = self._run_attempt(job, processor)
            except Exception as e:
                self._handle_failure(job, e)
                return

            job.result = result
            job.error = None
            job.state = JobState.COMPLETED
            job.finished_at = utcnow()
            self._record_finished(job, "completed")
            logger.info(f"Job {job.id} completed on {job.queue_name}")
            self._emit("completed", job, result)
            job._done.set()
        finally:
            clear_logging_context()

    def _run_attempt(self, job: Job, processor: Processor) -> Any:
        timeout = job.options.timeout
        if timeout is None:
            return processor(job)

        future = self._attempt_executors[job.queue_name].submit(processor, job)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            # The attempt thread keeps running; it is told to stop at its next checkpoint
            job.abort_event.set()
            job._abandoned = future
            raise JobTimeoutError(job.id, timeout)

    def _handle_failure(self, job: Job, error: Exception) -> None:
        job.failed_reason = str(error)
        job.error = error
        recoverable = error.recoverable if isinstance(error, WorkflowEngineError) else True
        final = not recoverable or job.attempts_made >= job.options.attempts
        delay = 0.0 if final else job.options.backoff.compute_delay(job.attempts_made)

        if final:
            job.state = JobState.FAILED
            job.finished_at = utcnow()
            self._record_finished(job, "failed")
            reason = "non-recoverable error" if not recoverable else "attempts exhausted"
            logger.error(f"Job {job.id} failed on {job.queue_name} ({reason}): {error}",
                         exc_info=not isinstance(error, WorkflowEngineError))
        else:
            logger.warning(
                f"Job {job.id} attempt {job.attempts_made}/{job.options.attempts} failed: {error}. "
                f"Retrying in {delay:.2f}s"
            )

        self._emit("failed", job, error, final)

        if final:
            job._done.set()
        else:
            self._schedule(job, delay)

    def _record_finished(self, job: Job, outcome: str) -> None:
        with self._lock:
            self._counters[job.queue_name][outcome] += 1
            finished = self._finished[job.queue_name]
            finished.append(job.id)
            while len(finished) > self.keep_finished:
                evicted = finished.popleft()
                evicted_job = self._jobs.get(evicted)
                if evicted_job is not None and evicted_job.is_finished:
                    del self._jobs[evicted]

    # Events

    def on(self, event: str, listener: Listener, queue_name: Union[str, QueueName, None] = None) -> None:
        """
        Subscribe to job events, on one lane or on all of them.

        Listeners are called as ``completed(job, result)``,
        ``failed(job, error, final)`` and ``progress(job, progress)``.
        """
        if event not in JOB_EVENTS:
            raise JobQueueError(f"Unknown job event: {event}")
        lane_name = self._lane_name(queue_name) if queue_name is not None else None
        with self._lock:
            self._listeners[event].append((lane_name, listener))

    def _on_job_progress(self, job: Job, progress: Any) -> None:
        self._emit("progress", job, progress)

    def _emit(self, event: str, job: Job, *args) -> None:
        with self._lock:
            listeners = list(self._listeners[event])
        for lane_name, listener in listeners:
            if lane_name is not None and lane_name != job.queue_name:
                continue
            try:
                listener(job, *args)
            except Exception as e:
                logger.error(f"Error in {event} listener for job {job.id}: {str(e)}", exc_info=True)

    # Management

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def get_jobs(self, queue_name: Union[str, QueueName], state: Optional[JobState] = None) -> List[Job]:
        lane_name = self._lane_name(queue_name)
        with self._lock:
            return [
                job for job in self._jobs.values()
                if job.queue_name == lane_name and (state is None or job.state == state)
            ]

    def get_stats(self, queue_name: Union[str, QueueName, None] = None) -> Dict[str, Dict[str, Any]]:
        """Per-lane job counts by state."""
        lane_names = [self._lane_name(queue_name)] if queue_name is not None else list(self.lanes)
        stats: Dict[str, Dict[str, Any]] = {}
        with self._lock:
            for lane_name in lane_names:
                lane_jobs = [job for job in self._jobs.values() if job.queue_name == lane_name]
                stats[lane_name] = {
                    "waiting": sum(1 for job in lane_jobs if job.state == JobState.WAITING),
                    "delayed": sum(1 for job in lane_jobs if job.state == JobState.DELAYED),
                    "active": sum(1 for job in lane_jobs if job.state == JobState.ACTIVE),
                    "completed": self._counters[lane_name]["completed"],
                    "failed": self._counters[lane_name]["failed"],
                    "paused": self.is_paused(lane_name),
                    "concurrency": self.lanes[lane_name].concurrency,
                    "workers": len(self._workers.get(lane_name, [])),
                }
        return stats

    def pause(self, queue_name: Union[str, QueueName, None] = None) -> None:
        """Stop handing out new jobs; active jobs run to the end of their attempt."""
        for lane_name in ([self._lane_name(queue_name)] if queue_name is not None else self.lanes):
            self._resumed[lane_name].clear()
            logger.info(f"Paused queue {lane_name}")

    def resume(self, queue_name: Union[str, QueueName, None] = None) -> None:
        for lane_name in ([self._lane_name(queue_name)] if queue_name is not None else self.lanes):
            self._resumed[lane_name].set()
            logger.info(f"Resumed queue {lane_name}")

    def is_paused(self, queue_name: Union[str, QueueName]) -> bool:
        return not self._resumed[self._lane_name(queue_name)].is_set()

    def retry_job(self, job_id: str) -> Job:
        """
        Put a terminally failed job back on its lane with a fresh attempt budget.

        Raises:
            JobQueueError: If the job is unknown or has not failed
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobQueueError(f"Job not found: {job_id}")
        if job.state != JobState.FAILED:
            raise JobQueueError(f"Only failed jobs can be retried, job {job_id} is {job.state.value}",
                                queue_name=job.queue_name)

        with self._lock:
            self._counters[job.queue_name]["failed"] -= 1
            if job_id in self._finished[job.queue_name]:
                self._finished[job.queue_name].remove(job_id)
        job.attempts_made = 0
        job.failed_reason = None
        job.error = None
        job.finished_at = None
        job._done.clear()
        logger.info(f"Retrying failed job {job_id} on {job.queue_name}")
        self._schedule(job, 0)
        return job

    def shutdown(self, wait: bool = True, timeout: Optional[float] = 30.0) -> None:
        """
        Stop all workers.

        Pending timers are cancelled and queued jobs stay unprocessed. Active
        attempts are given ``timeout`` seconds to finish when ``wait`` is set.
        """
        if self._stopping.is_set():
            return
        self._stopping.set()

        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

        if wait:
            for workers in self._workers.values():
                for worker in workers:
                    worker.join(timeout=timeout)

        for executor in self._attempt_executors.values():
            executor.shutdown(wait=False)

        logger.info("JobQueue shut down")
