"""Contains the job executor, which runs a work function for every job spec in a
matrix on a bounded pool of worker threads, along with the job result/status
classes and the per-job error types.

Work functions are plain callables taking a single ``JobSpec`` and returning an
iterable of ``(kind, payload)`` pairs (or ``None``). A work function that wants
to cooperate with cancellation and deadlines can grab its ``JobContext`` with
``current_context()``:

.. code-block:: python

    from matrixbuild import executor

    def build(spec):
        context = executor.current_context()
        for step in steps:
            context.check()  # raises if the job timed out or the run was cancelled
            ...
        return [("text", log_text), ("json", results_json)]
"""

import json
import logging
import queue
import threading
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Optional

import psutil

from matrixbuild import utils
from matrixbuild.matrix import ConfigurationError, JobSpec
from matrixbuild.registry import Artifact, ArtifactRegistry

WorkFunction = Callable[[JobSpec], Optional[Iterable[tuple[str, Any]]]]


class JobFailure(Exception):
    """A single job's work function raised an error. The original exception is
    available as ``__cause__``."""

    def __init__(self, spec: JobSpec, message: str = None):
        self.spec = spec
        if message is None:
            message = f"Job '{spec}' failed"
        super().__init__(message)


class JobTimeoutError(JobFailure):
    """A job ran past its deadline."""

    def __init__(self, spec: JobSpec, timeout: float):
        self.timeout = timeout
        super().__init__(spec, f"Job '{spec}' exceeded its {timeout}s deadline")


class JobCancelled(Exception):
    """Raised inside a work function (through ``JobContext.check()``) once the run
    has been cancelled."""

    pass


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.succeeded, JobStatus.failed, JobStatus.cancelled)

    def __str__(self):
        return self.value


@dataclass
class JobResult:
    """The outcome of running a single job spec. Only the executor mutates these."""

    spec: JobSpec
    status: JobStatus = JobStatus.pending
    started: datetime = None
    """When the first attempt started, ``None`` if the job never started."""
    ended: datetime = None
    artifacts: list[Artifact] = field(default_factory=list)
    """Artifacts registered from this job's outputs, only populated when the executor has
    a registry."""
    outputs: list[tuple[str, bytes]] = field(default_factory=list, repr=False)
    """The raw ``(kind, payload)`` pairs returned by the work function."""
    error: str = None
    """The exception class and error string, if the job failed or was cancelled."""
    exception: BaseException = field(default=None, repr=False, compare=False)
    attempts: int = 0

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.succeeded

    @property
    def duration(self) -> float:
        """Seconds between start and end, 0 if the job never ran."""
        if self.started is None or self.ended is None:
            return 0.0
        return (self.ended - self.started).total_seconds()

    @property
    def artifact_names(self) -> list[str]:
        return [artifact.name for artifact in self.artifacts]


_CONTEXT = threading.local()


def current_context() -> Optional["JobContext"]:
    """Get the context of the job running on the current thread, ``None`` when called
    outside of a job."""
    return getattr(_CONTEXT, "context", None)


class JobContext:
    """Cooperative cancellation and deadline handle for a single running job.

    Args:
        spec (JobSpec): The job this context belongs to.
        attempt (int): Which attempt this is, starting at 1.
        run_cancelled (threading.Event): The run-wide cancellation flag.
        deadline (float): The ``time.monotonic()`` value after which the job has timed
            out, or ``None`` for no deadline.
        timeout (float): The configured job timeout, used for error messages.
    """

    def __init__(
        self,
        spec: JobSpec,
        attempt: int,
        run_cancelled: threading.Event,
        deadline: float = None,
        timeout: float = None,
    ):
        self.spec = spec
        self.attempt = attempt
        self.deadline = deadline
        self.timeout = timeout
        self._run_cancelled = run_cancelled
        self._signal = threading.Event()
        """Set whenever the job should stop, either from cancellation or the deadline."""

    @property
    def cancelled(self) -> bool:
        return self._run_cancelled.is_set()

    @property
    def timed_out(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, ``None`` if there is no deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def signal(self):
        self._signal.set()

    def check(self):
        """Raise ``JobTimeoutError`` if past the deadline or ``JobCancelled`` if the run
        was cancelled, otherwise do nothing."""
        if self.timed_out:
            raise JobTimeoutError(self.spec, self.timeout)
        if self.cancelled:
            raise JobCancelled(f"Job '{self.spec}' was cancelled")
        # only the deadline timer signals without cancelling the run
        if self._signal.is_set() and self.deadline is not None:
            raise JobTimeoutError(self.spec, self.timeout)

    def wait(self, seconds: float):
        """Sleep for up to ``seconds``, waking early (and raising through ``check()``) if the
        job is cancelled or hits its deadline."""
        remaining = self.remaining
        hits_deadline = remaining is not None and remaining <= seconds
        if hits_deadline:
            seconds = remaining
        self._signal.wait(seconds)
        if hits_deadline and not self.cancelled:
            raise JobTimeoutError(self.spec, self.timeout)
        self.check()


class JobExecutor:
    """Runs a work function for each job spec with bounded parallelism.

    Failures are isolated by default: a failing job is recorded as ``failed`` and every
    other job still runs.

    Args:
        max_parallel (int): The maximum number of work functions running at once.
        fail_fast (bool): If ``True``, the first failed job cancels every job that hasn't
            started yet. Jobs already running are allowed to finish.
        max_retries (int): How many extra attempts a failing job gets.
        retry_backoff (float): Seconds to wait before the first retry, doubled for every
            following retry.
        job_timeout (float): Seconds each job is allowed to take (including retries) before
            it is marked as failed with a ``JobTimeoutError``.
        run_timeout (float): Seconds the whole run is allowed to take before every job
            that isn't finished is cancelled.
        registry (ArtifactRegistry): If provided, the outputs of every successful job are
            registered here.
        retry_on (tuple[type]): The exception types that are considered transient and retried.

    Example:
        .. code-block:: python

            executor = JobExecutor(max_parallel=2, registry=registry)
            for result in executor.submit(expand_matrix(axes), build):
                print(result.spec, result.status)
    """

    def __init__(
        self,
        max_parallel: int = 1,
        fail_fast: bool = False,
        max_retries: int = 0,
        retry_backoff: float = 1.0,
        job_timeout: float = None,
        run_timeout: float = None,
        registry: ArtifactRegistry = None,
        retry_on: tuple = (Exception,),
    ):
        if max_parallel is None or max_parallel <= 0:
            raise ConfigurationError(
                f"max_parallel must be at least 1, got {max_parallel}"
            )
        if max_retries < 0:
            raise ConfigurationError(f"max_retries cannot be negative, got {max_retries}")
        if retry_backoff < 0:
            raise ConfigurationError(
                f"retry_backoff cannot be negative, got {retry_backoff}"
            )
        if job_timeout is not None and job_timeout <= 0:
            raise ConfigurationError(f"job_timeout must be positive, got {job_timeout}")
        if run_timeout is not None and run_timeout <= 0:
            raise ConfigurationError(f"run_timeout must be positive, got {run_timeout}")

        self.max_parallel = max_parallel
        self.fail_fast = fail_fast
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.job_timeout = job_timeout
        self.run_timeout = run_timeout
        self.registry = registry
        self.retry_on = retry_on

        self.results: dict[JobSpec, JobResult] = {}
        """The results of the current (or last) run keyed by job spec, including jobs that
        haven't finished yet."""
        self.cancel_reason: str = None
        """Why the run was cancelled, if it was."""

        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._active: dict[JobSpec, JobContext] = {}
        self._pending: queue.Queue = None
        self._done: queue.Queue = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def submit(self, job_specs: Iterable[JobSpec], work_fn: WorkFunction) -> Iterator[JobResult]:
        """Start running the given jobs, returning a generator of results in the order
        the jobs finish.

        Nothing runs until the generator is first iterated. Closing the generator before
        it is exhausted cancels the rest of the run.

        Raises:
            ConfigurationError: If the same job spec is submitted more than once.
        """
        job_specs = list(job_specs)
        if len(set(job_specs)) != len(job_specs):
            raise ConfigurationError("The same job spec was submitted more than once.")
        return self._stream(job_specs, work_fn)

    def run(self, job_specs: Iterable[JobSpec], work_fn: WorkFunction) -> list[JobResult]:
        """Run all the given jobs and return every result, in completion order."""
        return list(self.submit(job_specs, work_fn))

    def cancel(self, reason: str = "Run cancelled"):
        """Cancel the current run. Queued jobs are marked ``cancelled`` without starting,
        running jobs are signalled through their ``JobContext``."""
        if not self._cancel_event.is_set():
            logging.warning("%s, cancelling remaining jobs" % reason)
            self.cancel_reason = reason
        self._cancel_event.set()
        with self._lock:
            for context in self._active.values():
                context.signal()
        self._cancel_queued(reason)

    def _cancel_queued(self, reason: str):
        if self._pending is None:
            return
        while True:
            try:
                spec = self._pending.get_nowait()
            except queue.Empty:
                break
            self._finish_cancelled(self.results[spec], reason)

    def _finish_cancelled(self, result: JobResult, reason: str):
        result.status = JobStatus.cancelled
        result.error = f"JobCancelled - {reason}"
        result.ended = datetime.now()
        logging.info("Job '%s' cancelled before starting" % result.spec)
        self._done.put(result)

    def _stream(self, job_specs: list[JobSpec], work_fn: WorkFunction) -> Iterator[JobResult]:
        self._cancel_event = threading.Event()
        self.cancel_reason = None
        self.results = {spec: JobResult(spec) for spec in job_specs}
        self._pending = queue.Queue()
        self._done = queue.Queue()
        for spec in job_specs:
            self._pending.put(spec)

        if len(job_specs) == 0:
            return

        worker_count = min(self.max_parallel, len(job_specs))
        logging.info(
            "Running %s jobs with up to %s in parallel" % (len(job_specs), worker_count)
        )
        workers = []
        for index in range(worker_count):
            worker = threading.Thread(
                target=self._worker,
                args=(work_fn,),
                name=f"matrixbuild-worker-{index}",
                daemon=True,
            )
            workers.append(worker)

        run_timer = None
        if self.run_timeout is not None:
            run_timer = threading.Timer(
                self.run_timeout,
                self.cancel,
                kwargs={"reason": f"Run exceeded its {self.run_timeout}s deadline"},
            )
            run_timer.daemon = True
            run_timer.start()

        for worker in workers:
            worker.start()

        emitted = 0
        try:
            while emitted < len(job_specs):
                result = self._done.get()
                emitted += 1
                yield result
        finally:
            if emitted < len(job_specs):
                self.cancel("Result stream closed early")
            if run_timer is not None:
                run_timer.cancel()
            for worker in workers:
                worker.join()

    def _worker(self, work_fn: WorkFunction):
        while True:
            try:
                spec = self._pending.get_nowait()
            except queue.Empty:
                return
            result = self.results[spec]
            if self._cancel_event.is_set():
                self._finish_cancelled(result, self.cancel_reason)
                continue
            self._execute(result, work_fn)
            if result.status == JobStatus.failed and self.fail_fast:
                logging.warning(
                    "Fail-fast enabled, cancelling jobs that have not started yet"
                )
                # drain the queue before publishing so no other worker starts a job
                self._cancel_queued(f"Cancelled after job '{spec}' failed")
            self._done.put(result)

    def _execute(self, result: JobResult, work_fn: WorkFunction):  # noqa: C901
        spec = result.spec
        utils.set_logging_prefix(f"[{spec.name}] ")
        deadline = None
        if self.job_timeout is not None:
            deadline = time.monotonic() + self.job_timeout

        result.started = datetime.now()
        result.status = JobStatus.running
        logging.info("----- Starting job %s -----" % spec)
        process = psutil.Process()
        pre_mem_usage = process.memory_info().rss
        exec_time_start = time.perf_counter()

        attempt = 0
        while True:
            attempt += 1
            result.attempts = attempt
            context = JobContext(
                spec, attempt, self._cancel_event, deadline, self.job_timeout
            )
            deadline_timer = None
            if deadline is not None:
                deadline_timer = threading.Timer(context.remaining, context.signal)
                deadline_timer.daemon = True
                deadline_timer.start()
            with self._lock:
                self._active[spec] = context
            if self._cancel_event.is_set():
                context.signal()
            _CONTEXT.context = context

            try:
                outputs = work_fn(spec)
                outputs = [] if outputs is None else list(outputs)
                outputs = [
                    (kind, _as_bytes(kind, payload)) for kind, payload in outputs
                ]
                if context.timed_out:
                    raise JobTimeoutError(spec, self.job_timeout)
            except JobCancelled as e:
                self._record_error(result, JobStatus.cancelled, e)
                break
            except JobTimeoutError as e:
                self._record_error(result, JobStatus.failed, e)
                break
            except Exception as e:
                if context.timed_out:
                    failure = JobTimeoutError(spec, self.job_timeout)
                    failure.__cause__ = e
                    self._record_error(result, JobStatus.failed, failure)
                    break
                if (
                    isinstance(e, self.retry_on)
                    and attempt <= self.max_retries
                    and not self._cancel_event.is_set()
                ):
                    delay = self.retry_backoff * 2 ** (attempt - 1)
                    remaining = context.remaining
                    hits_deadline = remaining is not None and remaining <= delay
                    if hits_deadline:
                        delay = remaining
                    logging.warning(
                        "Job '%s' attempt %s failed (%s - %s), retrying in %ss"
                        % (spec, attempt, e.__class__.__name__, e, delay)
                    )
                    if self._cancel_event.wait(delay):
                        cancelled = JobCancelled(
                            f"Job '{spec}' was cancelled while waiting to retry"
                        )
                        self._record_error(result, JobStatus.cancelled, cancelled)
                        break
                    if hits_deadline:
                        # the deadline passed during the backoff, don't start another attempt
                        failure = JobTimeoutError(spec, self.job_timeout)
                        failure.__cause__ = e
                        logging.error(str(failure))
                        self._record_error(result, JobStatus.failed, failure)
                        break
                    continue
                failure = JobFailure(spec, f"Job '{spec}' failed: {e}")
                failure.__cause__ = e
                logging.error("%s - %s" % (e.__class__.__name__, e))
                logging.debug(traceback.format_exc())
                self._record_error(result, JobStatus.failed, failure)
                break
            else:
                result.outputs = outputs
                self._register_outputs(result)
                break
            finally:
                _CONTEXT.context = None
                with self._lock:
                    self._active.pop(spec, None)
                if deadline_timer is not None:
                    deadline_timer.cancel()

        result.ended = datetime.now()
        _log_stats(
            exec_time_start, time.perf_counter(), pre_mem_usage, process.memory_info().rss
        )
        logging.info("----- Job %s %s -----" % (spec, result.status))
        utils.set_logging_prefix("")

    def _register_outputs(self, result: JobResult):
        if self.registry is not None:
            try:
                for kind, payload in result.outputs:
                    artifact = self.registry.register(result.spec, kind, payload)
                    result.artifacts.append(artifact)
            except Exception as e:
                failure = JobFailure(
                    result.spec, f"Job '{result.spec}' could not register artifacts: {e}"
                )
                failure.__cause__ = e
                logging.error(str(failure))
                self._record_error(result, JobStatus.failed, failure)
                return
        result.status = JobStatus.succeeded

    def _record_error(self, result: JobResult, status: JobStatus, error: BaseException):
        result.status = status
        result.exception = error
        result.error = f"{error.__class__.__name__} - {error}"


def _as_bytes(kind: str, payload) -> bytes:
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if kind == "json" and not isinstance(payload, str):
        return json.dumps(payload, indent=4).encode("utf-8")
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return bytes(payload)


def _log_stats(exec_time_start, exec_time_end, pre_mem_usage, post_mem_usage):
    logging.debug(
        "Memory change - %s"
        % utils.human_readable_mem_usage(post_mem_usage - pre_mem_usage)
    )
    logging.debug(
        "Timing - execution: %s"
        % utils.human_readable_time(exec_time_end - exec_time_start)
    )
