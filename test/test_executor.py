"""Testing bounded parallel execution, failure isolation, cancellation, deadlines,
and retries in the job executor."""

import math
import threading
import time

import pytest

from matrixbuild.executor import (
    JobCancelled,
    JobExecutor,
    JobFailure,
    JobStatus,
    JobTimeoutError,
    current_context,
)
from matrixbuild.matrix import ConfigurationError, expand_matrix
from matrixbuild.registry import ArtifactRegistry, DuplicateArtifactError


def numbered_specs(count):
    return expand_matrix([("job", [str(i) for i in range(count)])])


@pytest.mark.parametrize("max_parallel", [0, -1])
def test_invalid_parallelism_raises(max_parallel):
    with pytest.raises(ConfigurationError):
        JobExecutor(max_parallel=max_parallel)


def test_invalid_timeouts_raise():
    with pytest.raises(ConfigurationError):
        JobExecutor(job_timeout=0)
    with pytest.raises(ConfigurationError):
        JobExecutor(run_timeout=-5)
    with pytest.raises(ConfigurationError):
        JobExecutor(max_retries=-1)


def test_duplicate_specs_raise(node_specs, counter):
    with pytest.raises(ConfigurationError):
        JobExecutor(max_parallel=2).submit(node_specs + node_specs[:1], counter)
    assert counter.calls == []


def test_every_job_runs_once(node_specs, counter):
    """Every submitted spec should be run exactly once and end up succeeded."""
    results = JobExecutor(max_parallel=3).run(node_specs, counter)
    assert len(results) == 9
    assert sorted(counter.calls, key=lambda spec: spec.index) == node_specs
    assert all(result.status == JobStatus.succeeded for result in results)
    assert {result.spec for result in results} == set(node_specs)


@pytest.mark.parametrize("max_parallel", [1, 2, 4])
def test_never_exceeds_max_parallel(node_specs, counter, max_parallel):
    """The number of concurrently running work functions should never exceed max_parallel."""
    counter.duration = 0.2
    JobExecutor(max_parallel=max_parallel).run(node_specs, counter)
    assert counter.max_seen <= max_parallel
    assert counter.max_seen == max_parallel


def test_wall_clock_respects_bounded_concurrency(node_specs):
    """9 jobs of a fixed duration on 2 workers should take about ceil(9/2) durations."""
    duration = 0.2

    def work(spec):
        time.sleep(duration)

    start = time.perf_counter()
    JobExecutor(max_parallel=2).run(node_specs, work)
    elapsed = time.perf_counter() - start

    expected = math.ceil(9 / 2) * duration
    assert elapsed >= expected - 0.05
    assert elapsed < expected + 0.6


def test_results_emitted_in_completion_order():
    """A fast job submitted after a slow job should be emitted first."""
    specs = numbered_specs(2)

    def work(spec):
        if spec["job"] == "0":
            time.sleep(0.3)

    results = list(JobExecutor(max_parallel=2).submit(specs, work))
    assert [result.spec["job"] for result in results] == ["1", "0"]


def test_failure_is_isolated(node_specs):
    """One failing job should leave every sibling succeeded when fail-fast is off."""

    def work(spec):
        if spec.name == "windows-18.x":
            raise RuntimeError("npm install exploded")
        return [("text", f"built {spec.name}")]

    executor = JobExecutor(max_parallel=3)
    results = executor.run(node_specs, work)

    failed = [result for result in results if result.status == JobStatus.failed]
    assert len(failed) == 1
    assert failed[0].spec.name == "windows-18.x"
    assert "npm install exploded" in failed[0].error
    assert isinstance(failed[0].exception, JobFailure)
    assert isinstance(failed[0].exception.__cause__, RuntimeError)
    assert all(
        result.status == JobStatus.succeeded
        for result in results
        if result.spec.name != "windows-18.x"
    )


def test_fail_fast_cancels_queued_jobs():
    """With fail-fast, jobs that hadn't started when a job failed should be cancelled,
    while the already running sibling finishes."""
    specs = numbered_specs(6)
    started = []
    lock = threading.Lock()

    def work(spec):
        with lock:
            started.append(spec["job"])
        if spec["job"] == "0":
            # give the second worker time to pick up its job
            time.sleep(0.1)
            raise RuntimeError("boom")
        time.sleep(0.3)

    results = JobExecutor(max_parallel=2, fail_fast=True).run(specs, work)
    by_job = {result.spec["job"]: result for result in results}

    assert by_job["0"].status == JobStatus.failed
    assert by_job["1"].status == JobStatus.succeeded
    for job in ["2", "3", "4", "5"]:
        assert by_job[job].status == JobStatus.cancelled
        assert by_job[job].started is None
    assert sorted(started) == ["0", "1"]


def test_run_deadline_cancels_queued_jobs():
    """When the run deadline expires with 3 jobs still queued, those should be cancelled,
    and already finished jobs should keep their status."""
    specs = numbered_specs(6)

    def work(spec):
        if spec["job"] == "1":
            raise ValueError("bad")
        if spec["job"] == "2":
            current_context().wait(10)
        return [("text", "ok")]

    start = time.perf_counter()
    results = JobExecutor(max_parallel=1, run_timeout=0.5).run(specs, work)
    elapsed = time.perf_counter() - start
    by_job = {result.spec["job"]: result for result in results}

    assert elapsed < 5
    assert by_job["0"].status == JobStatus.succeeded
    assert by_job["1"].status == JobStatus.failed
    assert by_job["2"].status == JobStatus.cancelled
    for job in ["3", "4", "5"]:
        assert by_job[job].status == JobStatus.cancelled
        assert by_job[job].started is None
    assert len(results) == 6


def test_manual_cancel():
    """Cancelling from another thread should signal running jobs and skip queued ones."""
    specs = numbered_specs(4)
    executor = JobExecutor(max_parallel=1)
    running = threading.Event()

    def work(spec):
        running.set()
        current_context().wait(10)

    def cancel_soon():
        running.wait(5)
        executor.cancel("user requested")

    canceller = threading.Thread(target=cancel_soon)
    canceller.start()
    results = executor.run(specs, work)
    canceller.join()

    assert executor.cancelled
    assert executor.cancel_reason == "user requested"
    assert all(result.status == JobStatus.cancelled for result in results)
    assert isinstance(executor.results[specs[0]].exception, JobCancelled)


def test_job_timeout_marks_failed():
    """A cooperative job running past its deadline should fail with a timeout."""
    specs = numbered_specs(2)

    def work(spec):
        if spec["job"] == "0":
            current_context().wait(10)
        return [("text", "ok")]

    results = JobExecutor(max_parallel=2, job_timeout=0.2).run(specs, work)
    by_job = {result.spec["job"]: result for result in results}

    assert by_job["0"].status == JobStatus.failed
    assert isinstance(by_job["0"].exception, JobTimeoutError)
    assert isinstance(by_job["0"].exception, JobFailure)
    assert by_job["0"].error.startswith("JobTimeoutError")
    assert by_job["1"].status == JobStatus.succeeded


def test_uncooperative_job_past_deadline_marks_failed():
    """A job that ignores its context but finishes after the deadline still fails."""
    specs = numbered_specs(1)

    def work(spec):
        time.sleep(0.3)
        return [("text", "late")]

    results = JobExecutor(job_timeout=0.1).run(specs, work)
    assert results[0].status == JobStatus.failed
    assert isinstance(results[0].exception, JobTimeoutError)


def test_retries_with_backoff():
    """A transient failure should be retried until it succeeds."""
    specs = numbered_specs(1)
    attempts = []

    def work(spec):
        attempts.append(time.perf_counter())
        if len(attempts) < 3:
            raise ConnectionError("flaky network")
        return [("text", "ok")]

    results = JobExecutor(max_retries=3, retry_backoff=0.05).run(specs, work)
    assert results[0].status == JobStatus.succeeded
    assert results[0].attempts == 3
    # backoff doubles: 0.05 then 0.1
    assert attempts[1] - attempts[0] >= 0.04
    assert attempts[2] - attempts[1] >= 0.09


def test_retries_exhausted_marks_failed():
    specs = numbered_specs(1)

    def work(spec):
        raise ConnectionError("always down")

    results = JobExecutor(max_retries=2, retry_backoff=0.01).run(specs, work)
    assert results[0].status == JobStatus.failed
    assert results[0].attempts == 3


def test_only_configured_exceptions_are_retried():
    specs = numbered_specs(1)

    def work(spec):
        raise KeyError("not transient")

    results = JobExecutor(
        max_retries=2, retry_backoff=0.01, retry_on=(ConnectionError,)
    ).run(specs, work)
    assert results[0].status == JobStatus.failed
    assert results[0].attempts == 1


def test_outputs_are_registered(node_specs):
    """Outputs returned by work functions should be registered with the executor's registry."""
    registry = ArtifactRegistry("build-a90bca4")

    def work(spec):
        return [("text", f"log {spec.name}"), ("json", {"os": spec["os"]}), ("md", b"# ok")]

    results = JobExecutor(max_parallel=4, registry=registry).run(node_specs, work)

    assert len(registry) == 27
    for result in results:
        assert len(result.artifacts) == 3
    assert registry.get("build-a90bca4-ubuntu-16.x-text").text() == "log ubuntu-16.x"
    assert registry.get("build-a90bca4-windows-20.x-json").payload == b'{\n    "os": "windows"\n}'


def test_registry_conflict_fails_only_that_job(node_specs):
    """A registry error should fail the job that caused it and nothing else."""
    registry = ArtifactRegistry("build-a90bca4")
    registry.register(node_specs[0], "text", b"already here")

    def work(spec):
        return [("text", "fresh")]

    results = JobExecutor(max_parallel=2, registry=registry).run(node_specs, work)
    by_name = {result.spec.name: result for result in results}
    assert by_name["ubuntu-16.x"].status == JobStatus.failed
    assert isinstance(by_name["ubuntu-16.x"].exception.__cause__, DuplicateArtifactError)
    assert sum(result.status == JobStatus.succeeded for result in results) == 8


def test_invalid_output_fails_job():
    """Returning something that can't be an artifact payload should fail the job, not hang
    the run."""
    specs = numbered_specs(2)

    def work(spec):
        return [("text", object())]

    results = JobExecutor(max_parallel=2).run(specs, work)
    assert all(result.status == JobStatus.failed for result in results)


def test_context_outside_job_is_none():
    assert current_context() is None


def test_context_available_inside_job():
    specs = numbered_specs(1)
    seen = []

    def work(spec):
        context = current_context()
        seen.append((context.spec, context.attempt, context.cancelled))

    JobExecutor().run(specs, work)
    assert seen == [(specs[0], 1, False)]


def test_closing_stream_early_cancels_remaining():
    specs = numbered_specs(5)
    executor = JobExecutor(max_parallel=1)

    def work(spec):
        time.sleep(0.05)

    stream = executor.submit(specs, work)
    first = next(stream)
    stream.close()

    assert first.status == JobStatus.succeeded
    assert executor.cancelled
    statuses = [result.status for result in executor.results.values()]
    assert all(status.terminal for status in statuses)
    assert statuses.count(JobStatus.cancelled) >= 3


def test_empty_submission():
    assert JobExecutor().run([], lambda spec: None) == []


def test_deadline_during_retry_backoff_fails_promptly():
    """A retry backoff that would run past the job deadline should not delay the
    timeout or start another attempt."""
    specs = numbered_specs(1)
    attempts = []

    def work(spec):
        attempts.append(spec)
        raise ConnectionError("flaky network")

    start = time.perf_counter()
    results = JobExecutor(job_timeout=0.2, max_retries=1, retry_backoff=3).run(specs, work)
    elapsed = time.perf_counter() - start

    assert elapsed < 1.0
    assert len(attempts) == 1
    assert results[0].status == JobStatus.failed
    assert isinstance(results[0].exception, JobTimeoutError)
    assert isinstance(results[0].exception.__cause__, ConnectionError)


def test_fail_fast_cancels_queue_before_failure_is_reported():
    """By the time a failed result is emitted with fail-fast on, every queued job
    should already be cancelled."""
    specs = numbered_specs(6)

    def work(spec):
        if spec["job"] == "0":
            raise RuntimeError("boom")

    executor = JobExecutor(max_parallel=1, fail_fast=True)
    statuses_at_failure = None
    for result in executor.submit(specs, work):
        if result.status == JobStatus.failed:
            statuses_at_failure = [executor.results[spec].status for spec in specs[1:]]

    assert statuses_at_failure == [JobStatus.cancelled] * 5
