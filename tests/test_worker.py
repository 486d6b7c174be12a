import asyncio
import random
from datetime import timedelta

import pytest

from portal.v1.core.state_machines import JobStatus
from portal.v1.infra.jobs.results import JobResult
from portal.v1.infra.jobs.store import JobStore
from portal.v1.infra.jobs.worker import Worker, compute_backoff, make_worker_id


class ScriptedHandler:
    """Returns (or raises) the queued outcomes in order, then succeeds."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.attempts_seen: list[int] = []
        self.exhausted: list[tuple[int, str]] = []

    async def handle(self, session, job):
        self.attempts_seen.append(job.attempts)
        outcome = self.outcomes.pop(0) if self.outcomes else JobResult.success()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def on_exhausted(self, session, job, error):
        self.exhausted.append((job.id, error))


@pytest.fixture
def store(test_settings, clock) -> JobStore:
    return JobStore(test_settings, clock=clock)


@pytest.fixture
def worker(test_settings, session_factory, store, registry, clock) -> Worker:
    return Worker(
        test_settings,
        session_factory,
        store=store,
        registry=registry,
        clock=clock,
        worker_id="worker-test",
        rng=random.Random(7),
    )


@pytest.fixture
def enqueue(store, session_factory):
    async def _enqueue(job_type: str = "provision", **kwargs) -> int:
        async with session_factory() as session:
            job = await store.enqueue(session, 1, job_type, **kwargs)
            await session.commit()
            return job.id

    return _enqueue


@pytest.fixture
def fetch(store, session_factory):
    async def _fetch(job_id: int):
        async with session_factory() as session:
            return await store.get(session, job_id)

    return _fetch


def test_compute_backoff_doubles_and_caps(test_settings):
    delays = [compute_backoff(n, test_settings).total_seconds() for n in (1, 2, 3, 4, 10)]

    assert delays == [30.0, 60.0, 120.0, 240.0, 900.0]


def test_compute_backoff_jitter_stays_in_band(test_settings):
    jittery = test_settings.model_copy(update={"job_backoff_jitter": 0.25})
    rng = random.Random(42)

    for _ in range(50):
        delay = compute_backoff(2, jittery, rng).total_seconds()
        assert 45.0 <= delay <= 75.0


def test_compute_backoff_has_a_floor(test_settings):
    tiny = test_settings.model_copy(update={"job_backoff_base_s": 0.01})

    assert compute_backoff(1, tiny) == timedelta(seconds=1)


def test_worker_ids_are_unique():
    assert make_worker_id() != make_worker_id()
    assert make_worker_id().startswith("worker-")


async def test_run_once_with_empty_queue(worker):
    assert await worker.run_once() is False


async def test_successful_job_completes(worker, registry, enqueue, fetch):
    handler = ScriptedHandler(JobResult.success())
    registry.register("provision", handler)
    job_id = await enqueue()

    assert await worker.run_once() is True

    job = await fetch(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.locked_by is None
    assert handler.attempts_seen == [1]
    assert worker.state.jobs_completed == 1
    assert worker.state.busy is False


async def test_failed_job_is_retried_with_backoff(worker, registry, enqueue, fetch, clock):
    registry.register("provision", ScriptedHandler(JobResult.failure("API timeout")))
    job_id = await enqueue()

    await worker.run_once()

    job = await fetch(job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert job.last_error == "API timeout"
    assert job.next_run_at == clock.now + timedelta(seconds=30)
    assert worker.state.jobs_failed == 1

    # Not eligible again until the backoff has elapsed
    assert await worker.run_once() is False
    clock.advance(seconds=30)
    assert await worker.run_once() is True
    assert (await fetch(job_id)).status == JobStatus.COMPLETED.value


async def test_exhausted_job_fails_and_runs_hook(worker, registry, enqueue, fetch, clock):
    handler = ScriptedHandler(
        JobResult.failure("first"),
        JobResult.failure("second"),
    )
    registry.register("provision", handler)
    job_id = await enqueue(max_attempts=2)

    await worker.run_once()
    clock.advance(minutes=5)
    await worker.run_once()

    job = await fetch(job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 2
    assert job.last_error == "second"
    assert handler.attempts_seen == [1, 2]
    assert handler.exhausted == [(job_id, "second")]


async def test_non_retryable_failure_fails_immediately(worker, registry, enqueue, fetch):
    handler = ScriptedHandler(JobResult.failure("Invalid config", retryable=False))
    registry.register("provision", handler)
    job_id = await enqueue(max_attempts=5)

    await worker.run_once()

    job = await fetch(job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 1
    assert handler.exhausted == [(job_id, "Invalid config")]


async def test_handler_crash_is_a_retryable_failure(worker, registry, enqueue, fetch):
    registry.register("provision", ScriptedHandler(RuntimeError("boom")))
    job_id = await enqueue()

    await worker.run_once()

    job = await fetch(job_id)
    assert job.status == JobStatus.PENDING.value
    assert job.last_error == "Unexpected error: boom"


async def test_unknown_job_type_fails_permanently(worker, enqueue, fetch):
    job_id = await enqueue(job_type="mystery")

    await worker.run_once()

    job = await fetch(job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.last_error == "No handler registered for job type: mystery"


async def test_handler_writes_are_discarded_when_lease_is_lost(
    worker, registry, store, session_factory, enqueue, fetch
):
    class CancelledMidRun:
        async def handle(self, session, job):
            # An operator cancels the job while it is running
            async with session_factory() as admin_session:
                await store.cancel(admin_session, job.id)
            await store.enqueue(session, job.install_id, "configure")
            return JobResult.success()

        async def on_exhausted(self, session, job, error):
            raise AssertionError("not expected")

    registry.register("provision", CancelledMidRun())
    job_id = await enqueue()

    await worker.run_once()

    assert (await fetch(job_id)).status == JobStatus.CANCELLED.value
    assert worker.state.jobs_completed == 0
    async with session_factory() as session:
        _, total = await store.list_jobs(session, job_type="configure")
    assert total == 0


async def test_failed_attempt_discards_handler_writes(
    worker, registry, store, session_factory, enqueue
):
    class WritesThenFails:
        async def handle(self, session, job):
            await store.enqueue(session, job.install_id, "configure")
            return JobResult.failure("later step failed")

        async def on_exhausted(self, session, job, error):
            pass

    registry.register("provision", WritesThenFails())
    await enqueue()

    await worker.run_once()

    async with session_factory() as session:
        _, total = await store.list_jobs(session, job_type="configure")
    assert total == 0


async def test_run_loop_processes_and_stops(worker, registry, enqueue, fetch):
    done = asyncio.Event()

    class Signalling(ScriptedHandler):
        async def handle(self, session, job):
            result = await super().handle(session, job)
            done.set()
            return result

    registry.register("provision", Signalling())
    job_id = await enqueue()

    worker.start()
    await asyncio.wait_for(done.wait(), timeout=2)
    assert await worker.stop() is True

    assert (await fetch(job_id)).status == JobStatus.COMPLETED.value
    assert worker.state.stopping


async def test_loop_survives_errors_and_backs_off(worker, test_settings, monkeypatch):
    sleeps: list[float] = []

    async def broken_run_once():
        raise RuntimeError("db down")

    async def recording_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 2:
            worker.request_stop()

    monkeypatch.setattr(worker, "run_once", broken_run_once)
    monkeypatch.setattr(worker, "_sleep", recording_sleep)

    await asyncio.wait_for(worker.run(), timeout=2)

    assert sleeps == [test_settings.job_poll_interval_s * 2] * 2
    assert worker.state.jobs_failed == 0


async def test_start_twice_is_rejected(worker):
    worker.start()
    try:
        with pytest.raises(RuntimeError, match="already running"):
            worker.start()
    finally:
        await worker.stop()


async def test_stop_abandons_stuck_job_after_grace_period(worker, registry, enqueue, fetch):
    started = asyncio.Event()

    class Stuck:
        async def handle(self, session, job):
            started.set()
            await asyncio.Event().wait()

        async def on_exhausted(self, session, job, error):
            pass

    registry.register("provision", Stuck())
    job_id = await enqueue()

    worker.start()
    await asyncio.wait_for(started.wait(), timeout=2)
    assert await worker.stop(grace_period=0.05) is False

    # Left for the reaper: the lease is still held
    job = await fetch(job_id)
    assert job.status == JobStatus.PROCESSING.value
    assert job.locked_by == "worker-test"
