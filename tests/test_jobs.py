import sqlite3
import time

import pytest

from conftest import FakeClock
from sendto.services.jobs import COMPLETE, FAILED, QUEUED, RUNNING, SLEEPING, JobRunner, JobStore, JobWorker


class Recorder:
    """Workflow that counts how often each step body actually runs."""

    def __init__(self, fail_times=0, sleep_seconds=60):
        self.runs = {}
        self.fail_times = fail_times
        self.sleep_seconds = sleep_seconds

    def _body(self, name, value):
        def fn():
            self.runs[name] = self.runs.get(name, 0) + 1
            if name == "flaky" and self.runs[name] <= self.fail_times:
                raise RuntimeError("temporary outage")
            return value
        return fn

    def __call__(self, params, step):
        first = step.do("first", self._body("first", {"n": params["n"]}))
        second = step.do("flaky", self._body("flaky", first["n"] + 1))
        step.sleep("pause", self.sleep_seconds)
        third = step.do("last", self._body("last", second * 10))
        return {"result": third}


@pytest.fixture
def runner(tmp_path):
    clock = FakeClock()
    runner = JobRunner(JobStore(tmp_path / "jobs.db"), retries=2, retry_delay=0, clock=clock)
    runner.fake_clock = clock
    return runner


def test_job_suspends_and_resumes_without_rerunning_steps(runner):
    workflow = Recorder()
    runner.register("demo", workflow)
    handle = runner.create("demo", {"n": 1})
    assert handle.status()["status"] == QUEUED

    assert runner.run_due() == 1
    assert handle.status()["status"] == SLEEPING
    assert workflow.runs == {"first": 1, "flaky": 1}

    # Not due yet
    runner.fake_clock.advance(59)
    assert runner.run_due() == 0

    runner.fake_clock.advance(1)
    assert runner.run_due() == 1
    status = handle.status()
    assert status["status"] == COMPLETE
    assert status["output"] == {"result": 20}
    assert workflow.runs == {"first": 1, "flaky": 1, "last": 1}
    assert [s["name"] for s in status["steps"]] == ["first", "flaky", "pause", "last"]


def test_sleep_survives_a_new_runner(runner, tmp_path):
    runner.register("demo", Recorder())
    handle = runner.create("demo", {"n": 2})
    runner.run_due()

    # Fresh process: new runner and workflow object, same database
    workflow = Recorder()
    restarted = JobRunner(JobStore(tmp_path / "jobs.db"), retry_delay=0, clock=runner.fake_clock)
    restarted.register("demo", workflow)
    runner.fake_clock.advance(60)
    restarted.run_due()

    assert restarted.status(handle.id)["output"] == {"result": 30}
    assert workflow.runs == {"last": 1}


def test_step_retries_then_succeeds(runner):
    workflow = Recorder(fail_times=2, sleep_seconds=0)
    runner.register("demo", workflow)
    handle = runner.create("demo", {"n": 1})
    runner.run_due()

    status = handle.status()
    assert status["status"] == COMPLETE
    assert workflow.runs["flaky"] == 3
    flaky = next(s for s in status["steps"] if s["name"] == "flaky")
    assert flaky["attempts"] == 3


def test_step_exhausts_retries_and_fails_job(runner):
    workflow = Recorder(fail_times=10)
    runner.register("demo", workflow)
    handle = runner.create("demo", {"n": 1})
    runner.run_due()

    status = handle.status()
    assert status["status"] == FAILED
    assert "temporary outage" in status["error"]
    assert workflow.runs["flaky"] == 3
    assert "last" not in workflow.runs

    # Failed jobs are not picked up again
    assert runner.run_due() == 0


def test_retry_backoff_suspends_the_job(tmp_path):
    clock = FakeClock()
    runner = JobRunner(JobStore(tmp_path / "jobs.db"), retries=3, retry_delay=1.5, clock=clock)
    workflow = Recorder(fail_times=10)
    runner.register("demo", workflow)
    handle = runner.create("demo", {"n": 1})

    waits = []
    for _ in range(3):
        assert runner.run_due() == 1
        assert handle.status()["status"] == SLEEPING
        wait = runner.store.get(handle.id).wake_at - clock()
        waits.append(wait)
        # Not retried before the delay is over
        clock.advance(wait - 0.5)
        assert runner.run_due() == 0
        clock.advance(0.5)
    assert waits == [1.5, 3.0, 6.0]

    runner.run_due()
    status = handle.status()
    assert status["status"] == FAILED
    assert workflow.runs == {"first": 1, "flaky": 4}
    flaky = next(s for s in status["steps"] if s["name"] == "flaky")
    assert flaky["attempts"] == 4


def test_failing_job_does_not_hold_up_other_jobs(tmp_path):
    clock = FakeClock()
    runner = JobRunner(JobStore(tmp_path / "jobs.db"), retries=3, retry_delay=30, clock=clock)
    failing = Recorder(fail_times=10)
    healthy = Recorder(sleep_seconds=0)
    runner.register("failing", failing)
    runner.register("healthy", healthy)
    stuck = runner.create("failing", {"n": 1})
    other = runner.create("healthy", {"n": 2})

    started = time.monotonic()
    assert runner.run_due() == 2
    assert time.monotonic() - started < 5

    assert runner.status(stuck.id)["status"] == SLEEPING
    assert runner.status(other.id)["status"] == COMPLETE
    assert runner.status(other.id)["output"] == {"result": 30}
    assert failing.runs["flaky"] == 1


def test_recover_requeues_interrupted_jobs(runner):
    workflow = Recorder(sleep_seconds=0)
    runner.register("demo", workflow)
    handle = runner.create("demo", {"n": 1})
    # Simulate a crash after claiming
    assert runner.store.claim(handle.id, runner.fake_clock())
    assert handle.status()["status"] == RUNNING
    assert runner.run_due() == 0

    assert runner.recover() == 1
    runner.run_due()
    assert handle.status()["status"] == COMPLETE


def test_claim_is_exclusive(runner):
    runner.register("demo", Recorder())
    handle = runner.create("demo", {"n": 1})
    assert runner.store.claim(handle.id, runner.fake_clock())
    assert not runner.store.claim(handle.id, runner.fake_clock())


def test_unknown_workflow_rejected(runner):
    with pytest.raises(KeyError):
        runner.create("nope", {})


def test_status_of_unknown_job(runner):
    assert runner.status("missing") is None


def test_worker_thread_runs_new_jobs(runner):
    runner.register("demo", Recorder(sleep_seconds=0))
    worker = JobWorker(runner, poll_interval=0.05)
    worker.start()
    try:
        handle = runner.create("demo", {"n": 4})
        deadline = time.monotonic() + 5
        while handle.status()["status"] != COMPLETE and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        worker.stop()
        worker.join(5)

    assert handle.status()["output"] == {"result": 50}
    assert not worker.is_alive()


def test_job_store_closes_its_connections(tmp_path, monkeypatch):
    opened = []
    connect = sqlite3.connect

    def tracking(*args, **kwargs):
        conn = connect(*args, **kwargs)
        opened.append(conn)
        return conn

    monkeypatch.setattr(sqlite3, "connect", tracking)
    runner = JobRunner(JobStore(tmp_path / "jobs.db"), retry_delay=0, clock=FakeClock())
    runner.register("demo", Recorder(sleep_seconds=0))
    handle = runner.create("demo", {"n": 1})
    runner.run_due()
    assert handle.status()["status"] == COMPLETE

    assert len(opened) > 10
    for conn in opened:
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")
