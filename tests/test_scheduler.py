import json
import os
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from webwatch import logging_utils
from webwatch.schedule import InvalidScheduleError
from webwatch.scheduler import CronEngine, MissingIdError, dispatch_fire, execute_fire
from webwatch.scraping.models import Outcome


def _error_records():
    path = logging_utils.get_error_log_path()
    if not os.path.exists(path):
        return []
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


# ---- registry operations ------------------------------------------------------


def test_schedule_registers_one_handle(engine, make_job):
    handle = engine.schedule(make_job(id=1))
    assert handle and handle.startswith("webwatch-1-")
    assert engine.registry.get(1) == handle
    assert engine.scheduled_job_ids() == [1]
    # not started yet: no computed fire time
    assert engine.next_run_time(1) is None


def test_schedule_then_unschedule_leaves_nothing(engine, make_job):
    engine.schedule(make_job(id=1))
    assert engine.unschedule(1) is True
    assert 1 not in engine.registry
    assert engine._scheduler.get_jobs() == []
    assert engine.unschedule(1) is False  # idempotent


def test_repeated_schedule_and_reschedule_keep_single_handle(engine, make_job):
    job = make_job(id=2)
    for _ in range(3):
        engine.schedule(job)
    for _ in range(3):
        engine.reschedule(job)
    assert len(engine.registry) == 1
    assert [j.id for j in engine._scheduler.get_jobs()] == [engine.registry.get(2)]


def test_reschedule_inactive_job_drops_handle(engine, make_job):
    job = make_job(id=3)
    engine.schedule(job)
    assert engine.reschedule(replace(job, active=False)) is None
    assert 3 not in engine.registry


def test_schedule_inactive_is_noop(engine, make_job):
    assert engine.schedule(make_job(id=4, active=False)) is None
    assert len(engine.registry) == 0


def test_schedule_without_id_raises(engine, make_job):
    with pytest.raises(MissingIdError, match="must have an ID"):
        engine.schedule(make_job())


def test_invalid_schedule_keeps_existing_handle(engine, make_job):
    handle = engine.schedule(make_job(id=5))
    with pytest.raises(InvalidScheduleError):
        engine.schedule(make_job(id=5, schedule="every tuesday"))
    assert engine.registry.get(5) == handle


def test_validate_cron_expression(engine):
    assert engine.validate_cron_expression("weekly") == "0 0 0 * * 0"
    assert engine.validate_cron_expression("0 */5 * * * *") == "0 */5 * * * *"
    with pytest.raises(InvalidScheduleError):
        engine.validate_cron_expression("*/5 * * * *")
    assert len(engine.registry) == 0


# ---- startup load -------------------------------------------------------------------


def test_load_active_jobs_skips_failures(engine, recording_store, make_job):
    recording_store.jobs = [
        make_job(id=1, name="ok"),
        make_job(id=2, name="broken", schedule="sometimes"),
        make_job(id=3, name="off", active=False),
        make_job(name="unsaved"),
        make_job(id=5, name="also ok", schedule="0 15 10 * * 1-5"),
    ]
    assert engine.load_active_jobs() == 2
    assert engine.scheduled_job_ids() == [1, 5]

    errors = _error_records()
    assert {e["job_id"] for e in errors} == {2, None}
    assert all(e["where"] == "scheduler.load_active_jobs" for e in errors)


def test_start_computes_fire_times_in_engine_timezone(recording_store, pipeline, make_job):
    recording_store.jobs = [make_job(id=1, schedule="weekly")]
    engine = CronEngine(recording_store, pipeline, tz=timezone.utc)
    try:
        engine.start()
        assert engine.running
        nrt = engine.next_run_time(1)
        assert nrt is not None
        assert nrt.weekday() == 6  # Sunday
        assert (nrt.hour, nrt.minute, nrt.second) == (0, 0, 0)
    finally:
        engine.stop()
    assert engine.join(timeout=1.0) is True
    assert not engine.running


def test_fires_run_and_persist(recording_store, pipeline, make_job):
    engine = CronEngine(recording_store, pipeline)
    try:
        engine.start(load_jobs=False)
        engine.schedule(make_job(id=7, schedule="* * * * * *"))
        assert _wait_for(lambda: len(recording_store.saved) >= 1)
    finally:
        engine.stop()

    outcome = recording_store.saved[0]
    assert outcome.job_id == 7
    assert outcome.success is True


# ---- on-demand and fire wrapper ---------------------------------------------------


def test_run_now_persists_and_returns_id(engine, recording_store, make_job):
    outcome = engine.run_now(make_job(id=8, active=False))
    assert outcome.id == 1
    assert outcome.success
    assert recording_store.saved[0].job_id == 8
    # bypasses the registry entirely
    assert len(engine.registry) == 0


def test_run_now_requires_id(engine, make_job):
    with pytest.raises(MissingIdError):
        engine.run_now(make_job())


def test_execute_fire_saves_outcome(pipeline, recording_store, make_job):
    execute_fire(pipeline, recording_store, make_job(id=9))
    assert len(recording_store.saved) == 1


def test_execute_fire_swallows_persistence_errors(pipeline, recording_store, make_job):
    recording_store.fail_save = RuntimeError("database is locked")
    execute_fire(pipeline, recording_store, make_job(id=10))  # must not raise

    (err,) = _error_records()
    assert err["where"] == "scheduler.persist"
    assert "database is locked" in err["error"]


def test_execute_fire_swallows_executable_errors(recording_store, make_job):
    class Exploding:
        def run(self, job, *, trigger_type="scheduled"):
            raise RuntimeError("kaboom")

    execute_fire(Exploding(), recording_store, make_job(id=11))
    assert recording_store.saved == []
    assert _error_records()[0]["where"] == "scheduler.fire"


# ---- independence of executions ---------------------------------------------------


class GatedPipeline:
    """Executable whose runs for `slow_id` block until `release` is set."""

    def __init__(self, slow_id):
        self.slow_id = slow_id
        self.release = threading.Event()
        self.started = threading.Event()

    def run(self, job, *, trigger_type="scheduled"):
        if job.id == self.slow_id:
            self.started.set()
            self.release.wait(10)
        return Outcome.succeeded(job.id, ["done"], datetime.now(timezone.utc))


def test_hanging_job_does_not_delay_other_jobs(recording_store, make_job):
    gated = GatedPipeline(slow_id=1)
    engine = CronEngine(recording_store, gated, executor_workers=1, max_instances=1)
    try:
        engine.start(load_jobs=False)
        engine.schedule(make_job(id=1, name="slow", schedule="* * * * * *"))
        assert gated.started.wait(5)
        engine.schedule(make_job(id=2, name="fast", schedule="* * * * * *"))

        assert _wait_for(lambda: sum(o.job_id == 2 for o in recording_store.saved) >= 2)
        assert all(o.job_id == 2 for o in recording_store.saved)
    finally:
        gated.release.set()
        engine.stop()

    # overlapping fires of the hanging job were started, not skipped
    assert _wait_for(lambda: sum(o.job_id == 1 for o in recording_store.saved) >= 2)


def test_unschedule_lets_in_flight_execution_finish(recording_store, make_job):
    gated = GatedPipeline(slow_id=3)
    engine = CronEngine(recording_store, gated)
    try:
        engine.start(load_jobs=False)
        engine.schedule(make_job(id=3, schedule="* * * * * *"))
        assert gated.started.wait(5)

        assert engine.unschedule(3) is True
        assert recording_store.saved == []
        gated.release.set()

        assert _wait_for(lambda: len(recording_store.saved) >= 1)
        assert recording_store.saved[0].job_id == 3
        assert recording_store.saved[0].success
    finally:
        gated.release.set()
        engine.stop()


def test_dispatch_fire_returns_before_execution_ends(recording_store, make_job):
    gated = GatedPipeline(slow_id=4)
    t = dispatch_fire(gated, recording_store, make_job(id=4))
    assert gated.started.wait(5)
    assert t.is_alive()
    assert t.daemon is False

    gated.release.set()
    t.join(5)
    assert [o.job_id for o in recording_store.saved] == [4]


def test_stop_drops_every_handle(engine, make_job):
    engine.schedule(make_job(id=1))
    engine.schedule(make_job(id=2))
    engine.stop()
    assert len(engine.registry) == 0
    assert engine._scheduler.get_jobs() == []
    assert engine.join(timeout=1.0) is True
