# webwatch/scheduler.py
from __future__ import annotations

import logging
import threading
import time as _time
import uuid
from dataclasses import replace
from datetime import datetime, timezone, tzinfo
from typing import Protocol

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from . import schedule as schedule_parser
from .logging_utils import safe_activity, safe_error
from .registry import JobRegistry
from .runner import Executable
from .scraping.models import Job, Outcome
from .scraping.utils import now_iso

LOG = logging.getLogger(__name__)


class MissingIdError(ValueError):
    """A job must be persisted (have an id) before it can be scheduled or run."""

    def __init__(self, job: Job):
        super().__init__(f"Job {job.name!r} must have an ID to be scheduled")
        self.job_name = job.name


class JobStoreLike(Protocol):
    """The persistence calls the engine needs from its host."""

    def get_active_jobs(self) -> list[Job]: ...

    def save_outcome(self, outcome: Outcome) -> int: ...


# ---- Fire entry point -------------------------------------------------------


def execute_fire(executable: Executable, store: JobStoreLike, job: Job) -> None:
    """
    One scheduled fire, run on a thread started by `dispatch_fire`.

    Nothing escapes: pipeline and persistence failures are logged so a single
    job can never take down the scheduler or another job.
    """
    started = _time.monotonic()
    LOG.info("Job[%s] fire (name=%r)", job.id, job.name)

    try:
        outcome = executable.run(job, trigger_type="scheduled")
    except Exception as e:
        LOG.exception("Job[%s] execution raised.", job.id)
        safe_error({"ts": now_iso(), "where": "scheduler.fire", "job_id": job.id, "error": repr(e)})
        return

    try:
        store.save_outcome(outcome)
    except Exception as e:
        LOG.exception("Job[%s] outcome could not be persisted.", job.id)
        safe_error({"ts": now_iso(), "where": "scheduler.persist", "job_id": job.id, "error": repr(e)})
        return

    duration = _time.monotonic() - started
    LOG.info("Job[%s] finished in %.3fs (success=%s)", job.id, duration, outcome.success)


def dispatch_fire(executable: Executable, store: JobStoreLike, job: Job) -> threading.Thread:
    """
    What the clock actually calls: start `execute_fire` on a thread of its own
    and return at once.

    Pool workers are only held for the hand-off, so a hanging fetch never
    queues other jobs' fires behind it and overlapping fires of one job are
    never skipped. The thread is not a daemon: an execution in flight at
    shutdown still finishes and persists its outcome.
    """
    t = threading.Thread(
        target=execute_fire,
        args=(executable, store, job),
        name=f"webwatch-fire-{job.id}",
        daemon=False,
    )
    t.start()
    return t


# ---- Engine -----------------------------------------------------------------


class CronEngine:
    """
    The scheduling clock: one APScheduler job per active scraping job.

    Each fire runs on its own thread (see `dispatch_fire`). The executor pool
    only performs the hand-off, so a slow or failing job never delays another
    job's fire and the scheduler thread never waits on an execution.
    """

    def __init__(
        self,
        store: JobStoreLike,
        executable: Executable,
        *,
        tz: tzinfo | None = None,
        executor_workers: int = 10,
        max_instances: int = 3,
        misfire_grace_time: int | None = 60,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._store = store
        self._executable = executable
        self._tz = tz or timezone.utc
        self._registry = JobRegistry()
        self._stopped_evt = threading.Event()

        job_defaults = {
            "coalesce": True,  # run only the latest if many were missed
            "max_instances": max_instances,
            "misfire_grace_time": misfire_grace_time,
        }
        self._scheduler = scheduler or BackgroundScheduler(
            timezone=self._tz,
            job_defaults=job_defaults,
            executors={"default": ThreadPoolExecutor(executor_workers)},
            jobstores={"default": MemoryJobStore()},
        )

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def timezone(self) -> tzinfo:
        return self._tz

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    # ---- lifecycle ----

    def start(self, *, load_jobs: bool = True) -> None:
        LOG.info("Starting job scheduler")
        if not self._scheduler.running:
            self._scheduler.start()
            self._stopped_evt.clear()
        if load_jobs:
            self.load_active_jobs()

    def stop(self) -> None:
        """
        Promptly shut down the clock and drop every handle; executions in
        flight run to completion.
        """
        for job_id, handle in self._registry.clear().items():
            self._retire(job_id, handle)
        if self._scheduler.running:
            LOG.info("Stopping job scheduler...")
            self._scheduler.shutdown(wait=False)
        self._stopped_evt.set()
        LOG.info("Scheduler shut down complete.")

    def join(self, timeout: float | None = None) -> bool:
        """
        Block until the scheduler is fully stopped (or timeout).
        Returns True if stopped before timeout, else False.
        """
        return self._stopped_evt.wait(timeout=timeout)

    # ---- registry operations ----

    def schedule(self, job: Job) -> str | None:
        """
        Register `job` with the clock; returns the new handle.

        Inactive jobs are a no-op (None). An existing handle for the same id is
        retired first, so a job never has two live handles.
        """
        if not job.active:
            LOG.warning("Attempting to schedule inactive job: %s", job.name)
            return None
        if job.id is None:
            raise MissingIdError(job)

        LOG.info("Scheduling job: %s with schedule: %s", job.name, job.schedule)
        spec = schedule_parser.parse(job.schedule)
        trigger = schedule_parser.build_trigger(spec, self._tz)
        LOG.info("Using cron expression: %s", spec)

        def _swap(old: str | None) -> str:
            if old is not None:
                self._retire(job.id, old)
            handle = f"webwatch-{job.id}-{uuid.uuid4().hex[:12]}"
            self._scheduler.add_job(
                func=dispatch_fire,
                trigger=trigger,
                args=(self._executable, self._store, job),
                id=handle,
                name=job.name,
            )
            return handle

        self._registry.replace_atomically(job.id, _swap)
        handle = self._registry.get(job.id)

        nrt = self.next_run_time(job.id)
        LOG.info(
            "Successfully scheduled job: %s (ID: %s) next_run_time=%s",
            job.name,
            job.id,
            nrt.isoformat() if nrt else "(pending start)",
        )
        safe_activity({
            "ts": now_iso(),
            "source": "scheduler",
            "event": "job_scheduled",
            "job_id": job.id,
            "handle": handle,
            "cron": spec,
        })
        return handle

    def unschedule(self, job_id: int) -> bool:
        """Retire the handle for `job_id`. Idempotent; returns whether one existed."""
        handle = self._registry.remove(job_id)
        if handle is None:
            return False
        self._retire(job_id, handle)
        LOG.info("Unscheduled job with ID: %s", job_id)
        return True

    def reschedule(self, job: Job) -> str | None:
        """
        unschedule + schedule (if active). Two discrete steps: a fire due in
        between is skipped, never duplicated.
        """
        if job.id is not None:
            self.unschedule(job.id)
        if job.active:
            return self.schedule(job)
        return None

    def run_now(self, job: Job) -> Outcome:
        """Execute immediately, outside the registry, and persist the Outcome."""
        if job.id is None:
            raise MissingIdError(job)
        LOG.info("Running job immediately: %s", job.name)
        outcome = self._executable.run(job, trigger_type="manual")
        outcome_id = self._store.save_outcome(outcome)
        return replace(outcome, id=outcome_id)

    def load_active_jobs(self) -> int:
        """Schedule every active job from the store; per-job failures are logged and skipped."""
        jobs = self._store.get_active_jobs()
        LOG.info("Loading %d active jobs", len(jobs))

        scheduled = 0
        for job in jobs:
            try:
                self.schedule(job)
                scheduled += 1
            except Exception as e:
                LOG.error("Failed to schedule job %s: %s", job.id, e)
                safe_error({
                    "ts": now_iso(),
                    "where": "scheduler.load_active_jobs",
                    "job_id": job.id,
                    "schedule": job.schedule,
                    "error": repr(e),
                })
        return scheduled

    def validate_cron_expression(self, expression: str) -> str:
        """Return the normalized six-field spec or raise InvalidScheduleError. Registers nothing."""
        spec = schedule_parser.parse(expression)
        schedule_parser.build_trigger(spec, self._tz)
        return spec

    # ---- diagnostics ----

    def scheduled_job_ids(self) -> list[int]:
        return self._registry.ids()

    def next_run_time(self, job_id: int) -> datetime | None:
        handle = self._registry.get(job_id)
        if handle is None:
            return None
        aps_job = self._scheduler.get_job(handle)
        # Jobs added before start() have no next_run_time yet.
        return getattr(aps_job, "next_run_time", None) if aps_job else None

    # ---- internals ----

    def _retire(self, job_id: int, handle: str) -> None:
        try:
            self._scheduler.remove_job(handle)
        except JobLookupError:
            LOG.debug("Handle %s for job %s was already gone", handle, job_id)
