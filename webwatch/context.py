"""
Application context and the operations the host layer (CLI) calls.

`build_context()` wires the store, HTTP client, pipeline and engine once at
startup; every operation below takes that context explicitly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from zoneinfo import ZoneInfo

from . import schedule
from .config_schema import Settings
from .runner import ExecutionPipeline
from .scheduler import CronEngine
from .scraping import extract
from .scraping.db import JobStore
from .scraping.http_client import HttpClient
from .scraping.models import Job, JobStats, Outcome, SelectorKind

LOG = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    store: JobStore
    client: HttpClient
    pipeline: ExecutionPipeline
    engine: CronEngine

    def close(self) -> None:
        self.engine.stop()
        self.client.close()


def build_context(settings: Settings, *, store: JobStore | None = None, client: HttpClient | None = None) -> AppContext:
    store = store or JobStore(settings.database_path)
    client = client or HttpClient()
    pipeline = ExecutionPipeline(client)
    engine = CronEngine(
        store,
        pipeline,
        tz=ZoneInfo(settings.timezone),
        executor_workers=settings.executor_workers,
        max_instances=settings.max_instances,
        misfire_grace_time=settings.misfire_grace_time,
    )
    return AppContext(settings=settings, store=store, client=client, pipeline=pipeline, engine=engine)


# ---- Job lifecycle ----------------------------------------------------------


def create_job(ctx: AppContext, job: Job) -> Job:
    """
    Validate, persist, and (if active) schedule a new job.
    Validation errors leave nothing behind.
    """
    _validate_job(job)
    job_id = ctx.store.create_job(job)
    saved = ctx.store.get_job(job_id)
    if saved.active:
        ctx.engine.schedule(saved)
    LOG.info("Created job %s (%r)", job_id, saved.name)
    return saved


def update_job(ctx: AppContext, job: Job) -> Job:
    """Persist changes and reschedule (drops the handle if the job went inactive)."""
    if job.id is None:
        raise ValueError("Job ID is required for update")
    _validate_job(job)
    saved = ctx.store.update_job(job)
    ctx.engine.reschedule(saved)
    return saved


def set_active(ctx: AppContext, job_id: int, active: bool) -> Job:
    job = ctx.store.get_job(job_id)
    return update_job(ctx, replace(job, active=active))


def delete_job(ctx: AppContext, job_id: int) -> None:
    """Unschedule first so no new fire starts for a job that no longer exists."""
    ctx.engine.unschedule(job_id)
    ctx.store.delete_job(job_id)
    LOG.info("Deleted job %s", job_id)


def run_job_now(ctx: AppContext, job_id: int) -> Outcome:
    job = ctx.store.get_job(job_id)
    return ctx.engine.run_now(job)


def preview_job(ctx: AppContext, job: Job) -> Outcome:
    """Preview a job (saved or not): at most 5 items, nothing persisted."""
    return ctx.pipeline.test_run(job)


def sync_jobs_from_config(ctx: AppContext, jobs: list[Job]) -> list[Job]:
    """
    Upsert config-declared jobs by name. Scheduling is left to the engine's
    startup load, so this runs before `ctx.engine.start()`.
    """
    synced: list[Job] = []
    for job in jobs:
        _validate_job(job)
        existing = ctx.store.find_job_by_name(job.name)
        if existing is None:
            saved = ctx.store.get_job(ctx.store.create_job(replace(job, id=None)))
        else:
            saved = ctx.store.update_job(replace(job, id=existing.id))
        synced.append(saved)
    LOG.info("Synced %d job(s) from config", len(synced))
    return synced


# ---- Lookups ----------------------------------------------------------------


def get_job(ctx: AppContext, job_id: int) -> Job:
    return ctx.store.get_job(job_id)


def list_jobs(ctx: AppContext) -> list[Job]:
    return ctx.store.get_all_jobs()


def get_outcomes(ctx: AppContext, job_id: int, limit: int | None = None) -> list[Outcome]:
    ctx.store.get_job(job_id)  # NotFoundError for unknown jobs
    return ctx.store.get_outcomes_for_job(job_id, limit)


def get_stats(ctx: AppContext) -> JobStats:
    return ctx.store.get_job_stats()


# ---- Validation -------------------------------------------------------------


def validate_schedule(expression: str, *, preview: int = 0, tz: str = "UTC") -> tuple[str, list[datetime]]:
    """Normalized spec plus (optionally) the next `preview` fire times."""
    spec = schedule.parse(expression)
    zone = ZoneInfo(tz)
    schedule.build_trigger(spec, zone)
    times = schedule.preview(spec, zone, count=preview) if preview > 0 else []
    return spec, times


def validate_css_selector(selector: str) -> bool:
    return extract.validate_css_selector(selector)


def validate_regex_pattern(pattern: str) -> bool:
    return extract.validate_regex_pattern(pattern)


def check_url(ctx: AppContext, url: str) -> bool:
    return ctx.client.check_url(url)


def _validate_job(job: Job) -> None:
    """Reject malformed schedules/selectors before any state changes."""
    schedule.parse(job.schedule)
    if job.selector_kind is SelectorKind.CSS:
        extract.validate_css_selector(job.selector)
    else:
        extract.validate_regex_pattern(job.selector)
