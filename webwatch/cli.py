# webwatch/cli.py
"""
Command-line entrypoints.

Subcommands
-----------
serve
    - Syncs config-declared jobs into the store, starts the scheduler and
      loads every active job
    - Registers signal handlers for graceful shutdown

add-job / list-jobs / delete / enable / disable
    - Manage persisted jobs (active jobs are scheduled by the next `serve`)

run JOB_ID
    - Executes a job immediately and stores the outcome

test JOB_ID
    - Dry run: fetch + extract, show up to 5 items, store nothing

results JOB_ID [--limit N] / stats
    - Inspect stored outcomes

validate {schedule,css,regex,url} VALUE [--preview N]
    - Check a schedule, selector, pattern or URL without touching the store

validate-config
    - Loads/validates config and returns nonzero on error
"""

from __future__ import annotations

import argparse
import functools
import logging
import os
import signal
import sqlite3
import sys
import threading
import time
from collections.abc import Callable, Iterable

from . import context as app
from . import logging_utils as L
from .config_schema import Settings, load_config, validate
from .scraping.http_client import FetchError
from .scraping.models import Job, Outcome
from .scraping.utils import now_iso, to_iso

LOG = logging.getLogger("webwatch.cli")

# Errors that are the user's input being wrong, not the program.
_EXPECTED_ERRORS = (ValueError, LookupError, FetchError, sqlite3.IntegrityError)


# ----------------------------- Logging setup ---------------------------------
def _ensure_logging() -> None:
    """Initialize a reasonable logging setup if none exists yet."""
    root = logging.getLogger()
    if not root.handlers:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
        logging.basicConfig(
            level=getattr(logging, level, logging.INFO),
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )


# -------------------------- Utility / glue code ------------------------------
def _print_table(rows: Iterable[tuple[str, str]], headers: tuple[str, str] = ("ID", "DETAILS")) -> None:
    """Very simple two-column table printer."""
    rows = list(rows)
    w0 = max(len(headers[0]), *(len(r[0]) for r in rows)) if rows else len(headers[0])
    w1 = max(len(headers[1]), *(len(r[1]) for r in rows)) if rows else len(headers[1])
    sep = f"+-{'-' * w0}-+-{'-' * w1}-+"
    print(sep)
    print(f"| {headers[0].ljust(w0)} | {headers[1].ljust(w1)} |")
    print(sep)
    for c0, c1 in rows:
        print(f"| {c0.ljust(w0)} | {c1.ljust(w1)} |")
    print(sep)


def _load_settings(path: str | None) -> Settings:
    return Settings.from_config(load_config(path))


def _open_context(args: argparse.Namespace) -> app.AppContext:
    return app.build_context(_load_settings(args.config))


def _describe(job: Job) -> str:
    state = "active" if job.active else "inactive"
    return f"{job.name} | {job.schedule} | {job.selector_kind.value} {job.selector!r} -> {job.data_kind} | {state}"


def _print_outcome(outcome: Outcome) -> None:
    if outcome.success:
        print(f"SUCCESS: {len(outcome.items)} item(s) at {to_iso(outcome.timestamp)}")
        for item in outcome.items:
            print(f"  - {item}")
    else:
        print(f"FAILURE: {outcome.error_message}", file=sys.stderr)


def _command(where: str) -> Callable[[Callable[[argparse.Namespace], int]], Callable[[argparse.Namespace], int]]:
    """Uniform exit codes: 0 ok, 1 failure, 130 interrupt."""

    def deco(fn: Callable[[argparse.Namespace], int]) -> Callable[[argparse.Namespace], int]:
        @functools.wraps(fn)
        def wrapper(args: argparse.Namespace) -> int:
            try:
                return fn(args)
            except KeyboardInterrupt:
                return 130
            except _EXPECTED_ERRORS as e:
                LOG.debug("%s failed", where, exc_info=True)
                print(f"ERROR: {e}", file=sys.stderr)
                return 1
            except Exception as e:
                LOG.exception("Unexpected error in %s: %s", where, e)
                L.safe_error({"ts": now_iso(), "where": where, "error": repr(e)})
                print(f"ERROR: {e}", file=sys.stderr)
                return 1

        return wrapper

    return deco


# ------------------------------ Subcommands ----------------------------------
@_command("cli.validate_config")
def cmd_validate_config(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    validate(cfg)
    print(f"OK: configuration is valid ({len(cfg['jobs'])} job(s)).")
    return 0


@_command("cli.add_job")
def cmd_add_job(args: argparse.Namespace) -> int:
    job = Job.from_dict({
        "name": args.name,
        "url": args.url,
        "selector": args.selector,
        "schedule": args.schedule,
        "selector_kind": args.selector_kind,
        "data_kind": args.data_kind,
        "user_agent": args.user_agent,
        "proxy_url": args.proxy_url,
        "active": not args.inactive,
    })
    ctx = _open_context(args)
    try:
        saved = app.create_job(ctx, job)
    finally:
        ctx.close()
    print(f"Created job {saved.id}: {_describe(saved)}")
    return 0


@_command("cli.list_jobs")
def cmd_list_jobs(args: argparse.Namespace) -> int:
    ctx = _open_context(args)
    try:
        jobs = app.list_jobs(ctx)
    finally:
        ctx.close()
    if not jobs:
        print("No jobs found.")
        return 0
    _print_table(((str(j.id), _describe(j)) for j in jobs), headers=("JOB", "DETAILS"))
    return 0


@_command("cli.run")
def cmd_run(args: argparse.Namespace) -> int:
    started = time.monotonic()
    ctx = _open_context(args)
    try:
        outcome = app.run_job_now(ctx, args.job_id)
    finally:
        ctx.close()
    L.safe_activity({
        "ts": now_iso(),
        "event": "cli_run",
        "job_id": args.job_id,
        "outcome_id": outcome.id,
        "ok": outcome.success,
        "duration_ms": int((time.monotonic() - started) * 1000),
    })
    _print_outcome(outcome)
    return 0 if outcome.success else 1


@_command("cli.test")
def cmd_test(args: argparse.Namespace) -> int:
    ctx = _open_context(args)
    try:
        outcome = app.preview_job(ctx, app.get_job(ctx, args.job_id))
    finally:
        ctx.close()
    _print_outcome(outcome)
    return 0 if outcome.success else 1


@_command("cli.results")
def cmd_results(args: argparse.Namespace) -> int:
    ctx = _open_context(args)
    try:
        outcomes = app.get_outcomes(ctx, args.job_id, args.limit)
    finally:
        ctx.close()
    if not outcomes:
        print(f"No results for job {args.job_id}.")
        return 0
    rows = []
    for o in outcomes:
        detail = f"OK {len(o.items)} item(s)" if o.success else f"FAILED: {o.error_message}"
        rows.append((to_iso(o.timestamp), detail))
    _print_table(rows, headers=("TIMESTAMP", "RESULT"))
    return 0


@_command("cli.delete")
def cmd_delete(args: argparse.Namespace) -> int:
    ctx = _open_context(args)
    try:
        app.delete_job(ctx, args.job_id)
    finally:
        ctx.close()
    print(f"Deleted job {args.job_id}.")
    return 0


@_command("cli.set_active")
def cmd_set_active(args: argparse.Namespace) -> int:
    ctx = _open_context(args)
    try:
        job = app.set_active(ctx, args.job_id, args.active)
    finally:
        ctx.close()
    print(f"Job {job.id} is now {'active' if job.active else 'inactive'}.")
    return 0


@_command("cli.stats")
def cmd_stats(args: argparse.Namespace) -> int:
    ctx = _open_context(args)
    try:
        stats = app.get_stats(ctx)
    finally:
        ctx.close()
    print(f"Total jobs:     {stats.total_jobs}")
    print(f"Active jobs:    {stats.active_jobs}")
    print(f"Total results:  {stats.total_outcomes}")
    print(f"Last run:       {to_iso(stats.last_run) if stats.last_run else 'never'}")
    return 0


@_command("cli.validate")
def cmd_validate(args: argparse.Namespace) -> int:
    if args.kind == "schedule":
        spec, times = app.validate_schedule(args.value, preview=args.preview, tz=args.tz)
        print(f"OK: {spec}")
        for t in times:
            print(f"  next: {t.isoformat()}")
    elif args.kind == "css":
        app.validate_css_selector(args.value)
        print("OK: valid CSS selector.")
    elif args.kind == "regex":
        app.validate_regex_pattern(args.value)
        print("OK: valid regex pattern.")
    else:
        ctx = _open_context(args)
        try:
            reachable = app.check_url(ctx, args.value)
        finally:
            ctx.close()
        if not reachable:
            print(f"ERROR: {args.value} did not answer with a 2xx status.", file=sys.stderr)
            return 1
        print("OK: URL is reachable.")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """
    Run the scheduler in a daemon-like fashion until a termination signal
    is received.
    """
    L.safe_activity({"ts": now_iso(), "event": "serve_start"})

    stop_event = threading.Event()
    ctx: app.AppContext | None = None

    def _graceful_shutdown(signum=None, frame=None):
        LOG.info("Signal %s received; initiating shutdown...", signum)
        stop_event.set()

    # Register signals early
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _graceful_shutdown)

    try:
        settings = _load_settings(args.config)
        ctx = app.build_context(settings)
        app.sync_jobs_from_config(ctx, settings.jobs)
        ctx.engine.start()
        LOG.info("Scheduler started with %d job(s)", len(ctx.engine.scheduled_job_ids()))

        _wait_for_stop(stop_event)

        _safe_close(ctx)
        L.safe_activity({"ts": now_iso(), "event": "serve_stop"})
        return 0

    except KeyboardInterrupt:
        _graceful_shutdown("KeyboardInterrupt")
        _safe_close(ctx)
        return 130
    except Exception as e:
        LOG.exception("Fatal error in serve: %s", e)
        L.safe_error({"ts": now_iso(), "where": "cli.serve", "error": repr(e)})
        _safe_close(ctx)
        return 1


def _wait_for_stop(stop_event: threading.Event) -> None:
    # Main wait loop (respond quickly to signals)
    while not stop_event.is_set():
        stop_event.wait(0.3)


def _safe_close(ctx: app.AppContext | None) -> None:
    """Best-effort stop & join of the scheduler, then release the HTTP session."""
    if ctx is None:
        return
    try:
        ctx.close()
    except Exception:  # pragma: no cover
        LOG.exception("Error stopping scheduler")
    if not ctx.engine.join(timeout=10.0):  # pragma: no cover
        LOG.warning("Scheduler did not report stopped within 10s")


# ------------------------------- Argparse ------------------------------------
def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="python -m webwatch.cli",
        description="Scheduled web scraping service",
    )
    p.add_argument(
        "--config",
        help="Path to config file (fallbacks to CONFIG_PATH env or built-in defaults).",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    # serve
    sp = sub.add_parser("serve", help="Run the scheduler loop.")
    sp.set_defaults(func=cmd_serve)

    # add-job
    sp = sub.add_parser("add-job", help="Create a job (scheduled by serve when active).")
    sp.add_argument("--name", required=True)
    sp.add_argument("--url", required=True)
    sp.add_argument("--selector", required=True, help="CSS selector or regex pattern.")
    sp.add_argument("--schedule", required=True, help="daily|hourly|weekly|monthly or 'sec min hour day month weekday'.")
    sp.add_argument("--selector-kind", choices=("css", "regex"), default="css")
    sp.add_argument("--data-kind", default="text", help="'text' or 'attribute:<name>' (CSS only).")
    sp.add_argument("--user-agent")
    sp.add_argument("--proxy-url")
    sp.add_argument("--inactive", action="store_true", help="Create the job without scheduling it.")
    sp.set_defaults(func=cmd_add_job)

    # list-jobs
    sp = sub.add_parser("list-jobs", help="Print all stored jobs.")
    sp.set_defaults(func=cmd_list_jobs)

    # run / test / results / delete
    sp = sub.add_parser("run", help="Execute a job now and store the result.")
    sp.add_argument("job_id", type=int)
    sp.set_defaults(func=cmd_run)

    sp = sub.add_parser("test", help="Dry-run a job: show up to 5 items, store nothing.")
    sp.add_argument("job_id", type=int)
    sp.set_defaults(func=cmd_test)

    sp = sub.add_parser("results", help="Show stored results for a job (newest first).")
    sp.add_argument("job_id", type=int)
    sp.add_argument("--limit", type=int, default=20)
    sp.set_defaults(func=cmd_results)

    sp = sub.add_parser("delete", help="Unschedule and delete a job with its results.")
    sp.add_argument("job_id", type=int)
    sp.set_defaults(func=cmd_delete)

    # enable / disable
    sp = sub.add_parser("enable", help="Mark a job active.")
    sp.add_argument("job_id", type=int)
    sp.set_defaults(func=cmd_set_active, active=True)

    sp = sub.add_parser("disable", help="Mark a job inactive.")
    sp.add_argument("job_id", type=int)
    sp.set_defaults(func=cmd_set_active, active=False)

    # stats
    sp = sub.add_parser("stats", help="Job and result counts.")
    sp.set_defaults(func=cmd_stats)

    # validate
    sp = sub.add_parser("validate", help="Check a schedule, selector, regex or URL.")
    sp.add_argument("kind", choices=("schedule", "css", "regex", "url"))
    sp.add_argument("value")
    sp.add_argument("--preview", type=int, default=0, help="Show the next N fire times (schedule only).")
    sp.add_argument("--tz", default="UTC", help="Timezone for --preview.")
    sp.set_defaults(func=cmd_validate)

    # validate-config
    sp = sub.add_parser("validate-config", help="Verify configuration correctness.")
    sp.set_defaults(func=cmd_validate_config)

    return p


# --------------------------------- Main --------------------------------------
def main(argv: Iterable[str] | None = None) -> int:
    _ensure_logging()
    parser = _build_parser()
    args = parser.parse_args(args=list(argv) if argv is not None else None)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
