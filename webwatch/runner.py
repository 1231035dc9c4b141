# webwatch/runner.py
from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Protocol, runtime_checkable

from .logging_utils import safe_activity
from .scraping.extract import SelectorCompileError, extract
from .scraping.http_client import FetchError, HttpClient
from .scraping.models import Job, Outcome
from .scraping.utils import now_iso, utc_now

log = logging.getLogger(__name__)

TEST_RUN_LIMIT = 5
UNSAVED_JOB_ID = 0


@runtime_checkable
class Executable(Protocol):
    """
    What the scheduling clock holds for each fire: something that turns a
    Job into an Outcome and never raises for fetch/extract failures.
    """

    def run(self, job: Job, *, trigger_type: str = "scheduled") -> Outcome: ...


class ExecutionPipeline:
    """
    fetch -> extract -> Outcome.

    Shared by scheduled fires, run-now and test-run. All fetch, HTTP-status
    and selector errors are folded into a failed Outcome.
    """

    def __init__(self, client: HttpClient | None = None, clock: Callable[[], datetime] = utc_now) -> None:
        self.client = client or HttpClient()
        self._clock = clock

    def run(self, job: Job, *, trigger_type: str = "scheduled") -> Outcome:
        return self._execute(job, trigger_type=trigger_type, limit=None)

    def test_run(self, job: Job, limit: int = TEST_RUN_LIMIT) -> Outcome:
        """Same logic as run(), items truncated to the first `limit` for previews."""
        return self._execute(job, trigger_type="test", limit=limit)

    # ---- internals ----
    def _execute(self, job: Job, *, trigger_type: str, limit: int | None) -> Outcome:
        run_id = uuid.uuid4().hex
        job_id = job.id if job.id is not None else UNSAVED_JOB_ID
        started = time.monotonic()
        log.info("Job[%s] %r starting (%s) url=%s", job_id, job.name, trigger_type, job.url)

        try:
            content = self.client.fetch(job.url, user_agent=job.user_agent, proxy_url=job.proxy_url)
        except FetchError as e:
            log.error("Job[%s] %r fetch failed: %s", job_id, job.name, e)
            outcome = Outcome.failed(job_id, _message(e), self._clock())
            self._record(run_id, job, trigger_type, outcome, started, stage="fetch")
            return outcome
        except Exception as e:
            log.exception("Job[%s] %r fetch raised unexpectedly", job_id, job.name)
            outcome = Outcome.failed(job_id, f"Failed to fetch URL: {_message(e)}", self._clock())
            self._record(run_id, job, trigger_type, outcome, started, stage="fetch")
            return outcome

        try:
            items = extract(content, job.selector_kind, job.selector, job.data_kind)
        except SelectorCompileError as e:
            log.error("Job[%s] %r extraction failed: %s", job_id, job.name, e)
            outcome = Outcome.failed(job_id, _message(e), self._clock())
            self._record(run_id, job, trigger_type, outcome, started, stage="extract")
            return outcome
        except Exception as e:
            log.exception("Job[%s] %r extraction raised unexpectedly", job_id, job.name)
            outcome = Outcome.failed(job_id, f"Extraction failed: {_message(e)}", self._clock())
            self._record(run_id, job, trigger_type, outcome, started, stage="extract")
            return outcome

        if limit is not None:
            items = items[:limit]
        outcome = Outcome.succeeded(job_id, items, self._clock())
        log.info("Job[%s] %r completed with %d item(s)", job_id, job.name, len(items))
        self._record(run_id, job, trigger_type, outcome, started)
        return outcome

    def _record(
        self,
        run_id: str,
        job: Job,
        trigger_type: str,
        outcome: Outcome,
        started: float,
        stage: str | None = None,
    ) -> None:
        safe_activity({
            "ts": now_iso(),
            "source": "runner",
            "event": "job_run",
            "run_id": run_id,
            "job_id": outcome.job_id,
            "job_name": job.name,
            "url": job.url,
            "proxy_url": job.proxy_url,
            "trigger_type": trigger_type,
            "ok": outcome.success,
            "items": len(outcome.items),
            "failed_stage": stage,
            "error": outcome.error_message,
            "duration_ms": int((time.monotonic() - started) * 1000),
        })


def _message(err: Exception) -> str:
    return str(err) or type(err).__name__
