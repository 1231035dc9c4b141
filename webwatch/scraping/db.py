from __future__ import annotations

import contextlib
import os
import sqlite3
from collections.abc import Iterator

from .models import Job, JobStats, Outcome, SelectorKind, parse_data_kind
from .utils import from_iso, now_iso, to_iso, truthy


class NotFoundError(LookupError):
    """Raised when a job or outcome id does not exist."""


_JOB_COLUMNS = (
    "id, name, url, selector_type, selector, data_type, schedule, "
    "user_agent, proxy_url, is_active, created_at, updated_at"
)
_RESULT_COLUMNS = "id, job_id, scraped_data, timestamp, success, error_message"


class JobStore:
    """
    SQLite-backed persistence for jobs and their outcomes.

    A new connection is opened per operation, so one store instance can be
    shared by the scheduler's worker threads.
    """

    def __init__(self, sqlite_path: str) -> None:
        self.sqlite_path = sqlite_path
        self.init_db()

    # ---- schema -------------------------------------------------------------

    def init_db(self) -> None:
        """
        Ensure the SQLite database and schema exist.
        Safe to call multiple times.
        """
        _ensure_dir(self.sqlite_path)
        with self._conn() as conn:
            _ensure_schema(conn)

    # ---- jobs ---------------------------------------------------------------

    def create_job(self, job: Job) -> int:
        """Insert a new job; name uniqueness is enforced by sqlite (IntegrityError)."""
        ts = now_iso()
        with self._conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO jobs (name, url, selector_type, selector, data_type, schedule,
                                  user_agent, proxy_url, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (*_job_params(job), ts, ts),
            )
            return int(cur.lastrowid)

    def get_job(self, job_id: int) -> Job:
        with self._conn() as conn:
            row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Job {job_id} not found")
        return _row_to_job(row)

    def find_job_by_name(self, name: str) -> Job | None:
        with self._conn() as conn:
            row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE name = ?", (name,)).fetchone()
        return _row_to_job(row) if row else None

    def get_all_jobs(self) -> list[Job]:
        with self._conn() as conn:
            rows = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY id").fetchall()
        return [_row_to_job(r) for r in rows]

    def get_active_jobs(self) -> list[Job]:
        with self._conn() as conn:
            rows = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE is_active = 1 ORDER BY id").fetchall()
        return [_row_to_job(r) for r in rows]

    def update_job(self, job: Job) -> Job:
        """Persist all mutable fields of `job` and return the stored version."""
        if job.id is None:
            raise ValueError("Job ID is required for update")
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE jobs SET name = ?, url = ?, selector_type = ?, selector = ?,
                                data_type = ?, schedule = ?, user_agent = ?, proxy_url = ?,
                                is_active = ?, updated_at = ?
                WHERE id = ?
                """,
                (*_job_params(job), now_iso(), job.id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Job {job.id} not found")
        return self.get_job(job.id)

    def delete_job(self, job_id: int) -> None:
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Job {job_id} not found")

    # ---- outcomes -----------------------------------------------------------

    def save_outcome(self, outcome: Outcome) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                f"INSERT INTO results ({_RESULT_COLUMNS.split(', ', 1)[1]}) VALUES (?, ?, ?, ?, ?)",
                (
                    outcome.job_id,
                    outcome.data,
                    to_iso(outcome.timestamp),
                    1 if outcome.success else 0,
                    outcome.error_message,
                ),
            )
            return int(cur.lastrowid)

    def get_outcome(self, outcome_id: int) -> Outcome:
        with self._conn() as conn:
            row = conn.execute(f"SELECT {_RESULT_COLUMNS} FROM results WHERE id = ?", (outcome_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Outcome {outcome_id} not found")
        return _row_to_outcome(row)

    def get_outcomes_for_job(self, job_id: int, limit: int | None = None) -> list[Outcome]:
        """Newest first."""
        sql = f"SELECT {_RESULT_COLUMNS} FROM results WHERE job_id = ? ORDER BY timestamp DESC, id DESC"
        params: tuple = (job_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (job_id, int(limit))
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_outcome(r) for r in rows]

    def get_job_stats(self) -> JobStats:
        with self._conn() as conn:
            (total_jobs,) = conn.execute("SELECT COUNT(*) FROM jobs").fetchone()
            (active_jobs,) = conn.execute("SELECT COUNT(*) FROM jobs WHERE is_active = 1").fetchone()
            (total_outcomes,) = conn.execute("SELECT COUNT(*) FROM results").fetchone()
            row = conn.execute("SELECT MAX(timestamp) FROM results").fetchone()
        return JobStats(
            total_jobs=int(total_jobs or 0),
            active_jobs=int(active_jobs or 0),
            total_outcomes=int(total_outcomes or 0),
            last_run=from_iso(row[0]) if row and row[0] else None,
        )

    # ---- internals ----------------------------------------------------------

    @contextlib.contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = _connect(self.sqlite_path)
        try:
            _apply_pragmas(conn)
            with conn:
                yield conn
        finally:
            conn.close()


# ---- Nice-to-have helpers for tests & diagnostics --------------------------


def reset_db(sqlite_path: str) -> None:
    """
    Remove the DB file entirely (for pytest fixtures).
    Safe if it doesn't exist.
    """
    for suffix in ("", "-wal", "-shm"):
        with contextlib.suppress(FileNotFoundError):
            os.remove(sqlite_path + suffix)


# ---- Internal utilities -----------------------------------------------------


def _ensure_dir(sqlite_path: str) -> None:
    d = os.path.dirname(os.path.abspath(sqlite_path)) or "."
    os.makedirs(d, exist_ok=True)


def _connect(sqlite_path: str) -> sqlite3.Connection:
    return sqlite3.connect(sqlite_path, timeout=30.0)


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA temp_store=MEMORY;")


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL UNIQUE,
          url TEXT NOT NULL,
          selector_type TEXT NOT NULL,
          selector TEXT NOT NULL,
          data_type TEXT NOT NULL,
          schedule TEXT NOT NULL,
          user_agent TEXT,
          proxy_url TEXT,
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS results (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          job_id INTEGER NOT NULL,
          scraped_data TEXT NOT NULL,
          timestamp TEXT NOT NULL,
          success INTEGER NOT NULL,
          error_message TEXT,
          FOREIGN KEY (job_id) REFERENCES jobs (id) ON DELETE CASCADE
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS ix_results_job_ts ON results (job_id, timestamp);")


def _job_params(job: Job) -> tuple:
    return (
        job.name,
        job.url,
        job.selector_kind.value,
        job.selector,
        str(job.data_kind),
        job.schedule,
        job.user_agent,
        job.proxy_url,
        1 if job.active else 0,
    )


def _row_to_job(row: tuple) -> Job:
    return Job(
        id=int(row[0]),
        name=row[1],
        url=row[2],
        selector_kind=SelectorKind.parse(row[3]),
        selector=row[4],
        data_kind=parse_data_kind(row[5]),
        schedule=row[6],
        user_agent=row[7],
        proxy_url=row[8],
        active=truthy(row[9]),
        created_at=from_iso(row[10]),
        updated_at=from_iso(row[11]),
    )


def _row_to_outcome(row: tuple) -> Outcome:
    success = truthy(row[4])
    data = row[2] or ""
    return Outcome(
        id=int(row[0]),
        job_id=int(row[1]),
        data=data,
        timestamp=from_iso(row[3]),  # type: ignore[arg-type]
        success=success,
        error_message=row[5] if not success else None,
        items=tuple(data.split("\n")) if data else (),
    )
