# tests/conftest.py
import os
import tempfile
from dataclasses import replace

import pytest
import yaml
from freezegun import freeze_time

from webwatch.config_schema import Settings
from webwatch.context import build_context
from webwatch.runner import ExecutionPipeline
from webwatch.scheduler import CronEngine
from webwatch.scraping.db import JobStore
from webwatch.scraping.models import Job, SelectorKind

SAMPLE_HTML = """
<html>
  <head><title>Listing</title></head>
  <body>
    <h1>Items</h1>
    <ul>
      <li><a class="item link" href="/a">Apple</a></li>
      <li><a class="item" href="/b">Banana</a></li>
      <li><a class="item" href="/c"><span>Cherry</span><span>pie</span></a></li>
      <li><a class="item"></a></li>
    </ul>
    <p>Price: $12.50 and $3.99</p>
  </body>
</html>
"""


# ---------------------------------------------------------------------
# Live tests are opt-in: use --live or RUN_LIVE_TESTS=1
# ---------------------------------------------------------------------
def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run tests marked as 'live' (network calls or external services).",
    )


def pytest_configure(config: pytest.Config) -> None:
    # Marker registration (so pytest --markers shows it)
    config.addinivalue_line(
        "markers",
        "live: marks tests that perform live network calls or hit external services (skipped by default).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_live = config.getoption("--live") or os.getenv("RUN_LIVE_TESTS") == "1"
    if run_live:
        return
    skip_live = pytest.mark.skip(reason="live tests disabled (use --live or RUN_LIVE_TESTS=1)")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------
# Test-wide env defaults (autouse, function-scoped)
# ---------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _env_defaults(monkeypatch):
    # Write logs to a throwaway dir so real logs stay clean (per test)
    tmp_logs = tempfile.mkdtemp(prefix="webwatch-pytest-logs-")
    monkeypatch.setenv("LOG_DIR", tmp_logs)
    monkeypatch.setenv("ACTIVITY_LOG_PREFIX", "activity-test")
    monkeypatch.setenv("ERROR_LOG_PREFIX", "error-test")
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    monkeypatch.delenv("WEBWATCH_DB_PATH", raising=False)
    monkeypatch.delenv("TZ", raising=False)
    yield


@pytest.fixture
def frozen_utc():
    with freeze_time("2025-01-01T00:00:00Z"):
        yield


# ---------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------
class FakeHttpClient:
    """Stands in for HttpClient: serves canned bodies or raises canned errors."""

    def __init__(self, body: str = SAMPLE_HTML):
        self.body = body
        self.error: Exception | None = None
        self.reachable = True
        self.calls: list[dict] = []
        self.closed = False

    def fetch(self, url, user_agent=None, proxy_url=None, timeout=None):
        self.calls.append({"url": url, "user_agent": user_agent, "proxy_url": proxy_url})
        if self.error is not None:
            raise self.error
        return self.body

    def check_url(self, url, timeout=30.0):
        self.calls.append({"url": url, "method": "HEAD"})
        return self.reachable

    def close(self):
        self.closed = True


class RecordingStore:
    """Minimal store for engine tests: a fixed job list plus captured outcomes."""

    def __init__(self, jobs=None):
        self.jobs = list(jobs or [])
        self.saved = []
        self.fail_save: Exception | None = None

    def get_active_jobs(self):
        return [j for j in self.jobs if j.active]

    def save_outcome(self, outcome):
        if self.fail_save is not None:
            raise self.fail_save
        self.saved.append(outcome)
        return len(self.saved)


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------
@pytest.fixture
def make_job():
    def _make(**overrides) -> Job:
        base = Job(
            name="listing",
            url="https://example.com/list",
            selector="a.item",
            schedule="daily",
            selector_kind=SelectorKind.CSS,
        )
        return replace(base, **overrides)

    return _make


@pytest.fixture
def sample_html():
    return SAMPLE_HTML


@pytest.fixture
def fake_client():
    return FakeHttpClient()


@pytest.fixture
def pipeline(fake_client):
    return ExecutionPipeline(fake_client)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "webwatch.db")


@pytest.fixture
def store(db_path):
    return JobStore(db_path)


@pytest.fixture
def recording_store():
    return RecordingStore()


@pytest.fixture
def engine(recording_store, pipeline):
    eng = CronEngine(recording_store, pipeline)
    yield eng
    eng.stop()


@pytest.fixture
def ctx(db_path, store, fake_client):
    c = build_context(Settings(database_path=db_path), store=store, client=fake_client)
    yield c
    c.close()


@pytest.fixture
def write_config(tmp_path, db_path):
    """Write a YAML config pointing at the per-test database; returns its path."""

    def _write(**overrides) -> str:
        cfg = {
            "timezone": "UTC",
            "database_path": db_path,
            "jobs": [
                {
                    "name": "Example listing",
                    "url": "https://example.com/list",
                    "selectorKind": "css",
                    "selector": "a.item",
                    "dataKind": {"attribute": "href"},
                    "schedule": "hourly",
                }
            ],
        }
        cfg.update(overrides)
        p = tmp_path / "config.yaml"
        p.write_text(yaml.safe_dump(cfg), encoding="utf-8")
        return str(p)

    return _write
