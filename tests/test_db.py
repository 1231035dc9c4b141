import sqlite3
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from webwatch.scraping.db import JobStore, NotFoundError, reset_db
from webwatch.scraping.models import AttributeData, Outcome, SelectorKind

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_create_and_get_roundtrip(store, make_job):
    job = make_job(
        selector_kind=SelectorKind.REGEX,
        selector=r"(\d+)",
        data_kind=AttributeData("href"),
        user_agent="UA",
        proxy_url="http://proxy:1",
    )
    job_id = store.create_job(job)
    saved = store.get_job(job_id)

    assert saved.id == job_id
    assert replace(saved, id=None, created_at=None, updated_at=None) == job
    assert saved.created_at is not None and saved.created_at == saved.updated_at


def test_names_are_unique(store, make_job):
    store.create_job(make_job())
    with pytest.raises(sqlite3.IntegrityError):
        store.create_job(make_job(url="https://elsewhere"))


def test_missing_job_raises_not_found(store):
    with pytest.raises(NotFoundError):
        store.get_job(999)
    with pytest.raises(NotFoundError):
        store.delete_job(999)


def test_update_job(store, make_job):
    job = store.get_job(store.create_job(make_job()))
    updated = store.update_job(replace(job, schedule="hourly", active=False))
    assert updated.schedule == "hourly"
    assert updated.active is False
    assert updated.created_at == job.created_at
    assert updated.updated_at >= job.updated_at

    with pytest.raises(NotFoundError):
        store.update_job(replace(job, id=12345))
    with pytest.raises(ValueError):
        store.update_job(replace(job, id=None))


def test_active_and_all_jobs(store, make_job):
    store.create_job(make_job(name="a"))
    store.create_job(make_job(name="b", active=False))
    store.create_job(make_job(name="c"))

    assert [j.name for j in store.get_all_jobs()] == ["a", "b", "c"]
    assert [j.name for j in store.get_active_jobs()] == ["a", "c"]
    assert store.find_job_by_name("b").active is False
    assert store.find_job_by_name("zzz") is None


def test_outcomes_newest_first_with_limit(store, make_job):
    job_id = store.create_job(make_job())
    for i in range(4):
        store.save_outcome(Outcome.succeeded(job_id, [f"v{i}"], T0 + timedelta(minutes=i)))

    outcomes = store.get_outcomes_for_job(job_id)
    assert [o.data for o in outcomes] == ["v3", "v2", "v1", "v0"]
    assert [o.data for o in store.get_outcomes_for_job(job_id, limit=2)] == ["v3", "v2"]


def test_outcome_roundtrip_keeps_failure_details(store, make_job):
    job_id = store.create_job(make_job())
    ok_id = store.save_outcome(Outcome.succeeded(job_id, ["a", "b"], T0))
    bad_id = store.save_outcome(Outcome.failed(job_id, "HTTP error: 500", T0))

    ok = store.get_outcome(ok_id)
    assert ok.success and ok.items == ("a", "b") and ok.timestamp == T0
    bad = store.get_outcome(bad_id)
    assert not bad.success and bad.error_message == "HTTP error: 500" and bad.data == ""

    with pytest.raises(NotFoundError):
        store.get_outcome(999)


def test_delete_cascades_outcomes(store, make_job):
    job_id = store.create_job(make_job())
    store.save_outcome(Outcome.succeeded(job_id, ["x"], T0))
    store.delete_job(job_id)
    assert store.get_outcomes_for_job(job_id) == []


def test_stats(store, make_job):
    empty = store.get_job_stats()
    assert (empty.total_jobs, empty.active_jobs, empty.total_outcomes, empty.last_run) == (0, 0, 0, None)

    a = store.create_job(make_job(name="a"))
    store.create_job(make_job(name="b", active=False))
    store.save_outcome(Outcome.succeeded(a, ["x"], T0))
    store.save_outcome(Outcome.failed(a, "boom", T0 + timedelta(hours=1)))

    stats = store.get_job_stats()
    assert stats.total_jobs == 2
    assert stats.active_jobs == 1
    assert stats.total_outcomes == 2
    assert stats.last_run == T0 + timedelta(hours=1)


def test_reset_db(db_path, make_job):
    JobStore(db_path).create_job(make_job())
    reset_db(db_path)
    assert JobStore(db_path).get_all_jobs() == []
    reset_db(db_path + ".missing")  # no-op
