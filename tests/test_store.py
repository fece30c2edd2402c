from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from sitesnap.store import JobInputs, JobStateError, JobStatus, JobStore, StorageConfig


def _inputs(**overrides) -> JobInputs:  # noqa: ANN003
    values = dict(
        owner_id="owner-1",
        seed_url="https://example.com/",
        devices=("desktop", "mobile"),
        page_budget=3,
    )
    values.update(overrides)
    return JobInputs(**values)


@pytest.fixture()
def store(tmp_path) -> JobStore:  # noqa: ANN001
    return JobStore(StorageConfig(db_path=tmp_path / "jobs.db"))


def test_create_allocates_processing_job_with_retention_window(store: JobStore):
    created_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    job = store.create(_inputs(), now=created_at)

    assert job.status is JobStatus.PROCESSING
    assert job.progress == 0
    assert job.created_at == created_at
    assert job.expires_at == created_at + timedelta(hours=48)
    assert job.storage_path == f"owner-1/{job.id}"
    assert job.devices == ("desktop", "mobile")
    assert store.get(job.id) == job


def test_get_unknown_job_raises_key_error(store: JobStore):
    with pytest.raises(KeyError):
        store.get("missing")


def test_progress_never_decreases(store: JobStore):
    job = store.create(_inputs())

    assert store.set_progress(job.id, 33) is True
    assert store.set_progress(job.id, 16) is False
    assert store.set_progress(job.id, 66) is True

    assert store.get(job.id).progress == 66


def test_progress_is_clamped(store: JobStore):
    job = store.create(_inputs())

    store.set_progress(job.id, 250)

    assert store.get(job.id).progress == 100


def test_terminal_status_wins_over_late_progress(store: JobStore):
    job = store.create(_inputs())
    store.set_progress(job.id, 33)
    store.request_cancel(job.id)

    assert store.set_progress(job.id, 50) is False
    assert store.fail(job.id, "render: boom") is False
    assert store.record_discovered(job.id, 9) is False

    current = store.get(job.id)
    assert current.status is JobStatus.CANCELLED
    assert current.progress == 33
    assert current.error_message is None


def test_complete_sets_full_progress_and_mapping(store: JobStore):
    job = store.create(_inputs())
    mapping = [{"filename": "desktop_1.jpg", "url": "https://example.com/", "device": "desktop"}]

    finished = store.complete(job.id, mapping)

    assert finished.status is JobStatus.COMPLETED
    assert finished.progress == 100
    assert finished.file_mapping == tuple(mapping)
    assert finished.finished_at is not None


def test_complete_requires_processing(store: JobStore):
    job = store.create(_inputs())
    store.fail(job.id, "crawl: seed unreachable")

    with pytest.raises(JobStateError):
        store.complete(job.id, [])


def test_fail_records_message_once(store: JobStore):
    job = store.create(_inputs())

    assert store.fail(job.id, "upload: disk full") is True
    assert store.fail(job.id, "second failure") is False

    current = store.get(job.id)
    assert current.status is JobStatus.ERROR
    assert current.error_message == "upload: disk full"


def test_cancel_only_while_processing(store: JobStore):
    job = store.create(_inputs())
    store.complete(job.id, [])

    with pytest.raises(JobStateError) as excinfo:
        store.request_cancel(job.id)

    assert excinfo.value.status == "completed"
    with pytest.raises(KeyError):
        store.request_cancel("missing")


def test_increment_downloads_counts_each_call(store: JobStore):
    job = store.create(_inputs())

    assert store.increment_downloads(job.id) == 1
    assert store.increment_downloads(job.id) == 2
    with pytest.raises(KeyError):
        store.increment_downloads("missing")


def test_list_expired_and_delete(store: JobStore):
    now = datetime(2026, 3, 10, tzinfo=timezone.utc)
    old = store.create(_inputs(), now=now - timedelta(hours=49))
    fresh = store.create(_inputs(), now=now - timedelta(hours=1))

    expired = store.list_expired(now)

    assert [job.id for job in expired] == [old.id]
    assert store.delete(old.id) is True
    assert store.delete(old.id) is False
    assert store.get(fresh.id).id == fresh.id


def test_list_stale_only_returns_old_processing_jobs(store: JobStore):
    now = datetime(2026, 3, 10, tzinfo=timezone.utc)
    stuck = store.create(_inputs(), now=now - timedelta(hours=3))
    finished = store.create(_inputs(), now=now - timedelta(hours=3))
    store.complete(finished.id, [])
    store.create(_inputs(), now=now - timedelta(minutes=5))

    stale = store.list_stale(now - timedelta(hours=1))

    assert [job.id for job in stale] == [stuck.id]


def test_list_jobs_is_newest_first_per_owner(store: JobStore):
    now = datetime(2026, 3, 10, tzinfo=timezone.utc)
    first = store.create(_inputs(), now=now - timedelta(hours=2))
    second = store.create(_inputs(), now=now - timedelta(hours=1))
    store.create(_inputs(owner_id="someone-else"), now=now)

    jobs = store.list_jobs("owner-1")

    assert [job.id for job in jobs] == [second.id, first.id]
