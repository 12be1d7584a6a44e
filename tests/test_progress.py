import threading
from datetime import datetime, timedelta, timezone

import pytest

from dripline.models import COMPLETED, FAILED, PENDING, PROCESSING, ContentSource, Job, ProgressReport
from dripline.progress import ProgressMonitor, compute_progress, source_progress
from dripline.services.monitor_service import build_monitor, get_progress, progress_to_dict
from dripline.storage import (
    claim_next_job,
    complete_job,
    enqueue_job,
    init_db,
    record_poll_failure,
    record_poll_success,
    upsert_source,
    upsert_topic,
)

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _source(source_id="s1", **overrides):
    fields = {
        "id": source_id,
        "name": source_id,
        "topic_id": "ai",
        "cooldown_hours": 1.0,
        "last_polled_at": None,
        "last_success_at": None,
        "consecutive_failures": 0,
        "is_active": True,
        "is_critical": False,
        "articles_scraped": 0,
    }
    fields.update(overrides)
    return ContentSource(**fields)


def _job(status):
    return Job(
        id="job_1",
        job_type="gather",
        status=status,
        payload={},
        result=None,
        requested_at=NOW.isoformat(),
        started_at=None,
        finished_at=None,
        locked_by=None,
        locked_at=None,
        error=None,
    )


def _report(percent, job_status="running", is_complete=False):
    return ProgressReport(
        job_id="job_1",
        topic_id="ai",
        percent=percent,
        job_status=job_status,
        is_complete=is_complete,
    )


def test_source_progress_statuses():
    recent = NOW - timedelta(minutes=2)
    old = NOW - timedelta(minutes=10)
    assert source_progress(_source(last_polled_at=recent, last_success_at=recent), NOW).status == COMPLETED
    assert source_progress(_source(last_polled_at=old, articles_scraped=3), NOW).status == COMPLETED
    assert source_progress(_source(last_polled_at=recent), NOW).status == PROCESSING
    assert source_progress(_source(last_polled_at=recent, last_success_at=old), NOW).status == PROCESSING
    assert source_progress(_source(last_polled_at=old), NOW).status == PENDING
    assert source_progress(_source(), NOW).status == PENDING


def test_source_progress_earlier_success_does_not_complete_failed_repoll():
    source = _source(
        last_polled_at=NOW - timedelta(minutes=1),
        last_success_at=NOW - timedelta(minutes=4),
    )
    assert source_progress(source, NOW, job_status="running").status == PROCESSING


def test_source_progress_failed_when_job_stopped():
    assert source_progress(_source(), NOW, job_status="failed").status == FAILED
    finished = _source(articles_scraped=2)
    assert source_progress(finished, NOW, job_status="failed").status == COMPLETED


def test_compute_progress_weights_processing_half():
    recent = NOW - timedelta(minutes=1)
    sources = [
        _source("a", last_polled_at=recent, last_success_at=recent),
        _source("b", articles_scraped=4),
        _source("c", last_polled_at=recent),
        _source("d"),
    ]
    report = compute_progress("job_1", "ai", _job("running"), sources, NOW)
    assert report.percent == 62.5
    assert report.is_complete is False
    assert [item.status for item in report.per_source] == [COMPLETED, COMPLETED, PROCESSING, PENDING]


def test_compute_progress_without_sources():
    report = compute_progress("job_1", "ai", _job("running"), [], NOW)
    assert report.percent == 0.0
    assert report.is_complete is False
    assert compute_progress("job_1", "ai", _job("succeeded"), [], NOW).is_complete is True


def test_compute_progress_complete_at_full_percent():
    report = compute_progress("job_1", "ai", None, [_source(articles_scraped=1)], NOW)
    assert report.percent == 100.0
    assert report.job_status is None
    assert report.is_complete is True


def test_monitor_fires_completion_once():
    reports = iter([_report(50.0), _report(100.0, "succeeded", True)])
    completions = []
    updates = []

    def fetch():
        return next(reports, _report(100.0, "succeeded", True))

    monitor = ProgressMonitor(
        fetch,
        poll_seconds=0.01,
        on_update=updates.append,
        on_complete=completions.append,
    )
    monitor.start()
    final = monitor.wait(timeout=5)
    monitor.cancel(timeout=5)

    assert final is not None and final.is_complete
    assert len(completions) == 1
    assert len(updates) == 2
    assert monitor.completed is True
    assert monitor.cancelled is False


def test_monitor_stops_when_job_fails():
    completions = []
    monitor = ProgressMonitor(
        lambda: _report(25.0, "failed"),
        poll_seconds=0.01,
        on_complete=completions.append,
    )
    monitor.run()
    assert len(completions) == 1
    assert completions[0].job_status == "failed"


def test_monitor_cancel_leaves_no_thread_running():
    calls = []

    def fetch():
        calls.append(1)
        return _report(10.0)

    completions = []
    monitor = ProgressMonitor(fetch, poll_seconds=30, on_complete=completions.append)
    before = threading.active_count()
    monitor.start()
    monitor.cancel(timeout=5)

    assert not any(t.name == "dripline-progress-monitor" for t in threading.enumerate())
    assert threading.active_count() <= before
    assert monitor.cancelled is True
    assert completions == []
    assert len(calls) <= 1



def test_wait_returns_when_cancelled_before_start():
    monitor = ProgressMonitor(lambda: _report(10.0), poll_seconds=30)
    monitor.cancel()
    assert monitor.wait() is None
    assert monitor.cancelled is True

def test_monitor_keeps_polling_after_fetch_error():
    outcomes = iter([RuntimeError("db busy"), _report(100.0, "succeeded", True)])

    def fetch():
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monitor = ProgressMonitor(fetch, poll_seconds=0.01)
    result = monitor.run()
    assert result is not None and result.is_complete
    assert monitor.completed is True


def test_monitor_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        ProgressMonitor(lambda: _report(0.0), poll_seconds=0)


def _seed_gathering(conn):
    upsert_topic(conn, {"id": "ai", "name": "AI"})
    for source_id in ("a", "b", "c"):
        upsert_source(conn, {"id": source_id, "name": source_id, "topic_id": "ai"})
    upsert_source(conn, {"id": "off", "name": "off", "topic_id": "ai", "is_active": False})


def test_get_progress_reads_stored_state(conn):
    _seed_gathering(conn)
    job_id = enqueue_job(conn, "gather", {"topic_id": "ai"})
    claim_next_job(conn, "worker-1", allowed_types=["gather"])
    record_poll_success(conn, "a", 0, NOW - timedelta(minutes=1))
    record_poll_failure(conn, "b", "timeout", NOW - timedelta(minutes=1))

    report = get_progress(conn, job_id, "ai", NOW)

    assert report.job_status == "running"
    assert report.percent == pytest.approx(50.0)
    payload = progress_to_dict(report)
    assert [row["source_id"] for row in payload["sources"]] == ["a", "b", "c"]
    assert [row["status"] for row in payload["sources"]] == [COMPLETED, PROCESSING, PENDING]


def test_get_progress_unknown_topic(conn):
    with pytest.raises(ValueError, match="topic_not_found"):
        get_progress(conn, "job_x", "missing", NOW)


def test_build_monitor_completes_from_database(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    conn = init_db(db_path)
    _seed_gathering(conn)
    job_id = enqueue_job(conn, "gather", {"topic_id": "ai"})
    claim_next_job(conn, "worker-1", allowed_types=["gather"])
    complete_job(conn, job_id)
    conn.close()

    completions = []
    monitor = build_monitor(
        lambda: init_db(db_path),
        job_id,
        "ai",
        poll_seconds=0.01,
        on_complete=completions.append,
    )
    monitor.start()
    report = monitor.wait(timeout=5)
    monitor.cancel(timeout=5)

    assert report is not None
    assert report.job_status == "succeeded"
    assert len(completions) == 1
