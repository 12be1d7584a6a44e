import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from dripline.config import DEFAULT_CONFIG
from dripline.health import (
    HealthThresholds,
    classify_health,
    degraded_report,
    thresholds_from_config,
    volume_drop_percent,
)
from dripline.models import CRITICAL, HEALTHY, WARNING, ContentSource
from dripline.services import monitor_service
from dripline.services.monitor_service import classify_topic_health
from dripline.storage import enqueue_item, set_source_active, upsert_source, upsert_topic

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _source(source_id="s1", **overrides):
    fields = {
        "id": source_id,
        "name": source_id,
        "topic_id": "ai",
        "cooldown_hours": 4.0,
        "last_polled_at": NOW - timedelta(hours=1),
        "last_success_at": NOW - timedelta(hours=1),
        "consecutive_failures": 0,
        "is_active": True,
        "is_critical": False,
        "articles_scraped": 5,
    }
    fields.update(overrides)
    return ContentSource(**fields)


def test_no_sources_is_critical():
    report = classify_health([], 0, 0, NOW)
    assert report.status == CRITICAL
    assert "No sources configured" in report.issues


def test_all_sources_inactive_is_critical():
    report = classify_health([_source(is_active=False), _source("s2", is_active=False)], 3, 3, NOW)
    assert report.status == CRITICAL
    assert "All sources inactive" in report.issues
    assert report.active_sources == 0
    assert report.inactive_sources == 2


def test_inactive_critical_source_is_critical():
    sources = [_source(), _source("core", is_active=False, is_critical=True)]
    report = classify_health(sources, 5, 5, NOW)
    assert report.status == CRITICAL
    assert "1 critical source(s) inactive" in report.issues


def test_failure_streak_is_warning():
    sources = [_source(), _source("flaky", consecutive_failures=3)]
    report = classify_health(sources, 5, 5, NOW)
    assert report.status == WARNING
    assert report.failing_sources == 1
    assert "1 source(s) with failures" in report.issues


def test_short_failure_streak_is_healthy():
    report = classify_health([_source(consecutive_failures=2)], 5, 5, NOW)
    assert report.status == HEALTHY
    assert report.issues == []


def test_stale_source_is_warning():
    sources = [_source(), _source("old", last_polled_at=NOW - timedelta(hours=49))]
    report = classify_health(sources, 5, 5, NOW)
    assert report.status == WARNING
    assert report.stale_sources == 1
    assert "1 source(s) not polled in 48h" in report.issues


def test_never_polled_source_is_not_stale():
    report = classify_health([_source(last_polled_at=None)], 5, 5, NOW)
    assert report.stale_sources == 0
    assert report.status == HEALTHY


def test_inactive_sources_do_not_count_as_failing_or_stale():
    sources = [
        _source(),
        _source("off", is_active=False, consecutive_failures=9, last_polled_at=NOW - timedelta(days=9)),
    ]
    report = classify_health(sources, 5, 5, NOW)
    assert report.status == HEALTHY


def test_volume_drop_over_half_is_warning():
    report = classify_health([_source()], 4, 10, NOW)
    assert report.status == WARNING
    assert report.volume_drop_percent == 60.0
    assert "Article flow down 60%" in report.issues


def test_volume_drop_over_three_quarters_is_critical():
    report = classify_health([_source()], 2, 10, NOW)
    assert report.status == CRITICAL
    assert "Article flow down 80%" in report.issues


def test_no_baseline_means_no_drop():
    assert volume_drop_percent(0, 0) == 0.0
    assert volume_drop_percent(5, 0) == 0.0
    assert volume_drop_percent(15, 10) == -50.0
    assert classify_health([_source()], 0, 0, NOW).status == HEALTHY


def test_critical_outranks_warning_and_keeps_all_issues():
    sources = [
        _source("flaky", consecutive_failures=4),
        _source("core", is_active=False, is_critical=True),
    ]
    report = classify_health(sources, 5, 5, NOW)
    assert report.status == CRITICAL
    assert len(report.issues) == 2


def test_custom_thresholds():
    thresholds = HealthThresholds(stale_after_hours=12, failure_streak=1)
    sources = [_source(consecutive_failures=1, last_polled_at=NOW - timedelta(hours=13))]
    report = classify_health(sources, 5, 5, NOW, thresholds)
    assert report.status == WARNING
    assert "1 source(s) not polled in 12h" in report.issues
    assert report.failing_sources == 1


def test_thresholds_from_config_reads_health_section():
    cfg = {"health": dict(DEFAULT_CONFIG["health"], failure_streak=5)}
    thresholds = thresholds_from_config(cfg)
    assert thresholds.failure_streak == 5
    assert thresholds.stale_after_hours == 48.0
    assert thresholds_from_config(None) == HealthThresholds()


def test_degraded_report():
    report = degraded_report(RuntimeError("db locked"))
    assert report.status == WARNING
    assert report.issues == ["Health evaluation failed: db locked"]
    assert report.error == "db locked"


def _seed_topic(conn):
    upsert_topic(conn, {"id": "ai", "name": "AI"})
    upsert_source(
        conn,
        {
            "id": "feed",
            "name": "Feed",
            "topic_id": "ai",
            "cooldown_hours": 2,
            "last_polled_at": NOW - timedelta(hours=1),
        },
    )


def test_classify_topic_health_counts_weekly_volume(conn):
    _seed_topic(conn)
    for days_ago in (1, 2, 3):
        enqueue_item(conn, "ai", None, NOW - timedelta(days=days_ago))
    for days_ago in (8, 9, 10, 11, 12, 13, 13.5, 13.9):
        enqueue_item(conn, "ai", None, NOW - timedelta(days=days_ago))
    enqueue_item(conn, "ai", None, NOW - timedelta(days=20))

    report = classify_topic_health(conn, "ai", NOW)
    assert report.articles_this_week == 3
    assert report.articles_last_week == 8
    assert report.status == WARNING
    assert "Article flow down 62%" in report.issues


def test_classify_topic_health_deactivated_critical_source(conn):
    _seed_topic(conn)
    upsert_source(conn, {"id": "core", "name": "Core", "topic_id": "ai", "is_critical": True})
    set_source_active(conn, "core", False)
    report = classify_topic_health(conn, "ai", NOW)
    assert report.status == CRITICAL


def test_classify_topic_health_unknown_topic(conn):
    with pytest.raises(ValueError, match="topic_not_found"):
        classify_topic_health(conn, "missing", NOW)


def test_classify_topic_health_degrades_on_error(conn, monkeypatch):
    _seed_topic(conn)

    def boom(*args, **kwargs):
        raise RuntimeError("storage unavailable")

    monkeypatch.setattr(monitor_service, "list_sources", boom)
    report = classify_topic_health(conn, "ai", NOW)
    assert report.status == WARNING
    assert report.error == "storage unavailable"
    assert report.issues == ["Health evaluation failed: storage unavailable"]


def test_classify_topic_health_degrades_when_topic_lookup_fails(conn, monkeypatch):
    _seed_topic(conn)

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(monitor_service, "get_topic", locked)
    report = classify_topic_health(conn, "ai", NOW)
    assert report.status == WARNING
    assert report.error == "database is locked"
