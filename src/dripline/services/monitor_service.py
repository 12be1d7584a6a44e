from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from ..config import get_runtime_config
from ..health import classify_health, degraded_report, thresholds_from_config
from ..models import HealthReport, ProgressReport
from ..progress import RECENT_WINDOW_SECONDS, ProgressMonitor, compute_progress
from ..storage import count_items_ready_between, get_job, get_topic, list_sources
from ..utils import ensure_utc, isoformat_utc, log_event, utc_now

_LOGGER_NAME = "dripline.monitor"


def classify_topic_health(
    conn: Any, topic_id: str, now: datetime | None = None
) -> HealthReport:
    """Classify a topic from its stored sources and weekly approved volume.

    An unknown topic raises ``ValueError("topic_not_found")``. Anything that
    goes wrong while evaluating a known topic yields a degraded ``warning``
    report instead of an exception.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    now = ensure_utc(now or utc_now())
    try:
        if get_topic(conn, topic_id) is None:
            raise ValueError("topic_not_found")
        thresholds = thresholds_from_config(get_runtime_config(conn))
        sources = list_sources(conn, topic_id=topic_id)
        week_ago = now - timedelta(days=7)
        this_week = count_items_ready_between(conn, topic_id, week_ago, now)
        last_week = count_items_ready_between(
            conn, topic_id, week_ago - timedelta(days=7), week_ago
        )
        report = classify_health(sources, this_week, last_week, now, thresholds)
    except Exception as exc:  # noqa: BLE001
        if isinstance(exc, ValueError) and str(exc) == "topic_not_found":
            raise
        log_event(
            logger,
            logging.ERROR,
            "health_evaluation_failed",
            topic_id=topic_id,
            error=str(exc),
        )
        return degraded_report(exc)
    log_event(
        logger,
        logging.DEBUG,
        "health_classified",
        topic_id=topic_id,
        status=report.status,
        issues=len(report.issues),
    )
    return report


def get_progress(
    conn: Any, job_id: str, topic_id: str, now: datetime | None = None
) -> ProgressReport:
    now = ensure_utc(now or utc_now())
    if get_topic(conn, topic_id) is None:
        raise ValueError("topic_not_found")
    progress_cfg = get_runtime_config(conn).get("progress") or {}
    window = int(progress_cfg.get("recent_window_seconds", RECENT_WINDOW_SECONDS))
    job = get_job(conn, job_id)
    sources = list_sources(conn, topic_id=topic_id, active_only=True)
    return compute_progress(job_id, topic_id, job, sources, now, window)


def build_monitor(
    connect: Callable[[], Any],
    job_id: str,
    topic_id: str,
    poll_seconds: float | None = None,
    on_update: Callable[[ProgressReport], None] | None = None,
    on_complete: Callable[[ProgressReport], None] | None = None,
) -> ProgressMonitor:
    """Create a ``ProgressMonitor`` that opens its own connection per poll.

    SQLite connections stay on the thread that created them, so the poller
    thread never shares the caller's connection.
    """

    def fetch() -> ProgressReport:
        conn = connect()
        try:
            return get_progress(conn, job_id, topic_id)
        finally:
            conn.close()

    if poll_seconds is None:
        conn = connect()
        try:
            cfg = get_runtime_config(conn)
        finally:
            conn.close()
        poll_seconds = float(cfg["progress"]["poll_seconds"])
    return ProgressMonitor(
        fetch,
        poll_seconds=poll_seconds,
        on_update=on_update,
        on_complete=on_complete,
        logger=logging.getLogger(_LOGGER_NAME),
    )


def health_to_dict(report: HealthReport) -> dict[str, Any]:
    return {
        "status": report.status,
        "issues": list(report.issues),
        "active_sources": report.active_sources,
        "inactive_sources": report.inactive_sources,
        "critical_sources_inactive": report.critical_sources_inactive,
        "failing_sources": report.failing_sources,
        "stale_sources": report.stale_sources,
        "articles_this_week": report.articles_this_week,
        "articles_last_week": report.articles_last_week,
        "volume_drop_percent": report.volume_drop_percent,
        "error": report.error,
    }


def progress_to_dict(report: ProgressReport) -> dict[str, Any]:
    return {
        "job_id": report.job_id,
        "topic_id": report.topic_id,
        "percent": round(report.percent, 2),
        "job_status": report.job_status,
        "is_complete": report.is_complete,
        "sources": [
            {
                "source_id": item.source_id,
                "name": item.name,
                "status": item.status,
                "articles_found": item.articles_found,
                "last_polled_at": (
                    isoformat_utc(item.last_polled_at) if item.last_polled_at else None
                ),
            }
            for item in report.per_source
        ],
    }
