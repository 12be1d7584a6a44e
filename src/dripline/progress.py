from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Iterable

from .models import (
    COMPLETED,
    FAILED,
    PENDING,
    PROCESSING,
    ContentSource,
    Job,
    ProgressReport,
    SourceProgress,
)
from .utils import ensure_utc, log_event, utc_now

RECENT_WINDOW_SECONDS = 300
DEFAULT_POLL_SECONDS = 5.0

JOB_DONE_STATUSES = {"succeeded", "completed"}
JOB_STOPPED_STATUSES = {"failed", "canceled"}


def source_progress(
    source: ContentSource,
    now: datetime,
    job_status: str | None = None,
    recent_window_seconds: int = RECENT_WINDOW_SECONDS,
) -> SourceProgress:
    now = ensure_utc(now)
    window_start = now - timedelta(seconds=recent_window_seconds)
    polled_recently = (
        source.last_polled_at is not None and ensure_utc(source.last_polled_at) > window_start
    )
    # The success must belong to the latest poll, not an earlier one.
    succeeded_after_poll = (
        polled_recently
        and source.last_success_at is not None
        and ensure_utc(source.last_success_at) >= ensure_utc(source.last_polled_at)
    )

    if succeeded_after_poll:
        status = COMPLETED
    elif source.articles_scraped > 0:
        status = COMPLETED
    elif job_status in JOB_STOPPED_STATUSES:
        status = FAILED
    elif polled_recently:
        status = PROCESSING
    else:
        status = PENDING

    return SourceProgress(
        source_id=source.id,
        name=source.name,
        status=status,
        articles_found=source.articles_scraped,
        last_polled_at=source.last_polled_at,
    )


def compute_progress(
    job_id: str,
    topic_id: str,
    job: Job | None,
    sources: Iterable[ContentSource],
    now: datetime,
    recent_window_seconds: int = RECENT_WINDOW_SECONDS,
) -> ProgressReport:
    job_status = job.status if job else None
    per_source = [
        source_progress(source, now, job_status, recent_window_seconds) for source in sources
    ]
    total = len(per_source)
    completed = sum(1 for item in per_source if item.status == COMPLETED)
    processing = sum(1 for item in per_source if item.status == PROCESSING)
    percent = 100.0 * (completed + 0.5 * processing) / total if total else 0.0
    return ProgressReport(
        job_id=job_id,
        topic_id=topic_id,
        percent=percent,
        job_status=job_status,
        is_complete=job_status in JOB_DONE_STATUSES or percent >= 100.0,
        per_source=per_source,
    )


class ProgressMonitor:
    """Poll a progress snapshot until the job finishes or the caller cancels.

    ``on_complete`` fires at most once, whichever of the completion
    conditions is seen first. Sleeps happen on an ``Event`` so ``cancel``
    wakes the poller immediately and nothing keeps running afterwards.
    """

    def __init__(
        self,
        fetch: Callable[[], ProgressReport],
        poll_seconds: float = DEFAULT_POLL_SECONDS,
        on_update: Callable[[ProgressReport], None] | None = None,
        on_complete: Callable[[ProgressReport], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if poll_seconds <= 0:
            raise ValueError("poll_seconds must be positive")
        self._fetch = fetch
        self.poll_seconds = poll_seconds
        self._on_update = on_update
        self._on_complete = on_complete
        self._logger = logger or logging.getLogger("dripline.monitor")
        self._stop = threading.Event()
        self._finished = threading.Event()
        self._lock = threading.Lock()
        self._completed = False
        self._thread: threading.Thread | None = None
        self.last_report: ProgressReport | None = None

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set() and not self._completed

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("monitor already started")
        self._thread = threading.Thread(
            target=self.run, name="dripline-progress-monitor", daemon=True
        )
        self._thread.start()

    def cancel(self, timeout: float | None = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is None:
            self._finished.set()
            return
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def wait(self, timeout: float | None = None) -> ProgressReport | None:
        self._finished.wait(timeout)
        return self.last_report

    def run(self) -> ProgressReport | None:
        try:
            while not self._stop.is_set():
                report = self.poll_once()
                if report is not None and _should_stop(report):
                    self._signal_complete(report)
                    break
                if self._stop.wait(self.poll_seconds):
                    break
        finally:
            self._stop.set()
            self._finished.set()
        return self.last_report

    def poll_once(self) -> ProgressReport | None:
        try:
            report = self._fetch()
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.WARNING, "progress_fetch_failed", error=str(exc))
            return None
        self.last_report = report
        if self._on_update is not None:
            self._on_update(report)
        return report

    def _signal_complete(self, report: ProgressReport) -> None:
        with self._lock:
            if self._completed:
                return
            self._completed = True
        log_event(
            self._logger,
            logging.INFO,
            "progress_complete",
            job_id=report.job_id,
            percent=round(report.percent, 1),
            job_status=report.job_status,
        )
        if self._on_complete is not None:
            self._on_complete(report)


def _should_stop(report: ProgressReport) -> bool:
    return report.is_complete or report.job_status in JOB_STOPPED_STATUSES
