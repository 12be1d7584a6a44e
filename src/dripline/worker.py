from __future__ import annotations

import argparse
import logging
import os
import time
from dataclasses import asdict
from datetime import timedelta

from .config import ConfigError, Config, get_state_db_path, load_runtime_config
from .services.release_service import emergency_publish_all, release_due_items, schedule_releases
from .storage import (
    claim_next_job,
    complete_job,
    enqueue_job,
    fail_job,
    get_setting,
    init_db,
    list_topics,
    set_setting,
)
from .utils import configure_logging, log_event, parse_iso, utc_now, utc_now_iso

WORKER_JOB_TYPES = [
    "drip_schedule",
    "drip_publish_due",
    "emergency_publish",
]

_LAST_TICK_KEY = "drip.last_enqueued_at"


def _setup_logging() -> logging.Logger:
    return configure_logging("dripline.worker")


def run_once(
    worker_id: str,
    allowed_types: list[str] | None = None,
    db_path: str | None = None,
) -> int:
    logger = _setup_logging()
    try:
        conn = init_db(db_path or get_state_db_path())
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    try:
        _maybe_enqueue_drip_jobs(conn, config, logger)
        job = claim_next_job(
            conn,
            worker_id,
            allowed_types=allowed_types or WORKER_JOB_TYPES,
            lock_timeout_seconds=config.jobs.lock_timeout_seconds,
        )
        if not job:
            return 0
        return _process_claimed_job(conn, job, logger)
    finally:
        conn.close()


def _process_claimed_job(conn, job, logger: logging.Logger) -> int:
    log_event(logger, logging.INFO, "job_claimed", job_id=job.id, job_type=job.job_type)
    try:
        result = run_claimed_job(conn, job, logger)
    except Exception as exc:  # noqa: BLE001
        fail_job(conn, job.id, str(exc))
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            job_type=job.job_type,
            error=str(exc),
        )
        return 1

    if complete_job(conn, job.id, result=result):
        log_event(logger, logging.INFO, "job_succeeded", job_id=job.id, job_type=job.job_type)
    else:
        log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id)
    return 0


def run_claimed_job(conn, job, logger: logging.Logger) -> dict[str, object]:
    payload = job.payload or {}
    topic_id = payload.get("topic_id")
    if job.job_type == "drip_schedule":
        if not topic_id:
            raise ValueError("drip_schedule requires topic_id")
        return asdict(schedule_releases(conn, str(topic_id)))
    if job.job_type == "drip_publish_due":
        published = release_due_items(conn, str(topic_id) if topic_id else None)
        return {"published": published}
    if job.job_type == "emergency_publish":
        if not topic_id:
            raise ValueError("emergency_publish requires topic_id")
        return {"topic_id": topic_id, "released": emergency_publish_all(conn, str(topic_id))}
    raise ValueError(f"unsupported job type {job.job_type}")


def run_loop(
    worker_id: str,
    sleep_seconds: int,
    allowed_types: list[str] | None = None,
    db_path: str | None = None,
) -> int:
    while True:
        run_once(worker_id, allowed_types, db_path)
        time.sleep(sleep_seconds)


def _maybe_enqueue_drip_jobs(conn, config: Config, logger: logging.Logger) -> None:
    debounce_seconds = config.worker.schedule_debounce_seconds
    last_enqueued = get_setting(conn, _LAST_TICK_KEY, None)
    now = utc_now()
    if isinstance(last_enqueued, str):
        last_dt = parse_iso(last_enqueued)
        if last_dt is not None and last_dt + timedelta(seconds=debounce_seconds) > now:
            return
    topics = list_topics(conn, drip_enabled_only=True)
    for topic in topics:
        enqueue_job(conn, "drip_schedule", {"topic_id": topic.id}, debounce=True)
    enqueue_job(conn, "drip_publish_due", None, debounce=True)
    set_setting(conn, _LAST_TICK_KEY, utc_now_iso())
    log_event(logger, logging.INFO, "drip_jobs_enqueued", topics=len(topics))


def _parse_only_types(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dripline-worker")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--sleep", type=int, default=10, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--only-job-types", default=os.environ.get("DL_WORKER_ONLY_TYPES", ""))
    parser.add_argument("--db", default=None, help="Path to the state database")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    allowed_types = _parse_only_types(args.only_job_types)
    if args.once:
        return run_once(args.worker_id, allowed_types, args.db)
    return run_loop(args.worker_id, args.sleep, allowed_types, args.db)
