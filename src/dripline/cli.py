from __future__ import annotations

import argparse
import json
import logging
import os

import uvicorn

from .config import ConfigError, bootstrap_runtime_config, get_state_db_path
from .db import DBConn
from .drip import ConfigurationError
from .services.monitor_service import (
    build_monitor,
    classify_topic_health,
    get_progress,
    health_to_dict,
    progress_to_dict,
)
from .services.release_service import drip_preview, emergency_publish_all, schedule_releases
from .services.sources_service import import_sources_file, list_sources
from .storage import enqueue_job, init_db, list_jobs
from .utils import log_event
from .worker import WORKER_JOB_TYPES


def _setup_logging() -> logging.Logger:
    level_name = os.environ.get("DL_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    return logging.getLogger("dripline")


def _open_db(args: argparse.Namespace) -> DBConn:
    conn = init_db(args.db or get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    path = args.db or get_state_db_path()
    try:
        _open_db(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "db_migrated", path=path)
    return 0


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn = _open_db(args)
        counts = import_sources_file(conn, args.path)
    except (ConfigError, OSError, ValueError) as exc:
        log_event(logger, logging.ERROR, "sources_import_error", path=args.path, error=str(exc))
        return 1
    log_event(logger, logging.INFO, "sources_imported", **counts)
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn = _open_db(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    sources = list_sources(conn, topic_id=args.topic)
    if not sources:
        log_event(
            logger,
            logging.WARNING,
            "no_sources",
            hint="Import sources with `dripline sources import sources.yml`",
        )
        return 1
    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=source["id"],
            topic_id=source["topic_id"],
            active=source["is_active"],
            ready=source["is_ready"],
            hours_remaining=round(source["hours_remaining"], 2),
            failures=source["consecutive_failures"],
        )
    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_drip_schedule(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn = _open_db(args)
        result = schedule_releases(conn, args.topic_id)
    except ConfigurationError as exc:
        log_event(logger, logging.ERROR, "drip_config_invalid", topic_id=args.topic_id, error=str(exc))
        return 1
    except ValueError as exc:
        log_event(logger, logging.ERROR, "drip_schedule_error", topic_id=args.topic_id, error=str(exc))
        return 1
    log_event(
        logger,
        logging.INFO,
        "drip_scheduled",
        topic_id=result.topic_id,
        slots=result.slots_assigned,
        items=result.items_assigned,
        skipped=result.skipped_reason,
        interrupted=result.interrupted,
    )
    return 0


def _cmd_drip_publish_all(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn = _open_db(args)
        released = emergency_publish_all(conn, args.topic_id)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "emergency_publish_error", topic_id=args.topic_id, error=str(exc))
        return 1
    log_event(logger, logging.INFO, "emergency_published", topic_id=args.topic_id, released=released)
    return 0


def _cmd_drip_preview(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn = _open_db(args)
        preview = drip_preview(conn, args.topic_id)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "drip_preview_error", topic_id=args.topic_id, error=str(exc))
        return 1
    logger.info(json.dumps(preview, indent=2, sort_keys=True))
    return 0


def _cmd_health(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn = _open_db(args)
        report = classify_topic_health(conn, args.topic_id)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "health_error", topic_id=args.topic_id, error=str(exc))
        return 1
    logger.info(json.dumps(health_to_dict(report), indent=2, sort_keys=True))
    return 0


def _cmd_progress(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn = _open_db(args)
        report = get_progress(conn, args.job_id, args.topic_id)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "progress_error", job_id=args.job_id, error=str(exc))
        return 1
    if not args.watch:
        logger.info(json.dumps(progress_to_dict(report), indent=2, sort_keys=True))
        return 0

    def on_update(update) -> None:
        log_event(
            logger,
            logging.INFO,
            "progress",
            job_id=update.job_id,
            percent=round(update.percent, 1),
            job_status=update.job_status,
        )

    monitor = build_monitor(
        lambda: _open_db(args),
        args.job_id,
        args.topic_id,
        poll_seconds=args.interval,
        on_update=on_update,
    )
    monitor.start()
    try:
        final = monitor.wait(args.timeout)
    except KeyboardInterrupt:
        final = None
    finally:
        monitor.cancel(timeout=args.interval)
    if not monitor.completed:
        log_event(logger, logging.WARNING, "progress_watch_stopped", job_id=args.job_id)
        return 1
    if final is not None:
        logger.info(json.dumps(progress_to_dict(final), indent=2, sort_keys=True))
    return 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn = _open_db(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    payload = {}
    if args.topic_id:
        payload["topic_id"] = args.topic_id
    job_id = enqueue_job(conn, args.job_type, payload, debounce=args.debounce)
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type=args.job_type)
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        conn = _open_db(args)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    for job in list_jobs(conn, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type,
            status=job.status,
            requested_at=job.requested_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            error=job.error,
            result=job.result,
        )
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    log_event(logger, logging.INFO, "admin_api_starting", host=args.host, port=args.port)
    uvicorn.run("dripline.admin:app", host=args.host, port=args.port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dripline", description="Dripline CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the state database (defaults to $DL_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    sources_parser = subparsers.add_parser("sources", help="Manage content sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_import = sources_subparsers.add_parser("import", help="Import topics and sources from YAML")
    sources_import.add_argument("path", help="Path to sources YAML file")
    sources_import.set_defaults(func=_cmd_sources_import)

    sources_list = sources_subparsers.add_parser("list", help="List sources with availability")
    sources_list.add_argument("--topic", default=None, help="Only list sources of this topic")
    sources_list.set_defaults(func=_cmd_sources_list)

    drip_parser = subparsers.add_parser("drip", help="Drip-feed release commands")
    drip_subparsers = drip_parser.add_subparsers(dest="drip_command", required=True)

    drip_schedule = drip_subparsers.add_parser("schedule", help="Assign release slots to queued items")
    drip_schedule.add_argument("topic_id", help="Topic id")
    drip_schedule.set_defaults(func=_cmd_drip_schedule)

    drip_publish = drip_subparsers.add_parser(
        "publish-all", help="Release every queued item of a topic immediately"
    )
    drip_publish.add_argument("topic_id", help="Topic id")
    drip_publish.set_defaults(func=_cmd_drip_publish_all)

    drip_show = drip_subparsers.add_parser("preview", help="Show slot capacity and upcoming releases")
    drip_show.add_argument("topic_id", help="Topic id")
    drip_show.set_defaults(func=_cmd_drip_preview)

    health_parser = subparsers.add_parser("health", help="Classify a topic's health")
    health_parser.add_argument("topic_id", help="Topic id")
    health_parser.set_defaults(func=_cmd_health)

    progress_parser = subparsers.add_parser("progress", help="Show gathering progress for a job")
    progress_parser.add_argument("job_id", help="Job id")
    progress_parser.add_argument("topic_id", help="Topic id")
    progress_parser.add_argument("--watch", action="store_true", help="Poll until the job finishes")
    progress_parser.add_argument(
        "--interval", type=float, default=5.0, help="Seconds between polls when watching"
    )
    progress_parser.add_argument(
        "--timeout", type=float, default=None, help="Give up watching after this many seconds"
    )
    progress_parser.set_defaults(func=_cmd_progress)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a job")
    jobs_enqueue.add_argument("job_type", choices=sorted(WORKER_JOB_TYPES), help="Job type to enqueue")
    jobs_enqueue.add_argument("--topic-id", help="Topic id for topic-scoped jobs")
    jobs_enqueue.add_argument(
        "--debounce",
        action="store_true",
        help="Avoid enqueuing if an identical job is queued/running",
    )
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    serve_parser = subparsers.add_parser("serve", help="Run the admin HTTP API")
    serve_parser.add_argument("--host", default=os.environ.get("DL_HOST", "0.0.0.0"))
    serve_parser.add_argument("--port", type=int, default=int(os.environ.get("DL_PORT", "8000")))
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)
