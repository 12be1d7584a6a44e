from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("dripline.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS topics (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            topic_id TEXT NOT NULL REFERENCES topics(id),
            cooldown_hours REAL NULL,
            last_polled_at TEXT NULL,
            last_success_at TEXT NULL,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            is_critical INTEGER NOT NULL DEFAULT 0,
            articles_scraped INTEGER NOT NULL DEFAULT 0,
            last_error TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sources_topic ON sources(topic_id)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _migration_jobs_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            status TEXT NOT NULL,
            payload_json TEXT NULL,
            result_json TEXT NULL,
            requested_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            error TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_status_requested ON jobs(status, requested_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_locked ON jobs(locked_by, locked_at)"
    )


def _migration_drip_feed(conn: sqlite3.Connection) -> None:
    columns = _table_columns(conn, "topics")
    additions = [
        ("drip_enabled", "INTEGER NOT NULL DEFAULT 0"),
        ("drip_release_interval_hours", "INTEGER NOT NULL DEFAULT 4"),
        ("drip_items_per_release", "INTEGER NOT NULL DEFAULT 2"),
        ("drip_start_hour", "INTEGER NOT NULL DEFAULT 6"),
        ("drip_end_hour", "INTEGER NOT NULL DEFAULT 22"),
        ("drip_state", "TEXT NOT NULL DEFAULT 'idle'"),
    ]
    for name, ddl in additions:
        if name not in columns:
            conn.execute(f"ALTER TABLE topics ADD COLUMN {name} {ddl}")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS queued_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            topic_id TEXT NOT NULL REFERENCES topics(id),
            title TEXT NULL,
            ready_at TEXT NOT NULL,
            scheduled_publish_at TEXT NULL,
            drip_queued_at TEXT NULL,
            published_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_queued_items_ready ON queued_items(topic_id, ready_at, id)"
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_queued_items_scheduled
        ON queued_items(topic_id, scheduled_publish_at)
        """
    )


def _migration_drip_events(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS drip_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            topic_id TEXT NOT NULL REFERENCES topics(id),
            event_type TEXT NOT NULL,
            item_id INTEGER NULL,
            details_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_drip_events_topic ON drip_events(topic_id, created_at)"
    )


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_jobs_table", _migration_jobs_table),
        ("003_drip_feed", _migration_drip_feed),
        ("004_drip_events", _migration_drip_events),
    ]
