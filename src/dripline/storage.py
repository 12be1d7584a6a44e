from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any

from .db import DBConn, connect_db
from .drip import validate_drip_config
from .models import ContentSource, Job, QueuedItem, Topic, TopicDripConfig
from .utils import isoformat_utc, json_dumps, parse_iso, utc_now_iso, utc_now_iso_offset

_SOURCE_COLUMNS = """
    id, name, topic_id, cooldown_hours, last_polled_at, last_success_at,
    consecutive_failures, is_active, is_critical, articles_scraped, last_error
"""

_ITEM_COLUMNS = """
    id, topic_id, title, ready_at, scheduled_publish_at, drip_queued_at, published_at
"""

_JOB_COLUMNS = """
    id, job_type, status, payload_json, result_json, requested_at, started_at,
    finished_at, locked_by, locked_at, error
"""


def init_db(path: str) -> DBConn:
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


# Topics and drip configuration


def upsert_topic(conn: Any, topic_dict: dict[str, object]) -> None:
    topic_id = topic_dict.get("id")
    name = topic_dict.get("name") or topic_id
    if not isinstance(topic_id, str) or not topic_id.strip():
        raise ValueError("topic.id is required")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("topic.name is required")
    is_active = bool(topic_dict.get("is_active", True))
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO topics (id, name, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            is_active = excluded.is_active,
            updated_at = excluded.updated_at
        """,
        (topic_id, name, 1 if is_active else 0, now, now),
    )
    conn.commit()


def ensure_topic(conn: Any, topic_id: str) -> None:
    if get_topic(conn, topic_id) is None:
        upsert_topic(conn, {"id": topic_id, "name": topic_id})


def get_topic(conn: Any, topic_id: str) -> Topic | None:
    row = conn.execute(
        "SELECT id, name, is_active, drip_state FROM topics WHERE id = ?",
        (topic_id,),
    ).fetchone()
    if not row:
        return None
    return Topic(id=row[0], name=row[1], is_active=bool(row[2]), drip_state=row[3])


def list_topics(conn: Any, drip_enabled_only: bool = False) -> list[Topic]:
    clause = "WHERE is_active = 1 AND drip_enabled = 1" if drip_enabled_only else ""
    cursor = conn.execute(
        f"SELECT id, name, is_active, drip_state FROM topics {clause} ORDER BY id"
    )
    return [
        Topic(id=row[0], name=row[1], is_active=bool(row[2]), drip_state=row[3])
        for row in cursor.fetchall()
    ]


def set_drip_state(conn: Any, topic_id: str, state: str) -> None:
    conn.execute(
        "UPDATE topics SET drip_state = ?, updated_at = ? WHERE id = ?",
        (state, utc_now_iso(), topic_id),
    )
    conn.commit()


def get_drip_config(conn: Any, topic_id: str) -> TopicDripConfig | None:
    row = conn.execute(
        """
        SELECT id, drip_enabled, drip_release_interval_hours, drip_items_per_release,
               drip_start_hour, drip_end_hour
        FROM topics
        WHERE id = ?
        """,
        (topic_id,),
    ).fetchone()
    if not row:
        return None
    return TopicDripConfig(
        topic_id=row[0],
        enabled=bool(row[1]),
        release_interval_hours=int(row[2]),
        items_per_release=int(row[3]),
        active_start_hour=int(row[4]),
        active_end_hour=int(row[5]),
    )


def save_drip_config(conn: Any, config: TopicDripConfig) -> None:
    validate_drip_config(config)
    cursor = conn.execute(
        """
        UPDATE topics
        SET drip_enabled = ?,
            drip_release_interval_hours = ?,
            drip_items_per_release = ?,
            drip_start_hour = ?,
            drip_end_hour = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (
            1 if config.enabled else 0,
            config.release_interval_hours,
            config.items_per_release,
            config.active_start_hour,
            config.active_end_hour,
            utc_now_iso(),
            config.topic_id,
        ),
    )
    conn.commit()
    if cursor.rowcount != 1:
        raise ValueError("topic_not_found")


# Sources


def upsert_source(conn: Any, source_dict: dict[str, object]) -> None:
    source = _source_from_dict(source_dict)
    ensure_topic(conn, source.topic_id)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO sources
            (id, name, topic_id, cooldown_hours, last_polled_at, last_success_at,
             consecutive_failures, is_active, is_critical, articles_scraped, last_error,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            topic_id = excluded.topic_id,
            cooldown_hours = excluded.cooldown_hours,
            is_active = excluded.is_active,
            is_critical = excluded.is_critical,
            updated_at = excluded.updated_at
        """,
        (
            source.id,
            source.name,
            source.topic_id,
            source.cooldown_hours,
            isoformat_utc(source.last_polled_at) if source.last_polled_at else None,
            isoformat_utc(source.last_success_at) if source.last_success_at else None,
            source.consecutive_failures,
            1 if source.is_active else 0,
            1 if source.is_critical else 0,
            source.articles_scraped,
            source.last_error,
            now,
            now,
        ),
    )
    conn.commit()


def get_source(conn: Any, source_id: str) -> ContentSource | None:
    row = conn.execute(
        f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?",
        (source_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_source(row)


def list_sources(
    conn: Any, topic_id: str | None = None, active_only: bool = False
) -> list[ContentSource]:
    clauses: list[str] = []
    params: list[object] = []
    if topic_id is not None:
        clauses.append("topic_id = ?")
        params.append(topic_id)
    if active_only:
        clauses.append("is_active = 1")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    cursor = conn.execute(
        f"SELECT {_SOURCE_COLUMNS} FROM sources {where} ORDER BY id",
        tuple(params),
    )
    return [_row_to_source(row) for row in cursor.fetchall()]


def set_source_active(conn: Any, source_id: str, is_active: bool) -> bool:
    cursor = conn.execute(
        "UPDATE sources SET is_active = ?, updated_at = ? WHERE id = ?",
        (1 if is_active else 0, utc_now_iso(), source_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def record_poll_success(
    conn: Any, source_id: str, items_found: int, polled_at: datetime
) -> bool:
    polled = isoformat_utc(polled_at)
    cursor = conn.execute(
        """
        UPDATE sources
        SET last_polled_at = ?,
            last_success_at = ?,
            consecutive_failures = 0,
            articles_scraped = articles_scraped + ?,
            last_error = NULL,
            updated_at = ?
        WHERE id = ?
        """,
        (polled, polled, int(items_found), utc_now_iso(), source_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def record_poll_failure(
    conn: Any, source_id: str, error: str | None, polled_at: datetime
) -> bool:
    cursor = conn.execute(
        """
        UPDATE sources
        SET last_polled_at = ?,
            consecutive_failures = consecutive_failures + 1,
            last_error = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (isoformat_utc(polled_at), error, utc_now_iso(), source_id),
    )
    conn.commit()
    return cursor.rowcount == 1


# Release queue


def enqueue_item(conn: Any, topic_id: str, title: str | None, ready_at: datetime) -> int:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO queued_items (topic_id, title, ready_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (topic_id, title, isoformat_utc(ready_at), now, now),
    )
    conn.commit()
    return int(cursor.lastrowid)


def get_item(conn: Any, item_id: int) -> QueuedItem | None:
    row = conn.execute(
        f"SELECT {_ITEM_COLUMNS} FROM queued_items WHERE id = ?",
        (item_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_item(row)


def list_items(conn: Any, topic_id: str, include_published: bool = False) -> list[QueuedItem]:
    published_clause = "" if include_published else "AND published_at IS NULL"
    cursor = conn.execute(
        f"""
        SELECT {_ITEM_COLUMNS}
        FROM queued_items
        WHERE topic_id = ? {published_clause}
        ORDER BY ready_at ASC, id ASC
        """,
        (topic_id,),
    )
    return [_row_to_item(row) for row in cursor.fetchall()]


def list_unscheduled_items(conn: Any, topic_id: str) -> list[QueuedItem]:
    cursor = conn.execute(
        f"""
        SELECT {_ITEM_COLUMNS}
        FROM queued_items
        WHERE topic_id = ? AND scheduled_publish_at IS NULL AND published_at IS NULL
        ORDER BY ready_at ASC, id ASC
        """,
        (topic_id,),
    )
    return [_row_to_item(row) for row in cursor.fetchall()]


def count_scheduled_by_slot(conn: Any, topic_id: str, since: datetime) -> dict[datetime, int]:
    cursor = conn.execute(
        """
        SELECT scheduled_publish_at, COUNT(*)
        FROM queued_items
        WHERE topic_id = ?
          AND published_at IS NULL
          AND scheduled_publish_at IS NOT NULL
          AND scheduled_publish_at >= ?
        GROUP BY scheduled_publish_at
        """,
        (topic_id, isoformat_utc(since)),
    )
    counts: dict[datetime, int] = {}
    for slot, count in cursor.fetchall():
        counts[parse_iso(slot)] = int(count)
    return counts


def assign_item_slot(conn: Any, item_id: int, slot_at: datetime, now: datetime) -> bool:
    """Claim an item for a slot; False when another run got there first."""
    cursor = conn.execute(
        """
        UPDATE queued_items
        SET scheduled_publish_at = ?, drip_queued_at = ?, updated_at = ?
        WHERE id = ? AND scheduled_publish_at IS NULL AND published_at IS NULL
        """,
        (isoformat_utc(slot_at), isoformat_utc(now), utc_now_iso(), item_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_all_items_now(conn: Any, topic_id: str, now: datetime) -> int:
    now_iso = isoformat_utc(now)
    with conn.transaction():
        cursor = conn.execute(
            """
            UPDATE queued_items
            SET scheduled_publish_at = ?, updated_at = ?
            WHERE topic_id = ?
              AND published_at IS NULL
              AND (scheduled_publish_at IS NULL OR scheduled_publish_at > ?)
            """,
            (now_iso, utc_now_iso(), topic_id, now_iso),
        )
        return max(cursor.rowcount, 0)


def list_due_items(conn: Any, topic_id: str | None, now: datetime) -> list[tuple[int, str]]:
    params: list[object] = [isoformat_utc(now)]
    topic_clause = ""
    if topic_id is not None:
        topic_clause = "AND topic_id = ?"
        params.append(topic_id)
    cursor = conn.execute(
        f"""
        SELECT id, topic_id FROM queued_items
        WHERE published_at IS NULL
          AND scheduled_publish_at IS NOT NULL
          AND scheduled_publish_at <= ?
          {topic_clause}
        ORDER BY scheduled_publish_at ASC, id ASC
        """,
        tuple(params),
    )
    return [(int(row[0]), row[1]) for row in cursor.fetchall()]


def mark_item_published(conn: Any, item_id: int, now: datetime) -> bool:
    cursor = conn.execute(
        """
        UPDATE queued_items
        SET published_at = ?, updated_at = ?
        WHERE id = ? AND published_at IS NULL
        """,
        (isoformat_utc(now), utc_now_iso(), item_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def count_items_ready_between(
    conn: Any, topic_id: str, start: datetime, end: datetime
) -> int:
    cursor = conn.execute(
        """
        SELECT COUNT(*)
        FROM queued_items
        WHERE topic_id = ? AND ready_at >= ? AND ready_at < ?
        """,
        (topic_id, isoformat_utc(start), isoformat_utc(end)),
    )
    return int(cursor.fetchone()[0] or 0)


# Drip event log


def record_drip_event(
    conn: Any,
    topic_id: str,
    event_type: str,
    item_id: int | None = None,
    details: dict[str, object] | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO drip_events (topic_id, event_type, item_id, details_json, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (topic_id, event_type, item_id, json_dumps(details) if details else None, utc_now_iso()),
    )
    conn.commit()


def list_drip_events(conn: Any, topic_id: str, limit: int = 50) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT id, topic_id, event_type, item_id, details_json, created_at
        FROM drip_events
        WHERE topic_id = ?
        ORDER BY id DESC
        LIMIT ?
        """,
        (topic_id, limit),
    )
    rows = []
    for event_id, topic, event_type, item_id, details_json, created_at in cursor.fetchall():
        try:
            details = json.loads(details_json) if details_json else {}
        except json.JSONDecodeError:
            details = {}
        rows.append(
            {
                "id": event_id,
                "topic_id": topic,
                "event_type": event_type,
                "item_id": item_id,
                "details": details,
                "created_at": created_at,
            }
        )
    return rows


# Jobs


def enqueue_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
    debounce: bool = False,
) -> str:
    if debounce:
        pending = _get_pending_job_id(conn, job_type, payload)
        if pending:
            return pending
    job_id = _new_job_id()
    now = utc_now_iso()
    conn.execute(
        f"""
        INSERT INTO jobs ({_JOB_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            job_type,
            "queued",
            json_dumps(payload) if payload else None,
            None,
            now,
            None,
            None,
            None,
            None,
            None,
        ),
    )
    conn.commit()
    return job_id


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    if not row:
        return None
    return _row_to_job(row)


def list_jobs(conn: Any, limit: int = 50) -> list[Job]:
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM jobs
        ORDER BY requested_at DESC
        LIMIT ?
        """,
        (limit,),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def has_pending_job(conn: Any, job_type: str) -> bool:
    cursor = conn.execute(
        """
        SELECT 1 FROM jobs
        WHERE job_type = ? AND status IN ('queued', 'running')
        LIMIT 1
        """,
        (job_type,),
    )
    return cursor.fetchone() is not None


def claim_next_job(
    conn: Any,
    worker_id: str,
    allowed_types: list[str] | None = None,
    lock_timeout_seconds: int | None = None,
) -> Job | None:
    with conn.transaction():
        if lock_timeout_seconds is not None:
            cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
            conn.execute(
                """
                UPDATE jobs
                SET status = 'queued',
                    locked_by = NULL,
                    locked_at = NULL,
                    started_at = NULL,
                    error = 'stale_lock_requeued'
                WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
                """,
                (cutoff,),
            )
        params: list[object] = []
        type_clause = ""
        if allowed_types:
            placeholders = ",".join(["?"] * len(allowed_types))
            type_clause = f" AND job_type IN ({placeholders})"
            params.extend(allowed_types)
        row = conn.execute(
            f"""
            SELECT id FROM jobs
            WHERE status = 'queued' AND locked_by IS NULL {type_clause}
            ORDER BY requested_at ASC
            LIMIT 1
            """,
            tuple(params),
        ).fetchone()
        if not row:
            return None
        job_id = row[0]
        now = utc_now_iso()
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running', started_at = ?, locked_by = ?, locked_at = ?
            WHERE id = ? AND status = 'queued' AND locked_by IS NULL
            """,
            (now, worker_id, now, job_id),
        )
        if cursor.rowcount != 1:
            return None
    return get_job(conn, job_id)


def complete_job(
    conn: Any, job_id: str, result: dict[str, object] | None = None
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'succeeded', finished_at = ?, error = NULL, result_json = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, json_dumps(result) if result else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def _get_pending_job_id(
    conn: Any, job_type: str, payload: dict[str, object] | None
) -> str | None:
    cursor = conn.execute(
        """
        SELECT id, payload_json FROM jobs
        WHERE job_type = ? AND status IN ('queued', 'running')
        ORDER BY requested_at DESC
        """,
        (job_type,),
    )
    wanted = json_dumps(payload) if payload else None
    for job_id, payload_json in cursor.fetchall():
        if payload_json == wanted:
            return job_id
    return None


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def _row_to_source(row: tuple) -> ContentSource:
    (
        source_id,
        name,
        topic_id,
        cooldown_hours,
        last_polled_at,
        last_success_at,
        consecutive_failures,
        is_active,
        is_critical,
        articles_scraped,
        last_error,
    ) = row
    return ContentSource(
        id=source_id,
        name=name,
        topic_id=topic_id,
        cooldown_hours=float(cooldown_hours) if cooldown_hours is not None else None,
        last_polled_at=parse_iso(last_polled_at),
        last_success_at=parse_iso(last_success_at),
        consecutive_failures=int(consecutive_failures or 0),
        is_active=bool(is_active),
        is_critical=bool(is_critical),
        articles_scraped=int(articles_scraped or 0),
        last_error=last_error,
    )


def _row_to_item(row: tuple) -> QueuedItem:
    (
        item_id,
        topic_id,
        title,
        ready_at,
        scheduled_publish_at,
        drip_queued_at,
        published_at,
    ) = row
    return QueuedItem(
        id=int(item_id),
        topic_id=topic_id,
        title=title,
        ready_at=parse_iso(ready_at),
        scheduled_publish_at=parse_iso(scheduled_publish_at),
        drip_queued_at=parse_iso(drip_queued_at),
        published_at=parse_iso(published_at),
    )


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        status,
        payload_json,
        result_json,
        requested_at,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        error,
    ) = row
    try:
        payload = json.loads(payload_json) if payload_json else {}
    except json.JSONDecodeError:
        payload = {}
    try:
        result = json.loads(result_json) if result_json else None
    except json.JSONDecodeError:
        result = None
    return Job(
        id=job_id,
        job_type=job_type,
        status=status,
        payload=payload,
        result=result,
        requested_at=requested_at,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        error=error,
    )


def _source_from_dict(source_dict: dict[str, object]) -> ContentSource:
    source_id = source_dict.get("id")
    name = source_dict.get("name") or source_id
    topic_id = source_dict.get("topic_id")
    cooldown_hours = source_dict.get("cooldown_hours")

    if not isinstance(source_id, str) or not source_id.strip():
        raise ValueError("source.id is required")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("source.name is required")
    if not isinstance(topic_id, str) or not topic_id.strip():
        raise ValueError("source.topic_id is required")
    if cooldown_hours is not None:
        if isinstance(cooldown_hours, bool) or not isinstance(cooldown_hours, (int, float)):
            raise ValueError("source.cooldown_hours must be a number")
        if cooldown_hours < 0:
            raise ValueError("source.cooldown_hours must not be negative")

    return ContentSource(
        id=source_id,
        name=str(name),
        topic_id=topic_id,
        cooldown_hours=float(cooldown_hours) if cooldown_hours is not None else None,
        last_polled_at=parse_iso(source_dict.get("last_polled_at")),
        last_success_at=parse_iso(source_dict.get("last_success_at")),
        consecutive_failures=int(source_dict.get("consecutive_failures") or 0),
        is_active=bool(source_dict.get("is_active", True)),
        is_critical=bool(source_dict.get("is_critical", False)),
        articles_scraped=int(source_dict.get("articles_scraped") or 0),
        last_error=None,
    )
