from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable

import yaml

from ..availability import evaluate_availability, select_available, summarize_availability
from ..models import AvailabilitySummary, ContentSource
from ..storage import (
    get_source as _get_source,
    list_sources as _list_sources,
    record_poll_failure,
    record_poll_success,
    set_source_active,
    upsert_source,
    upsert_topic,
)
from ..utils import ensure_utc, isoformat_utc, log_event, utc_now


class TransientSourceFailure(Exception):
    """A single source poll failed; counted against the source, never fatal to a run."""


def source_to_dict(source: ContentSource, now: datetime | None = None) -> dict[str, Any]:
    data = asdict(source)
    data["last_polled_at"] = isoformat_utc(source.last_polled_at) if source.last_polled_at else None
    data["last_success_at"] = (
        isoformat_utc(source.last_success_at) if source.last_success_at else None
    )
    availability = evaluate_availability(source, now)
    data["is_ready"] = availability.is_ready
    data["hours_remaining"] = availability.hours_remaining
    return data


def list_sources(conn: Any, topic_id: str | None = None) -> list[dict[str, Any]]:
    now = utc_now()
    return [source_to_dict(source, now) for source in _list_sources(conn, topic_id=topic_id)]


def get_source(conn: Any, source_id: str) -> dict[str, Any] | None:
    source = _get_source(conn, source_id)
    return source_to_dict(source) if source else None


def create_source(conn: Any, payload: dict[str, Any]) -> dict[str, Any]:
    source_id = str(payload.get("id") or "").strip()
    if not source_id:
        raise ValueError("id is required")
    if _get_source(conn, source_id) is not None:
        raise ValueError("source_exists")
    upsert_source(conn, _normalize_payload(payload))
    return get_source(conn, source_id) or {}


def update_source(conn: Any, source_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    current = _get_source(conn, source_id)
    if not current:
        raise ValueError("source_not_found")
    merged = {
        "id": source_id,
        "name": payload.get("name") or current.name,
        "topic_id": payload.get("topic_id") or current.topic_id,
        "cooldown_hours": payload.get("cooldown_hours", current.cooldown_hours),
        "is_active": payload.get("is_active", current.is_active),
        "is_critical": payload.get("is_critical", current.is_critical),
    }
    upsert_source(conn, _normalize_payload(merged))
    return get_source(conn, source_id) or {}


def deactivate_source(conn: Any, source_id: str) -> dict[str, Any]:
    # Sources are never deleted; deactivation is the only removal path.
    if not set_source_active(conn, source_id, False):
        raise ValueError("source_not_found")
    log_event(
        logging.getLogger("dripline.sources"),
        logging.INFO,
        "source_deactivated",
        source_id=source_id,
    )
    return get_source(conn, source_id) or {}


def record_poll_result(
    conn: Any,
    source_id: str,
    ok: bool,
    items_found: int = 0,
    error: str | None = None,
    polled_at: datetime | None = None,
) -> dict[str, Any]:
    polled_at = ensure_utc(polled_at or utc_now())
    if ok:
        updated = record_poll_success(conn, source_id, items_found, polled_at)
    else:
        updated = record_poll_failure(conn, source_id, error, polled_at)
    if not updated:
        raise ValueError("source_not_found")
    return get_source(conn, source_id) or {}


def topic_availability(
    conn: Any, topic_id: str, now: datetime | None = None
) -> AvailabilitySummary:
    sources = _list_sources(conn, topic_id=topic_id, active_only=True)
    return summarize_availability(sources, now)


def poll_available_sources(
    conn: Any,
    topic_id: str,
    poller: Callable[[ContentSource], int],
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, Any]:
    """Run ``poller`` over every source of the topic that is off cooldown.

    ``poller`` returns the number of items found. A ``TransientSourceFailure``
    bumps that source's failure streak and the run moves on; the failures
    are reported in the returned summary rather than raised.
    """
    logger = logger or logging.getLogger("dripline.sources")
    now = ensure_utc(now or utc_now())
    sources = _list_sources(conn, topic_id=topic_id, active_only=True)
    available = select_available(sources, now)
    polled: list[str] = []
    failures: list[dict[str, str]] = []
    items_found = 0
    for source in available:
        try:
            found = int(poller(source))
        except TransientSourceFailure as exc:
            record_poll_failure(conn, source.id, str(exc), now)
            failures.append({"source_id": source.id, "error": str(exc)})
            log_event(
                logger,
                logging.WARNING,
                "source_poll_failed",
                source_id=source.id,
                error=str(exc),
            )
            continue
        record_poll_success(conn, source.id, found, now)
        polled.append(source.id)
        items_found += found
    log_event(
        logger,
        logging.INFO,
        "topic_sources_polled",
        topic_id=topic_id,
        available=len(available),
        polled=len(polled),
        failed=len(failures),
        skipped=len(sources) - len(available),
    )
    return {
        "topic_id": topic_id,
        "polled": polled,
        "failed": failures,
        "skipped_count": len(sources) - len(available),
        "items_found": items_found,
    }


def import_sources_file(conn: Any, path: str) -> dict[str, int]:
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping")
    topics = data.get("topics") or []
    sources = data.get("sources") or []
    if not isinstance(topics, list) or not isinstance(sources, list):
        raise ValueError("topics and sources must be lists")
    for topic in topics:
        upsert_topic(conn, dict(topic))
    for source in sources:
        upsert_source(conn, _normalize_payload(dict(source)))
    return {"topics": len(topics), "sources": len(sources)}


def _normalize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    data = dict(payload)
    cooldown = data.get("cooldown_hours")
    if isinstance(cooldown, str):
        try:
            data["cooldown_hours"] = float(cooldown)
        except ValueError as exc:
            raise ValueError("source.cooldown_hours must be a number") from exc
    return data
