from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any

from ..drip import (
    compute_capacity,
    first_slot_at,
    plan_releases,
    slot_hours,
    validate_drip_config,
)
from ..models import DRIP_DISABLED, DRIP_IDLE, DRIP_SCHEDULING, ScheduleResult
from ..storage import (
    assign_item_slot,
    count_scheduled_by_slot,
    enqueue_item as _enqueue_item,
    get_drip_config,
    get_topic,
    list_due_items,
    list_items,
    list_unscheduled_items,
    mark_item_published,
    record_drip_event,
    release_all_items_now,
    save_drip_config,
    set_drip_state,
)
from ..utils import ensure_utc, isoformat_utc, log_event, utc_now

_LOGGER_NAME = "dripline.release"

_DRIP_FIELDS = {
    "enabled",
    "release_interval_hours",
    "items_per_release",
    "active_start_hour",
    "active_end_hour",
}


def drip_state(conn: Any, topic_id: str) -> str:
    topic = get_topic(conn, topic_id)
    if topic is None:
        raise ValueError("topic_not_found")
    config = get_drip_config(conn, topic_id)
    if config is None or not config.enabled or not topic.is_active:
        return DRIP_DISABLED
    return DRIP_SCHEDULING if topic.drip_state == DRIP_SCHEDULING else DRIP_IDLE


def schedule_releases(
    conn: Any, topic_id: str, now: datetime | None = None
) -> ScheduleResult:
    logger = logging.getLogger(_LOGGER_NAME)
    now = ensure_utc(now or utc_now())
    topic = get_topic(conn, topic_id)
    config = get_drip_config(conn, topic_id)
    if topic is None or config is None:
        raise ValueError("topic_not_found")
    if not config.enabled or not topic.is_active:
        log_event(logger, logging.INFO, "drip_schedule_skipped", topic_id=topic_id, reason="disabled")
        return ScheduleResult(topic_id, 0, 0, skipped_reason="disabled")
    # Stored values may predate validation or come from a direct write.
    validate_drip_config(config)

    items = list_unscheduled_items(conn, topic_id)
    if not items:
        log_event(logger, logging.INFO, "drip_schedule_skipped", topic_id=topic_id, reason="no_items")
        return ScheduleResult(topic_id, 0, 0, skipped_reason="no_items")

    existing = count_scheduled_by_slot(conn, topic_id, first_slot_at(config, now))
    plan = plan_releases(config, items, now, existing_counts=existing)
    slots_per_day, capacity_per_day = compute_capacity(config)
    log_event(
        logger,
        logging.INFO,
        "drip_schedule_started",
        topic_id=topic_id,
        unscheduled=len(items),
        planned_slots=len(plan),
        slots_per_day=slots_per_day,
        capacity_per_day=capacity_per_day,
    )

    set_drip_state(conn, topic_id, DRIP_SCHEDULING)
    slots_assigned = 0
    items_assigned = 0
    interrupted = False
    try:
        for assignment in plan:
            current = get_drip_config(conn, topic_id)
            current_topic = get_topic(conn, topic_id)
            if (
                current is None
                or not current.enabled
                or current_topic is None
                or not current_topic.is_active
            ):
                interrupted = True
                log_event(
                    logger,
                    logging.WARNING,
                    "drip_schedule_interrupted",
                    topic_id=topic_id,
                    items_assigned=items_assigned,
                )
                break
            claimed = 0
            for item_id in assignment.item_ids:
                if not assign_item_slot(conn, item_id, assignment.slot_at, now):
                    log_event(
                        logger,
                        logging.DEBUG,
                        "drip_item_already_claimed",
                        topic_id=topic_id,
                        item_id=item_id,
                    )
                    continue
                claimed += 1
                record_drip_event(
                    conn,
                    topic_id,
                    "item_scheduled",
                    item_id=item_id,
                    details={
                        "scheduled_for": isoformat_utc(assignment.slot_at),
                        "items_in_slot": claimed,
                    },
                )
            if claimed:
                slots_assigned += 1
                items_assigned += claimed
    finally:
        set_drip_state(conn, topic_id, DRIP_IDLE)

    log_event(
        logger,
        logging.INFO,
        "drip_schedule_completed",
        topic_id=topic_id,
        slots_assigned=slots_assigned,
        items_assigned=items_assigned,
        interrupted=interrupted,
    )
    return ScheduleResult(
        topic_id=topic_id,
        slots_assigned=slots_assigned,
        items_assigned=items_assigned,
        interrupted=interrupted,
    )


def emergency_publish_all(conn: Any, topic_id: str, now: datetime | None = None) -> int:
    """Make every queued item of the topic due right now.

    Returns the number of rows actually updated; items already due or
    already published are left alone, so repeating the call releases 0.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    now = ensure_utc(now or utc_now())
    if get_topic(conn, topic_id) is None:
        raise ValueError("topic_not_found")
    released = release_all_items_now(conn, topic_id, now)
    record_drip_event(
        conn,
        topic_id,
        "emergency_publish",
        details={"items_released": released, "triggered_at": isoformat_utc(now)},
    )
    log_event(
        logger,
        logging.WARNING,
        "drip_emergency_publish",
        topic_id=topic_id,
        items_released=released,
    )
    return released


def release_due_items(
    conn: Any, topic_id: str | None = None, now: datetime | None = None
) -> int:
    logger = logging.getLogger(_LOGGER_NAME)
    now = ensure_utc(now or utc_now())
    published = 0
    for item_id, item_topic_id in list_due_items(conn, topic_id, now):
        if mark_item_published(conn, item_id, now):
            record_drip_event(conn, item_topic_id, "item_published", item_id=item_id)
            published += 1
    if published:
        log_event(
            logger,
            logging.INFO,
            "drip_items_published",
            topic_id=topic_id or "*",
            count=published,
        )
    return published


def enqueue_item(
    conn: Any, topic_id: str, title: str | None = None, ready_at: datetime | None = None
) -> int:
    if get_topic(conn, topic_id) is None:
        raise ValueError("topic_not_found")
    return _enqueue_item(conn, topic_id, title, ensure_utc(ready_at or utc_now()))


def list_queue(conn: Any, topic_id: str, include_published: bool = False) -> list[dict[str, Any]]:
    rows = []
    for item in list_items(conn, topic_id, include_published=include_published):
        rows.append(
            {
                "id": item.id,
                "topic_id": item.topic_id,
                "title": item.title,
                "ready_at": isoformat_utc(item.ready_at),
                "scheduled_publish_at": (
                    isoformat_utc(item.scheduled_publish_at) if item.scheduled_publish_at else None
                ),
                "published_at": isoformat_utc(item.published_at) if item.published_at else None,
            }
        )
    return rows


def get_drip_settings(conn: Any, topic_id: str) -> dict[str, Any]:
    config = get_drip_config(conn, topic_id)
    if config is None:
        raise ValueError("topic_not_found")
    return {
        "topic_id": config.topic_id,
        "enabled": config.enabled,
        "release_interval_hours": config.release_interval_hours,
        "items_per_release": config.items_per_release,
        "active_start_hour": config.active_start_hour,
        "active_end_hour": config.active_end_hour,
        "state": drip_state(conn, topic_id),
    }


def update_drip_settings(conn: Any, topic_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    current = get_drip_config(conn, topic_id)
    if current is None:
        raise ValueError("topic_not_found")
    updates = {key: value for key, value in payload.items() if value is not None}
    unknown = set(updates) - _DRIP_FIELDS
    if unknown:
        raise ValueError(f"unknown drip fields: {', '.join(sorted(unknown))}")
    config = replace(current, **updates)
    save_drip_config(conn, config)
    log_event(
        logging.getLogger(_LOGGER_NAME),
        logging.INFO,
        "drip_config_saved",
        topic_id=topic_id,
        enabled=config.enabled,
        interval_hours=config.release_interval_hours,
        items_per_release=config.items_per_release,
        window=f"{config.active_start_hour}-{config.active_end_hour}",
    )
    return get_drip_settings(conn, topic_id)


def drip_preview(conn: Any, topic_id: str, now: datetime | None = None) -> dict[str, Any]:
    config = get_drip_config(conn, topic_id)
    if config is None:
        raise ValueError("topic_not_found")
    now = ensure_utc(now or utc_now())
    slots_per_day, capacity_per_day = compute_capacity(config)
    queued = list_items(conn, topic_id)
    upcoming = sorted(
        item.scheduled_publish_at
        for item in queued
        if item.scheduled_publish_at is not None and item.scheduled_publish_at > now
    )
    return {
        "topic_id": topic_id,
        "slots_per_day": slots_per_day,
        "capacity_per_day": capacity_per_day,
        "slot_hours_utc": slot_hours(config),
        "next_slot_at": isoformat_utc(first_slot_at(config, now)),
        "queued": len(queued),
        "unscheduled": sum(1 for item in queued if item.scheduled_publish_at is None),
        "upcoming": [isoformat_utc(slot) for slot in upcoming],
    }
