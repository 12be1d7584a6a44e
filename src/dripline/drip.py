"""Drip-feed release planning.

Pure functions that turn a topic's drip configuration and its backlog of
approved items into release slots. Slots sit at ``start + k * interval``
hours (UTC) inside the half-open window ``[start, end)``; anything that would
land at or past ``end`` rolls to the first slot of the next day.

Persistence and the conditional assignment writes live in
``services.release_service``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Mapping

from .models import QueuedItem, SlotAssignment, TopicDripConfig
from .utils import ensure_utc

MIN_INTERVAL_HOURS = 1
MAX_INTERVAL_HOURS = 8
MIN_ITEMS_PER_RELEASE = 1
MAX_ITEMS_PER_RELEASE = 5
MIN_HOUR = 0
MAX_HOUR = 23

DEFAULT_INTERVAL_HOURS = 4
DEFAULT_ITEMS_PER_RELEASE = 2
DEFAULT_START_HOUR = 6
DEFAULT_END_HOUR = 22


class ConfigurationError(ValueError):
    pass


def validate_drip_config(config: TopicDripConfig) -> None:
    errors: list[str] = []
    _check_int_range(
        errors,
        "release_interval_hours",
        config.release_interval_hours,
        MIN_INTERVAL_HOURS,
        MAX_INTERVAL_HOURS,
    )
    _check_int_range(
        errors,
        "items_per_release",
        config.items_per_release,
        MIN_ITEMS_PER_RELEASE,
        MAX_ITEMS_PER_RELEASE,
    )
    _check_int_range(errors, "active_start_hour", config.active_start_hour, MIN_HOUR, MAX_HOUR)
    _check_int_range(errors, "active_end_hour", config.active_end_hour, MIN_HOUR, MAX_HOUR)
    if not errors and config.active_end_hour <= config.active_start_hour:
        errors.append("active_end_hour must be greater than active_start_hour")
    if errors:
        raise ConfigurationError("Invalid drip config: " + "; ".join(errors))


def _check_int_range(errors: list[str], name: str, value: object, low: int, high: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"{name} must be an integer")
        return
    if value < low or value > high:
        errors.append(f"{name} must be between {low} and {high}")


def compute_capacity(config: TopicDripConfig) -> tuple[int, int]:
    """Return ``(slots_per_day, capacity_per_day)``; capacity is advisory."""
    validate_drip_config(config)
    window_hours = config.active_end_hour - config.active_start_hour
    slots_per_day = window_hours // config.release_interval_hours
    return slots_per_day, slots_per_day * config.items_per_release


def slot_hours(config: TopicDripConfig) -> list[int]:
    validate_drip_config(config)
    return list(
        range(
            config.active_start_hour,
            config.active_end_hour,
            config.release_interval_hours,
        )
    )


def first_slot_at(config: TopicDripConfig, now: datetime) -> datetime:
    validate_drip_config(config)
    now = ensure_utc(now)
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    window_start = day + timedelta(hours=config.active_start_hour)
    window_end = day + timedelta(hours=config.active_end_hour)
    if now <= window_start:
        return window_start
    step = timedelta(hours=config.release_interval_hours)
    steps = (now - window_start) // step
    candidate = window_start + steps * step
    if candidate < now:
        candidate += step
    if candidate >= window_end:
        return window_start + timedelta(days=1)
    return candidate


def next_slot_at(config: TopicDripConfig, slot: datetime) -> datetime:
    slot = ensure_utc(slot)
    day = slot.replace(hour=0, minute=0, second=0, microsecond=0)
    candidate = slot + timedelta(hours=config.release_interval_hours)
    window_end = day + timedelta(hours=config.active_end_hour)
    if candidate >= window_end:
        return day + timedelta(days=1, hours=config.active_start_hour)
    return candidate


def order_items(items: Iterable[QueuedItem]) -> list[QueuedItem]:
    return sorted(items, key=lambda item: (ensure_utc(item.ready_at), item.id))


def plan_releases(
    config: TopicDripConfig,
    items: Iterable[QueuedItem],
    now: datetime,
    existing_counts: Mapping[datetime, int] | None = None,
) -> list[SlotAssignment]:
    """Spread unscheduled items over upcoming slots, oldest first.

    ``existing_counts`` maps slot timestamps to how many of the topic's items
    are already scheduled there, so a later run only tops slots up to
    ``items_per_release``.
    """
    validate_drip_config(config)
    pending = [
        item
        for item in order_items(items)
        if item.scheduled_publish_at is None and item.published_at is None
    ]
    existing = {ensure_utc(slot): count for slot, count in (existing_counts or {}).items()}
    plan: list[SlotAssignment] = []
    slot = first_slot_at(config, now)
    index = 0
    while index < len(pending):
        room = config.items_per_release - existing.get(slot, 0)
        if room > 0:
            batch = pending[index : index + room]
            plan.append(SlotAssignment(slot_at=slot, item_ids=[item.id for item in batch]))
            index += len(batch)
        slot = next_slot_at(config, slot)
    return plan
