from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from .models import Availability, AvailabilitySummary, ContentSource
from .utils import ensure_utc, utc_now


def evaluate_availability(source: ContentSource, now: datetime | None = None) -> Availability:
    """Return whether ``source`` may be polled and how long until it can.

    A source that was never polled, or has no cooldown, is ready at once.
    The cooldown boundary is inclusive: polled exactly ``cooldown_hours`` ago
    means ready with zero hours remaining.
    """
    if source.last_polled_at is None or not source.cooldown_hours:
        return Availability(is_ready=True, hours_remaining=0.0)
    now = ensure_utc(now or utc_now())
    next_available = ensure_utc(source.last_polled_at) + timedelta(hours=source.cooldown_hours)
    remaining = max(timedelta(0), next_available - now)
    hours_remaining = remaining.total_seconds() / 3600
    return Availability(is_ready=hours_remaining == 0, hours_remaining=hours_remaining)


def select_available(
    sources: Iterable[ContentSource], now: datetime | None = None
) -> list[ContentSource]:
    now = ensure_utc(now or utc_now())
    return [
        source
        for source in sources
        if source.is_active and evaluate_availability(source, now).is_ready
    ]


def summarize_availability(
    sources: Iterable[ContentSource], now: datetime | None = None
) -> AvailabilitySummary:
    now = ensure_utc(now or utc_now())
    ready = 0
    on_cooldown = 0
    total_remaining = 0.0
    rows: list[dict[str, object]] = []
    for source in sources:
        availability = evaluate_availability(source, now)
        if availability.is_ready:
            ready += 1
        else:
            on_cooldown += 1
            total_remaining += availability.hours_remaining
        rows.append(
            {
                "id": source.id,
                "name": source.name,
                "is_ready": availability.is_ready,
                "hours_remaining": availability.hours_remaining,
            }
        )
    return AvailabilitySummary(
        ready=ready,
        on_cooldown=on_cooldown,
        avg_hours_remaining=total_remaining / on_cooldown if on_cooldown else 0.0,
        sources=rows,
    )
