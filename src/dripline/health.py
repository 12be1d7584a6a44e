"""Topic health classification.

``classify_health`` folds a topic's source records and its week-over-week
approved volume into ``healthy``, ``warning`` or ``critical``. Rules are
evaluated top-down and the first match wins. The thresholds below are the
single place to change them; the runtime config's ``health`` section
overrides them through ``thresholds_from_config``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable

from .models import CRITICAL, HEALTHY, WARNING, ContentSource, HealthReport
from .utils import ensure_utc, utc_now

STALE_AFTER_HOURS = 48
FAILURE_STREAK_THRESHOLD = 3
WARNING_DROP_PERCENT = 50.0
CRITICAL_DROP_PERCENT = 75.0


@dataclass(frozen=True)
class HealthThresholds:
    stale_after_hours: float = STALE_AFTER_HOURS
    failure_streak: int = FAILURE_STREAK_THRESHOLD
    warning_drop_percent: float = WARNING_DROP_PERCENT
    critical_drop_percent: float = CRITICAL_DROP_PERCENT


DEFAULT_THRESHOLDS = HealthThresholds()


def thresholds_from_config(cfg: dict[str, Any] | None) -> HealthThresholds:
    health_cfg = (cfg or {}).get("health") or {}
    return HealthThresholds(
        stale_after_hours=float(health_cfg.get("stale_after_hours", STALE_AFTER_HOURS)),
        failure_streak=int(health_cfg.get("failure_streak", FAILURE_STREAK_THRESHOLD)),
        warning_drop_percent=float(
            health_cfg.get("warning_drop_percent", WARNING_DROP_PERCENT)
        ),
        critical_drop_percent=float(
            health_cfg.get("critical_drop_percent", CRITICAL_DROP_PERCENT)
        ),
    )


def volume_drop_percent(this_week: int, last_week: int) -> float:
    # New topics have no baseline; report no drop rather than a spurious alarm.
    if last_week <= 0:
        return 0.0
    return 100.0 * (last_week - this_week) / last_week


def classify_health(
    sources: Iterable[ContentSource],
    this_week_count: int,
    last_week_count: int,
    now: datetime | None = None,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> HealthReport:
    now = ensure_utc(now or utc_now())
    sources = list(sources)
    stale_cutoff = now - timedelta(hours=thresholds.stale_after_hours)

    active = [source for source in sources if source.is_active]
    inactive_count = len(sources) - len(active)
    critical_inactive = sum(
        1 for source in sources if source.is_critical and not source.is_active
    )
    failing = sum(
        1 for source in active if source.consecutive_failures >= thresholds.failure_streak
    )
    stale = sum(
        1
        for source in active
        if source.last_polled_at is not None
        and ensure_utc(source.last_polled_at) < stale_cutoff
    )
    drop = volume_drop_percent(this_week_count, last_week_count)

    issues: list[str] = []
    if not sources:
        issues.append("No sources configured")
    if critical_inactive:
        issues.append(f"{critical_inactive} critical source(s) inactive")
    if failing:
        issues.append(f"{failing} source(s) with failures")
    if stale:
        issues.append(f"{stale} source(s) not polled in {_format_hours(thresholds.stale_after_hours)}h")
    if drop >= thresholds.warning_drop_percent:
        issues.append(f"Article flow down {round(drop)}%")
    if sources and not active:
        issues.append("All sources inactive")

    if (
        critical_inactive > 0
        or not sources
        or not active
        or drop >= thresholds.critical_drop_percent
    ):
        status = CRITICAL
    elif failing > 0 or stale > 0 or drop >= thresholds.warning_drop_percent:
        status = WARNING
    else:
        status = HEALTHY

    return HealthReport(
        status=status,
        issues=issues,
        active_sources=len(active),
        inactive_sources=inactive_count,
        critical_sources_inactive=critical_inactive,
        failing_sources=failing,
        stale_sources=stale,
        articles_this_week=this_week_count,
        articles_last_week=last_week_count,
        volume_drop_percent=round(drop, 2),
    )


def degraded_report(error: Exception | str) -> HealthReport:
    message = str(error)
    return HealthReport(
        status=WARNING,
        issues=[f"Health evaluation failed: {message}"],
        error=message,
    )


def _format_hours(hours: float) -> str:
    return str(int(hours)) if float(hours).is_integer() else str(hours)
