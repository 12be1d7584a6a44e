from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

DRIP_DISABLED = "disabled"
DRIP_IDLE = "idle"
DRIP_SCHEDULING = "scheduling"


@dataclass(frozen=True)
class ContentSource:
    id: str
    name: str
    topic_id: str
    cooldown_hours: float | None
    last_polled_at: datetime | None
    last_success_at: datetime | None
    consecutive_failures: int
    is_active: bool
    is_critical: bool
    articles_scraped: int
    last_error: str | None = None


@dataclass(frozen=True)
class Topic:
    id: str
    name: str
    is_active: bool
    drip_state: str


@dataclass(frozen=True)
class TopicDripConfig:
    topic_id: str
    enabled: bool
    release_interval_hours: int
    items_per_release: int
    active_start_hour: int
    active_end_hour: int


@dataclass(frozen=True)
class QueuedItem:
    id: int
    topic_id: str
    title: str | None
    ready_at: datetime
    scheduled_publish_at: datetime | None
    drip_queued_at: datetime | None
    published_at: datetime | None


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    status: str
    payload: dict[str, object]
    result: dict[str, object] | None
    requested_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None


@dataclass(frozen=True)
class Availability:
    is_ready: bool
    hours_remaining: float


@dataclass(frozen=True)
class AvailabilitySummary:
    ready: int
    on_cooldown: int
    avg_hours_remaining: float
    sources: list[dict[str, object]]


@dataclass(frozen=True)
class HealthReport:
    status: str
    issues: list[str]
    active_sources: int = 0
    inactive_sources: int = 0
    critical_sources_inactive: int = 0
    failing_sources: int = 0
    stale_sources: int = 0
    articles_this_week: int = 0
    articles_last_week: int = 0
    volume_drop_percent: float = 0.0
    error: str | None = None


@dataclass(frozen=True)
class SlotAssignment:
    slot_at: datetime
    item_ids: list[int]


@dataclass(frozen=True)
class ScheduleResult:
    topic_id: str
    slots_assigned: int
    items_assigned: int
    skipped_reason: str | None = None
    interrupted: bool = False


@dataclass(frozen=True)
class SourceProgress:
    source_id: str
    name: str
    status: str
    articles_found: int
    last_polled_at: datetime | None


@dataclass(frozen=True)
class ProgressReport:
    job_id: str
    topic_id: str
    percent: float
    job_status: str | None
    is_complete: bool
    per_source: list[SourceProgress] = field(default_factory=list)
