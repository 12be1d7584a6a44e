from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from dripline.drip import ConfigurationError
from dripline.models import TopicDripConfig
from dripline.services import release_service
from dripline.services.release_service import (
    drip_preview,
    drip_state,
    emergency_publish_all,
    enqueue_item,
    get_drip_settings,
    list_queue,
    release_due_items,
    schedule_releases,
    update_drip_settings,
)
from dripline.storage import (
    get_drip_config,
    get_item,
    get_topic,
    list_drip_events,
    list_items,
    list_unscheduled_items,
    save_drip_config,
    upsert_topic,
)

DAY = datetime(2026, 3, 2, tzinfo=timezone.utc)


def _at(hour, day_offset=0):
    return DAY + timedelta(days=day_offset, hours=hour)


def _seed(conn, count=10, enabled=True, **drip):
    upsert_topic(conn, {"id": "ai", "name": "AI"})
    fields = {
        "release_interval_hours": 4,
        "items_per_release": 2,
        "active_start_hour": 6,
        "active_end_hour": 22,
    }
    fields.update(drip)
    save_drip_config(conn, TopicDripConfig(topic_id="ai", enabled=enabled, **fields))
    return [
        enqueue_item(conn, "ai", f"item {index}", DAY - timedelta(hours=2) + timedelta(minutes=index))
        for index in range(1, count + 1)
    ]


def _schedule(conn):
    return {item.id: item.scheduled_publish_at for item in list_items(conn, "ai")}


def test_schedule_assigns_fifo_slots(conn):
    ids = _seed(conn)
    assert ids == list(range(1, 11))

    result = schedule_releases(conn, "ai", _at(6))

    assert result.slots_assigned == 5
    assert result.items_assigned == 10
    assert result.interrupted is False
    schedule = _schedule(conn)
    assert schedule[1] == schedule[2] == _at(6)
    assert schedule[3] == schedule[4] == _at(10)
    assert schedule[7] == schedule[8] == _at(18)
    assert schedule[9] == schedule[10] == _at(6, day_offset=1)
    assert get_item(conn, 1).drip_queued_at == _at(6)


def test_schedule_twice_is_idempotent(conn):
    _seed(conn)
    schedule_releases(conn, "ai", _at(6))
    before = _schedule(conn)

    again = schedule_releases(conn, "ai", _at(6))

    assert again.items_assigned == 0
    assert again.skipped_reason == "no_items"
    assert _schedule(conn) == before


def test_later_run_respects_used_slot_capacity(conn):
    _seed(conn, count=3)
    schedule_releases(conn, "ai", _at(5))
    enqueue_item(conn, "ai", "late", _at(5))

    result = schedule_releases(conn, "ai", _at(5))

    assert result.items_assigned == 1
    schedule = _schedule(conn)
    assert schedule[3] == schedule[4] == _at(10)


def test_disabled_topic_is_skipped(conn):
    _seed(conn, enabled=False)
    result = schedule_releases(conn, "ai", _at(6))
    assert result.skipped_reason == "disabled"
    assert len(list_unscheduled_items(conn, "ai")) == 10
    assert drip_state(conn, "ai") == "disabled"


def test_unknown_topic_raises(conn):
    with pytest.raises(ValueError, match="topic_not_found"):
        schedule_releases(conn, "missing", _at(6))
    with pytest.raises(ValueError, match="topic_not_found"):
        emergency_publish_all(conn, "missing", _at(6))


def test_disabling_mid_run_stops_before_next_slot(conn, monkeypatch):
    _seed(conn)
    real_assign = release_service.assign_item_slot
    states = []

    def assign_then_disable(conn_, item_id, slot_at, now):
        states.append(get_topic(conn_, "ai").drip_state)
        if item_id == 1:
            save_drip_config(conn_, replace(get_drip_config(conn_, "ai"), enabled=False))
        return real_assign(conn_, item_id, slot_at, now)

    monkeypatch.setattr(release_service, "assign_item_slot", assign_then_disable)
    result = schedule_releases(conn, "ai", _at(6))

    assert result.interrupted is True
    assert result.items_assigned == 2
    assert len(list_unscheduled_items(conn, "ai")) == 8
    assert states == ["scheduling", "scheduling"]
    assert get_topic(conn, "ai").drip_state == "idle"


def test_deactivating_topic_mid_run_stops_before_next_slot(conn, monkeypatch):
    _seed(conn, count=6)
    real_assign = release_service.assign_item_slot

    def assign_then_deactivate(conn_, item_id, slot_at, now):
        if item_id == 2:
            upsert_topic(conn_, {"id": "ai", "name": "AI", "is_active": False})
        return real_assign(conn_, item_id, slot_at, now)

    monkeypatch.setattr(release_service, "assign_item_slot", assign_then_deactivate)
    result = schedule_releases(conn, "ai", _at(6))

    assert result.interrupted is True
    assert result.slots_assigned == 1
    assert result.items_assigned == 2
    assert len(list_unscheduled_items(conn, "ai")) == 4
    assert drip_state(conn, "ai") == "disabled"


def test_item_claimed_concurrently_is_not_reassigned(conn, monkeypatch):
    _seed(conn)
    real_assign = release_service.assign_item_slot
    elsewhere = _at(18, day_offset=3)

    def racing_assign(conn_, item_id, slot_at, now):
        if item_id == 3:
            assert real_assign(conn_, item_id, elsewhere, now) is True
        return real_assign(conn_, item_id, slot_at, now)

    monkeypatch.setattr(release_service, "assign_item_slot", racing_assign)
    result = schedule_releases(conn, "ai", _at(6))

    assert result.items_assigned == 9
    assert result.slots_assigned == 5
    assert _schedule(conn)[3] == elsewhere


def test_emergency_publish_releases_everything_once(conn):
    _seed(conn)
    schedule_releases(conn, "ai", _at(6))

    released = emergency_publish_all(conn, "ai", _at(7))

    # Items 1 and 2 were already due at 06:00.
    assert released == 8
    assert all(slot <= _at(7) for slot in _schedule(conn).values())
    assert emergency_publish_all(conn, "ai", _at(7)) == 0
    events = [event["event_type"] for event in list_drip_events(conn, "ai")]
    assert events.count("emergency_publish") == 2


def test_emergency_publish_covers_unscheduled_items(conn):
    _seed(conn, count=4)
    assert emergency_publish_all(conn, "ai", _at(12)) == 4
    assert list_unscheduled_items(conn, "ai") == []


def test_emergency_publish_skips_published_items(conn):
    _seed(conn, count=4)
    schedule_releases(conn, "ai", _at(6))
    assert release_due_items(conn, "ai", _at(10)) == 4
    assert emergency_publish_all(conn, "ai", _at(11)) == 0


def test_release_due_items_publishes_each_item_once(conn):
    _seed(conn)
    schedule_releases(conn, "ai", _at(6))

    assert release_due_items(conn, "ai", _at(6)) == 2
    assert release_due_items(conn, "ai", _at(6)) == 0
    assert release_due_items(conn, None, _at(10, day_offset=1)) == 8
    assert list_items(conn, "ai") == []
    published = [
        event for event in list_drip_events(conn, "ai", limit=100)
        if event["event_type"] == "item_published"
    ]
    assert len(published) == 10


def test_schedule_records_events(conn):
    _seed(conn, count=2)
    schedule_releases(conn, "ai", _at(6))
    events = list_drip_events(conn, "ai")
    assert {event["item_id"] for event in events} == {1, 2}
    assert events[0]["details"]["scheduled_for"] == _at(6).isoformat()


def test_update_drip_settings(conn):
    _seed(conn, count=0, enabled=False)
    settings = update_drip_settings(conn, "ai", {"enabled": True, "items_per_release": 3})
    assert settings["enabled"] is True
    assert settings["items_per_release"] == 3
    assert settings["release_interval_hours"] == 4
    assert settings["state"] == "idle"
    assert get_drip_settings(conn, "ai") == settings


def test_update_drip_settings_rejects_invalid_values(conn):
    _seed(conn, count=0)
    with pytest.raises(ConfigurationError):
        update_drip_settings(conn, "ai", {"release_interval_hours": 9})
    with pytest.raises(ConfigurationError):
        update_drip_settings(conn, "ai", {"active_start_hour": 22})
    with pytest.raises(ValueError, match="unknown drip fields"):
        update_drip_settings(conn, "ai", {"color": "blue"})
    assert get_drip_config(conn, "ai").release_interval_hours == 4


def test_drip_preview(conn):
    _seed(conn, count=3)
    schedule_releases(conn, "ai", _at(5))
    preview = drip_preview(conn, "ai", _at(5))
    assert preview["slots_per_day"] == 4
    assert preview["capacity_per_day"] == 8
    assert preview["slot_hours_utc"] == [6, 10, 14, 18]
    assert preview["next_slot_at"] == _at(6).isoformat()
    assert preview["queued"] == 3
    assert preview["unscheduled"] == 0
    assert preview["upcoming"] == [_at(6).isoformat(), _at(6).isoformat(), _at(10).isoformat()]


def test_enqueue_and_list_queue(conn):
    _seed(conn, count=0)
    item_id = enqueue_item(conn, "ai", "fresh", _at(8))
    rows = list_queue(conn, "ai")
    assert [row["id"] for row in rows] == [item_id]
    assert rows[0]["scheduled_publish_at"] is None
    with pytest.raises(ValueError, match="topic_not_found"):
        enqueue_item(conn, "missing", "x", _at(8))
