import sqlite3

from dripline.migrations import _get_migrations, apply_migrations
from dripline.storage import init_db


def test_apply_migrations_idempotent(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = sqlite3.connect(str(db_path))
    apply_migrations(conn)
    apply_migrations(conn)

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))


def test_drip_columns_have_defaults(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    conn.execute(
        "INSERT INTO topics (id, name, created_at, updated_at) VALUES ('ai', 'AI', 'now', 'now')"
    )
    row = conn.execute(
        """
        SELECT drip_enabled, drip_release_interval_hours, drip_items_per_release,
               drip_start_hour, drip_end_hour, drip_state
        FROM topics WHERE id = 'ai'
        """
    ).fetchone()
    assert tuple(row) == (0, 4, 2, 6, 22, "idle")


def test_each_database_path_is_migrated(tmp_path):
    first = init_db(str(tmp_path / "one.sqlite3"))
    second = init_db(str(tmp_path / "two.sqlite3"))
    for conn in (first, second):
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        }
        assert {"topics", "sources", "queued_items", "jobs", "drip_events", "settings"} <= tables
