from __future__ import annotations

from datetime import datetime, timezone

import pytest

from dripline.storage import init_db

# A Monday morning, inside the default 06:00-22:00 publishing window.
NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def conn(tmp_path):
    connection = init_db(str(tmp_path / "state.sqlite3"))
    yield connection
    connection.close()


@pytest.fixture
def now():
    return NOW
