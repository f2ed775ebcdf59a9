import sqlite3
import sys
import threading
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from api_call_tracker import RECENT_CALLS_MAX, APICallTracker, open_tracker  # noqa: E402


def test_record_and_counts(tmp_path):
    tracker = APICallTracker(tmp_path / "data" / "api_tracker.db")
    tracker.record("https://example.com/getroutes")
    tracker.record("https://example.com/getvehicles")
    tracker.record("https://example.com/getvehicles")

    assert tracker.total_count() == 3
    assert tracker.count_today() == 3
    assert tracker.count_by_endpoint() == {
        "https://example.com/getroutes": 1,
        "https://example.com/getvehicles": 2,
    }
    summary = tracker.summary()
    assert summary["total"] == 3
    assert [call["endpoint"] for call in summary["recent"]] == [
        "https://example.com/getroutes",
        "https://example.com/getvehicles",
        "https://example.com/getvehicles",
    ]
    tracker.close()


def test_counts_survive_reopen(tmp_path):
    path = tmp_path / "api_tracker.db"
    first = APICallTracker(path)
    first.record("a")
    first.close()

    second = APICallTracker(path)
    assert second.total_count() == 1
    second.close()


def test_concurrent_writers_do_not_lose_rows(tmp_path):
    tracker = APICallTracker(tmp_path / "api_tracker.db")

    def worker(n):
        for _ in range(50):
            tracker.record(f"endpoint-{n % 3}")

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert tracker.total_count() == 400
    assert sum(tracker.count_by_endpoint().values()) == 400
    tracker.close()


def test_recent_calls_are_bounded(tmp_path):
    tracker = APICallTracker(tmp_path / "api_tracker.db")
    for i in range(RECENT_CALLS_MAX + 5):
        tracker.record(str(i))
    recent = tracker.recent_calls()
    assert len(recent) == RECENT_CALLS_MAX
    assert recent[0]["endpoint"] == "5"
    tracker.close()


def test_closed_tracker_raises(tmp_path):
    tracker = APICallTracker(tmp_path / "api_tracker.db")
    tracker.close()
    with pytest.raises(RuntimeError):
        tracker.record("a")


def test_open_tracker_returns_none_when_unusable(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("")
    assert open_tracker(blocker / "api_tracker.db") is None


def test_open_tracker_rejects_corrupt_file(tmp_path):
    path = tmp_path / "api_tracker.db"
    path.write_bytes(b"this is not a sqlite database" * 10)
    assert open_tracker(path) is None


def test_in_memory_tracker():
    tracker = APICallTracker(Path(":memory:"))
    tracker.record("a")
    assert tracker.total_count() == 1
    assert isinstance(tracker._conn, sqlite3.Connection)
