from __future__ import annotations

import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional


RECENT_CALLS_MAX = 100
SQLITE_BUSY_TIMEOUT_S = 1.0


class CallRecorder(ABC):
    """Sink for "an upstream call happened" events.

    Implementations may raise; callers log and swallow the failure.
    """

    @abstractmethod
    def record(self, identifier: str) -> None:
        pass


class APICallTracker(CallRecorder):
    """SQLite-backed counter of successful upstream calls.

    A single connection is shared and every statement runs under one lock, so
    overlapping fetches never interleave writes.
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        self._lock = threading.Lock()
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=RECENT_CALLS_MAX)
        if str(self._path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            str(self._path), check_same_thread=False, timeout=SQLITE_BUSY_TIMEOUT_S
        )
        try:
            self._init_schema()
        except sqlite3.Error:
            self.close()
            raise

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS api_calls (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    endpoint TEXT NOT NULL,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                );
                CREATE INDEX IF NOT EXISTS idx_api_calls_endpoint ON api_calls(endpoint);
                CREATE INDEX IF NOT EXISTS idx_api_calls_created_at ON api_calls(created_at);
                """
            )
            self._conn.commit()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("API call tracker is closed")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def record(self, identifier: str) -> None:
        with self._lock:
            conn = self._connection()
            conn.execute("INSERT INTO api_calls (endpoint) VALUES (?)", (identifier,))
            conn.commit()
            self._recent.append({"ts": int(time.time() * 1000), "endpoint": identifier})

    def total_count(self) -> int:
        with self._lock:
            row = self._connection().execute("SELECT COUNT(*) FROM api_calls").fetchone()
        return int(row[0])

    def count_by_endpoint(self) -> Dict[str, int]:
        with self._lock:
            rows = self._connection().execute(
                """
                SELECT endpoint, COUNT(*) AS call_count
                FROM api_calls
                GROUP BY endpoint
                """
            ).fetchall()
        return {endpoint: int(count) for endpoint, count in rows}

    def count_today(self) -> int:
        # created_at is stored in UTC by CURRENT_TIMESTAMP; date('now') is UTC too.
        with self._lock:
            row = self._connection().execute(
                "SELECT COUNT(*) FROM api_calls WHERE date(created_at) = date('now')"
            ).fetchone()
        return int(row[0])

    def recent_calls(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._recent)

    def summary(self) -> Dict[str, Any]:
        return {
            "total": self.total_count(),
            "today": self.count_today(),
            "byEndpoint": self.count_by_endpoint(),
            "recent": self.recent_calls(),
        }


def open_tracker(path: Path) -> Optional[APICallTracker]:
    """Open the tracker, or return None (untracked mode) when the store is unusable."""
    try:
        return APICallTracker(path)
    except (sqlite3.Error, OSError) as exc:
        print(f"[tracker] API tracker database unavailable: {exc}")
        return None
