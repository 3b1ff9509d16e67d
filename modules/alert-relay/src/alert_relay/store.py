from __future__ import annotations

import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Iterable

from .paths import data_root, ensure_data_dirs
from .timestamps import now_utc


class Store:
    """SQLite key/value and job-lease storage shared by every feed.

    One connection per Store guarded by a lock; several processes may open
    the same database file and coordinate through the lease table.
    """

    def __init__(self, root: Path | None = None) -> None:
        self.root = data_root(root)
        ensure_data_dirs(self.root)
        self.db_path = self.root / "relay.sqlite"
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self.init_db()

    def connect(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                self._conn = sqlite3.connect(
                    self.db_path, timeout=30.0, check_same_thread=False
                )
                self._conn.row_factory = sqlite3.Row
            return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def init_db(self) -> None:
        with self._lock:
            conn = self.connect()
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS job_leases (
                    job_id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    expires_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS job_metadata (
                    job_id TEXT PRIMARY KEY,
                    last_finished TEXT
                );
                """
            )
            conn.commit()

    def _fetchone(self, query: str, params: Iterable[Any]) -> sqlite3.Row | None:
        with self._lock:
            cur = self.connect().execute(query, tuple(params))
            row = cur.fetchone()
            cur.close()
            return row

    def _execute(self, query: str, params: Iterable[Any]) -> int:
        with self._lock:
            conn = self.connect()
            cur = conn.execute(query, tuple(params))
            conn.commit()
            count = cur.rowcount
            cur.close()
            return count

    def kv_get(self, key: str) -> str | None:
        row = self._fetchone("SELECT value FROM kv WHERE key = ?", (key,))
        return None if row is None else str(row["value"])

    def kv_set(self, key: str, value: str) -> None:
        self._execute(
            """
            INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, now_utc()),
        )

    def kv_delete(self, key: str) -> None:
        self._execute("DELETE FROM kv WHERE key = ?", (key,))

    def kv_increment(self, key: str) -> int:
        with self._lock:
            self._execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, '1', ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = CAST(CAST(kv.value AS INTEGER) + 1 AS TEXT),
                    updated_at = excluded.updated_at
                """,
                (key, now_utc()),
            )
            return int(self.kv_get(key) or 0)

    def try_acquire_lease(self, job_id: str, owner: str, ttl_seconds: float) -> bool:
        now = time.time()
        changed = self._execute(
            """
            INSERT INTO job_leases (job_id, owner, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                owner = excluded.owner,
                expires_at = excluded.expires_at
            WHERE job_leases.expires_at < ? OR job_leases.owner = excluded.owner
            """,
            (job_id, owner, now + ttl_seconds, now),
        )
        return changed > 0

    def renew_lease(self, job_id: str, owner: str, ttl_seconds: float) -> bool:
        changed = self._execute(
            "UPDATE job_leases SET expires_at = ? WHERE job_id = ? AND owner = ?",
            (time.time() + ttl_seconds, job_id, owner),
        )
        return changed > 0

    def release_lease(self, job_id: str, owner: str) -> None:
        self._execute("DELETE FROM job_leases WHERE job_id = ? AND owner = ?", (job_id, owner))

    def get_job_last_finished(self, job_id: str) -> str | None:
        row = self._fetchone("SELECT last_finished FROM job_metadata WHERE job_id = ?", (job_id,))
        if row is None or row["last_finished"] is None:
            return None
        return str(row["last_finished"])

    def set_job_last_finished(self, job_id: str, finished_at: str) -> None:
        self._execute(
            """
            INSERT INTO job_metadata (job_id, last_finished) VALUES (?, ?)
            ON CONFLICT(job_id) DO UPDATE SET last_finished = excluded.last_finished
            """,
            (job_id, finished_at),
        )
