"""
Key/value persistence with named partitions on top of SQLite.

Each partition is its own table (`p_<name>`) holding JSON blobs plus a
per-key write counter. Every call runs in its own transaction, so a failed
write never leaves a partial blob behind.
"""
from __future__ import annotations

import datetime as dt
import json
import logging
import re
import sqlite3
import threading
from typing import Any, Dict, List, Optional

from pos_errors import CoreError, ErrorKind

log = logging.getLogger(__name__)

_PARTITION_RE = re.compile(r"^[a-z][a-z0-9_]*$")
_TABLE_PREFIX = "p_"


class PartitionMissing(CoreError, KeyError):
    kind = ErrorKind.SCHEMA_DRIFT

    def __str__(self) -> str:
        return f"partition {self.args[0]!r} does not exist"


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _table(partition: str) -> str:
    if not partition or not _PARTITION_RE.match(partition):
        raise ValueError(f"Invalid partition name: {partition!r}")
    return _TABLE_PREFIX + partition


def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


class Store:
    def __init__(self, db_path: str, conn: Optional[sqlite3.Connection] = None):
        self.path = db_path
        self.conn = conn or connect(db_path)
        self._lock = threading.RLock()

    # ---------- catalog ----------
    def partitions(self) -> List[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name LIKE 'p\\_%' ESCAPE '\\'"
            ).fetchall()
        return sorted(r["name"][len(_TABLE_PREFIX):] for r in rows)

    def has_partition(self, partition: str) -> bool:
        table = _table(partition)
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (table,)
            ).fetchone()
        return row is not None

    def create_partition(self, partition: str) -> None:
        table = _table(partition)
        with self._lock, self.conn:
            self.conn.execute(f"""
            CREATE TABLE IF NOT EXISTS "{table}" (
              key         TEXT PRIMARY KEY,
              blob        TEXT NOT NULL,
              version     INTEGER NOT NULL DEFAULT 1,
              updated_utc TEXT NOT NULL
            )
            """)

    @property
    def version(self) -> int:
        with self._lock:
            row = self.conn.execute("PRAGMA user_version").fetchone()
        return int(row[0]) if row else 0

    def set_version(self, version: int) -> None:
        with self._lock, self.conn:
            self.conn.execute(f"PRAGMA user_version = {int(version)}")

    def _require(self, partition: str) -> str:
        table = _table(partition)
        if not self.has_partition(partition):
            raise PartitionMissing(partition)
        return table

    # ---------- data ----------
    def get(self, partition: str, key: str, default: Any = None) -> Any:
        table = self._require(partition)
        with self._lock:
            row = self.conn.execute(f'SELECT blob FROM "{table}" WHERE key=?', (str(key),)).fetchone()
        if row is None:
            return default
        return json.loads(row["blob"])

    def get_entry(self, partition: str, key: str) -> Optional[Dict[str, Any]]:
        """Blob plus its version metadata, or None."""
        table = self._require(partition)
        with self._lock:
            row = self.conn.execute(
                f'SELECT key, blob, version, updated_utc FROM "{table}" WHERE key=?', (str(key),)
            ).fetchone()
        if row is None:
            return None
        return {
            "key": row["key"],
            "blob": json.loads(row["blob"]),
            "version": row["version"],
            "updated_utc": row["updated_utc"],
        }

    def put(self, partition: str, key: str, blob: Any) -> None:
        table = self._require(partition)
        # Serialize before touching the table; a bad blob must not reach it.
        payload = json.dumps(blob, separators=(",", ":"))
        with self._lock, self.conn:
            self.conn.execute(f"""
                INSERT INTO "{table}" (key, blob, version, updated_utc) VALUES (?,?,1,?)
                ON CONFLICT(key) DO UPDATE SET
                  blob=excluded.blob,
                  version="{table}".version + 1,
                  updated_utc=excluded.updated_utc
            """, (str(key), payload, iso_now()))

    def get_all(self, partition: str) -> List[Any]:
        table = self._require(partition)
        with self._lock:
            rows = self.conn.execute(f'SELECT blob FROM "{table}" ORDER BY rowid').fetchall()
        return [json.loads(r["blob"]) for r in rows]

    def keys(self, partition: str) -> List[str]:
        table = self._require(partition)
        with self._lock:
            rows = self.conn.execute(f'SELECT key FROM "{table}" ORDER BY rowid').fetchall()
        return [r["key"] for r in rows]

    def delete(self, partition: str, key: Optional[str] = None) -> None:
        """Delete one key, or clear the whole partition when key is None."""
        table = self._require(partition)
        with self._lock, self.conn:
            if key is None:
                self.conn.execute(f'DELETE FROM "{table}"')
            else:
                self.conn.execute(f'DELETE FROM "{table}" WHERE key=?', (str(key),))

    def close(self) -> None:
        with self._lock:
            try:
                self.conn.close()
            except sqlite3.Error:
                log.debug("Failed to close store %s", self.path)
