"""SQLite persistence layer for the shop monitor.

State is a flat key/value map (one JSON object per key) kept in memory and
written through to SQLite.  A failed write never propagates: the key stays
dirty and is written again on the next flush.
"""

from __future__ import annotations

import datetime as _dt
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from .config import SQLITE_DB_PATH
from .models import legacy_product_key, product_key

logger = logging.getLogger(__name__)

# Field names written by the destination-less schema.
_LEGACY_FIELDS = {
    "messageId": "message_id",
    "contentHash": "content_hash",
    "lastPostedAt": "last_posted_at",
    "forceRefreshed": "force_refreshed",
    "lastSnapshot": "last_snapshot",
}


def utcnow() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


class StateStore:
    """Keyed state records with shallow-merge patches."""

    def __init__(self, path: str = SQLITE_DB_PATH) -> None:
        self.path = path
        self._data: Dict[str, Dict[str, Any]] = {}
        self._dirty: set[str] = set()
        self._conn: Optional[sqlite3.Connection] = None
        self._loaded = False
        self._lock = threading.RLock()

    # ---- lifecycle -------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
        return self._conn

    def load(self) -> None:
        """Create the table if needed and read every record into memory.

        Calling it again is a no-op.
        """
        with self._lock:
            if self._loaded:
                return
            conn = self._get_connection()
            with conn:
                conn.execute("""
                  CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                  )
                """)
            for key, raw in conn.execute("SELECT key, value FROM state"):
                try:
                    self._data[key] = json.loads(raw)
                except ValueError:
                    logger.warning("Skipping unreadable state row %s", key)
            self._loaded = True
            logger.info("Loaded %d state records from %s", len(self._data), self.path)

    def close(self) -> None:
        with self._lock:
            self.flush()
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                self._loaded = False

    # ---- access ----------------------------------------------------------

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            rec = self._data.get(key)
            return dict(rec) if rec is not None else None

    def put(self, key: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
        """Merge `patch` into the record at `key` and persist it."""
        with self._lock:
            rec = dict(self._data.get(key) or {})
            rec.update(patch)
            self._data[key] = rec
            self._dirty.add(key)
            self.flush()
            return dict(rec)

    def items(self, prefix: str = "") -> Iterator[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            snapshot = [(k, dict(v)) for k, v in self._data.items() if k.startswith(prefix)]
        return iter(snapshot)

    @property
    def degraded(self) -> bool:
        """True while some writes exist only in memory."""
        return bool(self._dirty)

    def flush(self) -> bool:
        with self._lock:
            if not self._dirty:
                return True
            now = utcnow()
            rows = [(k, json.dumps(self._data[k]), now) for k in sorted(self._dirty)]
            try:
                conn = self._get_connection()
                with conn:
                    conn.executemany("""
                        INSERT INTO state (key, value, updated_at) VALUES (?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET
                          value      = excluded.value,
                          updated_at = excluded.updated_at
                    """, rows)
            except sqlite3.Error:
                logger.warning(
                    "State flush failed; %d record(s) kept in memory and retried on next write",
                    len(rows),
                    exc_info=True,
                )
                return False
            self._dirty.clear()
            return True

    # ---- product records -------------------------------------------------

    def get_product(self, origin: str, handle: str, destination: str) -> Optional[Dict[str, Any]]:
        """Look up a product record, migrating a destination-less record once."""
        key = product_key(origin, handle, destination)
        with self._lock:
            rec = self.get(key)
            if rec is not None:
                return rec

            old_key = legacy_product_key(origin, handle)
            legacy = self.get(old_key)
            if legacy is None or legacy.get("_migrated"):
                return None

            migrated = {
                _LEGACY_FIELDS.get(k, k): v for k, v in legacy.items() if k != "_migrated"
            }
            rec = self.put(key, migrated)
            self.put(old_key, {"_migrated": True})
            logger.info("Migrated legacy state %s -> %s", old_key, key)
            return rec


__all__ = ["StateStore", "utcnow"]
