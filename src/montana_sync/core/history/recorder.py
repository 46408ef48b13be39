"""Per-note version history stored in SQLite."""

import sqlite3
import threading
import time
import uuid
from collections.abc import Callable

from loguru import logger

from montana_sync.config import MAX_VERSIONS
from montana_sync.core.crypto.envelope import is_encrypted
from montana_sync.models.node import VersionSnapshot


def _now_ms() -> int:
    return int(time.time() * 1000)


class VersionHistory:
    """Capped ring of content snapshots per note.

    Recording is idempotent against the latest snapshot and never stores
    empty content or encrypted envelopes. When to record is decided by the
    caller.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        lock: "threading.RLock | None" = None,
        max_versions: int = MAX_VERSIONS,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.conn = conn
        self.max_versions = max_versions
        self._lock = lock or threading.RLock()
        self._clock = clock

    def record(self, node_id: str, name: str, content: str) -> VersionSnapshot | None:
        """Append a snapshot. Returns None when nothing was stored."""
        if not content or is_encrypted(content):
            return None
        with self._lock:
            last = self.conn.execute(
                "SELECT content FROM version_history WHERE node_id = ? "
                "ORDER BY rowid DESC LIMIT 1",
                (node_id,),
            ).fetchone()
            if last is not None and last[0] == content:
                return None

            snapshot = VersionSnapshot(
                id=uuid.uuid4().hex,
                node_id=node_id,
                content=content,
                timestamp=self._clock(),
                name=name,
            )
            try:
                self.conn.execute(
                    "INSERT INTO version_history (id, node_id, content, timestamp, name) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (snapshot.id, node_id, content, snapshot.timestamp, name),
                )
                # Keep only the newest max_versions rows for this node
                self.conn.execute(
                    "DELETE FROM version_history WHERE node_id = ? AND rowid NOT IN ("
                    "SELECT rowid FROM version_history WHERE node_id = ? "
                    "ORDER BY rowid DESC LIMIT ?)",
                    (node_id, node_id, self.max_versions),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        logger.debug("Recorded version of {} ({} chars)", node_id, len(content))
        return snapshot

    def list(self, node_id: str) -> list[VersionSnapshot]:
        """Snapshots for node_id, oldest first."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, node_id, content, timestamp, name FROM version_history "
                "WHERE node_id = ? ORDER BY timestamp, rowid",
                (node_id,),
            ).fetchall()
        return [VersionSnapshot(*row) for row in rows]

    def get(self, version_id: str) -> VersionSnapshot | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT id, node_id, content, timestamp, name FROM version_history WHERE id = ?",
                (version_id,),
            ).fetchone()
        return VersionSnapshot(*row) if row else None

    def clear(self, node_id: str) -> None:
        """Delete all history for a node."""
        with self._lock:
            self.conn.execute("DELETE FROM version_history WHERE node_id = ?", (node_id,))
            self.conn.commit()
