"""Local persistence record: nodes, settings, tabs, sync handles, session."""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from loguru import logger

from montana_sync.config import STATE_DB_NAME
from montana_sync.core.database.schema import (
    delete_metadata,
    get_metadata,
    migrate_schema,
    set_metadata,
)
from montana_sync.models.node import AppSettings, Node

NODES_KEY = "nodes"
SETTINGS_KEY = "settings"
TABS_KEY = "tabs"
ROOT_HANDLE_KEY = "local_sync_root"
ROOT_NODE_KEY = "local_sync_root_id"
SESSION_KEY = "remote_session"


class LocalState:
    """Key-value persistence for the application.

    Each value is read once at startup and rewritten whenever it changes.
    Unreadable values are treated as absent.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.lock = threading.RLock()
        migrate_schema(conn)

    @classmethod
    def open(cls, data_dir: Path, db_name: str = STATE_DB_NAME) -> "LocalState":
        data_dir.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(data_dir / db_name), check_same_thread=False)
        return cls(conn)

    def close(self) -> None:
        self.conn.close()

    # --- Generic JSON values ---

    def _read_json(self, key: str) -> Any | None:
        with self.lock:
            raw = get_metadata(self.conn, key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable stored value {!r}", key)
            return None

    def _write_json(self, key: str, value: Any) -> None:
        with self.lock:
            set_metadata(self.conn, key, json.dumps(value, ensure_ascii=False))

    def _delete(self, key: str) -> None:
        with self.lock:
            delete_metadata(self.conn, key)

    # --- Nodes ---

    def load_nodes(self) -> list[Node] | None:
        data = self._read_json(NODES_KEY)
        if data is None:
            return None
        try:
            return [Node.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError):
            logger.warning("Stored node collection is malformed, ignoring it")
            return None

    def save_nodes(self, nodes: tuple[Node, ...] | list[Node]) -> None:
        self._write_json(NODES_KEY, [n.to_dict() for n in nodes])

    # --- Settings ---

    def load_settings(self) -> AppSettings:
        data = self._read_json(SETTINGS_KEY)
        if not isinstance(data, dict):
            return AppSettings()
        try:
            return AppSettings.from_dict(data)
        except ValueError:
            logger.warning("Stored settings are malformed, using defaults")
            return AppSettings()

    def save_settings(self, settings: AppSettings) -> None:
        self._write_json(SETTINGS_KEY, settings.to_dict())

    # --- Tabs ---

    def load_tabs(self) -> list[str]:
        data = self._read_json(TABS_KEY)
        if not isinstance(data, list):
            return []
        return [str(t) for t in data]

    def save_tabs(self, tabs: list[str]) -> None:
        self._write_json(TABS_KEY, tabs)

    # --- Local sync root ---

    def load_root_handle(self) -> Path | None:
        data = self._read_json(ROOT_HANDLE_KEY)
        return Path(data) if isinstance(data, str) else None

    def save_root_handle(self, path: Path) -> None:
        self._write_json(ROOT_HANDLE_KEY, str(path))

    def clear_root_handle(self) -> None:
        self._delete(ROOT_HANDLE_KEY)
        self._delete(ROOT_NODE_KEY)

    def load_root_node_id(self) -> str | None:
        data = self._read_json(ROOT_NODE_KEY)
        return data if isinstance(data, str) else None

    def save_root_node_id(self, node_id: str) -> None:
        self._write_json(ROOT_NODE_KEY, node_id)

    # --- Remote session ---

    def load_session(self) -> dict[str, Any] | None:
        data = self._read_json(SESSION_KEY)
        return data if isinstance(data, dict) else None

    def save_session(self, session: dict[str, Any]) -> None:
        self._write_json(SESSION_KEY, session)

    def clear_session(self) -> None:
        self._delete(SESSION_KEY)
