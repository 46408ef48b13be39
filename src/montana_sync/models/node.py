"""Domain models for the note tree and its sync stores."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class NodeKind(str, Enum):
    FILE = "FILE"
    FOLDER = "FOLDER"


class StorageMode(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"


class ChangeOrigin(str, Enum):
    """Who produced a tree mutation."""

    USER = "user"
    LOCAL = "local"
    REMOTE = "remote"
    CRYPTO = "crypto"


@dataclass(frozen=True)
class Node:
    """A single node in the note tree.

    ``content`` is only meaningful for FILE nodes and may hold an encrypted
    envelope. ``is_open`` is the folder expansion flag; it carries no sync
    meaning but must round-trip through every store.
    """

    id: str
    parent_id: str | None
    name: str
    kind: NodeKind
    created_at: int
    content: str | None = None
    is_open: bool = False

    @property
    def is_file(self) -> bool:
        return self.kind is NodeKind.FILE

    @property
    def is_folder(self) -> bool:
        return self.kind is NodeKind.FOLDER

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the local persistence shape."""
        data: dict[str, Any] = {
            "id": self.id,
            "parentId": self.parent_id,
            "name": self.name,
            "type": self.kind.value,
            "isOpen": self.is_open,
            "createdAt": self.created_at,
        }
        if self.content is not None:
            data["content"] = self.content
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Node":
        return cls(
            id=str(data["id"]),
            parent_id=data.get("parentId"),
            name=data.get("name", ""),
            kind=NodeKind(data.get("type", NodeKind.FILE.value)),
            created_at=int(data.get("createdAt", 0)),
            content=data.get("content"),
            is_open=bool(data.get("isOpen", False)),
        )


@dataclass(frozen=True)
class TreeChange:
    """Notification sent to tree listeners after every mutation."""

    kind: str
    node_ids: tuple[str, ...]
    nodes: tuple[Node, ...]
    origin: ChangeOrigin = ChangeOrigin.USER


@dataclass(frozen=True)
class VersionSnapshot:
    """A stored copy of a note's content at a point in time."""

    id: str
    node_id: str
    content: str
    timestamp: int
    name: str


@dataclass(frozen=True)
class SyncUser:
    """Authenticated remote principal."""

    id: str
    email: str


@dataclass(frozen=True)
class ScanProgress:
    """Progress report emitted once per directory entry during an import scan."""

    scanned: int
    current_path: str


@dataclass(frozen=True)
class Notification:
    """User-visible message produced by the coordinator."""

    level: str
    message: str


@dataclass
class AppSettings:
    """Persisted user settings relevant to synchronization."""

    storage_mode: StorageMode = StorageMode.LOCAL
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    mirror_deletes: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def remote_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "storageMode": self.storage_mode.value,
            "supabaseUrl": self.supabase_url,
            "supabaseAnonKey": self.supabase_anon_key,
            "mirrorDeletes": self.mirror_deletes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppSettings":
        known = {"storageMode", "supabaseUrl", "supabaseAnonKey", "mirrorDeletes"}
        return cls(
            storage_mode=StorageMode(data.get("storageMode", StorageMode.LOCAL.value)),
            supabase_url=data.get("supabaseUrl"),
            supabase_anon_key=data.get("supabaseAnonKey"),
            mirror_deletes=bool(data.get("mirrorDeletes", False)),
            extra={k: v for k, v in data.items() if k not in known},
        )
