"""Note tree synchronization with disk, remote store and per-note encryption."""

from montana_sync.coordinator import SyncCoordinator
from montana_sync.core.crypto.overlay import EncryptionOverlay
from montana_sync.core.history.recorder import VersionHistory
from montana_sync.core.tree.store import NodeTree
from montana_sync.local.directory import LocalDirectorySync
from montana_sync.protocols import RemoteProtocol, SchedulerProtocol
from montana_sync.remote.sync import RemoteSync

__all__ = [
    "EncryptionOverlay",
    "LocalDirectorySync",
    "NodeTree",
    "RemoteProtocol",
    "RemoteSync",
    "SchedulerProtocol",
    "SyncCoordinator",
    "VersionHistory",
]
