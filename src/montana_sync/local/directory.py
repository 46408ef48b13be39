"""Bidirectional mirror between a subtree and a directory on disk."""

import os
import shutil
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from montana_sync.config import NOTE_EXTENSIONS
from montana_sync.core.tree.store import new_node_id, now_ms
from montana_sync.errors import HandleMissing, LocalSyncError, NotConnected, PermissionDenied
from montana_sync.models.node import Node, NodeKind, ScanProgress
from montana_sync.protocols import (
    DirectoryPicker,
    PermissionRequester,
    RootHandleStoreProtocol,
)

ProgressCallback = Callable[[ScanProgress], None]


def has_read_write_access(path: Path) -> bool:
    """Default permission check: the directory exists and is readable and writable."""
    return path.is_dir() and os.access(path, os.R_OK | os.W_OK)


@dataclass(frozen=True)
class LocalImport:
    """Result of scanning a directory."""

    root_id: str
    nodes: tuple[Node, ...]


class LocalDirectorySync:
    """Map a subtree to real files and directories.

    States: disconnected (no root) and connected. While connected it keeps
    the root directory, node id -> file path for imported notes, and node id
    -> path segments (relative to the root) for every file and folder, so
    entries created later under a known folder can be placed on disk.

    Disk is a mirror: callers keep the in-memory tree as the source of truth
    and treat every failure here as non-fatal.
    """

    def __init__(
        self,
        *,
        handle_store: RootHandleStoreProtocol | None = None,
        request_permission: PermissionRequester = has_read_write_access,
        extensions: tuple[str, ...] = NOTE_EXTENSIONS,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = new_node_id,
    ) -> None:
        self._handle_store = handle_store
        self._request_permission = request_permission
        self.extensions = extensions
        self._clock = clock
        self._id_factory = id_factory

        self.root: Path | None = None
        self._file_handles: dict[str, Path] = {}
        self._node_paths: dict[str, list[str]] = {}

    # --- State ---

    @property
    def is_connected(self) -> bool:
        return self.root is not None

    @property
    def folder_name(self) -> str | None:
        return self.root.name if self.root else None

    def owns(self, node_id: str) -> bool:
        """True if node_id maps to a file or folder on disk."""
        return node_id in self._node_paths

    def has_file_handle(self, node_id: str) -> bool:
        return node_id in self._file_handles

    def is_note_file(self, name: str) -> bool:
        return name.lower().endswith(self.extensions)

    # --- Connect / scan ---

    def open(
        self,
        picker: DirectoryPicker,
        on_progress: ProgressCallback | None = None,
    ) -> LocalImport:
        """Ask for a directory, connect to it and import it.

        Raises:
            PermissionDenied: the picker was cancelled or access was refused.
        """
        picked = picker()
        if picked is None:
            raise PermissionDenied("Directory selection was cancelled")
        root = Path(picked).expanduser().resolve()
        if not self._request_permission(root):
            raise PermissionDenied(f"No read-write access to {str(root)!r}")

        self._connect(root)
        if self._handle_store is not None:
            self._handle_store.save_root_handle(root)
        return self._scan_root(on_progress)

    def restore_previous_connection(
        self,
        on_progress: ProgressCallback | None = None,
    ) -> LocalImport | None:
        """Reconnect to the root persisted by a previous session.

        Returns None when nothing was persisted or permission is not granted
        again; never raises for those cases.
        """
        if self._handle_store is None:
            return None
        root = self._handle_store.load_root_handle()
        if root is None:
            return None
        if not self._request_permission(root):
            logger.info("Permission for {} not granted, local sync stays off", root)
            return None

        self._connect(root)
        return self._scan_root(on_progress)

    def disconnect(self) -> None:
        """Drop every handle and the persisted root. Files on disk are untouched."""
        if self.root is not None:
            logger.info("Disconnected local folder {}", self.root)
        self.root = None
        self._file_handles.clear()
        self._node_paths.clear()
        if self._handle_store is not None:
            self._handle_store.clear_root_handle()

    def forget(self, node_ids: Iterable[str]) -> None:
        """Drop handles for the given nodes."""
        for node_id in node_ids:
            self._file_handles.pop(node_id, None)
            self._node_paths.pop(node_id, None)

    def retain(self, node_ids: Iterable[str]) -> list[str]:
        """Drop handles for every node not in node_ids. Returns the dropped ids."""
        keep = set(node_ids)
        stale = [nid for nid in self._node_paths if nid not in keep]
        self.forget(stale)
        return stale

    def unique_child_name(self, parent_id: str, base: str) -> str:
        """Return base, or base with -N before the extension, unused on disk under parent_id."""
        segments = self._node_paths.get(parent_id)
        if self.root is None or segments is None:
            return base
        directory = self.root.joinpath(*segments)
        stem, dot, ext = base.rpartition(".")
        if not dot or not stem:
            stem, ext = base, ""
        name = base
        count = 0
        while (directory / name).exists():
            count += 1
            name = f"{stem}-{count}.{ext}" if ext else f"{stem}-{count}"
        return name

    def _connect(self, root: Path) -> None:
        self.root = root
        self._file_handles.clear()
        self._node_paths.clear()

    def _scan_root(self, on_progress: ProgressCallback | None) -> LocalImport:
        assert self.root is not None
        root_id = self._id_factory()
        nodes: list[Node] = [
            Node(
                id=root_id,
                parent_id=None,
                name=self.root.name,
                kind=NodeKind.FOLDER,
                is_open=True,
                created_at=self._clock(),
            )
        ]
        self._node_paths[root_id] = []

        scanned = 0
        # Depth-first, one entry at a time, so progress counts are monotonic
        stack: list[tuple[Iterator[Path], str, list[str]]] = [
            (iter(self._list_dir(self.root)), root_id, [])
        ]
        while stack:
            entries, parent_id, prefix = stack[-1]
            entry = next(entries, None)
            if entry is None:
                stack.pop()
                continue
            segments = [*prefix, entry.name]
            scanned += 1
            if on_progress is not None:
                on_progress(ScanProgress(scanned=scanned, current_path="/".join(segments)))

            node = self._import_entry(entry, parent_id, segments)
            if node is None:
                continue
            nodes.append(node)
            if node.is_folder:
                stack.append((iter(self._list_dir(entry)), node.id, segments))

        logger.info(
            "Scanned {}: {} entries, imported {} nodes", self.root, scanned, len(nodes) - 1
        )
        return LocalImport(root_id=root_id, nodes=tuple(nodes))

    def _list_dir(self, path: Path) -> list[Path]:
        try:
            return sorted(path.iterdir(), key=lambda p: p.name)
        except OSError as e:
            logger.warning("Cannot list {}: {}", path, e)
            return []

    def _import_entry(self, entry: Path, parent_id: str, segments: list[str]) -> Node | None:
        node_id = self._id_factory()
        if entry.is_dir():
            if entry.is_symlink():
                logger.debug("Skipping symlinked directory {}", "/".join(segments))
                return None
            self._node_paths[node_id] = segments
            return Node(
                id=node_id,
                parent_id=parent_id,
                name=entry.name,
                kind=NodeKind.FOLDER,
                is_open=False,
                created_at=self._clock(),
            )

        if not entry.is_file() or not self.is_note_file(entry.name):
            logger.debug("Skipping {}", "/".join(segments))
            return None

        try:
            with open(entry, encoding="utf-8", newline="") as f:
                text = f.read()
            mtime_ms = int(entry.stat().st_mtime * 1000)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Cannot read {}: {}", entry, e)
            return None

        self._file_handles[node_id] = entry
        self._node_paths[node_id] = segments
        return Node(
            id=node_id,
            parent_id=parent_id,
            name=entry.name,
            kind=NodeKind.FILE,
            content=text,
            created_at=mtime_ms or self._clock(),
        )

    # --- Write-back ---

    def write_back(self, node_id: str, content: str) -> bool:
        """Overwrite the file behind node_id. Returns False if it was already identical.

        Raises:
            NotConnected: no directory is connected.
            HandleMissing: node_id was not imported from (or created on) disk.
            LocalSyncError: the write failed.
        """
        if self.root is None:
            raise NotConnected("No local folder connected")
        path = self._file_handles.get(node_id)
        if path is None:
            raise HandleMissing(f"No file handle for node {node_id!r}")

        try:
            with open(path, encoding="utf-8", newline="") as f:
                if f.read() == content:
                    return False
        except (FileNotFoundError, UnicodeDecodeError):
            pass
        except OSError as e:
            raise LocalSyncError(f"Cannot read {str(path)!r}: {e}") from e

        try:
            with open(path, "w", encoding="utf-8", newline="") as f:
                f.write(content)
        except OSError as e:
            raise LocalSyncError(f"Write-back to {str(path)!r} failed: {e}") from e
        logger.debug("Wrote back {} ({} chars)", path, len(content))
        return True

    def create_file_on_disk(
        self,
        node_id: str,
        name: str,
        parent_id: str,
        content: str = "",
    ) -> Path:
        """Create a file for a new note under a folder that is already on disk."""
        segments = self._child_segments(parent_id, name)
        path = self._resolve(segments)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8", newline="") as f:
                f.write(content)
        except OSError as e:
            raise LocalSyncError(f"Cannot create {str(path)!r}: {e}") from e
        self._file_handles[node_id] = path
        self._node_paths[node_id] = segments
        logger.debug("Created file {}", path)
        return path

    def create_folder_on_disk(self, node_id: str, name: str, parent_id: str) -> Path:
        """Create a directory for a new folder under a folder that is already on disk."""
        segments = self._child_segments(parent_id, name)
        path = self._resolve(segments)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LocalSyncError(f"Cannot create {str(path)!r}: {e}") from e
        self._node_paths[node_id] = segments
        logger.debug("Created folder {}", path)
        return path

    def delete_from_disk(self, node_id: str, *, is_folder: bool) -> None:
        """Remove the file or directory behind node_id. The sync root itself is never removed."""
        segments = self._node_paths.get(node_id)
        if not segments:
            raise HandleMissing(f"No disk entry for node {node_id!r}")
        path = self._resolve(segments)
        try:
            if is_folder:
                shutil.rmtree(path)
            else:
                path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise LocalSyncError(f"Cannot remove {str(path)!r}: {e}") from e
        prefix_len = len(segments)
        for other_id, other in list(self._node_paths.items()):
            if other[:prefix_len] == segments:
                self.forget([other_id])
        logger.debug("Removed {}", path)

    def _child_segments(self, parent_id: str, name: str) -> list[str]:
        if self.root is None:
            raise NotConnected("No local folder connected")
        parent = self._node_paths.get(parent_id)
        if parent is None:
            raise HandleMissing(f"Parent {parent_id!r} is not on disk")
        if not name or name in (".", "..") or "/" in name or os.sep in name:
            raise LocalSyncError(f"Invalid file name {name!r}")
        return [*parent, name]

    def _resolve(self, segments: list[str]) -> Path:
        assert self.root is not None
        path = self.root.joinpath(*segments)
        if not str(path.resolve()).startswith(str(self.root) + os.sep):
            msg = f"Path escapes sync root: {str(path)!r}"
            raise LocalSyncError(msg)
        return path
