"""Reconciliation between the note tree, disk, remote store and history."""

import threading
from collections.abc import Callable, Iterator
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import replace

from loguru import logger

from montana_sync.config import (
    AUTO_PUSH_DEBOUNCE_SECONDS,
    GUARD_COOLDOWN_SECONDS,
    HISTORY_DEBOUNCE_SECONDS,
)
from montana_sync.core.crypto.envelope import is_encrypted
from montana_sync.core.crypto.overlay import EncryptionOverlay
from montana_sync.core.database.state import LocalState
from montana_sync.core.history.recorder import VersionHistory
from montana_sync.core.scheduler import Debouncer, TimerScheduler
from montana_sync.core.tree.navigation import is_descendant_or_self
from montana_sync.core.tree.store import DEFAULT_NAMES, NodeTree
from montana_sync.errors import (
    HandleMissing,
    LocalSyncError,
    NoteNotUnlocked,
    PermissionDenied,
    RemoteError,
    RemoteNotConfigured,
)
from montana_sync.local.directory import LocalDirectorySync, LocalImport, ProgressCallback
from montana_sync.models.node import (
    AppSettings,
    ChangeOrigin,
    Node,
    NodeKind,
    Notification,
    StorageMode,
    SyncUser,
    TreeChange,
)
from montana_sync.protocols import (
    CancelHandle,
    DirectoryPicker,
    RemoteProtocol,
    SchedulerProtocol,
)

Notifier = Callable[[Notification], None]
RemoteFactory = Callable[[AppSettings], RemoteProtocol | None]


def log_notification(notification: Notification) -> None:
    level = "ERROR" if notification.level == "error" else "INFO"
    logger.log(level, notification.message)


class MutationGuard:
    """Flag that is set while the client itself talks to the remote store.

    Release is delayed by a cool-down, because the realtime echo of our own
    push can arrive after the push's HTTP response.
    """

    def __init__(self, scheduler: SchedulerProtocol, cooldown: float = GUARD_COOLDOWN_SECONDS):
        self._scheduler = scheduler
        self.cooldown = cooldown
        self._lock = threading.Lock()
        self._depth = 0
        self._release: CancelHandle | None = None
        self._generation = 0

    @property
    def active(self) -> bool:
        with self._lock:
            return self._depth > 0 or self._release is not None

    @contextmanager
    def hold(self) -> Iterator[None]:
        with self._lock:
            self._depth += 1
            self._generation += 1
            if self._release is not None:
                self._release.cancel()
                self._release = None
        try:
            yield
        finally:
            with self._lock:
                self._depth -= 1
                if self._depth == 0:
                    generation = self._generation
                    self._release = self._scheduler.call_later(
                        self.cooldown, lambda: self._clear(generation)
                    )

    def _clear(self, generation: int) -> None:
        with self._lock:
            if generation == self._generation and self._depth == 0:
                self._release = None
                logger.debug("Mutation guard released")


class SyncCoordinator:
    """Owns the sync policy around one NodeTree.

    Every tree change is persisted, mirrored to disk when the node is disk
    backed, fed to the per-note history debounce, and (in cloud mode, once
    hydrated) to the auto-push debounce. Remote and disk failures never
    propagate out of the background paths: remote ones become error
    notifications, disk ones become log warnings.
    """

    def __init__(
        self,
        tree: NodeTree,
        *,
        overlay: EncryptionOverlay,
        history: VersionHistory,
        state: LocalState | None = None,
        remote: RemoteProtocol | None = None,
        remote_factory: RemoteFactory | None = None,
        local: LocalDirectorySync | None = None,
        settings: AppSettings | None = None,
        scheduler: SchedulerProtocol | None = None,
        notify: Notifier = log_notification,
        history_delay: float = HISTORY_DEBOUNCE_SECONDS,
        push_delay: float = AUTO_PUSH_DEBOUNCE_SECONDS,
        guard_cooldown: float = GUARD_COOLDOWN_SECONDS,
    ) -> None:
        self.tree = tree
        self.overlay = overlay
        self.history = history
        self.state = state
        self.remote = remote
        self._remote_factory = remote_factory
        self.local = local
        if settings is None:
            settings = state.load_settings() if state is not None else AppSettings()
        self.settings = settings
        self._scheduler = scheduler or TimerScheduler()
        self._notify = notify
        self._history_delay = history_delay

        self.guard = MutationGuard(self._scheduler, guard_cooldown)
        self._push_debouncer = Debouncer(
            self._scheduler, push_delay, self._auto_push, name="auto-push"
        )
        self._history_debouncers: dict[str, Debouncer] = {}
        self._lock = threading.RLock()

        self.user: SyncUser | None = None
        self._hydrated_key: tuple[str, str] | None = None
        self._subscribed = False

        self.open_tabs: list[str] = state.load_tabs() if state is not None else []
        self._local_root_id = state.load_root_node_id() if state is not None else None
        self._unsubscribe_tree = tree.subscribe(self._on_tree_change)

    # --- Queries ---

    @property
    def cloud_mode(self) -> bool:
        return self.settings.storage_mode is StorageMode.CLOUD

    @property
    def hydrated(self) -> bool:
        return self._hydrated_key is not None and self._hydrated_key == self._session_key()

    @property
    def local_root_id(self) -> str | None:
        return self._local_root_id

    def read_note(self, node_id: str) -> str:
        """Return the readable content of a note.

        Raises:
            NoteNotUnlocked: the note is encrypted and not unlocked.
        """
        node = self.tree.require(node_id)
        plaintext = self.overlay.plaintext(node_id)
        if plaintext is not None:
            return plaintext
        if self.overlay.is_locked(node):
            raise NoteNotUnlocked(f"Note {node.name!r} is encrypted")
        return node.content or ""

    # --- Settings ---

    def update_settings(self, **changes: object) -> AppSettings:
        """Apply and persist settings; a credential change drops the remote client."""
        old = self.settings
        self.settings = replace(old, **changes)  # type: ignore[arg-type]
        if self.state is not None:
            self.state.save_settings(self.settings)

        credentials_changed = (old.supabase_url, old.supabase_anon_key) != (
            self.settings.supabase_url,
            self.settings.supabase_anon_key,
        )
        if credentials_changed and self._remote_factory is not None:
            self._drop_remote()
            self.remote = self._remote_factory(self.settings)
            self.user = None

        if old.storage_mode is not self.settings.storage_mode:
            if self.cloud_mode:
                self.start_cloud()
            else:
                self._push_debouncer.cancel()
                self._unsubscribe_remote()
        return self.settings

    def set_storage_mode(self, mode: StorageMode) -> None:
        self.update_settings(storage_mode=mode)

    # --- Tree operations ---

    def create_node(
        self,
        parent_id: str | None,
        kind: NodeKind,
        name: str | None = None,
    ) -> Node:
        """Create a node; under a disk-backed folder the entry is created on disk too."""
        disk_backed = self._disk_backed(parent_id)
        if disk_backed:
            assert self.local is not None and parent_id is not None
            base = name or DEFAULT_NAMES[kind]
            if kind is NodeKind.FILE and not self.local.is_note_file(base):
                base = f"{base}.md"
            name = self.local.unique_child_name(parent_id, base)

        node = self.tree.create(parent_id, kind, name=name)
        if disk_backed:
            self._mirror_create(node)
        if node.is_file:
            self.open_tab(node.id)
        return node

    def rename_node(self, node_id: str, name: str) -> None:
        self.tree.rename(node_id, name)

    def move_node(self, node_id: str, new_parent_id: str | None) -> bool:
        return self.tree.move(node_id, new_parent_id)

    def toggle_folder(self, node_id: str) -> None:
        self.tree.toggle_open(node_id)

    def delete_node(self, node_id: str) -> tuple[str, ...]:
        node = self.tree.require(node_id)
        if self.settings.mirror_deletes and self.local is not None and self.local.owns(node_id):
            try:
                self.local.delete_from_disk(node_id, is_folder=node.is_folder)
            except LocalSyncError as e:
                logger.warning("Could not remove {!r} from disk: {}", node.name, e)
        return self.tree.delete(node_id)

    def update_content(self, node_id: str, content: str) -> "Future[bool] | None":
        """Route an edit through the encryption overlay when the note is unlocked.

        Returns the re-encryption future for unlocked notes, else None.

        Raises:
            NoteNotUnlocked: the note is encrypted and locked.
        """
        if self.overlay.is_unlocked(node_id):
            return self.overlay.edit(node_id, content)
        node = self.tree.require(node_id)
        if self.overlay.is_locked(node):
            raise NoteNotUnlocked(f"Note {node.name!r} is encrypted, unlock it first")
        self.tree.update_content(node_id, content)
        return None

    # --- Tabs ---

    def open_tab(self, node_id: str) -> None:
        with self._lock:
            if node_id in self.open_tabs:
                return
            self.open_tabs.append(node_id)
            self._save_tabs()

    def close_tab(self, node_id: str) -> None:
        with self._lock:
            if node_id not in self.open_tabs:
                return
            self.open_tabs.remove(node_id)
            self._save_tabs()

    def _save_tabs(self) -> None:
        if self.state is not None:
            self.state.save_tabs(self.open_tabs)

    # --- Encryption ---

    def lock_note(self, node_id: str, password: str) -> str:
        self._cancel_history(node_id)
        return self.overlay.lock(node_id, password)

    def unlock_note(self, node_id: str, password: str) -> str:
        """Decrypt a note for editing. Plain notes are returned as they are.

        Raises:
            WrongPasswordOrCorrupt: decryption failed.
        """
        node = self.tree.require(node_id)
        if not is_encrypted(node.content):
            return node.content or ""
        return self.overlay.unlock(node_id, node.content or "", password)

    def relock_note(self, node_id: str) -> str | None:
        self._cancel_history(node_id)
        return self.overlay.relock(node_id)

    def remove_encryption(self, node_id: str, password: str) -> None:
        """Store an encrypted note as plaintext again.

        Raises:
            WrongPasswordOrCorrupt: decryption failed.
        """
        plaintext = self.unlock_note(node_id, password)
        self.overlay.discard(node_id)
        self.tree.update_content(node_id, plaintext)

    # --- History ---

    def restore_version(self, node_id: str, version_id: str) -> "Future[bool] | None":
        snapshot = self.history.get(version_id)
        if snapshot is None or snapshot.node_id != node_id:
            msg = f"No version {version_id!r} for node {node_id!r}"
            raise KeyError(msg)
        result = self.update_content(node_id, snapshot.content)
        self._notify(Notification("success", f"Restored version of {snapshot.name!r}"))
        return result

    def _schedule_history(self, node_id: str) -> None:
        with self._lock:
            debouncer = self._history_debouncers.get(node_id)
            if debouncer is None:
                debouncer = Debouncer(
                    self._scheduler,
                    self._history_delay,
                    lambda: self._record_history(node_id),
                    name=f"history {node_id}",
                )
                self._history_debouncers[node_id] = debouncer
        debouncer.trigger()

    def _record_history(self, node_id: str) -> None:
        with self._lock:
            self._history_debouncers.pop(node_id, None)
        node = self.tree.get(node_id)
        if node is None or not node.is_file:
            return
        if not node.content or is_encrypted(node.content):
            return
        self.history.record(node_id, node.name, node.content)

    def _cancel_history(self, node_id: str) -> None:
        with self._lock:
            debouncer = self._history_debouncers.pop(node_id, None)
        if debouncer is not None:
            debouncer.cancel()

    # --- Local directory ---

    def open_local_folder(
        self,
        picker: DirectoryPicker,
        on_progress: ProgressCallback | None = None,
    ) -> LocalImport | None:
        """Connect a directory and import it. Returns None if access was declined."""
        if self.local is None:
            msg = "Local directory sync is not available"
            raise LocalSyncError(msg)
        try:
            imported = self.local.open(picker, on_progress)
        except PermissionDenied as e:
            logger.info("Local sync not available: {}", e)
            self._notify(Notification("info", "Folder access was not granted"))
            return None
        self._install_import(imported)
        return imported

    def restore_local_folder(
        self,
        on_progress: ProgressCallback | None = None,
    ) -> LocalImport | None:
        """Reconnect to the folder of a previous session, replacing its old import."""
        if self.local is None:
            return None
        imported = self.local.restore_previous_connection(on_progress)
        if imported is not None:
            self._install_import(imported)
        return imported

    def disconnect_local(self) -> None:
        if self.local is None:
            return
        self.local.disconnect()
        self._local_root_id = None
        self._notify(Notification("info", "Local folder disconnected"))

    def _install_import(self, imported: LocalImport) -> None:
        previous = self._local_root_id
        stale = set(self.tree.subtree_ids(previous)) if previous in self.tree else set()
        kept = [n for n in self.tree.snapshot() if n.id not in stale]
        self.tree.replace_all([*kept, *imported.nodes], origin=ChangeOrigin.LOCAL)
        self._local_root_id = imported.root_id
        if self.state is not None:
            self.state.save_root_node_id(imported.root_id)
        files = sum(1 for n in imported.nodes if n.is_file)
        self._notify(
            Notification(
                "success",
                f"{files} files loaded from {self.local.folder_name if self.local else '?'}, "
                "two-way sync active",
            )
        )

    def _disk_backed(self, parent_id: str | None) -> bool:
        return (
            parent_id is not None
            and self.local is not None
            and self.local.is_connected
            and self.local.owns(parent_id)
        )

    def _in_local_subtree(self, node_id: str) -> bool:
        root_id = self._local_root_id
        if root_id is None:
            return False
        by_id = {n.id: n for n in self.tree.snapshot()}
        return is_descendant_or_self(by_id, candidate_id=node_id, ancestor_id=root_id)

    def _mirror_create(self, node: Node) -> None:
        assert self.local is not None and node.parent_id is not None
        try:
            if node.is_file:
                self.local.create_file_on_disk(node.id, node.name, node.parent_id, node.content or "")
            else:
                self.local.create_folder_on_disk(node.id, node.name, node.parent_id)
        except LocalSyncError as e:
            logger.warning("Could not create {!r} on disk: {}", node.name, e)

    def _write_back(self, node: Node) -> None:
        local = self.local
        if local is None or not local.is_connected or node.content is None:
            return
        if not local.has_file_handle(node.id) and not self._in_local_subtree(node.id):
            return
        try:
            local.write_back(node.id, node.content)
        except HandleMissing as e:
            logger.warning("Skipping write-back: {}", e)
        except LocalSyncError as e:
            logger.warning("Write-back of {!r} failed: {}", node.name, e)

    # --- Remote ---

    def sign_up(self, email: str, password: str) -> SyncUser:
        user = self._require_remote().sign_up(email, password)
        self._notify(Notification("success", f"Account created for {user.email}"))
        self.on_session(user)
        return user

    def sign_in(self, email: str, password: str) -> SyncUser:
        user = self._require_remote().sign_in(email, password)
        self._notify(Notification("success", f"Signed in as {user.email}"))
        self.on_session(user)
        return user

    def sign_out(self) -> None:
        self._push_debouncer.cancel()
        self._unsubscribe_remote()
        remote = self.remote
        self.user = None
        self._hydrated_key = None
        if remote is not None:
            try:
                remote.sign_out()
            except RemoteError as e:
                self._notify(Notification("error", f"Sign-out failed: {e}"))
                return
        self._notify(Notification("info", "Signed out"))

    def restore_session(self, *, start: bool = True) -> SyncUser | None:
        """Resume a stored remote session, if any.

        With start=False the user is only recorded; no hydration pull and no
        realtime subscription happen.
        """
        if self.remote is None:
            return None
        try:
            user = self.remote.get_session()
        except RemoteError as e:
            logger.warning("Could not restore session: {}", e)
            return None
        if start:
            self.on_session(user)
        else:
            self.user = user
        return user

    def on_session(self, user: SyncUser | None) -> None:
        """React to a session change: hydrate once and follow remote changes."""
        if user != self.user:
            self._unsubscribe_remote()
        self.user = user
        if user is None:
            self._hydrated_key = None
            return
        if self.cloud_mode:
            self.start_cloud()

    def start_cloud(self) -> bool:
        """Hydrate (once per session key) and subscribe to realtime changes."""
        if not self.ensure_hydrated():
            return False
        if not self._subscribed and self.remote is not None:
            self.remote.subscribe_to_changes(self.handle_remote_change)
            self._subscribed = True
        return True

    def ensure_hydrated(self) -> bool:
        """Pull once for the current user and endpoint."""
        key = self._session_key()
        if key is None or not self.cloud_mode:
            return False
        if self._hydrated_key == key:
            return True
        if not self._pull(replace_if_empty=False):
            return False
        self._hydrated_key = key
        logger.info("Hydrated from {} for {}", key[1], self.user.email if self.user else key[0])
        return True

    def push_now(self) -> bool:
        """Push the whole tree. Failures become an error notification."""
        if not self._push():
            return False
        self._notify(Notification("success", f"Pushed {len(self.tree)} nodes"))
        return True

    def pull_now(self) -> bool:
        """Replace the tree with the remote one, even if that is empty."""
        if not self._pull(replace_if_empty=True):
            return False
        with self._lock:
            self.open_tabs.clear()
            self._save_tabs()
        key = self._session_key()
        if key is not None:
            self._hydrated_key = key
        self._notify(Notification("success", f"Pulled {len(self.tree)} nodes"))
        return True

    def handle_remote_change(self) -> None:
        """Realtime callback: something changed remotely, pull it all."""
        if self.guard.active:
            logger.debug("Ignoring realtime change while our own mutation settles")
            return
        if not self.hydrated:
            self.ensure_hydrated()
            return
        self._pull(replace_if_empty=False)

    def _session_key(self) -> tuple[str, str] | None:
        if self.user is None or self.remote is None:
            return None
        return (self.user.id, self.remote.endpoint)

    def _require_remote(self) -> RemoteProtocol:
        if self.remote is None:
            msg = "Remote store is not configured"
            raise RemoteNotConfigured(msg)
        return self.remote

    def _push(self) -> bool:
        remote, user = self.remote, self.user
        if remote is None or user is None:
            self._notify(Notification("error", "Sign in to a configured remote store first"))
            return False
        with self.guard.hold():
            try:
                remote.push_all(list(self.tree.snapshot()), user.id)
            except RemoteError as e:
                self._notify(Notification("error", f"Push failed: {e}"))
                return False
        return True

    def _pull(self, *, replace_if_empty: bool) -> bool:
        remote = self.remote
        if remote is None or self.user is None:
            self._notify(Notification("error", "Sign in to a configured remote store first"))
            return False
        with self.guard.hold():
            try:
                nodes = remote.pull_all()
            except RemoteError as e:
                self._notify(Notification("error", f"Pull failed: {e}"))
                return False
            if not nodes and not replace_if_empty:
                logger.info("Remote store is empty, keeping the local tree")
                return True
            self._forget_superseded_plaintext(nodes)
            self.tree.replace_all(nodes, origin=ChangeOrigin.REMOTE)
        return True

    def _forget_superseded_plaintext(self, incoming: list[Node]) -> None:
        # Cached plaintext must not outlive the envelope it was decrypted from
        current = {n.id: n.content for n in self.tree.snapshot()}
        for node in incoming:
            if self.overlay.is_unlocked(node.id) and current.get(node.id) != node.content:
                self.overlay.discard(node.id)
                logger.info("Note {} changed remotely, it has to be unlocked again", node.id)

    def _auto_push(self) -> None:
        if not (self.cloud_mode and self.hydrated):
            return
        if self.guard.active:
            self._push_debouncer.trigger()
            return
        self._push()

    def _unsubscribe_remote(self) -> None:
        if self._subscribed and self.remote is not None:
            self.remote.unsubscribe()
        self._subscribed = False

    def _drop_remote(self) -> None:
        self._push_debouncer.cancel()
        self._unsubscribe_remote()
        if self.remote is not None:
            self.remote.reset()
        self._hydrated_key = None

    # --- Tree listener ---

    def _on_tree_change(self, change: TreeChange) -> None:
        if self.state is not None:
            self.state.save_nodes(change.nodes)

        if change.kind in ("delete", "replace"):
            self._purge(change)

        if change.kind == "content":
            for node_id in change.node_ids:
                node = self.tree.get(node_id)
                if node is None or not node.is_file:
                    continue
                if change.origin is not ChangeOrigin.REMOTE:
                    self._write_back(node)
                if not is_encrypted(node.content):
                    self._schedule_history(node_id)

        if (
            change.origin is not ChangeOrigin.REMOTE
            and self.cloud_mode
            and self.hydrated
        ):
            self._push_debouncer.trigger()

    def _purge(self, change: TreeChange) -> None:
        alive = {n.id for n in change.nodes}
        self.overlay.retain(alive)
        if self.local is not None:
            self.local.retain(alive)
        with self._lock:
            gone = [nid for nid in self._history_debouncers if nid not in alive]
            tabs = [nid for nid in self.open_tabs if nid in alive]
            tabs_changed = tabs != self.open_tabs
            self.open_tabs = tabs
        for nid in gone:
            self._cancel_history(nid)
        if tabs_changed:
            self._save_tabs()
        if self._local_root_id is not None and self._local_root_id not in alive:
            self._local_root_id = None

    # --- Lifecycle ---

    def flush(self) -> None:
        """Run pending history snapshots now and push pending changes.

        The pending push goes out even while the mutation guard is held; the
        guard only filters incoming realtime events.
        """
        with self._lock:
            debouncers = list(self._history_debouncers.values())
        for debouncer in debouncers:
            debouncer.flush()
        if not self._push_debouncer.pending:
            return
        self._push_debouncer.cancel()
        if self.cloud_mode and self.hydrated:
            self._push()

    def close(self) -> None:
        self._unsubscribe_tree()
        self._push_debouncer.cancel()
        with self._lock:
            debouncers = list(self._history_debouncers.values())
            self._history_debouncers.clear()
        for debouncer in debouncers:
            debouncer.cancel()
        self._unsubscribe_remote()
