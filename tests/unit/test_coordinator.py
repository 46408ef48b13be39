"""Tests for SyncCoordinator, the reconciliation policy."""

from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import pytest

from montana_sync.coordinator import MutationGuard, SyncCoordinator
from montana_sync.core.crypto.envelope import decrypt_content, encrypt_content, is_encrypted
from montana_sync.core.crypto.overlay import EncryptionOverlay
from montana_sync.core.database.state import LocalState
from montana_sync.core.history.recorder import VersionHistory
from montana_sync.core.tree.store import NodeTree
from montana_sync.errors import NoteNotUnlocked, RemotePullFailure, RemotePushFailure
from montana_sync.local.directory import LocalDirectorySync
from montana_sync.models.node import AppSettings, NodeKind, Notification, StorageMode
from tests.unit.conftest import make_node
from tests.unit.fakes import FakeRemote, FakeScheduler, ManualExecutor

Factory = Callable[..., SyncCoordinator]
CLOUD = AppSettings(storage_mode=StorageMode.CLOUD, supabase_url="u", supabase_anon_key="k")


@pytest.fixture
def remote() -> FakeRemote:
    remote = FakeRemote()
    remote.add_account("me@example.com", "pw", user_id="u1")
    return remote


@pytest.fixture
def cloud(make_coordinator: Factory, remote: FakeRemote) -> SyncCoordinator:
    return make_coordinator(remote=remote, settings=CLOUD)


def _signed_in(coordinator: SyncCoordinator, scheduler: FakeScheduler) -> None:
    coordinator.sign_in("me@example.com", "pw")
    scheduler.advance(coordinator.guard.cooldown)


# --- Mutation guard ---


def test_guard_is_released_after_cooldown(scheduler: FakeScheduler) -> None:
    guard = MutationGuard(scheduler, 1.2)

    with guard.hold():
        assert guard.active
    assert guard.active
    scheduler.advance(1.1)
    assert guard.active
    scheduler.advance(0.1)
    assert not guard.active


def test_guard_is_released_when_the_body_raises(scheduler: FakeScheduler) -> None:
    guard = MutationGuard(scheduler, 1.2)

    with pytest.raises(RuntimeError), guard.hold():
        raise RuntimeError("boom")
    scheduler.advance(1.2)

    assert not guard.active


def test_nested_hold_restarts_cooldown(scheduler: FakeScheduler) -> None:
    guard = MutationGuard(scheduler, 1.2)

    with guard.hold():
        pass
    scheduler.advance(1.0)
    with guard.hold():
        pass
    scheduler.advance(1.0)
    assert guard.active
    scheduler.advance(0.2)
    assert not guard.active


# --- Hydration ---


def test_first_session_pulls_once(
    cloud: SyncCoordinator, remote: FakeRemote, scheduler: FakeScheduler
) -> None:
    _signed_in(cloud, scheduler)
    user = remote.session_user

    cloud.on_session(user)
    cloud.on_session(user)

    assert remote.pull_calls == 1
    assert cloud.hydrated


def test_endpoint_change_triggers_exactly_one_new_pull(
    cloud: SyncCoordinator, remote: FakeRemote, scheduler: FakeScheduler
) -> None:
    _signed_in(cloud, scheduler)
    remote.endpoint = "https://other.supabase.co"

    assert not cloud.hydrated
    cloud.on_session(remote.session_user)
    cloud.on_session(remote.session_user)

    assert remote.pull_calls == 2


def test_user_change_triggers_new_pull(
    cloud: SyncCoordinator, remote: FakeRemote, scheduler: FakeScheduler
) -> None:
    _signed_in(cloud, scheduler)
    remote.add_account("other@example.com", "pw2", user_id="u2")

    cloud.sign_in("other@example.com", "pw2")

    assert remote.pull_calls == 2


def test_hydration_with_empty_remote_keeps_local_tree(
    cloud: SyncCoordinator, tree: NodeTree, scheduler: FakeScheduler
) -> None:
    before = tree.snapshot()

    _signed_in(cloud, scheduler)

    assert tree.snapshot() is before


def test_hydration_replaces_tree_with_remote(
    cloud: SyncCoordinator, remote: FakeRemote, tree: NodeTree, scheduler: FakeScheduler
) -> None:
    remote.rows = {"r1": make_node("r1", content="from cloud")}

    _signed_in(cloud, scheduler)

    assert tree.ids() == frozenset({"r1"})


def test_failed_hydration_is_retried(
    cloud: SyncCoordinator,
    remote: FakeRemote,
    scheduler: FakeScheduler,
    notifications: list[Notification],
) -> None:
    remote.fail_pull = RemotePullFailure("offline")
    _signed_in(cloud, scheduler)

    assert not cloud.hydrated
    assert notifications[-1] == Notification("error", "Pull failed: offline")
    assert not cloud.guard.active

    remote.fail_pull = None
    cloud.on_session(remote.session_user)
    assert cloud.hydrated
    assert remote.pull_calls == 2


def test_local_mode_does_not_hydrate(make_coordinator: Factory, remote: FakeRemote) -> None:
    coordinator = make_coordinator(remote=remote, settings=AppSettings())

    coordinator.sign_in("me@example.com", "pw")

    assert remote.pull_calls == 0
    assert remote.on_change is None


# --- Realtime ---


def test_realtime_change_during_guard_does_not_pull(
    cloud: SyncCoordinator, remote: FakeRemote, scheduler: FakeScheduler
) -> None:
    _signed_in(cloud, scheduler)
    assert remote.on_change is not None

    assert cloud.push_now()
    remote.emit_change()

    assert remote.pull_calls == 1


def test_realtime_change_after_cooldown_pulls(
    cloud: SyncCoordinator, remote: FakeRemote, tree: NodeTree, scheduler: FakeScheduler
) -> None:
    _signed_in(cloud, scheduler)
    cloud.push_now()
    scheduler.advance(1.2)
    remote.rows["extra"] = make_node("extra", created_at=99)

    remote.emit_change()

    assert remote.pull_calls == 2
    assert "extra" in tree


def test_realtime_empty_pull_keeps_tree(
    cloud: SyncCoordinator, remote: FakeRemote, tree: NodeTree, scheduler: FakeScheduler
) -> None:
    _signed_in(cloud, scheduler)
    remote.emit_change()

    assert remote.pull_calls == 2
    assert "solo" in tree


# --- Auto-push ---


def test_auto_push_is_trailing_debounce(
    cloud: SyncCoordinator, remote: FakeRemote, tree: NodeTree, scheduler: FakeScheduler
) -> None:
    _signed_in(cloud, scheduler)

    cloud.update_content("b", "one")
    scheduler.advance(2.0)
    cloud.update_content("b", "two")
    scheduler.advance(2.9)
    assert remote.push_calls == []

    scheduler.advance(0.1)
    assert len(remote.push_calls) == 1
    pushed, user_id = remote.push_calls[0]
    assert user_id == "u1"
    assert {n.id: n.content for n in pushed}["b"] == "two"


def test_no_auto_push_before_hydration(
    cloud: SyncCoordinator, remote: FakeRemote, scheduler: FakeScheduler
) -> None:
    cloud.update_content("b", "offline edit")
    scheduler.advance(10)

    assert remote.push_calls == []


def test_remote_replacement_does_not_trigger_push(
    cloud: SyncCoordinator, remote: FakeRemote, scheduler: FakeScheduler
) -> None:
    remote.rows = {"r1": make_node("r1")}
    _signed_in(cloud, scheduler)
    scheduler.advance(10)

    assert remote.push_calls == []


def test_auto_push_waits_for_guard(
    cloud: SyncCoordinator, remote: FakeRemote, scheduler: FakeScheduler
) -> None:
    _signed_in(cloud, scheduler)
    cloud.update_content("b", "edit")
    scheduler.advance(2.5)
    cloud.pull_now()

    scheduler.advance(0.5)
    assert remote.push_calls == []

    scheduler.advance(3.0)
    assert len(remote.push_calls) == 1


def test_flush_pushes_pending_change_while_guard_is_held(
    make_coordinator: Factory, remote: FakeRemote, tree: NodeTree
) -> None:
    remote.sign_in("me@example.com", "pw")
    first = make_coordinator(remote=remote, settings=CLOUD)
    first.restore_session()
    first.update_content("b", "edited offline")
    assert first.guard.active

    first.flush()
    first.close()

    assert len(remote.push_calls) == 1
    assert remote.rows["b"].content == "edited offline"

    second = make_coordinator(remote=remote, settings=CLOUD)
    second.restore_session()
    assert tree.require("b").content == "edited offline"


def test_flush_without_pending_change_does_not_push(
    cloud: SyncCoordinator, remote: FakeRemote, scheduler: FakeScheduler
) -> None:
    _signed_in(cloud, scheduler)

    cloud.flush()

    assert remote.push_calls == []


def test_push_failure_notifies_and_releases_guard(
    cloud: SyncCoordinator,
    remote: FakeRemote,
    scheduler: FakeScheduler,
    notifications: list[Notification],
) -> None:
    _signed_in(cloud, scheduler)
    remote.fail_push = RemotePushFailure("row level security")

    assert cloud.push_now() is False
    assert notifications[-1] == Notification("error", "Push failed: row level security")
    scheduler.advance(1.2)
    assert not cloud.guard.active


def test_push_without_session_reports_error(
    cloud: SyncCoordinator, notifications: list[Notification]
) -> None:
    assert cloud.push_now() is False
    assert notifications[-1].level == "error"


# --- Explicit pull ---


def test_explicit_pull_replaces_even_when_empty_and_clears_tabs(
    cloud: SyncCoordinator, tree: NodeTree, scheduler: FakeScheduler, state: LocalState
) -> None:
    _signed_in(cloud, scheduler)
    cloud.open_tab("b")

    assert cloud.pull_now()

    assert len(tree) == 0
    assert cloud.open_tabs == []
    assert state.load_tabs() == []


def test_failed_pull_leaves_tree_untouched(
    cloud: SyncCoordinator, remote: FakeRemote, tree: NodeTree, scheduler: FakeScheduler
) -> None:
    _signed_in(cloud, scheduler)
    before = tree.snapshot()
    remote.fail_pull = RemotePullFailure("timeout")

    assert cloud.pull_now() is False
    assert tree.snapshot() is before


# --- Session ---


def test_sign_out_stops_realtime_and_invalidates_hydration(
    cloud: SyncCoordinator, remote: FakeRemote, scheduler: FakeScheduler
) -> None:
    _signed_in(cloud, scheduler)

    cloud.sign_out()

    assert remote.on_change is None
    assert cloud.user is None
    assert not cloud.hydrated


def test_restore_session_without_start_only_records_user(
    cloud: SyncCoordinator, remote: FakeRemote
) -> None:
    remote.sign_in("me@example.com", "pw")

    user = cloud.restore_session(start=False)

    assert user is not None and cloud.user == user
    assert remote.pull_calls == 0


def test_credential_change_rebuilds_remote(
    make_coordinator: Factory, remote: FakeRemote, scheduler: FakeScheduler
) -> None:
    replacement = FakeRemote(endpoint="https://new.supabase.co")
    coordinator = make_coordinator(
        remote=remote, settings=CLOUD, remote_factory=lambda settings: replacement
    )
    _signed_in(coordinator, scheduler)

    coordinator.update_settings(supabase_url="https://new.supabase.co")

    assert remote.reset_calls == 1
    assert remote.on_change is None
    assert coordinator.remote is replacement
    assert coordinator.user is None


def test_settings_are_persisted(make_coordinator: Factory, state: LocalState) -> None:
    coordinator = make_coordinator()
    coordinator.update_settings(mirror_deletes=True)

    assert state.load_settings().mirror_deletes is True


# --- History ---


def test_two_edits_yield_one_snapshot_of_final_content(
    make_coordinator: Factory, history: VersionHistory, scheduler: FakeScheduler
) -> None:
    coordinator = make_coordinator()

    coordinator.update_content("b", "intermediate")
    scheduler.advance(1.0)
    coordinator.update_content("b", "final")
    scheduler.advance(4.9)
    assert history.list("b") == []

    scheduler.advance(0.1)
    assert [v.content for v in history.list("b")] == ["final"]


def test_history_skips_empty_content(
    make_coordinator: Factory, history: VersionHistory, scheduler: FakeScheduler
) -> None:
    coordinator = make_coordinator()

    coordinator.update_content("b", "")
    scheduler.advance(5.0)

    assert history.list("b") == []


def test_encrypted_edits_are_not_recorded(
    make_coordinator: Factory,
    history: VersionHistory,
    scheduler: FakeScheduler,
    executor: ManualExecutor,
) -> None:
    coordinator = make_coordinator()
    coordinator.lock_note("b", "pw")

    coordinator.update_content("b", "secret edit")
    executor.run_all()
    scheduler.advance(10)

    assert history.list("b") == []


def test_restore_version_routes_through_edit(
    make_coordinator: Factory, history: VersionHistory, tree: NodeTree
) -> None:
    coordinator = make_coordinator()
    old = history.record("b", "b", "old text")
    assert old is not None

    coordinator.restore_version("b", old.id)

    assert tree.require("b").content == "old text"


def test_restore_version_of_other_node_raises(
    make_coordinator: Factory, history: VersionHistory
) -> None:
    coordinator = make_coordinator()
    old = history.record("a1", "a1", "x")
    assert old is not None

    with pytest.raises(KeyError):
        coordinator.restore_version("b", old.id)


# --- Encryption routing ---


def test_edit_of_locked_note_is_refused(
    make_coordinator: Factory, overlay: EncryptionOverlay, tree: NodeTree
) -> None:
    coordinator = make_coordinator()
    coordinator.lock_note("b", "pw")
    coordinator.relock_note("b")

    with pytest.raises(NoteNotUnlocked):
        coordinator.update_content("b", "x")
    with pytest.raises(NoteNotUnlocked):
        coordinator.read_note("b")


def test_edit_of_unlocked_note_reencrypts(
    make_coordinator: Factory, tree: NodeTree, executor: ManualExecutor
) -> None:
    coordinator = make_coordinator()
    coordinator.lock_note("b", "pw")
    coordinator.relock_note("b")
    assert coordinator.unlock_note("b", "pw") == "bee"

    future = coordinator.update_content("b", "new text")
    executor.run_all()

    assert future is not None and future.result() is True
    assert coordinator.read_note("b") == "new text"
    assert decrypt_content(tree.require("b").content or "", "pw") == "new text"


def test_remove_encryption(make_coordinator: Factory, tree: NodeTree) -> None:
    coordinator = make_coordinator()
    coordinator.lock_note("b", "pw")
    coordinator.relock_note("b")

    coordinator.remove_encryption("b", "pw")

    assert tree.require("b").content == "bee"
    assert not coordinator.overlay.is_unlocked("b")


def test_delete_purges_unlocked_plaintext_and_tabs(
    make_coordinator: Factory, overlay: EncryptionOverlay, state: LocalState
) -> None:
    coordinator = make_coordinator()
    coordinator.open_tab("a1")
    coordinator.open_tab("b")
    coordinator.lock_note("a1", "pw")

    coordinator.delete_node("a")

    assert not overlay.is_unlocked("a1")
    assert coordinator.open_tabs == ["b"]
    assert state.load_tabs() == ["b"]


def test_remote_replace_purges_cache(
    cloud: SyncCoordinator,
    remote: FakeRemote,
    overlay: EncryptionOverlay,
    scheduler: FakeScheduler,
) -> None:
    _signed_in(cloud, scheduler)
    cloud.lock_note("b", "pw")
    scheduler.advance(5)
    remote.rows = {"r1": make_node("r1")}

    cloud.pull_now()

    assert overlay.cached_ids() == frozenset()



def test_remote_change_to_unlocked_note_drops_its_plaintext(
    cloud: SyncCoordinator,
    remote: FakeRemote,
    tree: NodeTree,
    overlay: EncryptionOverlay,
    scheduler: FakeScheduler,
) -> None:
    _signed_in(cloud, scheduler)
    cloud.lock_note("b", "pw")
    scheduler.advance(5)
    newer = encrypt_content("written elsewhere", "pw")
    remote.rows["b"] = replace(remote.rows["b"], content=newer)

    cloud.pull_now()

    assert not overlay.is_unlocked("b")
    assert cloud.relock_note("b") is None
    assert tree.require("b").content == newer


def test_unchanged_remote_note_stays_unlocked(
    cloud: SyncCoordinator,
    remote: FakeRemote,
    overlay: EncryptionOverlay,
    scheduler: FakeScheduler,
) -> None:
    _signed_in(cloud, scheduler)
    cloud.lock_note("b", "pw")
    scheduler.advance(5)

    cloud.pull_now()

    assert overlay.plaintext("b") == "bee"


# --- Tree operations and persistence ---


def test_changes_are_persisted(make_coordinator: Factory, state: LocalState) -> None:
    coordinator = make_coordinator()

    node = coordinator.create_node("root", NodeKind.FILE, "fresh")

    saved = state.load_nodes()
    assert saved is not None and node in saved
    assert coordinator.open_tabs == [node.id]


def test_move_into_descendant_is_noop(make_coordinator: Factory, tree: NodeTree) -> None:
    coordinator = make_coordinator()
    assert coordinator.move_node("a", "a2x") is False
    assert tree.require("a").parent_id == "root"


# --- Local folder ---


@pytest.fixture
def notes_dir(tmp_path: Path) -> Path:
    root = tmp_path / "notes"
    (root / "sub").mkdir(parents=True)
    (root / "a.md").write_text("hello", encoding="utf-8")
    (root / "sub" / "c.txt").write_text("world", encoding="utf-8")
    return root


@pytest.fixture
def local(state: LocalState) -> LocalDirectorySync:
    return LocalDirectorySync(handle_store=state)


def _find(tree: NodeTree, name: str) -> str:
    return next(n.id for n in tree.snapshot() if n.name == name)


def test_open_local_folder_adds_subtree(
    make_coordinator: Factory,
    local: LocalDirectorySync,
    notes_dir: Path,
    tree: NodeTree,
    state: LocalState,
) -> None:
    coordinator = make_coordinator(local=local)

    imported = coordinator.open_local_folder(lambda: notes_dir)

    assert imported is not None
    assert imported.root_id in tree
    assert "solo" in tree
    assert coordinator.local_root_id == imported.root_id
    assert state.load_root_node_id() == imported.root_id


def test_open_local_folder_declined(
    make_coordinator: Factory,
    local: LocalDirectorySync,
    notifications: list[Notification],
) -> None:
    coordinator = make_coordinator(local=local)

    assert coordinator.open_local_folder(lambda: None) is None
    assert notifications[-1].level == "info"


def test_edit_writes_back_to_disk(
    make_coordinator: Factory, local: LocalDirectorySync, notes_dir: Path, tree: NodeTree
) -> None:
    coordinator = make_coordinator(local=local)
    coordinator.open_local_folder(lambda: notes_dir)

    coordinator.update_content(_find(tree, "c.txt"), "edited")

    assert (notes_dir / "sub" / "c.txt").read_text(encoding="utf-8") == "edited"


def test_encrypted_note_is_written_to_disk_as_envelope(
    make_coordinator: Factory,
    local: LocalDirectorySync,
    notes_dir: Path,
    tree: NodeTree,
    executor: ManualExecutor,
) -> None:
    coordinator = make_coordinator(local=local)
    coordinator.open_local_folder(lambda: notes_dir)

    coordinator.lock_note(_find(tree, "a.md"), "pw")

    assert is_encrypted((notes_dir / "a.md").read_text(encoding="utf-8"))


def test_failed_write_back_keeps_memory_value(
    make_coordinator: Factory, local: LocalDirectorySync, notes_dir: Path, tree: NodeTree
) -> None:
    coordinator = make_coordinator(local=local)
    coordinator.open_local_folder(lambda: notes_dir)
    note_id = _find(tree, "c.txt")
    (notes_dir / "sub" / "c.txt").unlink()
    (notes_dir / "sub").rmdir()

    coordinator.update_content(note_id, "still here")

    assert tree.require(note_id).content == "still here"


def test_new_note_under_disk_folder_is_created_on_disk(
    make_coordinator: Factory, local: LocalDirectorySync, notes_dir: Path, tree: NodeTree
) -> None:
    coordinator = make_coordinator(local=local)
    coordinator.open_local_folder(lambda: notes_dir)

    note = coordinator.create_node(_find(tree, "sub"), NodeKind.FILE)
    folder = coordinator.create_node(_find(tree, "notes"), NodeKind.FOLDER)
    coordinator.update_content(note.id, "typed")

    assert note.name == "New Note.md"
    assert (notes_dir / "sub" / "New Note.md").read_text(encoding="utf-8") == "typed"
    assert (notes_dir / folder.name).is_dir()


def test_delete_is_mirrored_only_when_enabled(
    make_coordinator: Factory, local: LocalDirectorySync, notes_dir: Path, tree: NodeTree
) -> None:
    coordinator = make_coordinator(local=local)
    coordinator.open_local_folder(lambda: notes_dir)

    coordinator.delete_node(_find(tree, "a.md"))
    assert (notes_dir / "a.md").exists()

    coordinator.update_settings(mirror_deletes=True)
    coordinator.delete_node(_find(tree, "sub"))
    assert not (notes_dir / "sub").exists()


def test_restore_replaces_previous_import(
    make_coordinator: Factory,
    local: LocalDirectorySync,
    notes_dir: Path,
    tree: NodeTree,
    state: LocalState,
) -> None:
    first = make_coordinator(local=local)
    first.open_local_folder(lambda: notes_dir)
    first.close()

    second = make_coordinator(local=LocalDirectorySync(handle_store=state))
    imported = second.restore_local_folder()

    assert imported is not None
    assert [n.name for n in tree.snapshot()].count("a.md") == 1
    assert second.local_root_id == imported.root_id


def test_disconnect_keeps_notes(
    make_coordinator: Factory, local: LocalDirectorySync, notes_dir: Path, tree: NodeTree
) -> None:
    coordinator = make_coordinator(local=local)
    coordinator.open_local_folder(lambda: notes_dir)

    coordinator.disconnect_local()

    assert not local.is_connected
    assert "a.md" in {n.name for n in tree.snapshot()}
    assert coordinator.local_root_id is None
