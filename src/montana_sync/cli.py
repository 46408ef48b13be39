"""CLI for montana-sync: edit, encrypt and synchronize the note tree."""

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Annotated, NoReturn

import typer
from loguru import logger

from montana_sync.config import resolve_data_directory
from montana_sync.coordinator import SyncCoordinator
from montana_sync.core.crypto.envelope import is_encrypted
from montana_sync.core.crypto.overlay import EncryptionOverlay
from montana_sync.core.database.state import LocalState
from montana_sync.core.history.recorder import VersionHistory
from montana_sync.core.tree.navigation import get_breadcrumbs
from montana_sync.core.tree.render import render_outline
from montana_sync.core.tree.store import NodeTree
from montana_sync.errors import MontanaSyncError
from montana_sync.local.directory import LocalDirectorySync
from montana_sync.logging_config import configure_logging
from montana_sync.models.node import AppSettings, Node, NodeKind, Notification, ScanProgress, StorageMode
from montana_sync.remote.api import SupabaseApi
from montana_sync.remote.sync import RemoteSync

app = typer.Typer(help="Montana notes: local, on-disk and cloud-synced note tree.")

DataDirOption = Annotated[
    Path | None,
    typer.Option("--data-dir", "-d", help="State database directory"),
]


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    configure_logging(verbose=verbose)


# --- Workspace ---


@dataclass
class Workspace:
    state: LocalState
    tree: NodeTree
    overlay: EncryptionOverlay
    coordinator: SyncCoordinator
    failed: bool = False


def build_remote(settings: AppSettings, state: LocalState) -> RemoteSync | None:
    """Remote adapter for the configured store, or None if none is configured."""
    if not settings.remote_configured:
        return None
    api = SupabaseApi(
        settings.supabase_url or "", settings.supabase_anon_key or "", session_store=state
    )
    return RemoteSync(api)


@contextmanager
def open_workspace(data_dir: Path | None, *, sync: bool = False) -> Iterator[Workspace]:
    """Load the persisted tree and wire the sync engine around it.

    With sync=True the previous local folder is reconnected and, in cloud
    mode, the stored session is resumed so changes are mirrored and pushed.
    Pending history snapshots and pushes are flushed on exit.
    """
    state = LocalState.open(data_dir or resolve_data_directory())
    settings = state.load_settings()
    tree = NodeTree(state.load_nodes() or ())
    overlay = EncryptionOverlay(tree)
    ws: Workspace

    def notify(notification: Notification) -> None:
        if notification.level == "error":
            ws.failed = True
            typer.echo(notification.message, err=True)
        else:
            typer.echo(notification.message)

    coordinator = SyncCoordinator(
        tree,
        overlay=overlay,
        history=VersionHistory(state.conn, lock=state.lock),
        state=state,
        remote=build_remote(settings, state),
        remote_factory=lambda s: build_remote(s, state),
        local=LocalDirectorySync(handle_store=state),
        settings=settings,
        notify=notify,
    )
    ws = Workspace(state=state, tree=tree, overlay=overlay, coordinator=coordinator)
    try:
        if sync:
            coordinator.restore_local_folder()
            if coordinator.cloud_mode:
                coordinator.restore_session()
        yield ws
        coordinator.flush()
    finally:
        coordinator.close()
        overlay.shutdown()
        state.close()


def _fail(message: str) -> NoReturn:
    typer.echo(message, err=True)
    raise typer.Exit(1)


def resolve_node(tree: NodeTree, ref: str) -> Node:
    """Find a node by id, by name path ("Folder/note.md") or by unique id prefix."""
    node = tree.get(ref)
    if node is not None:
        return node

    parent_id: str | None = None
    found: Node | None = None
    for part in [p for p in ref.split("/") if p]:
        found = next((c for c in tree.children(parent_id) if c.name == part), None)
        if found is None:
            break
        parent_id = found.id
    if found is not None:
        return found

    matches = [n for n in tree.snapshot() if n.id.startswith(ref)]
    if len(matches) == 1 and len(ref) >= 4:
        return matches[0]
    _fail(f"Node '{ref}' not found.")


def node_path(tree: NodeTree, node: Node) -> str:
    """Name path of a node, the same form resolve_node accepts."""
    by_id = {n.id: n for n in tree.snapshot()}
    return "/".join([*(p.name for p in get_breadcrumbs(by_id, node.id)), node.name])


def _print_progress(progress: ScanProgress) -> None:
    logger.debug("[{}] {}", progress.scanned, progress.current_path)


def _read_text(text: str | None, from_file: Path | None) -> str:
    if text is not None:
        return text
    if from_file is not None:
        return from_file.read_text(encoding="utf-8")
    return typer.get_text_stream("stdin").read()


# --- Settings and account ---


@app.command()
def configure(
    url: Annotated[str | None, typer.Option("--url", help="Remote store URL")] = None,
    anon_key: Annotated[str | None, typer.Option("--anon-key", help="Remote anon key")] = None,
    mode: Annotated[StorageMode | None, typer.Option("--mode", help="Storage mode")] = None,
    mirror_deletes: Annotated[
        bool | None,
        typer.Option("--mirror-deletes/--no-mirror-deletes", help="Delete files on disk too"),
    ] = None,
    data_dir: DataDirOption = None,
) -> None:
    """Show or change settings."""
    changes: dict[str, object] = {}
    if url is not None:
        changes["supabase_url"] = url
    if anon_key is not None:
        changes["supabase_anon_key"] = anon_key
    if mode is not None:
        changes["storage_mode"] = mode
    if mirror_deletes is not None:
        changes["mirror_deletes"] = mirror_deletes

    with open_workspace(data_dir) as ws:
        settings = ws.coordinator.settings
        if changes:
            settings = ws.coordinator.update_settings(**changes)
        typer.echo(f"storage mode:   {settings.storage_mode.value}")
        typer.echo(f"remote url:     {settings.supabase_url or '-'}")
        typer.echo(f"anon key:       {'set' if settings.supabase_anon_key else '-'}")
        typer.echo(f"mirror deletes: {'yes' if settings.mirror_deletes else 'no'}")


@app.command()
def signup(
    email: str = typer.Argument(..., help="Account email"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
    data_dir: DataDirOption = None,
) -> None:
    """Create a remote account."""
    with open_workspace(data_dir) as ws:
        try:
            ws.coordinator.sign_up(email, password)
        except MontanaSyncError as e:
            _fail(str(e))


@app.command()
def signin(
    email: str = typer.Argument(..., help="Account email"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    data_dir: DataDirOption = None,
) -> None:
    """Sign in to the remote store (pulls once in cloud mode)."""
    with open_workspace(data_dir) as ws:
        try:
            ws.coordinator.sign_in(email, password)
        except MontanaSyncError as e:
            _fail(str(e))
    if ws.failed:
        raise typer.Exit(1)


@app.command()
def signout(data_dir: DataDirOption = None) -> None:
    """Sign out of the remote store."""
    with open_workspace(data_dir) as ws:
        ws.coordinator.sign_out()


@app.command()
def whoami(data_dir: DataDirOption = None) -> None:
    """Show the signed-in user."""
    with open_workspace(data_dir) as ws:
        user = ws.coordinator.restore_session(start=False)
        if user is None:
            _fail("Not signed in.")
        else:
            typer.echo(f"{user.email}  [id={user.id}]")


# --- Remote sync ---


@app.command()
def push(data_dir: DataDirOption = None) -> None:
    """Replace the remote tree with the local one."""
    with open_workspace(data_dir) as ws:
        ws.coordinator.restore_session(start=False)
        ok = ws.coordinator.push_now()
    if not ok:
        raise typer.Exit(1)


@app.command()
def pull(data_dir: DataDirOption = None) -> None:
    """Replace the local tree with the remote one."""
    with open_workspace(data_dir) as ws:
        ws.coordinator.restore_session(start=False)
        ok = ws.coordinator.pull_now()
    if not ok:
        raise typer.Exit(1)


@app.command()
def watch(data_dir: DataDirOption = None) -> None:
    """Stay connected: follow remote changes and auto-push local ones."""
    with open_workspace(data_dir, sync=True) as ws:
        coordinator = ws.coordinator
        if coordinator.cloud_mode and coordinator.user is None:
            _fail("Not signed in.")
        typer.echo("Watching for changes, press Ctrl-C to stop.")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            typer.echo("Stopping.")


# --- Local folder ---


@app.command(name="import-dir")
def import_dir(
    path: Path = typer.Argument(..., help="Directory to import and keep in sync"),
    data_dir: DataDirOption = None,
) -> None:
    """Import a directory of notes and connect it for write-back."""
    with open_workspace(data_dir) as ws:
        imported = ws.coordinator.open_local_folder(lambda: path, on_progress=_print_progress)
    if imported is None:
        raise typer.Exit(1)


@app.command()
def reconnect(data_dir: DataDirOption = None) -> None:
    """Re-scan the previously connected directory."""
    with open_workspace(data_dir) as ws:
        imported = ws.coordinator.restore_local_folder(on_progress=_print_progress)
        if imported is None:
            _fail("No local folder to reconnect.")


@app.command()
def disconnect(data_dir: DataDirOption = None) -> None:
    """Forget the connected directory. Files and notes are kept."""
    with open_workspace(data_dir) as ws:
        ws.coordinator.disconnect_local()


# --- Notes ---


@app.command()
def tree(
    node: Annotated[str | None, typer.Argument(help="Start node (id or path)")] = None,
    max_depth: Annotated[
        int | None,
        typer.Option("--max-depth", "-m", help="Max depth levels to render"),
    ] = None,
    ids: bool = typer.Option(False, "--ids", help="Show node ids"),
    data_dir: DataDirOption = None,
) -> None:
    """Print the note tree as an outline."""
    with open_workspace(data_dir) as ws:
        node_id = resolve_node(ws.tree, node).id if node else None
        output = render_outline(ws.tree, node_id=node_id, max_depth=max_depth, show_ids=ids)
        typer.echo(output.rstrip("\n") or "(empty)")


@app.command()
def new(
    name: Annotated[str | None, typer.Argument(help="Name of the new node")] = None,
    parent: Annotated[str | None, typer.Option("--parent", "-p", help="Parent folder")] = None,
    folder: bool = typer.Option(False, "--folder", help="Create a folder instead of a note"),
    data_dir: DataDirOption = None,
) -> None:
    """Create a note or folder."""
    with open_workspace(data_dir, sync=True) as ws:
        parent_id = None
        if parent:
            parent_node = resolve_node(ws.tree, parent)
            if not parent_node.is_folder:
                _fail(f"'{parent}' is not a folder.")
            parent_id = parent_node.id
        kind = NodeKind.FOLDER if folder else NodeKind.FILE
        node = ws.coordinator.create_node(parent_id, kind, name)
        typer.echo(f"Created {node.name}  [id={node.id}]")


@app.command()
def show(
    node: str = typer.Argument(..., help="Note (id or path)"),
    password: Annotated[
        str | None, typer.Option("--password", help="Password of an encrypted note")
    ] = None,
    data_dir: DataDirOption = None,
) -> None:
    """Print the content of a note."""
    with open_workspace(data_dir) as ws:
        target = resolve_node(ws.tree, node)
        try:
            if password is not None:
                ws.coordinator.unlock_note(target.id, password)
            typer.echo(ws.coordinator.read_note(target.id))
        except MontanaSyncError as e:
            _fail(str(e))


@app.command()
def edit(
    node: str = typer.Argument(..., help="Note (id or path)"),
    text: Annotated[str | None, typer.Option("--text", "-t", help="New content")] = None,
    from_file: Annotated[
        Path | None, typer.Option("--file", "-f", help="Read new content from a file")
    ] = None,
    password: Annotated[
        str | None, typer.Option("--password", help="Password of an encrypted note")
    ] = None,
    data_dir: DataDirOption = None,
) -> None:
    """Replace the content of a note (reads stdin when no text is given)."""
    content = _read_text(text, from_file)
    with open_workspace(data_dir, sync=True) as ws:
        target = resolve_node(ws.tree, node)
        if not target.is_file:
            _fail(f"'{node}' is not a note.")
        try:
            if password is not None:
                ws.coordinator.unlock_note(target.id, password)
            pending = ws.coordinator.update_content(target.id, content)
            if pending is not None:
                pending.result()
                ws.coordinator.relock_note(target.id)
        except MontanaSyncError as e:
            _fail(str(e))
        typer.echo(f"Saved {target.name}")


@app.command()
def history(
    node: str = typer.Argument(..., help="Note (id or path)"),
    data_dir: DataDirOption = None,
) -> None:
    """List the stored versions of a note, newest first."""
    with open_workspace(data_dir) as ws:
        target = resolve_node(ws.tree, node)
        versions = ws.coordinator.history.list(target.id)
        typer.echo(f"{node_path(ws.tree, target)}: {len(versions)} versions:\n")
        for v in reversed(versions):
            stamp = datetime.fromtimestamp(v.timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")
            preview = v.content.replace("\n", " ")[:60]
            typer.echo(f"  {stamp}  {preview}")
            typer.echo(f"    id={v.id}")


@app.command()
def restore(
    node: str = typer.Argument(..., help="Note (id or path)"),
    version_id: str = typer.Argument(..., help="Version id from 'history'"),
    data_dir: DataDirOption = None,
) -> None:
    """Put an older version of a note back."""
    with open_workspace(data_dir, sync=True) as ws:
        target = resolve_node(ws.tree, node)
        try:
            ws.coordinator.restore_version(target.id, version_id)
        except KeyError:
            _fail(f"Version '{version_id}' not found for '{node}'.")
        except MontanaSyncError as e:
            _fail(str(e))


@app.command()
def lock(
    node: str = typer.Argument(..., help="Note (id or path)"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
    data_dir: DataDirOption = None,
) -> None:
    """Encrypt a note with a password."""
    with open_workspace(data_dir, sync=True) as ws:
        target = resolve_node(ws.tree, node)
        if not target.is_file:
            _fail(f"'{node}' is not a note.")
        try:
            ws.coordinator.lock_note(target.id, password)
        except MontanaSyncError as e:
            _fail(str(e))
        typer.echo(f"Encrypted {target.name}")


@app.command()
def unlock(
    node: str = typer.Argument(..., help="Note (id or path)"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    remove: bool = typer.Option(False, "--remove", help="Store the note unencrypted again"),
    data_dir: DataDirOption = None,
) -> None:
    """Decrypt a note and print it, or remove its encryption with --remove."""
    with open_workspace(data_dir, sync=bool(remove)) as ws:
        target = resolve_node(ws.tree, node)
        if not is_encrypted(target.content):
            _fail(f"'{node}' is not encrypted.")
        try:
            if remove:
                ws.coordinator.remove_encryption(target.id, password)
            else:
                plaintext = ws.coordinator.unlock_note(target.id, password)
        except MontanaSyncError as e:
            _fail(str(e))
        if remove:
            typer.echo(f"Removed encryption from {target.name}")
        else:
            typer.echo(plaintext)
