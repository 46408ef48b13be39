"""Shared test fixtures."""

import itertools
import sqlite3
from collections.abc import Iterator

import pytest

from montana_sync.coordinator import SyncCoordinator
from montana_sync.core.crypto.overlay import EncryptionOverlay
from montana_sync.core.database.state import LocalState
from montana_sync.core.history.recorder import VersionHistory
from montana_sync.core.tree.store import NodeTree
from montana_sync.models.node import AppSettings, Node, NodeKind, Notification
from tests.unit.fakes import FakeScheduler, ManualExecutor


@pytest.fixture(autouse=True)
def _fast_kdf(monkeypatch: pytest.MonkeyPatch) -> None:
    """Full-strength key derivation makes every encrypt take ~100ms."""
    monkeypatch.setattr("montana_sync.core.crypto.envelope.PBKDF2_ITERATIONS", 1_000)


def make_node(
    node_id: str,
    parent_id: str | None = None,
    *,
    kind: NodeKind = NodeKind.FILE,
    name: str | None = None,
    content: str | None = None,
    created_at: int = 1000,
) -> Node:
    return Node(
        id=node_id,
        parent_id=parent_id,
        name=name or node_id,
        kind=kind,
        content=content if content is not None or kind is NodeKind.FOLDER else "",
        created_at=created_at,
    )


@pytest.fixture
def sample_nodes() -> list[Node]:
    """root/ {a/ {a1, a2/ {a2x}}, b}, plus a second root note."""
    return [
        make_node("root", kind=NodeKind.FOLDER, name="Root", created_at=1),
        make_node("a", "root", kind=NodeKind.FOLDER, name="A", created_at=2),
        make_node("a1", "a", content="first", created_at=3),
        make_node("a2", "a", kind=NodeKind.FOLDER, name="A2", created_at=4),
        make_node("a2x", "a2", content="deep", created_at=5),
        make_node("b", "root", content="bee", created_at=6),
        make_node("solo", content="alone", created_at=7),
    ]


@pytest.fixture
def tree(sample_nodes: list[Node]) -> NodeTree:
    counter = itertools.count(1)
    return NodeTree(sample_nodes, clock=lambda: 5000, id_factory=lambda: f"n{next(counter)}")


@pytest.fixture
def state() -> Iterator[LocalState]:
    s = LocalState(sqlite3.connect(":memory:", check_same_thread=False))
    yield s
    s.close()


@pytest.fixture
def history(state: LocalState) -> VersionHistory:
    clock = itertools.count(1)
    return VersionHistory(state.conn, lock=state.lock, clock=lambda: next(clock))


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def executor() -> ManualExecutor:
    return ManualExecutor()


@pytest.fixture
def overlay(tree: NodeTree, executor: ManualExecutor) -> EncryptionOverlay:
    return EncryptionOverlay(tree, executor=executor)


@pytest.fixture
def notifications() -> list[Notification]:
    return []


@pytest.fixture
def make_coordinator(
    tree: NodeTree,
    overlay: EncryptionOverlay,
    history: VersionHistory,
    state: LocalState,
    scheduler: FakeScheduler,
    notifications: list[Notification],
) -> Iterator[object]:
    """Factory for a coordinator wired to the shared fakes."""
    created: list[SyncCoordinator] = []

    def factory(**kwargs: object) -> SyncCoordinator:
        kwargs.setdefault("settings", AppSettings())
        coordinator = SyncCoordinator(
            tree,
            overlay=overlay,
            history=history,
            state=state,
            scheduler=scheduler,
            notify=notifications.append,
            **kwargs,  # type: ignore[arg-type]
        )
        created.append(coordinator)
        return coordinator

    yield factory
    for coordinator in created:
        coordinator.close()
