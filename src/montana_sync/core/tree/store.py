"""In-memory note tree with replace-on-write snapshots."""

import threading
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import replace

from loguru import logger

from montana_sync.core.tree.navigation import (
    build_children_index,
    collect_subtree,
    is_descendant_or_self,
    sort_siblings,
)
from montana_sync.errors import InvalidMove, NodeNotFound
from montana_sync.models.node import ChangeOrigin, Node, NodeKind, TreeChange

TreeListener = Callable[[TreeChange], None]

DEFAULT_NAMES = {NodeKind.FOLDER: "New Folder", NodeKind.FILE: "New Note"}


def now_ms() -> int:
    return int(time.time() * 1000)


def new_node_id() -> str:
    return uuid.uuid4().hex


class NodeTree:
    """The canonical document tree.

    Nodes live in an id index with a parent -> children index beside it.
    Every mutation builds a fresh index and a fresh immutable tuple of all
    nodes, so observers always see one coherent tree, never a half-applied
    change. Mutations are serialized by a lock; listeners are called after
    the lock is released.
    """

    def __init__(
        self,
        nodes: Iterable[Node] = (),
        *,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = new_node_id,
    ) -> None:
        self._clock = clock
        self._id_factory = id_factory
        self._lock = threading.RLock()
        self._listeners: list[TreeListener] = []
        self._by_id: dict[str, Node] = {}
        self._children: dict[str | None, list[str]] = {}
        self._snapshot: tuple[Node, ...] = ()
        self._install(list(nodes))

    # --- Reads ---

    def snapshot(self) -> tuple[Node, ...]:
        """The current full node collection."""
        return self._snapshot

    def get(self, node_id: str) -> Node | None:
        return self._by_id.get(node_id)

    def require(self, node_id: str) -> Node:
        node = self._by_id.get(node_id)
        if node is None:
            raise NodeNotFound(f"Node {node_id!r} not found")
        return node

    def ids(self) -> frozenset[str]:
        return frozenset(self._by_id)

    def children(self, parent_id: str | None) -> tuple[Node, ...]:
        """Direct children of parent_id (None for roots), folders first."""
        by_id = self._by_id
        return tuple(sort_siblings(by_id[c] for c in self._children.get(parent_id, ())))

    def roots(self) -> tuple[Node, ...]:
        return self.children(None)

    def subtree_ids(self, node_id: str) -> list[str]:
        return collect_subtree(self._children, node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._by_id

    def __len__(self) -> int:
        return len(self._snapshot)

    # --- Listeners ---

    def subscribe(self, listener: TreeListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Mutations ---

    def create(
        self,
        parent_id: str | None,
        kind: NodeKind,
        *,
        name: str | None = None,
        content: str | None = None,
        origin: ChangeOrigin = ChangeOrigin.USER,
    ) -> Node:
        """Create a node under parent_id (None for a root)."""
        with self._lock:
            if parent_id is not None:
                self.require(parent_id)
            node = Node(
                id=self._id_factory(),
                parent_id=parent_id,
                name=name if name is not None else DEFAULT_NAMES[kind],
                kind=kind,
                content=(content or "") if kind is NodeKind.FILE else None,
                is_open=True,
                created_at=self._clock(),
            )
            change = self._commit([*self._snapshot, node], "create", (node.id,), origin)
        self._notify(change)
        return node

    def rename(self, node_id: str, name: str, *, origin: ChangeOrigin = ChangeOrigin.USER) -> None:
        with self._lock:
            change = self._replace_node(self.require(node_id), "rename", origin, name=name)
        self._notify(change)

    def toggle_open(self, node_id: str, *, origin: ChangeOrigin = ChangeOrigin.USER) -> None:
        with self._lock:
            node = self.require(node_id)
            change = self._replace_node(node, "toggle", origin, is_open=not node.is_open)
        self._notify(change)

    def update_content(
        self,
        node_id: str,
        content: str,
        *,
        origin: ChangeOrigin = ChangeOrigin.USER,
    ) -> bool:
        """Set a node's content. Returns False when the content is unchanged."""
        with self._lock:
            node = self.require(node_id)
            if node.content == content:
                return False
            change = self._replace_node(node, "content", origin, content=content)
        self._notify(change)
        return True

    def move(
        self,
        node_id: str,
        new_parent_id: str | None,
        *,
        origin: ChangeOrigin = ChangeOrigin.USER,
    ) -> bool:
        """Re-parent a node.

        A move into the node itself or one of its descendants is refused and
        leaves the tree untouched. Returns True if the tree changed.
        """
        with self._lock:
            node = self.require(node_id)
            if new_parent_id is not None:
                self.require(new_parent_id)
            try:
                self._check_move(node_id, new_parent_id)
            except InvalidMove as e:
                logger.debug("Move refused: {}", e)
                return False
            change = self._replace_node(node, "move", origin, parent_id=new_parent_id)
        self._notify(change)
        return True

    def delete(self, node_id: str, *, origin: ChangeOrigin = ChangeOrigin.USER) -> tuple[str, ...]:
        """Delete a node and its entire subtree. Returns the removed ids."""
        with self._lock:
            self.require(node_id)
            removed = set(collect_subtree(self._children, node_id))
            remaining = [n for n in self._snapshot if n.id not in removed]
            ordered = tuple(n.id for n in self._snapshot if n.id in removed)
            change = self._commit(remaining, "delete", ordered, origin)
        self._notify(change)
        return ordered

    def replace_all(
        self,
        nodes: Iterable[Node],
        *,
        origin: ChangeOrigin = ChangeOrigin.USER,
    ) -> None:
        """Atomically swap the whole tree (import, remote pull)."""
        new_nodes = list(nodes)
        with self._lock:
            change = self._commit(new_nodes, "replace", tuple(n.id for n in new_nodes), origin)
        self._notify(change)

    # --- Internals ---

    def _check_move(self, node_id: str, new_parent_id: str | None) -> None:
        if is_descendant_or_self(self._by_id, candidate_id=new_parent_id, ancestor_id=node_id):
            msg = f"cannot move {node_id!r} into its own subtree ({new_parent_id!r})"
            raise InvalidMove(msg)

    def _replace_node(
        self, old: Node, kind: str, origin: ChangeOrigin, **fields: object
    ) -> TreeChange:
        # Caller holds the lock and notifies after releasing it
        new = replace(old, **fields)  # type: ignore[arg-type]
        nodes = [new if n.id == old.id else n for n in self._snapshot]
        return self._commit(nodes, kind, (old.id,), origin)

    def _commit(
        self,
        nodes: list[Node],
        kind: str,
        node_ids: tuple[str, ...],
        origin: ChangeOrigin,
    ) -> TreeChange:
        self._install(nodes)
        return TreeChange(kind=kind, node_ids=node_ids, nodes=self._snapshot, origin=origin)

    def _install(self, nodes: list[Node]) -> None:
        by_id: dict[str, Node] = {}
        for node in nodes:
            if node.id in by_id:
                msg = f"duplicate node id {node.id!r}"
                raise ValueError(msg)
            by_id[node.id] = node
        self._by_id = by_id
        self._children = build_children_index(nodes)
        self._snapshot = tuple(nodes)

    def _notify(self, change: TreeChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Tree listener failed on {} change", change.kind)
