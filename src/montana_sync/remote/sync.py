"""Full-tree push/pull against the remote notes table."""

from collections.abc import Callable
from typing import Any

from loguru import logger

from montana_sync.core.tree.store import now_ms
from montana_sync.errors import RemoteError, RemotePullFailure, RemotePushFailure
from montana_sync.models.node import Node, NodeKind, SyncUser
from montana_sync.remote.api import SupabaseApi
from montana_sync.remote.realtime import RealtimeChannel


def node_to_row(node: Node, user_id: str, *, updated_at: int) -> dict[str, Any]:
    return {
        "id": node.id,
        "parent_id": node.parent_id,
        "name": node.name,
        "type": node.kind.value,
        "content": node.content,
        "is_open": node.is_open,
        "created_at": node.created_at,
        "updated_at": updated_at,
        "user_id": user_id,
    }


def row_to_node(row: dict[str, Any]) -> Node:
    return Node(
        id=row["id"],
        parent_id=row.get("parent_id"),
        name=row.get("name") or "",
        kind=NodeKind.FILE if row.get("type") == NodeKind.FILE.value else NodeKind.FOLDER,
        content=row.get("content"),
        is_open=bool(row.get("is_open")),
        created_at=int(row.get("created_at") or 0),
    )


class RemoteSync:
    """Remote store adapter: auth passthrough, snapshot push/pull, realtime.

    ``push_all`` deletes every row of the user and inserts the given nodes.
    There is no diff and no conflict detection: two clients pushing around
    the same time overwrite each other and the last push wins.
    """

    def __init__(
        self,
        api: SupabaseApi,
        *,
        realtime: RealtimeChannel | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.api = api
        self.realtime = realtime or RealtimeChannel(
            api.url, api.anon_key, access_token=lambda: api.access_token, table=api.table
        )
        self._clock = clock

    @property
    def endpoint(self) -> str:
        return self.api.endpoint

    # --- Auth ---

    def sign_up(self, email: str, password: str) -> SyncUser:
        return self.api.sign_up(email, password)

    def sign_in(self, email: str, password: str) -> SyncUser:
        return self.api.sign_in(email, password)

    def sign_out(self) -> None:
        self.unsubscribe()
        self.api.sign_out()

    def get_session(self) -> SyncUser | None:
        return self.api.get_session()

    # --- Snapshot sync ---

    def pull_all(self) -> list[Node]:
        try:
            rows = self.api.select_rows()
            nodes = [row_to_node(row) for row in rows]
        except (RemoteError, KeyError, TypeError, ValueError) as e:
            raise RemotePullFailure(str(e)) from e
        logger.info("Pulled {} nodes", len(nodes))
        return nodes

    def push_all(self, nodes: list[Node], user_id: str) -> None:
        updated_at = self._clock()
        rows = [node_to_row(n, user_id, updated_at=updated_at) for n in nodes]
        try:
            self.api.delete_rows(user_id=user_id)
            self.api.insert_rows(rows)
        except RemoteError as e:
            raise RemotePushFailure(str(e)) from e
        logger.info("Pushed {} nodes", len(rows))

    # --- Single node ---

    def upsert_node(self, node: Node, user_id: str) -> None:
        try:
            self.api.upsert_row(node_to_row(node, user_id, updated_at=self._clock()))
        except RemoteError as e:
            raise RemotePushFailure(str(e)) from e

    def delete_node(self, node_id: str) -> None:
        """Delete a row and every row below it."""
        try:
            todo = [node_id]
            order: list[str] = []
            while todo:
                current = todo.pop()
                order.append(current)
                todo.extend(self.api.select_ids(parent_id=current))
            for current in reversed(order):
                self.api.delete_rows(id=current)
        except RemoteError as e:
            raise RemotePushFailure(str(e)) from e

    # --- Realtime ---

    def subscribe_to_changes(self, on_change: Callable[[], None]) -> None:
        self.realtime.subscribe(on_change)

    def unsubscribe(self) -> None:
        self.realtime.unsubscribe()

    def reset(self) -> None:
        """Drop the realtime subscription and HTTP connections (credential change)."""
        self.unsubscribe()
        self.api.sess.close()
