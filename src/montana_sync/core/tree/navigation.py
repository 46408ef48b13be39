"""Tree navigation over an id index: ancestry, subtrees, children.

All walks are iterative so deep trees do not grow the call stack.
"""

from collections.abc import Iterable, Mapping

from montana_sync.models.node import Node


def build_children_index(nodes: Iterable[Node]) -> dict[str | None, list[str]]:
    """Map parent id -> child ids, preserving input order."""
    index: dict[str | None, list[str]] = {}
    for node in nodes:
        index.setdefault(node.parent_id, []).append(node.id)
    return index


def is_descendant_or_self(
    by_id: Mapping[str, Node],
    *,
    candidate_id: str | None,
    ancestor_id: str,
) -> bool:
    """Return True if candidate_id is ancestor_id or lies below it.

    Walks parent links upward from the candidate. A pre-existing cycle in the
    data stops the walk instead of looping forever.
    """
    seen: set[str] = set()
    current = candidate_id
    while current is not None and current not in seen:
        if current == ancestor_id:
            return True
        seen.add(current)
        parent = by_id.get(current)
        current = parent.parent_id if parent else None
    return False


def collect_subtree(
    children_index: Mapping[str | None, list[str]],
    root_id: str,
) -> list[str]:
    """Return root_id and every descendant id, in pre-order."""
    result: list[str] = []
    seen: set[str] = set()
    todo = [root_id]
    while todo:
        node_id = todo.pop()
        if node_id in seen:
            continue
        seen.add(node_id)
        result.append(node_id)
        todo.extend(reversed(children_index.get(node_id, ())))
    return result


def get_breadcrumbs(by_id: Mapping[str, Node], node_id: str) -> tuple[Node, ...]:
    """Ancestors of node_id from the root down to its immediate parent."""
    chain: list[Node] = []
    seen: set[str] = {node_id}
    node = by_id.get(node_id)
    current = node.parent_id if node else None
    while current is not None and current not in seen:
        seen.add(current)
        parent = by_id.get(current)
        if parent is None:
            break
        chain.append(parent)
        current = parent.parent_id
    return tuple(reversed(chain))


def sort_siblings(nodes: Iterable[Node]) -> list[Node]:
    """Folders first, then files; stable within each kind."""
    return sorted(nodes, key=lambda n: 0 if n.is_folder else 1)
