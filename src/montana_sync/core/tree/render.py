"""Render the note tree as an indented outline."""

import io

from montana_sync.config import ENCRYPTION_PREFIX
from montana_sync.core.tree.store import NodeTree


def render_outline(
    tree: NodeTree,
    *,
    node_id: str | None = None,
    max_depth: int | None = None,
    show_ids: bool = False,
) -> str:
    """Render a subtree (or the whole tree) as a bullet list.

    Args:
        tree: The tree to render.
        node_id: Start node; None renders every root.
        max_depth: Max levels below the start to include (None = unlimited).
        show_ids: Append each node id.

    Returns:
        Outline string. Folders end with "/", encrypted notes are marked.
    """
    if node_id is not None:
        start = tree.get(node_id)
        if start is None:
            return ""
        starts = [start]
    else:
        starts = list(tree.roots())

    out = io.StringIO()
    # Pre-order walk; push children reversed to keep sibling order
    stack = [(n, 0) for n in reversed(starts)]
    while stack:
        node, depth = stack.pop()
        indent = "    " * depth
        label = node.name + ("/" if node.is_folder else "")
        if node.is_file and (node.content or "").startswith(ENCRYPTION_PREFIX):
            label += " [locked]"
        if show_ids:
            label += f"  (id={node.id})"
        out.write(f"{indent}- {label}\n")

        children = tree.children(node.id)
        if max_depth is not None and depth >= max_depth:
            if children:
                noun = "child" if len(children) == 1 else "children"
                out.write(f"{indent}    - ... ({len(children)} more {noun})\n")
            continue
        stack.extend((child, depth + 1) for child in reversed(children))

    return out.getvalue()
