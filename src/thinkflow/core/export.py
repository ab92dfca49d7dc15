"""markdown export of a mind map."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from .graph import GraphStore


def export_markdown(store: GraphStore) -> Optional[str]:
    """root as a heading, descendants as nested bullets, long-form as quotes.

    returns None when there is no root to export.
    """
    root = store.root()
    if root is None:
        return None

    lines = [f"# {root.label}", ""]
    # iterative pre-order, children kept in edge order
    stack = [(child_id, 1) for child_id in reversed(store.children_of(root.id))]
    seen = {root.id}
    while stack:
        node_id, level = stack.pop()
        node = store.get_node(node_id)
        if node is None or node_id in seen:
            continue
        seen.add(node_id)

        lines.append(f"{'  ' * (level - 1)}- {node.label}")
        if node.long_form_content:
            quote = "  " * level + "> "
            lines.append(quote + node.long_form_content.replace("\n", "\n" + quote))
        for child_id in reversed(store.children_of(node_id)):
            stack.append((child_id, level + 1))

    return "\n".join(lines) + "\n"


def export_filename(label: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    safe = re.sub(r"[^\w\-]+", "-", label).strip("-")[:40] or "map"
    return f"thinkflow-{safe}-{now.strftime('%Y%m%d-%H%M%S')}.md"
