"""active path: the node/edge set emphasized around the current focus."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .graph import GraphStore


HIGHLIGHT_STROKE_WIDTH = 3.0
DIM_STROKE_WIDTH = 2.0
DIM_ALPHA_SUFFIX = "33"


@dataclass
class ActivePath:
    node_ids: set[str] = field(default_factory=set)
    edge_ids: set[str] = field(default_factory=set)


class ActivePathComputer:
    """derives the emphasized path and applies the two styling passes."""

    def __init__(self, store: GraphStore) -> None:
        self.store = store
        self._last_fingerprint = ""

    def active_node_id(self, dragging_id: Optional[str] = None) -> Optional[str]:
        """selected node, else the node mid-expansion, else the dragged node."""
        nodes = self.store.nodes.values()
        selected = next((n.id for n in nodes if n.selected), None)
        if selected:
            return selected
        busy = next((n.id for n in nodes if n.is_busy), None)
        if busy:
            return busy
        if dragging_id and dragging_id in self.store.nodes:
            return dragging_id
        return None

    def compute(self, active_id: Optional[str]) -> ActivePath:
        path = ActivePath()
        if not active_id or active_id not in self.store.nodes:
            return path

        path.node_ids.add(active_id)
        path.node_ids.update(self.store.ancestors(active_id))
        path.node_ids |= self.store.descendants(active_id)

        for edge in self.store.edges.values():
            if edge.source in path.node_ids and edge.target in path.node_ids:
                path.edge_ids.add(edge.id)
        return path

    def apply_node_emphasis(self, path: ActivePath) -> list[str]:
        """fade everything off the path; returns ids whose fade flag flipped."""
        flipped = []
        for node in self.store.nodes.values():
            faded = bool(path.node_ids) and node.id not in path.node_ids
            if node.faded != faded:
                node.faded = faded
                flipped.append(node.id)
        return flipped

    def fingerprint(self, path: ActivePath, color: str, line_kind: str) -> str:
        any_busy = any(n.is_busy for n in self.store.nodes.values())
        edge_ids = ",".join(sorted(path.edge_ids))
        return f"{edge_ids}-{len(self.store.edges)}-{color}-{line_kind}-{any_busy}"

    def apply_edge_styles(self, path: ActivePath, color: str, line_kind: str) -> bool:
        """restyle edges; skipped when nothing relevant changed since last pass.

        returns True when the canvas needs the new styles.
        """
        status = self.fingerprint(path, color, line_kind)
        if status == self._last_fingerprint:
            return False
        self._last_fingerprint = status

        for edge in self.store.edges.values():
            highlighted = edge.id in path.edge_ids
            source = self.store.nodes.get(edge.source)
            source_busy = bool(source and source.is_busy)
            edge.style.line_kind = line_kind
            edge.style.color = color
            edge.style.animated = highlighted or source_busy
            edge.style.stroke = color if highlighted else f"{color}{DIM_ALPHA_SUFFIX}"
            edge.style.stroke_width = HIGHLIGHT_STROKE_WIDTH if highlighted else DIM_STROKE_WIDTH
        return True

    def invalidate(self) -> None:
        """force the next edge pass to run (e.g. after a project load)."""
        self._last_fingerprint = ""

    def refresh(
        self,
        color: str,
        line_kind: str,
        dragging_id: Optional[str] = None,
    ) -> ActivePath:
        """run both passes for the current state."""
        path = self.compute(self.active_node_id(dragging_id))
        self.apply_node_emphasis(path)
        self.apply_edge_styles(path, color, line_kind)
        return path
