"""drag handling: alignment snapping and hierarchical descendant propagation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from ..config import CanvasConfig
from .graph import GraphStore
from .models import Node, Position


SNAP_THRESHOLD = 8.0


@dataclass
class DragEvent:
    """normalized drag callback payload."""

    node_id: str
    position: Position
    delta: Optional[Position] = None

    @classmethod
    def from_payload(cls, payload: Any) -> DragEvent:
        """accept either a raw node mapping or a {"node": ..., "delta": ...} wrapper."""
        if not isinstance(payload, dict):
            raise ValueError("drag payload must be a mapping")
        node = payload.get("node", payload)
        if not isinstance(node, dict) or not node.get("id") or not isinstance(node.get("position"), dict):
            raise ValueError("drag payload has no node id/position")
        delta = payload.get("delta")
        has_delta = isinstance(delta, dict) and all(
            isinstance(delta.get(axis), (int, float)) for axis in ("x", "y")
        )
        return cls(
            node_id=str(node["id"]),
            position=Position.from_dict(node["position"]),
            delta=Position.from_dict(delta) if has_delta else None,
        )


@dataclass
class AlignmentGuides:
    x: Optional[float] = None
    y: Optional[float] = None


def _anchors(start: float, length: float) -> list[float]:
    return [start, start + length / 2, start + length]


def _best_snap(others: list[float], dragged: list[float], best: Optional[tuple[float, float]]):
    """keep the (delta, guide) pair with the smallest |delta| within threshold."""
    for other in others:
        for anchor in dragged:
            delta = other - anchor
            if abs(delta) <= SNAP_THRESHOLD and (best is None or abs(delta) < abs(best[0])):
                best = (delta, other)
    return best


class DragEngine:
    """runs once per drag-move frame reported by the canvas."""

    def __init__(self, store: GraphStore, config: CanvasConfig) -> None:
        self.store = store
        self.config = config
        self.dragging_node_id: Optional[str] = None
        self.guides = AlignmentGuides()
        self._last_positions: dict[str, Position] = {}

    def start(self, event: DragEvent) -> None:
        self.dragging_node_id = event.node_id
        self._last_positions[event.node_id] = Position(event.position.x, event.position.y)

    def move(self, event: DragEvent) -> Optional[Position]:
        """apply one frame; returns the dragged node's final position."""
        node = self.store.get_node(event.node_id)
        if node is None:
            return None

        position = event.position
        if self.config.snap_to_alignment:
            position, guides = self.snap(node, position)
            self.guides = guides if self.config.show_alignment_guides else AlignmentGuides()
        else:
            self.guides = AlignmentGuides()
            if self.config.snap_to_grid:
                position = self._snap_to_grid(position, snap_x=True, snap_y=True)

        self.store.move_node(node.id, position)

        if self.config.hierarchical_dragging:
            self._propagate(node.id, position, event.delta)
        return position

    def stop(self, event: Optional[DragEvent] = None) -> None:
        node_id = event.node_id if event else self.dragging_node_id
        if node_id:
            self._last_positions.pop(node_id, None)
        self.dragging_node_id = None
        self.guides = AlignmentGuides()

    def snap(self, node: Node, proposed: Position) -> tuple[Position, AlignmentGuides]:
        """align the dragged node's edges/centers to nearby visible nodes."""
        width, height = node.size
        dragged_x = _anchors(proposed.x, width)
        dragged_y = _anchors(proposed.y, height)

        best_x: Optional[tuple[float, float]] = None
        best_y: Optional[tuple[float, float]] = None
        for other in self.store.nodes.values():
            if other.id == node.id or other.hidden:
                continue
            other_w, other_h = other.size
            best_x = _best_snap(_anchors(other.position.x, other_w), dragged_x, best_x)
            best_y = _best_snap(_anchors(other.position.y, other_h), dragged_y, best_y)

        snapped = Position(
            proposed.x + best_x[0] if best_x else proposed.x,
            proposed.y + best_y[0] if best_y else proposed.y,
        )
        if self.config.snap_to_grid:
            snapped = self._snap_to_grid(snapped, snap_x=best_x is None, snap_y=best_y is None)
        guides = AlignmentGuides(
            x=best_x[1] if best_x else None,
            y=best_y[1] if best_y else None,
        )
        return snapped, guides

    def _snap_to_grid(self, position: Position, snap_x: bool, snap_y: bool) -> Position:
        grid_x, grid_y = self.config.snap_grid
        x = round(position.x / grid_x) * grid_x if snap_x and grid_x else position.x
        y = round(position.y / grid_y) * grid_y if snap_y and grid_y else position.y
        return Position(x, y)

    def _propagate(self, node_id: str, position: Position, fallback_delta: Optional[Position]) -> None:
        last = self._last_positions.get(node_id)
        if last is None:
            # move without a start: remember where we are and use the payload delta once
            self._last_positions[node_id] = Position(position.x, position.y)
            if fallback_delta is not None:
                self._shift_descendants(node_id, fallback_delta.x, fallback_delta.y)
            return

        dx = position.x - last.x
        dy = position.y - last.y
        if dx == 0 and dy == 0:
            return
        self._shift_descendants(node_id, dx, dy)
        self._last_positions[node_id] = Position(position.x, position.y)

    def _shift_descendants(self, node_id: str, dx: float, dy: float) -> None:
        descendants = self.store.descendants(node_id)
        if not descendants:
            return
        # the canvas already moves selected nodes itself
        selected = self.store.selected_ids()
        moves = {}
        for nid in descendants - selected:
            node = self.store.get_node(nid)
            if node is not None:
                moves[nid] = node.position.moved(dx, dy)
        self.store.move_nodes(moves)
