"""horizontal tree layout.

two passes from a root: subtree heights bottom-up, then positions top-down.
each node is centred vertically against the band its subtree occupies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from .graph import GraphStore
from .models import Position


# --- configuration ---

GAP_X = 150.0  # between depth levels
GAP_Y = 40.0   # between siblings
ROOT_X = 50.0
ROOT_TOP = 100.0


@dataclass
class FitViewRequest:
    """ask the canvas to frame some nodes."""

    node_ids: list[str] = field(default_factory=list)  # empty means everything
    padding: float = 0.2
    duration: int = 800


class CanvasPort(Protocol):
    """the slice of the canvas framework the engines drive."""

    def fit_view(self, request: FitViewRequest) -> None:
        ...


class RecordingCanvas:
    """canvas port that keeps requests for a frontend to poll."""

    def __init__(self) -> None:
        self.requests: list[FitViewRequest] = []

    def fit_view(self, request: FitViewRequest) -> None:
        self.requests.append(request)

    @property
    def last_request(self) -> Optional[FitViewRequest]:
        return self.requests[-1] if self.requests else None


class LayoutEngine:
    def __init__(self, store: GraphStore, canvas: Optional[CanvasPort] = None) -> None:
        self.store = store
        self.canvas = canvas

    def _visible_children(self, node_id: str) -> list[str]:
        children = []
        for child_id in self.store.children_of(node_id):
            child = self.store.get_node(child_id)
            if child is not None and not child.hidden:
                children.append(child_id)
        return children

    def subtree_heights(self, root_id: str) -> dict[str, float]:
        """pass 1: post-order subtree heights. hidden nodes contribute nothing."""
        root = self.store.get_node(root_id)
        if root is None or root.hidden:
            return {}

        # pre-order walk, then fold it in reverse so children come first
        order: list[str] = []
        seen = set()
        stack = [root_id]
        while stack:
            node_id = stack.pop()
            if node_id in seen:
                continue
            seen.add(node_id)
            order.append(node_id)
            stack.extend(c for c in self._visible_children(node_id) if c not in seen)

        heights: dict[str, float] = {}
        for node_id in reversed(order):
            _, height = self.store.nodes[node_id].size
            children = [c for c in self._visible_children(node_id) if c in heights]
            if not children:
                heights[node_id] = height
                continue
            stacked = sum(heights[c] for c in children) + GAP_Y * (len(children) - 1)
            heights[node_id] = max(height, stacked)
        return heights

    def compute(self, root_id: str) -> dict[str, Position]:
        """pass 2: pre-order placement using the heights from pass 1."""
        heights = self.subtree_heights(root_id)
        if not heights:
            return {}

        positions: dict[str, Position] = {}
        stack = [(root_id, ROOT_X, ROOT_TOP)]
        while stack:
            node_id, x, top = stack.pop()
            if node_id in positions:
                continue
            width, height = self.store.nodes[node_id].size
            subtree = heights.get(node_id, height)
            positions[node_id] = Position(x, top + (subtree - height) / 2)

            next_x = x + width + GAP_X
            current_top = top
            placements = []
            for child_id in self._visible_children(node_id):
                if child_id not in heights:
                    continue
                placements.append((child_id, next_x, current_top))
                current_top += heights[child_id] + GAP_Y
            # reversed so the first child is placed first
            stack.extend(reversed(placements))
        return positions

    def apply(self, root_id: Optional[str] = None) -> dict[str, Position]:
        """lay out the tree under root_id (default: the session root) and frame it."""
        if root_id is None:
            root = self.store.root()
            if root is None:
                return {}
            root_id = root.id
        positions = self.compute(root_id)
        if positions:
            self.store.move_nodes(positions)
            if self.canvas is not None:
                self.canvas.fit_view(FitViewRequest(node_ids=list(positions), padding=0.2, duration=800))
        return positions

    def center_root(self) -> bool:
        root = self.store.root()
        if root is None or self.canvas is None:
            return False
        self.canvas.fit_view(FitViewRequest(node_ids=[root.id], padding=2, duration=800))
        return True
