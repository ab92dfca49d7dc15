"""canonical node/edge collection and the collapse-derived visibility state.

the store is the only owner of nodes and edges. everything else reads it and
asks it to mutate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from .models import Edge, EdgeStyle, Node, NodeKind, Position

logger = logging.getLogger(__name__)


class GraphError(ValueError):
    """a mutation would break the forest invariants."""

    pass


@dataclass
class GraphEvent:
    """notification sent to subscribers after every mutation."""

    kind: str  # "add", "update", "move", "remove", "replace", "select"
    node_ids: list[str] = field(default_factory=list)
    edge_ids: list[str] = field(default_factory=list)
    critical: bool = False  # loss would be costly; persist right away


Listener = Callable[[GraphEvent], None]


class GraphStore:
    """holds nodes/edges and enforces the forest shape."""

    def __init__(self) -> None:
        self.nodes: dict[str, Node] = {}
        self.edges: dict[str, Edge] = {}
        self._listeners: list[Listener] = []

    # --- subscription ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """register a listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: GraphEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    # --- queries ---

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self.nodes

    def root(self) -> Optional[Node]:
        """first root node, if any."""
        for node in self.nodes.values():
            if node.kind == NodeKind.ROOT:
                return node
        return None

    def parent_of(self, node_id: str) -> Optional[str]:
        for edge in self.edges.values():
            if edge.target == node_id:
                return edge.source
        return None

    def children_of(self, node_id: str) -> list[str]:
        """child ids in edge insertion order."""
        return [e.target for e in self.edges.values() if e.source == node_id]

    def descendants(self, node_id: str) -> set[str]:
        """all ids reachable through outgoing edges.

        iterative so deep trees can't blow the stack, and deduplicated so an
        accidental cycle still terminates.
        """
        outgoing: dict[str, list[str]] = {}
        for edge in self.edges.values():
            outgoing.setdefault(edge.source, []).append(edge.target)

        found: set[str] = set()
        stack = [node_id]
        while stack:
            current = stack.pop()
            for target in outgoing.get(current, []):
                if target not in found:
                    found.add(target)
                    stack.append(target)
        return found

    def ancestors(self, node_id: str) -> list[str]:
        """parent chain from nearest parent up to the root."""
        chain: list[str] = []
        seen = {node_id}
        current = self.parent_of(node_id)
        while current and current not in seen:
            chain.append(current)
            seen.add(current)
            current = self.parent_of(current)
        return chain

    def path_to(self, node_id: str) -> list[str]:
        """'label (description)' strings from root down to this node."""
        if node_id not in self.nodes:
            return []
        ids = list(reversed(self.ancestors(node_id))) + [node_id]
        path = []
        for nid in ids:
            node = self.nodes.get(nid)
            if node:
                path.append(f"{node.label} ({node.description})")
        return path

    def selected_ids(self) -> set[str]:
        return {n.id for n in self.nodes.values() if n.selected}

    def validate(self) -> list[str]:
        """list forest violations; empty when the graph is well formed."""
        problems = []
        incoming: dict[str, int] = {}
        for edge in self.edges.values():
            incoming[edge.target] = incoming.get(edge.target, 0) + 1
            if edge.source not in self.nodes or edge.target not in self.nodes:
                problems.append(f"edge {edge.id} has a missing endpoint")
        for node in self.nodes.values():
            count = incoming.get(node.id, 0)
            if node.kind == NodeKind.CHILD and count != 1:
                problems.append(f"node {node.id} has {count} parents")
            elif node.kind != NodeKind.CHILD and count:
                problems.append(f"{node.kind.value} node {node.id} has a parent")
            if node.id in self.descendants(node.id):
                problems.append(f"node {node.id} is on a cycle")
        return problems

    # --- mutations ---

    def add_node(self, node: Node) -> Node:
        if node.id in self.nodes:
            raise GraphError(f"duplicate node id: {node.id}")
        self.nodes[node.id] = node
        self._emit(GraphEvent("add", node_ids=[node.id]))
        return node

    def add_edge(self, edge: Edge) -> Edge:
        if edge.id in self.edges:
            raise GraphError(f"duplicate edge id: {edge.id}")
        if edge.source not in self.nodes or edge.target not in self.nodes:
            raise GraphError(f"edge {edge.id} references a missing node")
        if edge.source == edge.target or edge.source in self.descendants(edge.target):
            raise GraphError(f"edge {edge.id} would create a cycle")
        if self.parent_of(edge.target) is not None:
            raise GraphError(f"node {edge.target} already has a parent")
        self.edges[edge.id] = edge
        self._emit(GraphEvent("add", edge_ids=[edge.id]))
        return edge

    def connect(self, parent_id: str, child_id: str, style: Optional[EdgeStyle] = None) -> Edge:
        return self.add_edge(Edge.connect(parent_id, child_id, style))

    def add_child(self, parent_id: str, child: Node, style: Optional[EdgeStyle] = None) -> Node:
        """add a node and its connecting edge in one step."""
        if parent_id not in self.nodes:
            raise GraphError(f"parent not found: {parent_id}")
        self.add_node(child)
        self.connect(parent_id, child.id, style)
        return child

    def add_sticky(self, text: str, position: Optional[Position] = None) -> Node:
        return self.add_node(Node.create_sticky(text, position))

    def update_node(self, node_id: str, critical: bool = False, **changes) -> Optional[Node]:
        """apply field changes to a node.

        returns None when the node no longer exists; callers treat that as a
        stale write and drop it.
        """
        node = self.nodes.get(node_id)
        if node is None:
            logger.debug("dropping write to missing node %s: %s", node_id, sorted(changes))
            return None
        for key, value in changes.items():
            if not hasattr(node, key):
                raise AttributeError(f"node has no field {key!r}")
            setattr(node, key, value)
        self._emit(GraphEvent("update", node_ids=[node_id], critical=critical))
        return node

    def move_node(self, node_id: str, position: Position) -> Optional[Node]:
        node = self.nodes.get(node_id)
        if node is None:
            return None
        node.position = Position(position.x, position.y)
        self._emit(GraphEvent("move", node_ids=[node_id]))
        return node

    def move_nodes(self, positions: dict[str, Position]) -> None:
        """batch position update with a single notification."""
        moved = []
        for node_id, position in positions.items():
            node = self.nodes.get(node_id)
            if node is not None:
                node.position = Position(position.x, position.y)
                moved.append(node_id)
        if moved:
            self._emit(GraphEvent("move", node_ids=moved))

    def select(self, node_ids: Iterable[str]) -> None:
        """replace the current selection."""
        wanted = set(node_ids)
        for node in self.nodes.values():
            node.selected = node.id in wanted
        self._emit(GraphEvent("select", node_ids=sorted(wanted)))

    def remove_nodes(self, node_ids: Iterable[str], critical: bool = False) -> list[str]:
        """remove nodes and every edge touching them."""
        doomed = {nid for nid in node_ids if nid in self.nodes}
        if not doomed:
            return []
        edge_ids = [e.id for e in self.edges.values() if e.source in doomed or e.target in doomed]
        for eid in edge_ids:
            del self.edges[eid]
        for nid in doomed:
            del self.nodes[nid]
        self._emit(GraphEvent("remove", node_ids=sorted(doomed), edge_ids=edge_ids, critical=critical))
        return sorted(doomed)

    def delete_subtree(self, node_id: str) -> list[str]:
        """delete a node and all its descendants."""
        if node_id not in self.nodes:
            return []
        doomed = self.descendants(node_id)
        doomed.add(node_id)
        return self.remove_nodes(doomed, critical=True)

    def remove_descendants(self, node_id: str) -> list[str]:
        """clear a node's subtree, keeping the node itself."""
        doomed = self.descendants(node_id)
        doomed.discard(node_id)
        return self.remove_nodes(doomed)

    def replace_all(self, nodes: Iterable[Node], edges: Iterable[Edge]) -> None:
        """swap in a whole collection (project load)."""
        self.nodes = {n.id: n for n in nodes}
        self.edges = {e.id: e for e in edges}
        self._emit(GraphEvent("replace", node_ids=list(self.nodes), edge_ids=list(self.edges)))

    def clear(self) -> None:
        self.replace_all([], [])


class VisibilityEngine:
    """derives hidden flags and child counts from the collapsed set."""

    def __init__(self, store: GraphStore) -> None:
        self.store = store
        self.collapsed_ids: list[str] = []
        self.hidden_ids: set[str] = set()
        self._signature: Optional[tuple] = None

    def is_collapsed(self, node_id: str) -> bool:
        return node_id in self.collapsed_ids

    def collapse(self, node_id: str) -> None:
        if node_id not in self.collapsed_ids:
            self.collapsed_ids = [*self.collapsed_ids, node_id]
        self.refresh()

    def expand(self, node_id: str) -> None:
        self.collapsed_ids = [cid for cid in self.collapsed_ids if cid != node_id]
        self.refresh()

    def toggle(self, node_id: str) -> bool:
        """flip collapse state; returns True when now collapsed."""
        if self.is_collapsed(node_id):
            self.expand(node_id)
            return False
        self.collapse(node_id)
        return True

    def set_collapsed(self, node_ids: Iterable[str]) -> None:
        self.collapsed_ids = list(dict.fromkeys(node_ids))
        self.refresh()

    def on_graph_event(self, event: GraphEvent) -> None:
        if event.kind in ("add", "remove", "replace"):
            if event.kind == "replace":
                self._signature = None
            # collapsed ids of deleted nodes go with them
            self.collapsed_ids = [cid for cid in self.collapsed_ids if cid in self.store.nodes]
            self.refresh()

    def refresh(self) -> bool:
        """re-apply when the collapsed set or collection size changed."""
        signature = (",".join(self.collapsed_ids), len(self.store.nodes), len(self.store.edges))
        if signature == self._signature:
            return False
        self._signature = signature
        self.apply()
        return True

    def apply(self) -> set[str]:
        """recompute hidden set and derived counts.

        returns the ids whose derived counts changed.
        """
        store = self.store
        hidden: set[str] = set()
        for cid in self.collapsed_ids:
            hidden |= store.descendants(cid)

        child_counts: dict[str, int] = {}
        for edge in store.edges.values():
            child_counts[edge.source] = child_counts.get(edge.source, 0) + 1

        changed = set()
        for node in store.nodes.values():
            node.hidden = node.id in hidden
            child_count = child_counts.get(node.id, 0)
            hidden_count = len(store.descendants(node.id)) if self.is_collapsed(node.id) else 0
            if node.child_count != child_count or node.hidden_descendant_count != hidden_count:
                node.child_count = child_count
                node.hidden_descendant_count = hidden_count
                changed.add(node.id)

        for edge in store.edges.values():
            edge.hidden = edge.source in hidden or edge.target in hidden

        self.hidden_ids = hidden
        return changed
