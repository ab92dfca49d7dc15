"""incremental sync between the in-memory graph and the remote row store.

each node/edge is hashed over the fields that are actually persisted. a save
compares those hashes with the last synced snapshot, upserts only what changed
and batch-deletes what disappeared. the local cache is written on every
mutation; the remote store on a shared debounce timer, or right away after
operations whose loss would hurt.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from .graph import GraphEvent, GraphStore, VisibilityEngine
from .models import Edge, EdgeStyle, Node, NodeKind, Position
from .storage import EDGES_TABLE, NODES_TABLE, LocalCache, RemoteStore, StorageError

logger = logging.getLogger(__name__)


# --- configuration ---

DEBOUNCE_SECONDS = 3.0
NODE_CONFLICT_KEY = "project_id,node_id"
EDGE_CONFLICT_KEY = "project_id,edge_id"


# --- hashing ---

def _digest(payload: dict) -> str:
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode()
    return hashlib.sha1(encoded).hexdigest()


def node_hash(node: Node) -> str:
    """hash of the persisted subset only; ui flags never count."""
    return _digest({
        "id": node.id,
        "kind": node.kind.value,
        "position": {"x": float(node.position.x), "y": float(node.position.y)},
        "label": node.label or "",
        "description": node.description or "",
        "long_form_content": node.long_form_content or "",
        "image_url": node.image_url or "",
        "child_count": node.child_count or 0,
        "is_busy": node.is_busy,
        "pending_question": node.pending_question or "",
        "derived_questions": list(node.derived_questions),
        "width": float(node.width) if node.width is not None else None,
    })


def edge_hash(edge: Edge) -> str:
    return _digest({
        "id": edge.id,
        "source": edge.source,
        "target": edge.target,
        "line_kind": edge.style.line_kind,
        "color": edge.style.color,
    })


# --- row mapping ---

def node_to_row(node: Node, project_id: str, include_image: bool = True) -> dict:
    """remote row for a node.

    include_image=False leaves image_url out so a merge upsert keeps the
    stored value.
    """
    row = {
        "project_id": project_id,
        "node_id": node.id,
        "type": node.kind.value,
        "position": {"x": node.position.x, "y": node.position.y},
        "title": node.label or None,
        "description": node.description or None,
        "detailed_content": node.long_form_content or None,
        "image_url": node.image_url or None,
        "children_count": node.child_count,
        "is_expanding": node.is_busy,
        "follow_up": node.pending_question or None,
        "derived_questions": list(node.derived_questions),
        "width": node.width,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }
    if not include_image:
        del row["image_url"]
    return row


def node_from_row(row: dict) -> Node:
    try:
        kind = NodeKind(row.get("type") or "child")
    except ValueError:
        kind = NodeKind.CHILD
    return Node(
        id=row["node_id"],
        kind=kind,
        position=Position.from_dict(row.get("position")),
        label=row.get("title") or "",
        description=row.get("description") or "",
        long_form_content=row.get("detailed_content"),
        image_url=row.get("image_url"),
        child_count=row.get("children_count") or 0,
        # nothing can be mid-generation right after a fresh load
        is_busy=False,
        pending_question=row.get("follow_up") or "",
        derived_questions=list(row.get("derived_questions") or []),
        width=row.get("width"),
    )


def edge_to_row(edge: Edge, project_id: str) -> dict:
    return {
        "project_id": project_id,
        "edge_id": edge.id,
        "source_node_id": edge.source,
        "target_node_id": edge.target,
        "type": edge.style.line_kind,
        "style": {"color": edge.style.color},
    }


def edge_from_row(row: dict) -> Edge:
    style = row.get("style") or {}
    return Edge(
        id=row["edge_id"],
        source=row["source_node_id"],
        target=row["target_node_id"],
        style=EdgeStyle(
            line_kind=row.get("type") or EdgeStyle.line_kind,
            color=style.get("color") or EdgeStyle.color,
        ),
    )


class SyncReconciler:
    """dirty tracking plus debounced and immediate saves over one dirty set."""

    def __init__(
        self,
        store: GraphStore,
        local: Optional[LocalCache] = None,
        remote: Optional[RemoteStore] = None,
        project_id: Optional[str] = None,
        visibility: Optional[VisibilityEngine] = None,
        debounce_seconds: float = DEBOUNCE_SECONDS,
    ):
        self.store = store
        self.local = local
        self.remote = remote
        self.project_id = project_id
        self.visibility = visibility
        self.debounce_seconds = debounce_seconds

        self.dirty_nodes: set[str] = set()
        self.dirty_edges: set[str] = set()
        self.deleted_nodes: set[str] = set()
        self.deleted_edges: set[str] = set()
        self._synced_nodes: dict[str, str] = {}
        self._synced_edges: dict[str, str] = {}
        # restored from the local cache, whose copies carry no image_url
        self.unknown_images: set[str] = set()
        self.paused = False

        self.is_syncing = False
        self.last_sync_time: Optional[datetime] = None
        self.sync_error: Optional[str] = None

        self._timer: Optional[asyncio.Task] = None
        self._immediate: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    # --- dirty marks ---

    def mark_node_dirty(self, node_id: str) -> None:
        self.dirty_nodes.add(node_id)

    def mark_edge_dirty(self, edge_id: str) -> None:
        self.dirty_edges.add(edge_id)

    def mark_node_deleted(self, node_id: str) -> None:
        self.deleted_nodes.add(node_id)
        self.dirty_nodes.discard(node_id)

    def mark_edge_deleted(self, edge_id: str) -> None:
        self.deleted_edges.add(edge_id)
        self.dirty_edges.discard(edge_id)

    def detect_changes(self, nodes: list[Node], edges: list[Edge]) -> None:
        """mark what differs from the last synced snapshot."""
        current_nodes = set()
        for node in nodes:
            current_nodes.add(node.id)
            if self._synced_nodes.get(node.id) != node_hash(node):
                self.dirty_nodes.add(node.id)
        for node_id in self._synced_nodes:
            if node_id not in current_nodes:
                self.mark_node_deleted(node_id)

        current_edges = set()
        for edge in edges:
            current_edges.add(edge.id)
            if self._synced_edges.get(edge.id) != edge_hash(edge):
                self.dirty_edges.add(edge.id)
        for edge_id in self._synced_edges:
            if edge_id not in current_edges:
                self.mark_edge_deleted(edge_id)

    def pending_changes(self) -> dict:
        return {
            "dirty_nodes": len(self.dirty_nodes),
            "dirty_edges": len(self.dirty_edges),
            "deleted_nodes": len(self.deleted_nodes),
            "deleted_edges": len(self.deleted_edges),
        }

    def reset_sync_state(self) -> None:
        """forget all marks and snapshots (project switch)."""
        self.dirty_nodes.clear()
        self.dirty_edges.clear()
        self.deleted_nodes.clear()
        self.deleted_edges.clear()
        self._synced_nodes.clear()
        self._synced_edges.clear()
        self.unknown_images.clear()

    def mark_images_unknown(self, nodes: list[Node]) -> None:
        """never push image_url for these nodes while it is still empty."""
        self.unknown_images.update(n.id for n in nodes if not n.image_url)

    def seed_snapshot(self, nodes: list[Node], edges: list[Edge]) -> None:
        """treat the given collection as already synced."""
        self._synced_nodes = {n.id: node_hash(n) for n in nodes}
        self._synced_edges = {e.id: edge_hash(e) for e in edges}
        self.dirty_nodes.clear()
        self.dirty_edges.clear()
        self.deleted_nodes.clear()
        self.deleted_edges.clear()

    # --- remote writes ---

    def _can_sync(self) -> bool:
        return self.remote is not None and self.project_id is not None

    async def save_nodes_to_cloud(self, nodes: list[Node]) -> bool:
        """upsert dirty nodes. no dirty nodes means no network call."""
        if not self._can_sync():
            return False
        if not self.dirty_nodes:
            return True

        to_save = [n for n in nodes if n.id in self.dirty_nodes]
        # dirty ids that no longer exist are handled by deletions
        self.dirty_nodes &= {n.id for n in nodes}
        if not to_save:
            return True

        hashes = {n.id: node_hash(n) for n in to_save}
        # postgrest bulk upserts need one column set per request
        with_image, without_image = [], []
        for node in to_save:
            if node.image_url or node.id not in self.unknown_images:
                with_image.append(node_to_row(node, self.project_id))
            else:
                without_image.append(node_to_row(node, self.project_id, include_image=False))
        self.is_syncing = True
        try:
            logger.info("syncing %d nodes", len(to_save))
            for rows in (with_image, without_image):
                if rows:
                    await self.remote.upsert(NODES_TABLE, rows, on_conflict=NODE_CONFLICT_KEY)
        except StorageError as e:
            logger.error("saving nodes failed: %s", e)
            self.sync_error = str(e)
            return False
        finally:
            self.is_syncing = False

        self._synced_nodes.update(hashes)
        self.dirty_nodes -= set(hashes)
        self.sync_error = None
        self.last_sync_time = datetime.now(timezone.utc)
        return True

    async def save_edges_to_cloud(self, edges: list[Edge]) -> bool:
        if not self._can_sync():
            return False
        if not self.dirty_edges:
            return True

        to_save = [e for e in edges if e.id in self.dirty_edges]
        self.dirty_edges &= {e.id for e in edges}
        if not to_save:
            return True

        hashes = {e.id: edge_hash(e) for e in to_save}
        rows = [edge_to_row(e, self.project_id) for e in to_save]
        self.is_syncing = True
        try:
            logger.info("syncing %d edges", len(rows))
            await self.remote.upsert(EDGES_TABLE, rows, on_conflict=EDGE_CONFLICT_KEY)
        except StorageError as e:
            logger.error("saving edges failed: %s", e)
            self.sync_error = str(e)
            return False
        finally:
            self.is_syncing = False

        self._synced_edges.update(hashes)
        self.dirty_edges -= set(hashes)
        self.sync_error = None
        self.last_sync_time = datetime.now(timezone.utc)
        return True

    async def sync_deletions(self) -> bool:
        """batch-delete removed nodes and edges by id."""
        if not self._can_sync():
            return False
        ok = True
        if self.deleted_nodes:
            ids = sorted(self.deleted_nodes)
            try:
                logger.info("deleting %d nodes", len(ids))
                await self.remote.delete(NODES_TABLE, self.project_id, "node_id", ids)
                for node_id in ids:
                    self._synced_nodes.pop(node_id, None)
                self.deleted_nodes -= set(ids)
            except StorageError as e:
                logger.error("deleting nodes failed: %s", e)
                self.sync_error = str(e)
                ok = False
        if self.deleted_edges:
            ids = sorted(self.deleted_edges)
            try:
                logger.info("deleting %d edges", len(ids))
                await self.remote.delete(EDGES_TABLE, self.project_id, "edge_id", ids)
                for edge_id in ids:
                    self._synced_edges.pop(edge_id, None)
                self.deleted_edges -= set(ids)
            except StorageError as e:
                logger.error("deleting edges failed: %s", e)
                self.sync_error = str(e)
                ok = False
        return ok

    async def load_from_cloud(self, project_id: str) -> Optional[tuple[list[Node], list[Edge]]]:
        """fetch a project's rows; None on failure (sync_error is set)."""
        if self.remote is None:
            return None
        self.is_syncing = True
        self.sync_error = None
        try:
            node_rows, edge_rows = await asyncio.gather(
                self.remote.select(NODES_TABLE, project_id),
                self.remote.select(EDGES_TABLE, project_id),
            )
            nodes = [node_from_row(r) for r in node_rows]
            edges = [edge_from_row(r) for r in edge_rows]
        except (StorageError, KeyError) as e:
            logger.error("loading project %s failed: %s", project_id, e)
            self.sync_error = str(e)
            return None
        finally:
            self.is_syncing = False

        self.project_id = project_id
        self.seed_snapshot(nodes, edges)
        self.unknown_images.clear()
        self.last_sync_time = datetime.now(timezone.utc)
        return nodes, edges

    # --- entry points ---

    async def save_now(self) -> bool:
        """full-state save: detect, upsert dirty, delete removed."""
        if not self._can_sync():
            return False
        async with self._lock:
            nodes = list(self.store.nodes.values())
            edges = list(self.store.edges.values())
            self.detect_changes(nodes, edges)
            nodes_ok = await self.save_nodes_to_cloud(nodes)
            edges_ok = await self.save_edges_to_cloud(edges)
            deletions_ok = await self.sync_deletions()
            return nodes_ok and edges_ok and deletions_ok

    def schedule_save(self) -> None:
        """(re)start the shared debounce timer."""
        if not self._can_sync() or self.paused:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop (sync callers); the next async mutation will schedule
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = loop.create_task(self._debounced_save())

    async def _debounced_save(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        await self.save_now()

    def _save_immediately(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.save_now())
        self._immediate.add(task)
        task.add_done_callback(self._immediate.discard)

    def save_local(self) -> None:
        if self.local is None or self.project_id is None:
            return
        collapsed = self.visibility.collapsed_ids if self.visibility else []
        self.local.save(self.project_id, list(self.store.nodes.values()), list(self.store.edges.values()), collapsed)

    def on_graph_event(self, event: GraphEvent) -> None:
        """store listener: local copy now, remote later (or now if critical)."""
        if event.kind == "select":
            return
        self.save_local()
        self.schedule_save()
        if event.critical and self._can_sync() and not self.paused:
            self._save_immediately()

    async def flush(self) -> bool:
        """cancel the pending timer and save whatever is outstanding."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        if self._immediate:
            await asyncio.gather(*list(self._immediate), return_exceptions=True)
        return await self.save_now()
