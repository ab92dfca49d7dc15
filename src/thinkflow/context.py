"""application context: one object wiring the graph, engines, ai client and sync.

surfaces (api server, cli) receive a context instead of reaching for module
globals. components read the store and subscribe to its events; the order of
subscription is the order of derivation: visibility, active path, then sync.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from .config import Settings, get_data_dir
from .core.active_path import ActivePath, ActivePathComputer
from .core.client import ClaudeClient, ClientProtocol, MockClient, OpenAIClient
from .core.drag import DragEngine, DragEvent
from .core.expansion import ExpansionPipeline
from .core.graph import GraphEvent, GraphStore, Listener, VisibilityEngine
from .core.layout import CanvasPort, LayoutEngine, RecordingCanvas
from .core.models import Node, Position
from .core.storage import InMemoryStore, LocalCache, PostgrestStore, ProjectManager, RemoteStore
from .core.sync import SyncReconciler

logger = logging.getLogger(__name__)


# --- configuration ---

LOCAL_PROJECT_ID = "local"  # project key used when no remote store is configured
CACHE_DIRNAME = "cache"
EDITABLE_FIELDS = {"label", "description", "pending_question", "width", "height", "long_form_content", "is_detail_expanded"}


def make_client(settings: Settings, cwd: Optional[Path] = None) -> ClientProtocol:
    """build the ai client for the configured provider."""
    if settings.provider == "mock":
        return MockClient()
    if settings.provider == "claude":
        return ClaudeClient(cwd=cwd)
    return OpenAIClient(chat=settings.api.resolve_chat(), image=settings.api.resolve_image())


def make_remote(settings: Settings) -> Optional[RemoteStore]:
    if settings.has_remote:
        return PostgrestStore(settings.supabase_url, settings.supabase_key, user_id=settings.supabase_user_id or None)
    if settings.provider == "mock":
        return InMemoryStore()
    return None


class AppContext:
    """everything one canvas session needs."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[ClientProtocol] = None,
        remote: Optional[RemoteStore] = None,
        canvas: Optional[CanvasPort] = None,
        data_dir: Optional[Path] = None,
    ):
        self.settings = settings or Settings()
        self.client = client or make_client(self.settings)
        self.remote = remote
        self.canvas = canvas or RecordingCanvas()

        self.store = GraphStore()
        self.visibility = VisibilityEngine(self.store)
        self.active_path = ActivePathComputer(self.store)
        self.drag = DragEngine(self.store, self.settings.canvas)
        self.layout = LayoutEngine(self.store, self.canvas)
        self.pipeline = ExpansionPipeline(self.store, self.client, self.settings.canvas, self.canvas)

        cache_dir = (data_dir or get_data_dir()) / CACHE_DIRNAME
        self.local = LocalCache(cache_dir)
        self.projects = ProjectManager(remote, self.local) if remote is not None else None
        self.sync = SyncReconciler(
            self.store,
            local=self.local,
            remote=remote,
            visibility=self.visibility,
            debounce_seconds=self.settings.debounce_seconds,
        )
        self.path = ActivePath()

        self.store.subscribe(self.visibility.on_graph_event)
        self.store.subscribe(self._refresh_active_path)
        self.store.subscribe(self.sync.on_graph_event)

    # --- read / subscribe contract ---

    @property
    def project_id(self) -> Optional[str]:
        return self.sync.project_id

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """listen to graph events after all derived state is up to date."""
        return self.store.subscribe(listener)

    def _refresh_active_path(self, event: Optional[GraphEvent] = None) -> None:
        if event is not None and event.kind == "replace":
            self.active_path.invalidate()
        canvas = self.settings.canvas
        self.path = self.active_path.refresh(canvas.edge_color, canvas.edge_type, self.drag.dragging_node_id)

    def snapshot(self) -> dict[str, Any]:
        """plain-data view of the canvas for surfaces."""
        return {
            "project_id": self.project_id,
            "nodes": [n.to_dict() for n in self.store.nodes.values()],
            "edges": [e.to_dict() for e in self.store.edges.values()],
            "collapsed_ids": list(self.visibility.collapsed_ids),
            "active_node_ids": sorted(self.path.node_ids),
            "active_edge_ids": sorted(self.path.edge_ids),
            "is_loading": self.pipeline.is_loading,
        }

    # --- projects ---

    async def open_project(self, project_id: str) -> bool:
        """switch to a project: local cache first, then the remote copy.

        returns True when any content was loaded.
        """
        if self.sync.project_id and self.sync.project_id != project_id:
            await self.sync.flush()
        # read before any write: the replace below rewrites the cache
        cached = self.local.load(project_id)
        self.sync.reset_sync_state()
        self.sync.project_id = project_id
        loaded = False

        # no remote saves until the remote copy has been read
        self.sync.paused = True
        try:
            if cached is not None:
                nodes, edges, collapsed = cached
                for node in nodes:
                    node.is_busy = False
                self.sync.mark_images_unknown(nodes)
                self.store.replace_all(nodes, edges)
                self.visibility.set_collapsed(collapsed)
                loaded = True
                logger.info("restored %d nodes for %s from the local cache", len(nodes), project_id)
            else:
                self.visibility.set_collapsed([])
                self.store.clear()

            if self.remote is not None:
                remote = await self.sync.load_from_cloud(project_id)
                if remote is not None:
                    nodes, edges = remote
                    collapsed = list(self.visibility.collapsed_ids)
                    self.store.replace_all(nodes, edges)
                    self.visibility.set_collapsed(cid for cid in collapsed if cid in self.store.nodes)
                    loaded = loaded or bool(nodes)
                    logger.info("loaded %d nodes for %s from the remote store", len(nodes), project_id)
        finally:
            self.sync.paused = False

        self._refresh_active_path()
        return loaded

    async def close(self) -> None:
        """wait for background requests and push outstanding changes."""
        await self.pipeline.wait_idle()
        if self.sync.project_id and self.remote is not None:
            await self.sync.flush()
        self.sync.save_local()

    # --- canvas operations ---

    async def new_session(self, text: str) -> Optional[str]:
        return await self.pipeline.create_root(text)

    def reset(self) -> None:
        """clear the canvas for a fresh session."""
        self.visibility.set_collapsed([])
        self.store.clear()

    def select(self, node_ids: list[str]) -> None:
        self.store.select(node_ids)

    def toggle_collapse(self, node_id: str) -> bool:
        collapsed = self.visibility.toggle(node_id)
        self.sync.save_local()
        return collapsed

    def edit_node(self, node_id: str, **changes) -> Optional[Node]:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not editable: {', '.join(sorted(unknown))}")
        return self.store.update_node(node_id, **changes)

    def add_sticky(self, text: str, position: Optional[Position] = None) -> Node:
        return self.store.add_sticky(text, position)

    def delete_node(self, node_id: str) -> list[str]:
        return self.store.delete_subtree(node_id)

    def drag_start(self, payload: dict) -> DragEvent:
        event = DragEvent.from_payload(payload)
        self.drag.start(event)
        return event

    def drag_move(self, payload: dict) -> Optional[Position]:
        return self.drag.move(DragEvent.from_payload(payload))

    def drag_stop(self, payload: Optional[dict] = None) -> None:
        self.drag.stop(DragEvent.from_payload(payload) if payload else None)
        self._refresh_active_path()
