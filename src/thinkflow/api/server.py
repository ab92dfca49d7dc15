"""fastapi server for thinkflow.

exposes canvas operations as REST endpoints for a browser canvas. the app is
built around one AppContext held on `app.state`.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from ..context import LOCAL_PROJECT_ID, AppContext
from ..core.client import AIRequestError, describe_error
from ..core.export import export_filename, export_markdown
from ..core.graph import GraphError
from ..core.models import Edge, Node, Position
from ..core.storage import StorageError

logger = logging.getLogger(__name__)


# --- pydantic models for api ---

class SessionCreate(BaseModel):
    """seed idea for a new map."""
    text: str


class ExpandRequest(BaseModel):
    """re-expand a node with an optional new requirement."""
    requirement: Optional[str] = None


class FollowUpRequest(BaseModel):
    """question to answer in a new child; falls back to the node's pending question."""
    question: Optional[str] = None


class NodeEdit(BaseModel):
    """user edits to a node."""
    label: Optional[str] = None
    description: Optional[str] = None
    pending_question: Optional[str] = None
    width: Optional[float] = None
    height: Optional[float] = None
    is_detail_expanded: Optional[bool] = None


class StickyCreate(BaseModel):
    text: str
    x: float = 0.0
    y: float = 0.0


class SelectRequest(BaseModel):
    node_ids: list[str] = []


class ProjectCreate(BaseModel):
    name: str
    description: Optional[str] = None


class NodeResponse(BaseModel):
    """node in api response."""
    id: str
    kind: str
    x: float
    y: float
    label: str
    description: str
    long_form_content: Optional[str]
    image_url: Optional[str]
    pending_question: str
    derived_questions: list[str]
    width: Optional[float]
    is_busy: bool
    child_count: int
    hidden_descendant_count: int
    hidden: bool
    error: Optional[str]
    is_image_loading: bool
    is_detail_expanded: bool
    selected: bool
    faded: bool

    @classmethod
    def from_node(cls, node: Node) -> "NodeResponse":
        return cls(
            id=node.id,
            kind=node.kind.value,
            x=node.position.x,
            y=node.position.y,
            label=node.label,
            description=node.description,
            long_form_content=node.long_form_content,
            image_url=node.image_url,
            pending_question=node.pending_question,
            derived_questions=node.derived_questions,
            width=node.width,
            is_busy=node.is_busy,
            child_count=node.child_count,
            hidden_descendant_count=node.hidden_descendant_count,
            hidden=node.hidden,
            error=node.error,
            is_image_loading=node.is_image_loading,
            is_detail_expanded=node.is_detail_expanded,
            selected=node.selected,
            faded=node.faded,
        )


class EdgeResponse(BaseModel):
    """edge in api response."""
    id: str
    source: str
    target: str
    line_kind: str
    color: str
    animated: bool
    stroke: Optional[str]
    stroke_width: float
    hidden: bool

    @classmethod
    def from_edge(cls, edge: Edge) -> "EdgeResponse":
        return cls(
            id=edge.id,
            source=edge.source,
            target=edge.target,
            line_kind=edge.style.line_kind,
            color=edge.style.color,
            animated=edge.style.animated,
            stroke=edge.style.stroke,
            stroke_width=edge.style.stroke_width,
            hidden=edge.hidden,
        )


class GraphResponse(BaseModel):
    """whole canvas in api response."""
    project_id: Optional[str]
    nodes: list[NodeResponse]
    edges: list[EdgeResponse]
    collapsed_ids: list[str]
    active_node_ids: list[str]
    active_edge_ids: list[str]
    guide_x: Optional[float] = None
    guide_y: Optional[float] = None
    is_loading: bool

    @classmethod
    def from_context(cls, ctx: AppContext) -> "GraphResponse":
        return cls(
            project_id=ctx.project_id,
            nodes=[NodeResponse.from_node(n) for n in ctx.store.nodes.values()],
            edges=[EdgeResponse.from_edge(e) for e in ctx.store.edges.values()],
            collapsed_ids=list(ctx.visibility.collapsed_ids),
            active_node_ids=sorted(ctx.path.node_ids),
            active_edge_ids=sorted(ctx.path.edge_ids),
            guide_x=ctx.drag.guides.x,
            guide_y=ctx.drag.guides.y,
            is_loading=ctx.pipeline.is_loading,
        )


class SyncStatus(BaseModel):
    project_id: Optional[str]
    is_syncing: bool
    last_sync_time: Optional[str]
    sync_error: Optional[str]
    pending: dict[str, int]


# --- helpers ---

def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


def _require_node(ctx: AppContext, node_id: str) -> Node:
    node = ctx.store.get_node(node_id)
    if node is None:
        raise HTTPException(status_code=404, detail=f"node not found: {node_id}")
    return node


def _require_idle(node: Node) -> None:
    if node.is_busy:
        raise HTTPException(status_code=400, detail=f"node is busy: {node.id}")


def _require_projects(ctx: AppContext):
    if ctx.projects is None:
        raise HTTPException(status_code=400, detail="no remote store configured")
    return ctx.projects


def _sync_status(ctx: AppContext) -> SyncStatus:
    sync = ctx.sync
    return SyncStatus(
        project_id=sync.project_id,
        is_syncing=sync.is_syncing,
        last_sync_time=sync.last_sync_time.isoformat() if sync.last_sync_time else None,
        sync_error=sync.sync_error,
        pending=sync.pending_changes(),
    )


def create_app(ctx: AppContext) -> FastAPI:
    """build the api around one application context."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # without a remote store there is a single local project
        if ctx.project_id is None and ctx.remote is None:
            await ctx.open_project(LOCAL_PROJECT_ID)
        yield
        await ctx.close()

    app = FastAPI(
        title="thinkflow api",
        description="REST API for the thinkflow mind-map canvas",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.ctx = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- status ---

    @app.get("/health")
    async def health():
        """health check."""
        return {"status": "ok"}

    @app.get("/status")
    async def status(ctx: AppContext = Depends(get_ctx)):
        """provider, loading flag and sync state."""
        return {
            "provider": ctx.settings.provider,
            "is_loading": ctx.pipeline.is_loading,
            "node_count": len(ctx.store.nodes),
            "sync": _sync_status(ctx).model_dump(),
        }

    @app.get("/graph", response_model=GraphResponse)
    async def get_graph(ctx: AppContext = Depends(get_ctx)):
        """current canvas state."""
        return GraphResponse.from_context(ctx)

    # --- sessions ---

    @app.post("/session", response_model=GraphResponse)
    async def create_session(req: SessionCreate, ctx: AppContext = Depends(get_ctx)):
        """start a new map from a seed idea."""
        if not req.text.strip():
            raise HTTPException(status_code=400, detail="text is required")
        if ctx.pipeline.is_loading:
            raise HTTPException(status_code=400, detail="a map is already being created")
        await ctx.new_session(req.text)
        return GraphResponse.from_context(ctx)

    @app.post("/reset", response_model=GraphResponse)
    async def reset(ctx: AppContext = Depends(get_ctx)):
        """clear the canvas."""
        ctx.reset()
        return GraphResponse.from_context(ctx)

    # --- ai operations ---

    @app.post("/nodes/{node_id}/expand", response_model=GraphResponse)
    async def expand_node(node_id: str, req: ExpandRequest, ctx: AppContext = Depends(get_ctx)):
        """replace a node's children with fresh suggestions."""
        _require_idle(_require_node(ctx, node_id))
        await ctx.pipeline.re_expand(node_id, req.requirement)
        return GraphResponse.from_context(ctx)

    @app.post("/nodes/{node_id}/follow-up", response_model=GraphResponse)
    async def follow_up(node_id: str, req: FollowUpRequest, ctx: AppContext = Depends(get_ctx)):
        """answer a question about a node in a new child."""
        node = _require_node(ctx, node_id)
        _require_idle(node)
        if not (req.question or node.pending_question).strip():
            raise HTTPException(status_code=400, detail="question is required")
        await ctx.pipeline.ask_follow_up(node_id, req.question)
        return GraphResponse.from_context(ctx)

    @app.post("/nodes/{node_id}/deep-dive", response_model=GraphResponse)
    async def deep_dive(node_id: str, ctx: AppContext = Depends(get_ctx)):
        """stream long-form content into the node."""
        _require_node(ctx, node_id)
        await ctx.pipeline.deep_dive(node_id)
        return GraphResponse.from_context(ctx)

    @app.post("/nodes/{node_id}/image", response_model=NodeResponse)
    async def generate_image(node_id: str, ctx: AppContext = Depends(get_ctx)):
        """illustrate a node; failures land in the node's error."""
        node = _require_node(ctx, node_id)
        if node.is_image_loading:
            raise HTTPException(status_code=400, detail="image already generating")
        await ctx.pipeline.generate_image(node_id)
        return NodeResponse.from_node(_require_node(ctx, node_id))

    @app.post("/nodes/{node_id}/questions", response_model=NodeResponse)
    async def derive_questions(node_id: str, ctx: AppContext = Depends(get_ctx)):
        """suggest follow-up questions for a node with content."""
        node = _require_node(ctx, node_id)
        if not node.long_form_content:
            raise HTTPException(status_code=400, detail="node has no content yet")
        await ctx.pipeline.generate_derived_questions(node_id)
        return NodeResponse.from_node(_require_node(ctx, node_id))

    @app.post("/summary")
    async def summary(ctx: AppContext = Depends(get_ctx)):
        """prose summary of the whole map."""
        if not ctx.store.nodes:
            raise HTTPException(status_code=400, detail="canvas is empty")
        return {"summary": await ctx.pipeline.generate_summary()}

    # --- node editing ---

    @app.patch("/nodes/{node_id}", response_model=NodeResponse)
    async def edit_node(node_id: str, req: NodeEdit, ctx: AppContext = Depends(get_ctx)):
        """edit node fields."""
        _require_node(ctx, node_id)
        changes = req.model_dump(exclude_none=True)
        if changes:
            ctx.edit_node(node_id, **changes)
        return NodeResponse.from_node(_require_node(ctx, node_id))

    @app.delete("/nodes/{node_id}")
    async def delete_node(node_id: str, ctx: AppContext = Depends(get_ctx)):
        """delete a node and its subtree."""
        _require_node(ctx, node_id)
        return {"deleted": ctx.delete_node(node_id)}

    @app.post("/nodes/{node_id}/collapse")
    async def toggle_collapse(node_id: str, ctx: AppContext = Depends(get_ctx)):
        """toggle a node's collapsed state."""
        node = _require_node(ctx, node_id)
        collapsed = ctx.toggle_collapse(node_id)
        return {"collapsed": collapsed, "hidden_descendant_count": node.hidden_descendant_count}

    @app.post("/stickies", response_model=NodeResponse)
    async def add_sticky(req: StickyCreate, ctx: AppContext = Depends(get_ctx)):
        """add a free-floating sticky note."""
        try:
            node = ctx.add_sticky(req.text, Position(req.x, req.y))
        except GraphError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return NodeResponse.from_node(node)

    @app.post("/select", response_model=GraphResponse)
    async def select(req: SelectRequest, ctx: AppContext = Depends(get_ctx)):
        """replace the selection."""
        ctx.select(req.node_ids)
        return GraphResponse.from_context(ctx)

    # --- drag ---

    @app.post("/drag/start")
    async def drag_start(payload: dict, ctx: AppContext = Depends(get_ctx)):
        try:
            event = ctx.drag_start(payload)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"dragging": event.node_id}

    @app.post("/drag/move", response_model=GraphResponse)
    async def drag_move(payload: dict, ctx: AppContext = Depends(get_ctx)):
        """one drag frame: snap, move, carry descendants."""
        try:
            position = ctx.drag_move(payload)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if position is None:
            raise HTTPException(status_code=404, detail="node not found")
        return GraphResponse.from_context(ctx)

    @app.post("/drag/stop")
    async def drag_stop(payload: Optional[dict] = None, ctx: AppContext = Depends(get_ctx)):
        try:
            ctx.drag_stop(payload)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"dragging": None}

    # --- layout ---

    @app.post("/layout/reset", response_model=GraphResponse)
    async def reset_layout(ctx: AppContext = Depends(get_ctx)):
        """tidy tree layout of the visible nodes."""
        if ctx.store.root() is None:
            raise HTTPException(status_code=404, detail="no root node")
        ctx.layout.apply()
        return GraphResponse.from_context(ctx)

    @app.post("/layout/center")
    async def center_root(ctx: AppContext = Depends(get_ctx)):
        """frame the root node."""
        if not ctx.layout.center_root():
            raise HTTPException(status_code=404, detail="no root node")
        request = getattr(ctx.canvas, "last_request", None)
        return {"fit_view": asdict(request) if request else None}

    # --- export ---

    @app.get("/export", response_class=PlainTextResponse)
    async def export(ctx: AppContext = Depends(get_ctx)):
        """markdown outline of the map."""
        markdown = export_markdown(ctx.store)
        if markdown is None:
            raise HTTPException(status_code=404, detail="no root node")
        filename = export_filename(ctx.store.root().label)
        return PlainTextResponse(
            markdown,
            media_type="text/markdown",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    # --- projects and sync ---

    @app.get("/projects")
    async def list_projects(ctx: AppContext = Depends(get_ctx)):
        projects = _require_projects(ctx)
        try:
            return await projects.list_projects()
        except StorageError as e:
            raise HTTPException(status_code=502, detail=str(e))

    @app.post("/projects")
    async def create_project(req: ProjectCreate, ctx: AppContext = Depends(get_ctx)):
        projects = _require_projects(ctx)
        try:
            return await projects.create_project(req.name, req.description)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StorageError as e:
            raise HTTPException(status_code=502, detail=str(e))

    @app.delete("/projects/{project_id}")
    async def delete_project(project_id: str, ctx: AppContext = Depends(get_ctx)):
        projects = _require_projects(ctx)
        if project_id == ctx.project_id:
            raise HTTPException(status_code=400, detail="cannot delete the open project")
        try:
            await projects.delete_project(project_id)
        except StorageError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {"deleted": project_id}

    @app.post("/projects/{project_id}/open", response_model=GraphResponse)
    async def open_project(project_id: str, ctx: AppContext = Depends(get_ctx)):
        """switch projects: local cache first, then the remote copy."""
        await ctx.open_project(project_id)
        return GraphResponse.from_context(ctx)

    @app.get("/sync", response_model=SyncStatus)
    async def sync_status(ctx: AppContext = Depends(get_ctx)):
        return _sync_status(ctx)

    @app.post("/sync", response_model=SyncStatus)
    async def sync_now(ctx: AppContext = Depends(get_ctx)):
        """push outstanding changes right away."""
        if ctx.project_id is None or ctx.remote is None:
            raise HTTPException(status_code=400, detail="no project open on a remote store")
        await ctx.sync.save_now()
        return _sync_status(ctx)

    @app.exception_handler(AIRequestError)
    async def ai_error_handler(request: Request, exc: AIRequestError):
        # pipeline operations catch their own errors; this covers direct calls
        return JSONResponse(status_code=502, content={"detail": describe_error(exc)})

    return app

