"""core primitives shared between surfaces."""

from .models import (
    Node,
    NodeKind,
    Position,
    Edge,
    EdgeStyle,
    DEFAULT_NODE_WIDTH,
    DEFAULT_NODE_HEIGHT,
    MAX_DERIVED_QUESTIONS,
)
from .graph import GraphStore, GraphEvent, GraphError, VisibilityEngine
from .active_path import ActivePath, ActivePathComputer
from .drag import DragEngine, DragEvent, AlignmentGuides
from .layout import LayoutEngine, FitViewRequest, CanvasPort, RecordingCanvas
from .partial_json import IncrementalExtractor, try_extract_overview, try_extract_nodes
from .client import (
    AIRequestError,
    ErrorKind,
    ClientProtocol,
    OpenAIClient,
    ClaudeClient,
    MockClient,
    describe_error,
)
from .expansion import ExpansionPipeline
from .storage import StorageError, RemoteStore, PostgrestStore, InMemoryStore, LocalCache, ProjectManager
from .sync import SyncReconciler, node_hash, edge_hash
from .export import export_markdown

__all__ = [
    # models
    "Node",
    "NodeKind",
    "Position",
    "Edge",
    "EdgeStyle",
    "DEFAULT_NODE_WIDTH",
    "DEFAULT_NODE_HEIGHT",
    "MAX_DERIVED_QUESTIONS",
    # graph
    "GraphStore",
    "GraphEvent",
    "GraphError",
    "VisibilityEngine",
    "ActivePath",
    "ActivePathComputer",
    "DragEngine",
    "DragEvent",
    "AlignmentGuides",
    "LayoutEngine",
    "FitViewRequest",
    "CanvasPort",
    "RecordingCanvas",
    # streaming
    "IncrementalExtractor",
    "try_extract_overview",
    "try_extract_nodes",
    # client
    "AIRequestError",
    "ErrorKind",
    "ClientProtocol",
    "OpenAIClient",
    "ClaudeClient",
    "MockClient",
    "describe_error",
    "ExpansionPipeline",
    # persistence
    "StorageError",
    "RemoteStore",
    "PostgrestStore",
    "InMemoryStore",
    "LocalCache",
    "ProjectManager",
    "SyncReconciler",
    "node_hash",
    "edge_hash",
    "export_markdown",
]
