"""pytest fixtures for thinkflow tests."""

import json
import pytest
import tempfile
from pathlib import Path

from thinkflow.config import Settings
from thinkflow.context import AppContext
from thinkflow.core.client import MockClient
from thinkflow.core.graph import GraphStore, VisibilityEngine
from thinkflow.core.models import Node, Position
from thinkflow.core.storage import InMemoryStore


@pytest.fixture
def temp_dir():
    """temporary directory that cleans up after test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store():
    """root with two children; the first child has one grandchild."""
    store = GraphStore()
    root = store.add_node(Node.create_root("build a garden", description="core idea", position=Position(0, 0)))
    a = store.add_child(root.id, Node.create_child("soil", "what grows", Position(450, -140)))
    store.add_child(root.id, Node.create_child("water", "irrigation", Position(450, 140)))
    store.add_child(a.id, Node.create_child("compost", "feed the soil", Position(900, -140)))
    return store


@pytest.fixture
def ids(store):
    """label -> id lookup for the sample store."""
    return {n.label: n.id for n in store.nodes.values()}


@pytest.fixture
def visibility(store):
    engine = VisibilityEngine(store)
    store.subscribe(engine.on_graph_event)
    engine.apply()
    return engine


@pytest.fixture
def expansion_response():
    """a structured expansion response with four nodes."""
    return json.dumps({
        "overview": "a garden is a small ecosystem",
        "nodes": [
            {"text": "soil health", "description": "everything starts underground"},
            {"text": "water \"smart\"", "description": "drip lines, not sprinklers"},
            {"text": "companion planting", "description": "plants that help each other"},
            {"text": "seasonal plan", "description": "what to sow when"},
        ],
    })


@pytest.fixture
def mock_client():
    return MockClient(delay=0)


@pytest.fixture
def ctx(temp_dir, mock_client):
    """app context on a mock client and an in-memory remote store."""
    settings = Settings(provider="mock", debounce_seconds=60.0)
    return AppContext(settings=settings, client=mock_client, remote=InMemoryStore(), data_dir=temp_dir)
