"""core data model for thinkflow.

a forest of concept nodes joined by parent→child edges.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional

from ..config import DEFAULT_EDGE_COLOR, DEFAULT_EDGE_TYPE


# --- configuration ---

DEFAULT_NODE_WIDTH = 280.0
DEFAULT_NODE_HEIGHT = 180.0
MAX_DERIVED_QUESTIONS = 3


class NodeKind(Enum):
    ROOT = "root"       # seed idea typed by the user
    CHILD = "child"     # ai suggestion or follow-up answer
    STICKY = "sticky"   # free-floating user note


@dataclass
class Position:
    x: float = 0.0
    y: float = 0.0

    def moved(self, dx: float, dy: float) -> Position:
        return Position(self.x + dx, self.y + dy)

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> Position:
        d = d or {}
        return cls(x=float(d.get("x", 0.0)), y=float(d.get("y", 0.0)))


@dataclass
class Node:
    """single concept node on the canvas."""

    id: str
    kind: NodeKind
    position: Position = field(default_factory=Position)
    label: str = ""
    description: str = ""
    long_form_content: Optional[str] = None
    image_url: Optional[str] = None
    pending_question: str = ""
    derived_questions: list[str] = field(default_factory=list)
    width: Optional[float] = None  # user-resizable, persisted
    is_busy: bool = False

    # derived, recomputed by VisibilityEngine
    child_count: int = 0
    hidden_descendant_count: int = 0
    hidden: bool = False

    # transient ui state, never hashed or synced
    error: Optional[str] = None
    is_image_loading: bool = False
    is_detail_expanded: bool = False
    selected: bool = False
    faded: bool = False
    height: Optional[float] = None  # measured by the canvas

    @classmethod
    def create_root(cls, text: str, description: str = "", position: Optional[Position] = None) -> Node:
        """create the session root from user text."""
        return cls(
            id=f"root-{_generate_id()}",
            kind=NodeKind.ROOT,
            position=position or Position(50.0, 300.0),
            label=text,
            description=description,
        )

    @classmethod
    def create_child(
        cls,
        label: str,
        description: str = "",
        position: Optional[Position] = None,
    ) -> Node:
        """create a child node for an ai-suggested item or follow-up."""
        return cls(
            id=f"node-{_generate_id()}",
            kind=NodeKind.CHILD,
            position=position or Position(),
            label=label,
            description=description,
        )

    @classmethod
    def create_sticky(cls, text: str, position: Optional[Position] = None) -> Node:
        """create a user sticky note."""
        return cls(
            id=f"sticky-{_generate_id()}",
            kind=NodeKind.STICKY,
            position=position or Position(),
            label=text,
        )

    @property
    def size(self) -> tuple[float, float]:
        """rendered size, falling back to defaults until measured."""
        return (self.width or DEFAULT_NODE_WIDTH, self.height or DEFAULT_NODE_HEIGHT)

    def to_dict(self) -> dict:
        """serialize to dict for json."""
        d = asdict(self)
        d["kind"] = self.kind.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Node:
        """deserialize from dict."""
        d = d.copy()
        d["kind"] = NodeKind(d["kind"])
        d["position"] = Position.from_dict(d.get("position"))
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class EdgeStyle:
    line_kind: str = DEFAULT_EDGE_TYPE
    color: str = DEFAULT_EDGE_COLOR
    animated: bool = False
    # emphasis pass output
    stroke: Optional[str] = None
    stroke_width: float = 2.0


@dataclass
class Edge:
    """parent → child link."""

    id: str
    source: str
    target: str
    style: EdgeStyle = field(default_factory=EdgeStyle)
    hidden: bool = False

    @classmethod
    def connect(cls, source: str, target: str, style: Optional[EdgeStyle] = None) -> Edge:
        return cls(
            id=f"e-{source}-{target}",
            source=source,
            target=target,
            style=style or EdgeStyle(),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> Edge:
        d = d.copy()
        style = d.get("style") or {}
        d["style"] = EdgeStyle(**{k: v for k, v in style.items() if k in EdgeStyle.__dataclass_fields__})
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in d.items() if k in known})


def _generate_id() -> str:
    """generate a short unique id."""
    return uuid.uuid4().hex[:12]
