"""Pydantic models for the workflow graph as seen by the assistant.

Graph records use camelCase on the wire and ``_key`` as their local key, the
same shapes the editor exchanges with the graph engine.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Direction = Literal["any", "inbound", "outbound"]


class GraphModel(BaseModel):
    """Base for graph records: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class HandlePoint(GraphModel):
    id: str
    type: Literal["in", "out"]
    accept: str = "any"
    display: Optional[str] = None


class HandleSide(GraphModel):
    position: Literal["separate", "fix"] = "separate"
    point: List[HandlePoint] = Field(default_factory=list)


class GraphNode(GraphModel):
    """A node of the workflow graph."""

    key: str = Field(alias="_key")
    type: str
    sheet: str = "0"
    pos_x: float = 0
    pos_y: float = 0
    size: Optional[Dict[str, Any]] = None
    process: str = ""
    handles: Dict[str, HandleSide] = Field(default_factory=dict)
    data: Any = None
    embedding: Optional[List[float]] = Field(default=None, exclude=True)


class GraphEdge(GraphModel):
    """A directed connection between two node handles."""

    key: str = Field(alias="_key")
    source: str
    target: str
    source_handle: str = ""
    target_handle: str = ""
    sheet: str = "0"
    label: Optional[str] = None


class NodeTypeConfig(GraphModel):
    """Catalogue entry describing a custom node type."""

    key: str = Field(alias="_key")
    display_name: str
    description: str = ""
    category: str = ""
    icon: Optional[str] = None
    handles: Dict[str, HandleSide] = Field(default_factory=dict)


class GraphInfo(GraphModel):
    """Graph-level metadata."""

    key: str = Field(alias="_key")
    name: str
    description: Optional[str] = None
    sheets: Dict[str, str] = Field(default_factory=dict)
    metadata: Optional[Dict[str, Any]] = None


class Neighborhood(BaseModel):
    nodes: List[GraphNode] = Field(default_factory=list)
    edges: List[GraphEdge] = Field(default_factory=list)


class HandleSummary(BaseModel):
    side: str
    points: List[Dict[str, Any]]


def summarize_handles(handles: Optional[Dict[str, HandleSide]]) -> List[Dict[str, Any]]:
    """Compact per-side handle listing for LLM context."""
    if not handles:
        return []
    return [
        HandleSummary(
            side=side,
            points=[point.model_dump(exclude_none=True) for point in group.point],
        ).model_dump()
        for side, group in handles.items()
    ]


def handle_signature(handles: Optional[Dict[str, HandleSide]]) -> str:
    """Flatten handles into ``"L:in(any), R:out(any)"``."""
    if not handles:
        return ""
    return ", ".join(
        f"{side}:{point.type}({point.accept})"
        for side, group in handles.items()
        for point in group.point
    )


def truncate(text: Optional[str], max_len: int) -> str:
    """Cut ``text`` to ``max_len`` characters, appending ``...`` when cut."""
    if not text:
        return ""
    return text[:max_len] + "..." if len(text) > max_len else text
