"""Write tools: graph mutations the model can only propose.

Calling one never touches the graph. The arguments are validated and turned
into a ProposedAction that waits for a human decision. ``reason`` is shown to
the user next to the proposal and is never part of the action payload.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from api.schemas.agent_state import (
    CreateEdgeAction,
    CreateEdgePayload,
    CreateNodeAction,
    CreateNodePayload,
    DeleteNodeAction,
    DeleteNodePayload,
)
from api.tools.base import ToolSpec
from libs.graph.models import HandleSide


class ProposalArgs(BaseModel):
    # Stray keys from the model are dropped
    model_config = ConfigDict(extra="ignore")

    reason: str = Field(description="Why this change is needed, shown to the user")


class ProposeCreateNodeArgs(ProposalArgs):
    typeKey: str = Field(description="Type of the node to create (e.g. 'api-call', 'filter', 'starter', 'html')")
    sheet: str = Field(description="Sheet id to place the node in (e.g. '0')")
    posX: float = Field(description="X position on the canvas")
    posY: float = Field(description="Y position on the canvas")
    process: str = Field(default="", description="JavaScript process code of the node")
    handles: Optional[Dict[str, HandleSide]] = Field(
        default=None,
        description="Handles keyed by side (T, D, R, L, 0); omit to use the type defaults",
    )
    data: Optional[Dict[str, Any]] = Field(default=None, description="Type-specific node data")


class ProposeCreateEdgeArgs(ProposalArgs):
    sourceKey: str = Field(description="Key of the source node")
    sourceHandle: str = Field(description="Id of the output handle on the source node")
    targetKey: str = Field(description="Key of the target node")
    targetHandle: str = Field(description="Id of the input handle on the target node")
    sheet: str = Field(description="Sheet id containing both nodes")
    label: Optional[str] = Field(default=None, description="Edge label (e.g. 'success', 'error')")


class ProposeDeleteNodeArgs(ProposalArgs):
    nodeKey: str = Field(description="Key of the node to delete")


def build_create_node(args: ProposeCreateNodeArgs) -> CreateNodeAction:
    return CreateNodeAction(payload=CreateNodePayload(
        typeKey=args.typeKey,
        sheet=args.sheet,
        posX=args.posX,
        posY=args.posY,
        process=args.process or None,
        handles=(
            {side: group.model_dump(exclude_none=True) for side, group in args.handles.items()}
            if args.handles else None
        ),
        data=args.data,
    ))


def build_create_edge(args: ProposeCreateEdgeArgs) -> CreateEdgeAction:
    return CreateEdgeAction(payload=CreateEdgePayload(
        sourceKey=args.sourceKey,
        sourceHandle=args.sourceHandle,
        targetKey=args.targetKey,
        targetHandle=args.targetHandle,
        sheet=args.sheet,
        label=args.label,
    ))


def build_delete_node(args: ProposeDeleteNodeArgs) -> DeleteNodeAction:
    return DeleteNodeAction(payload=DeleteNodePayload(nodeKey=args.nodeKey))


WRITE_TOOLS: List[ToolSpec] = [
    ToolSpec(
        name="propose_create_node",
        description="Propose creating a new node. The action is submitted to the user for approval before anything changes.",
        args_schema=ProposeCreateNodeArgs,
        build_action=build_create_node,
    ),
    ToolSpec(
        name="propose_create_edge",
        description="Propose connecting two nodes with an edge. The action is submitted to the user for approval.",
        args_schema=ProposeCreateEdgeArgs,
        build_action=build_create_edge,
    ),
    ToolSpec(
        name="propose_delete_node",
        description="Propose deleting a node and its edges. The action is submitted to the user for approval.",
        args_schema=ProposeDeleteNodeArgs,
        build_action=build_delete_node,
    ),
]
