"""State and message schemas for the graph agent.

This module defines:
- the chunk protocol produced by every LLM provider adapter
- proposed graph mutations awaiting human approval
- the retrieval context assembled for a query
- the serializable per-thread agent state and the events a turn emits
"""

from __future__ import annotations

import operator
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ChatMessage = Dict[str, Any]
Role = Literal["viewer", "editor", "admin"]


# ─── Stream chunk protocol ───────────────────────────────────────────


class TokenUsage(BaseModel):
    """Cumulative token counts reported by a backend."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0


class ToolCall(BaseModel):
    """A fully assembled tool call."""

    id: str
    name: str
    arguments: str = Field(default="", description="Raw JSON argument string as produced by the model")

    def to_message(self) -> Dict[str, Any]:
        """OpenAI ``tool_calls`` entry."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class TokenChunk(BaseModel):
    type: Literal["token"] = "token"
    content: str


class ToolCallStartChunk(BaseModel):
    type: Literal["tool_call_start"] = "tool_call_start"
    index: int
    id: str
    name: str


class ToolCallDoneChunk(BaseModel):
    type: Literal["tool_call_done"] = "tool_call_done"
    index: int
    tool_call: ToolCall


class UsageChunk(BaseModel):
    type: Literal["usage"] = "usage"
    usage: TokenUsage


class DoneChunk(BaseModel):
    type: Literal["done"] = "done"


StreamChunk = Annotated[
    Union[TokenChunk, ToolCallStartChunk, ToolCallDoneChunk, UsageChunk, DoneChunk],
    Field(discriminator="type"),
]


# ─── Proposed actions ────────────────────────────────────────────────


class ActionPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CreateNodePayload(ActionPayload):
    typeKey: str
    sheet: str
    posX: float
    posY: float
    process: Optional[str] = None
    handles: Optional[Dict[str, Any]] = None
    data: Optional[Dict[str, Any]] = None


class CreateEdgePayload(ActionPayload):
    sourceKey: str
    sourceHandle: str
    targetKey: str
    targetHandle: str
    sheet: str
    label: Optional[str] = None


class DeleteNodePayload(ActionPayload):
    nodeKey: str


class CreateNodeAction(BaseModel):
    type: Literal["create_node"] = "create_node"
    payload: CreateNodePayload


class CreateEdgeAction(BaseModel):
    type: Literal["create_edge"] = "create_edge"
    payload: CreateEdgePayload


class DeleteNodeAction(BaseModel):
    type: Literal["delete_node"] = "delete_node"
    payload: DeleteNodePayload


ProposedAction = Annotated[
    Union[CreateNodeAction, CreateEdgeAction, DeleteNodeAction],
    Field(discriminator="type"),
]


def action_to_wire(action: BaseModel) -> Dict[str, Any]:
    """Serialize a proposed action without unset optional payload fields."""
    return action.model_dump(exclude_none=True)


class PendingInterrupt(BaseModel):
    """A write-tool call parked until a human approves or rejects it."""

    proposed_action: ProposedAction
    tool_call: ToolCall
    reason: str = ""
    remaining_tool_calls: List[ToolCall] = Field(
        default_factory=list,
        description="Calls of the same assistant message still to be answered after resume",
    )


# ─── Retrieval context ───────────────────────────────────────────────


class RAGGraphSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    description: Optional[str] = None
    sheets: Dict[str, str] = Field(default_factory=dict)
    metadata: Optional[Dict[str, Any]] = None


class RAGNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    type: str
    type_name: Optional[str] = None
    sheet: str
    sheet_name: Optional[str] = None
    process: str = ""
    handles: List[Dict[str, Any]] = Field(default_factory=list)
    data_summary: Optional[str] = None


class RAGEdge(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    source: str
    target: str
    source_handle: str = ""
    target_handle: str = ""
    label: Optional[str] = None


class RAGNodeType(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    display_name: str
    description: str = ""
    category: str = ""
    icon: Optional[str] = None
    handles_summary: str = ""


class RAGContext(BaseModel):
    """Bounded, relevance-ranked slice of a graph for one query."""

    model_config = ConfigDict(frozen=True)

    graph: RAGGraphSummary
    relevant_nodes: List[RAGNode] = Field(default_factory=list)
    relevant_edges: List[RAGEdge] = Field(default_factory=list)
    node_type_configs: List[RAGNodeType] = Field(default_factory=list)


# ─── Agent state and turn events ─────────────────────────────────────


class AgentState(BaseModel):
    """Serializable conversation state of one thread's agent."""

    state_version: Literal["v1"] = "v1"
    graph_key: str
    workspace: str
    role: Role = "editor"
    messages: List[ChatMessage] = Field(default_factory=list)
    pending_interrupt: Optional[PendingInterrupt] = None


class AgentTurnState(BaseModel):
    """
    Working state of one LangGraph run: a chat turn, or the continuation of a
    parked proposal. Values stay plain dicts and lists so checkpoints need no
    custom serializers.
    """

    messages: Annotated[List[ChatMessage], operator.add] = Field(default_factory=list)
    question: str = ""
    tool_calls: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="Calls of the last assistant message not answered yet",
    )
    after_proposal: bool = Field(
        default=False,
        description="tool_calls followed an approved or rejected proposal in the same message",
    )
    pending_interrupt: Optional[Dict[str, Any]] = None
    rounds: int = 0
    final_text: Optional[str] = None


class ToolCallRecord(BaseModel):
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    result: str


class AgentResult(BaseModel):
    """Outcome of a non-streaming turn."""

    type: Literal["message", "interrupt"]
    message: Optional[str] = None
    proposed_action: Optional[ProposedAction] = None
    tool_call: Optional[ToolCall] = None
    reason: Optional[str] = None
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)


class TokenEvent(BaseModel):
    kind: Literal["token"] = "token"
    token: str


class ToolStartEvent(BaseModel):
    kind: Literal["tool_start"] = "tool_start"
    tool_call_id: str
    tool_name: str


class ToolResultEvent(BaseModel):
    kind: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    result: str


class CompleteEvent(BaseModel):
    kind: Literal["complete"] = "complete"
    full_text: str


class InterruptEvent(BaseModel):
    kind: Literal["interrupt"] = "interrupt"
    proposed_action: ProposedAction
    tool_call: ToolCall
    reason: str = ""
    message: str = Field(default="", description="Assistant text streamed alongside the proposal")


AgentEvent = Union[TokenEvent, ToolStartEvent, ToolResultEvent, CompleteEvent, InterruptEvent]
