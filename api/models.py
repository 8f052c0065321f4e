"""Pydantic models for the AI WebSocket channel.

Inbound messages are validated against a discriminated union on ``type``.
Outbound messages are built with ``to_wire`` so field names follow the
camelCase wire convention.
"""

from __future__ import annotations

import time
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


class InboundMessage(BaseModel):
    """Fields shared by every request a client can send."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Union[int, str] = Field(
        ...,
        validation_alias=AliasChoices("id", "_id"),
        description="Client-chosen request id echoed on every reply",
    )
    token: Optional[str] = Field(default=None, description="Firebase ID token")


class ChatRequest(InboundMessage):
    """Start a turn, optionally on an existing thread."""

    type: Literal["ai:chat"]
    graph_key: str = Field(..., min_length=1, validation_alias=AliasChoices("graphKey", "graph_key"))
    message: str = Field(..., max_length=8000)
    thread_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("threadId", "thread_id"))

    @field_validator("message")
    @classmethod
    def message_must_not_be_empty(cls, v: str) -> str:
        """Validate that the message is not empty."""
        if not v.strip():
            raise ValueError("Message must not be empty")
        return v


class ResumeRequest(InboundMessage):
    """Approve or reject the pending proposal of a thread."""

    type: Literal["ai:resume"]
    thread_id: str = Field(..., min_length=1, validation_alias=AliasChoices("threadId", "thread_id"))
    approved: bool
    feedback: Optional[str] = Field(default=None, max_length=4000)


class InterruptRequest(InboundMessage):
    """Cancel in-flight turns of a thread on this connection."""

    type: Literal["ai:interrupt"]
    thread_id: str = Field(..., min_length=1, validation_alias=AliasChoices("threadId", "thread_id"))


ClientMessage = Annotated[
    Union[ChatRequest, ResumeRequest, InterruptRequest],
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(data: Any) -> Union[ChatRequest, ResumeRequest, InterruptRequest]:
    """
    Validate one decoded JSON frame.

    Raises:
        pydantic.ValidationError: The frame does not match any request type
    """
    return client_message_adapter.validate_python(data)


class OutboundMessage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Union[int, str]

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class TokenMessage(OutboundMessage):
    type: Literal["ai:token"] = "ai:token"
    token: str


class ToolStartMessage(OutboundMessage):
    type: Literal["ai:tool_start"] = "ai:tool_start"
    tool_call_id: str
    tool_name: str


class ToolResultMessage(OutboundMessage):
    type: Literal["ai:tool_result"] = "ai:tool_result"
    tool_call_id: str
    result: str


class CompleteMessage(OutboundMessage):
    type: Literal["ai:complete"] = "ai:complete"
    thread_id: str
    full_text: str


class ErrorMessage(OutboundMessage):
    type: Literal["ai:error"] = "ai:error"
    error: str
    code: Optional[str] = None
    retryable: Optional[bool] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints.

    Attributes:
        status: Health status (healthy/ready/not_ready)
        service: Service name
        version: Service version
        timestamp: Unix timestamp
        details: Optional dependency details
    """

    status: Literal["healthy", "unhealthy", "ready", "not_ready"] = Field(description="Health status")
    service: str = Field(description="Service name")
    version: str = Field(description="Service version")
    timestamp: float = Field(default_factory=time.time, description="Unix timestamp")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Dependency details")
