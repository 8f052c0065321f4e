"""Shared types for agent tools."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Type

from langchain_core.utils.function_calling import convert_to_openai_function
from pydantic import BaseModel

from libs.graph.datasource import GraphDataSource

# Write tools share this prefix; integrators rely on it to tell intent from the name.
WRITE_TOOL_PREFIX = "propose_"


def is_write_tool(name: str) -> bool:
    return name.startswith(WRITE_TOOL_PREFIX)


@dataclass(frozen=True)
class ToolContext:
    """Graph a tool call is bound to."""

    graph_key: str
    data_source: GraphDataSource


ReadExecutor = Callable[[Any, ToolContext], Awaitable[Any]]
ActionBuilder = Callable[[Any], BaseModel]


@dataclass(frozen=True)
class ToolSpec:
    """One registry entry: name, argument schema and how to run it."""

    name: str
    description: str
    args_schema: Type[BaseModel]
    executor: Optional[ReadExecutor] = None
    build_action: Optional[ActionBuilder] = None

    @property
    def is_write(self) -> bool:
        return self.build_action is not None

    def definition(self) -> Dict[str, Any]:
        """OpenAI function-calling definition derived from the pydantic schema."""
        function = convert_to_openai_function(self.args_schema)
        function["name"] = self.name
        function["description"] = self.description
        return {"type": "function", "function": function}
