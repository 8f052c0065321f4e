"""Read and write tools exposed to the graph agent."""

from api.tools.base import WRITE_TOOL_PREFIX, ToolContext, is_write_tool
from api.tools.registry import ToolRegistry, get_tool_registry

__all__ = ["WRITE_TOOL_PREFIX", "ToolContext", "ToolRegistry", "get_tool_registry", "is_write_tool"]
