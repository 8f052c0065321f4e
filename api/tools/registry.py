"""
Tool registry for the graph agent.

Maps tool names to their schema and behaviour:
- read tools are validated and executed against the bound graph
- write tools are validated and parsed into a ProposedAction, never executed
- argument problems come back as ``{"error": ...}`` values for the model
- names missing from the registry raise ``UnknownToolError``
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import structlog
from pydantic import BaseModel, ValidationError

from api.errors import ToolValidationError, UnknownToolError
from api.tools.base import ToolContext, ToolSpec, is_write_tool
from api.tools.read_tools import READ_TOOLS
from api.tools.write_tools import WRITE_TOOLS

logger = structlog.get_logger(__name__)

RawArguments = Union[str, Dict[str, Any], None]


def parse_arguments(tool_name: str, raw: RawArguments) -> Dict[str, Any]:
    """
    Decode a model-produced argument string.

    Raises:
        ToolValidationError: The string is not a JSON object
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        raise ToolValidationError(tool_name, "arguments must be a JSON object")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ToolValidationError(tool_name, f"arguments are not valid JSON ({e.msg})") from e
    if not isinstance(parsed, dict):
        raise ToolValidationError(tool_name, "arguments must be a JSON object")
    return parsed


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "arguments"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


class ToolRegistry:
    """Name -> ToolSpec lookup, resolved once per call."""

    def __init__(self, specs: Iterable[ToolSpec]):
        self._specs: Dict[str, ToolSpec] = {}
        for spec in specs:
            if spec.is_write != is_write_tool(spec.name):
                raise ValueError(f"Tool {spec.name} does not follow the write tool naming convention")
            if spec.name in self._specs:
                raise ValueError(f"Duplicate tool name: {spec.name}")
            self._specs[spec.name] = spec

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    @property
    def names(self) -> List[str]:
        return list(self._specs)

    def get(self, name: str) -> ToolSpec:
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownToolError(name)
        return spec

    def definitions(self, include_write: bool = True) -> List[Dict[str, Any]]:
        """Tool list to attach to an LLM call."""
        return [
            spec.definition()
            for spec in self._specs.values()
            if include_write or not spec.is_write
        ]

    def validate(self, name: str, raw: RawArguments) -> BaseModel:
        """
        Validate arguments against the tool's schema.

        Raises:
            UnknownToolError: No such tool
            ToolValidationError: Bad JSON or schema mismatch
        """
        spec = self.get(name)
        arguments = parse_arguments(name, raw)
        try:
            return spec.args_schema.model_validate(arguments)
        except ValidationError as e:
            raise ToolValidationError(name, _format_validation_error(e)) from e

    async def execute(self, name: str, raw: RawArguments, ctx: ToolContext) -> str:
        """
        Run a read tool and return its JSON result.

        Validation failures are returned as ``{"error": ...}`` so the model can
        correct itself.
        """
        spec = self.get(name)
        if spec.is_write:
            raise UnknownToolError(f"{name} (write tools are proposed, not executed)")

        try:
            args = self.validate(name, raw)
        except ToolValidationError as e:
            logger.info("Tool arguments rejected", tool_name=name, error=e.detail)
            return json.dumps({"error": str(e)})

        result = await spec.executor(args, ctx)
        return json.dumps(result, default=str)

    def parse_proposal(self, name: str, raw: RawArguments) -> Tuple[BaseModel, str]:
        """
        Turn a write-tool call into a ProposedAction.

        Returns:
            (proposed action, display-only reason)

        Raises:
            UnknownToolError: ``name`` is not a registered write tool
            ToolValidationError: Bad JSON or schema mismatch
        """
        spec = self._specs.get(name)
        if spec is None or not spec.is_write:
            raise UnknownToolError(name)

        args = self.validate(name, raw)
        return spec.build_action(args), args.reason


def build_default_registry() -> ToolRegistry:
    return ToolRegistry([*READ_TOOLS, *WRITE_TOOLS])


_default_registry: Optional[ToolRegistry] = None


def get_tool_registry() -> ToolRegistry:
    """Process-wide registry of every built-in tool."""
    global _default_registry
    if _default_registry is None:
        _default_registry = build_default_registry()
    return _default_registry
