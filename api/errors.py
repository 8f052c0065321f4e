"""Error types and the provider error classifier.

Exceptions raised by the agent layer fall in a few families:
- ``ToolValidationError``: bad tool arguments, fed back to the model as a tool result
- ``UnknownToolError``: registry/schema mismatch, fatal to the turn
- ``ThreadStateError``: resume without an interrupt, tenant mismatch, missing thread
- anything else raised by a provider SDK, which goes through ``classify_error``
  before any of it reaches a remote caller
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal, Optional

ErrorCode = Literal[
    "rate_limit",
    "server_error",
    "auth_error",
    "timeout",
    "network",
    "content_filter",
    "context_length",
    "internal",
]


class CopilotError(Exception):
    """Base class for errors raised by the copilot service."""


class ToolValidationError(CopilotError):
    """Tool arguments failed schema validation."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Invalid arguments for {tool_name}: {message}")
        self.tool_name = tool_name
        self.detail = message


class UnknownToolError(CopilotError):
    """A tool name has no registry entry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ThreadStateError(CopilotError):
    """The requested operation does not fit the thread's current state."""


class GraphNotFoundError(CopilotError):
    """The graph does not exist in the data source."""

    def __init__(self, graph_key: str):
        super().__init__(f"Graph not found: {graph_key}")
        self.graph_key = graph_key


class AuthenticationError(CopilotError):
    """A bearer token was supplied but could not be validated."""


class ProviderConfigurationError(CopilotError):
    """An LLM provider cannot be built from the current configuration."""


@dataclass(frozen=True)
class ClassifiedError:
    """Stable description of a backend failure, safe to relay to clients."""

    code: ErrorCode
    retryable: bool
    user_message: str
    status_code: Optional[int] = None
    provider: Optional[str] = None
    model: Optional[str] = None


USER_MESSAGES: dict[str, str] = {
    "rate_limit": "The AI service is receiving too many requests. Please try again in a moment.",
    "server_error": "The AI service is temporarily unavailable. Please try again.",
    "auth_error": "The AI service rejected the configured credentials. Please contact an administrator.",
    "timeout": "The AI service took too long to respond. Please try again.",
    "network": "Could not reach the AI service. Check the connection and try again.",
    "content_filter": "The request was blocked by the AI provider's content policy.",
    "context_length": "The conversation is too long for the model. Start a new thread and try again.",
    "internal": "An internal error occurred while processing the request.",
}

_STATUS_IN_MESSAGE = re.compile(r"\b(?:HTTP|status)\s*:?\s*(\d{3})\b", re.IGNORECASE)
_BARE_STATUS = re.compile(r"\b([45]\d{2})\b")

_NETWORK_MARKERS = ("econnrefused", "econnreset", "enotfound", "connection refused",
                    "connection reset", "connection error", "network")
_TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout")
_CONTENT_FILTER_MARKERS = ("content_filter", "content filter", "content policy", "safety system")
_CONTEXT_MARKERS = ("context_length", "context length", "maximum context", "too many tokens",
                    "prompt is too long")


def extract_status_code(exc: BaseException) -> Optional[int]:
    """Pull an HTTP status from an exception's attributes or message."""
    for attr in ("status_code", "status", "statusCode"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 100 <= value < 600:
            return value

    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value

    message = str(exc)
    match = _STATUS_IN_MESSAGE.search(message) or _BARE_STATUS.search(message)
    if match:
        return int(match.group(1))
    return None


def detect_provider(exc: BaseException) -> Optional[str]:
    """Guess the provider from the module that defines the exception class."""
    module = type(exc).__module__ or ""
    for name in ("openai", "anthropic"):
        if module == name or module.startswith(f"{name}."):
            return name
    return None


def classify_error(
    exc: BaseException,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> ClassifiedError:
    """
    Map any backend exception onto a stable code and retry hint.

    Args:
        exc: The raised exception
        provider: Provider name when known by the caller
        model: Model name when known by the caller

    Returns:
        ClassifiedError with a user-safe message
    """
    status_code = extract_status_code(exc)
    message = str(exc).lower()
    provider = provider or detect_provider(exc)

    code: ErrorCode
    if status_code == 429 or "rate limit" in message or "rate_limit" in message:
        code = "rate_limit"
    elif status_code in (401, 403):
        code = "auth_error"
    elif any(marker in message for marker in _CONTEXT_MARKERS):
        code = "context_length"
    elif any(marker in message for marker in _CONTENT_FILTER_MARKERS):
        code = "content_filter"
    elif status_code is not None and status_code >= 500:
        code = "server_error"
    elif isinstance(exc, TimeoutError) or any(marker in message for marker in _TIMEOUT_MARKERS):
        code = "timeout"
    elif isinstance(exc, ConnectionError) or any(marker in message for marker in _NETWORK_MARKERS):
        code = "network"
    else:
        code = "internal"

    return ClassifiedError(
        code=code,
        retryable=code in ("rate_limit", "server_error", "timeout", "network"),
        user_message=USER_MESSAGES[code],
        status_code=status_code,
        provider=provider,
        model=model,
    )


def error_payload(classified: ClassifiedError) -> dict[str, Any]:
    """Fields of an ``ai:error`` event derived from a classified error."""
    return {
        "error": classified.user_message,
        "code": classified.code,
        "retryable": classified.retryable,
    }
