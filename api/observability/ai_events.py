"""
Structured log events for the AI layer.

Provides:
- LLM failures with provider, model, thread and session identifiers
- malformed tool arguments returned by a model
- sessions aborted because a client went away
- token usage and cost per call
- verbose debug events, only when ``COPILOT_AI_DEBUG`` is set
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

import structlog

from api.errors import ClassifiedError
from api.schemas.agent_state import TokenUsage
from libs.common.settings import get_settings

logger = structlog.get_logger("api.ai")

DEBUG_PREVIEW_CHARS = 500


def log_llm_error(
    classified: ClassifiedError,
    raw_error: BaseException,
    thread_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> None:
    logger.error(
        "llm_error",
        code=classified.code,
        retryable=classified.retryable,
        status_code=classified.status_code,
        provider=classified.provider,
        model=classified.model,
        thread_id=thread_id,
        session_id=session_id,
        error_type=type(raw_error).__name__,
        error=str(raw_error),
    )


def log_malformed_json(tool_name: str, raw_arguments: str, thread_id: Optional[str] = None) -> None:
    logger.warning(
        "malformed_json",
        tool_name=tool_name,
        thread_id=thread_id,
        raw_arguments=raw_arguments[:DEBUG_PREVIEW_CHARS],
    )


def log_client_disconnect(channel_id: str, aborted_sessions: Iterable[str]) -> None:
    aborted = list(aborted_sessions)
    logger.info("client_disconnect_abort", channel_id=channel_id, aborted_count=len(aborted), sessions=aborted)


def log_token_usage(
    usage: TokenUsage,
    model: str,
    cost: float,
    thread_id: Optional[str] = None,
) -> None:
    logger.info(
        "token_usage",
        model=model,
        thread_id=thread_id,
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        cached_tokens=usage.cached_tokens,
        cost_usd=round(cost, 6),
    )


def _preview(value: Any) -> Any:
    if isinstance(value, str) and len(value) > DEBUG_PREVIEW_CHARS:
        return value[:DEBUG_PREVIEW_CHARS] + "..."
    return value


def debug_event(event: str, **fields: Any) -> None:
    """Verbose trace of agent internals, off unless AI debug is enabled."""
    if not get_settings().ai_debug:
        return
    logger.debug(event, **{key: _preview(value) for key, value in fields.items()})
