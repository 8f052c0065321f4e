from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, Optional, Set

import orjson
import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from api.models import ChatRequest, ErrorMessage, InterruptRequest, ResumeRequest, parse_client_message
from api.orchestrators.session_controller import SessionController

logger = structlog.get_logger(__name__)
router = APIRouter()


class WebSocketChannel:
    """Adapts a FastAPI WebSocket to the controller's ``Channel`` protocol."""

    def __init__(self, websocket: WebSocket, workspace: Optional[str]):
        self.websocket = websocket
        self.workspace = workspace
        self.channel_id = f"ws_{uuid.uuid4().hex[:12]}"
        self.closed = False
        self._send_lock = asyncio.Lock()

    async def send(self, message: Dict[str, Any]) -> None:
        # Turns of several requests share one socket
        async with self._send_lock:
            if self.closed:
                return
            await self.websocket.send_json(message)


def _request_id(data: Any) -> Any:
    """Best-effort id of a frame that failed validation."""
    if isinstance(data, dict):
        value = data.get("id", data.get("_id"))
        if isinstance(value, (int, str)):
            return value
    return 0


@router.websocket("/ws/ai")
async def ai_channel(
    websocket: WebSocket,
    workspace: Optional[str] = Query(default=None, description="Workspace used when no token is supplied"),
) -> None:
    """Duplex AI channel: ``ai:chat``, ``ai:resume`` and ``ai:interrupt`` requests.

    Chat and resume requests each run in their own task so the socket keeps
    being read while a turn streams; interrupts are handled inline.
    """
    controller: SessionController = websocket.app.state.session_controller
    await websocket.accept()
    channel = WebSocketChannel(websocket, workspace)
    tasks: Set[asyncio.Task] = set()

    logger.info("AI channel opened", channel_id=channel.channel_id, workspace=workspace)

    try:
        while True:
            raw = await websocket.receive_text()
            data: Any = None
            try:
                data = orjson.loads(raw)
                message = parse_client_message(data)
            except (orjson.JSONDecodeError, ValidationError) as e:
                logger.info("Invalid AI message", channel_id=channel.channel_id, error_type=type(e).__name__)
                await channel.send(ErrorMessage(
                    id=_request_id(data),
                    error="Invalid AI message",
                    code="invalid_request",
                    retryable=False,
                ).to_wire())
                continue

            if isinstance(message, InterruptRequest):
                controller.handle_interrupt(channel, message)
                continue

            if isinstance(message, ChatRequest):
                task = asyncio.create_task(controller.handle_chat(channel, message))
            else:
                assert isinstance(message, ResumeRequest)
                task = asyncio.create_task(controller.handle_resume(channel, message))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

    except WebSocketDisconnect as e:
        logger.info("AI channel closed", channel_id=channel.channel_id, code=e.code, in_flight=len(tasks))
    finally:
        channel.closed = True
        controller.on_disconnect(channel)
        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("AI turn task failed", channel_id=channel.channel_id, error=str(result))
