"""Session controller for the AI channel.

Binds chat/resume/interrupt requests arriving on a channel to agent turns:
- one ``CancelToken`` per in-flight request, indexed by request sequence number
- a reverse index channel -> live sequence numbers, for bulk cancel on disconnect
- thread resolution: node memory, then the thread store (roaming), then a new thread
- every failure goes through ``classify_error`` before it reaches the client

Each accepted chat or resume ends with exactly one ``ai:complete`` or
``ai:error``, unless it was cancelled, in which case nothing more is sent.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple, Union

import structlog

from api.agents.graph_agent import GraphAgent
from api.auth import AuthContext, AuthManager, authenticate
from api.errors import (
    AuthenticationError,
    GraphNotFoundError,
    ThreadStateError,
    classify_error,
    error_payload,
)
from api.llm.base import CancelToken, LLMProvider
from api.models import (
    ChatRequest,
    CompleteMessage,
    ErrorMessage,
    InterruptRequest,
    OutboundMessage,
    ResumeRequest,
    TokenMessage,
    ToolResultMessage,
    ToolStartMessage,
)
from api.observability.ai_events import debug_event, log_client_disconnect, log_llm_error
from api.rag.graph_rag import GraphRAGRetriever
from api.schemas.agent_state import (
    AgentEvent,
    AgentState,
    CompleteEvent,
    InterruptEvent,
    TokenEvent,
    ToolResultEvent,
    ToolStartEvent,
    action_to_wire,
)
from libs.common.settings import Settings, get_settings
from libs.graph.datasource import GraphDataSource
from libs.threads.store import Thread, ThreadStore

logger = structlog.get_logger(__name__)

RequestId = Union[int, str]


class Channel(Protocol):
    """Duplex connection a client talks over."""

    channel_id: str
    workspace: Optional[str]

    async def send(self, message: Dict[str, Any]) -> None:
        ...


@dataclass
class Session:
    """One in-flight chat or resume request."""

    seq: int
    request_id: RequestId
    channel_id: str
    token: CancelToken = field(default_factory=CancelToken)
    thread_id: Optional[str] = None


def interrupt_text(event: InterruptEvent) -> str:
    """``fullText`` of the ``ai:complete`` that announces a proposal."""
    return json.dumps({
        "type": "interrupt",
        "proposedAction": action_to_wire(event.proposed_action),
        "toolCall": {
            "id": event.tool_call.id,
            "name": event.tool_call.name,
            "args": _decode_args(event.tool_call.arguments),
        },
        "reason": event.reason,
    })


def _decode_args(arguments: str) -> Any:
    try:
        return json.loads(arguments) if arguments else {}
    except json.JSONDecodeError:
        return arguments


class SessionController:
    """
    Routes AI requests of every connected channel.

    Usage:
        controller = SessionController(data_source, llm_provider, thread_store)
        await controller.handle_chat(channel, request)
        controller.handle_interrupt(channel, interrupt)
        controller.on_disconnect(channel)
    """

    def __init__(
        self,
        data_source: GraphDataSource,
        llm_provider: Optional[LLMProvider],
        thread_store: ThreadStore,
        retriever: Optional[GraphRAGRetriever] = None,
        auth_manager: Optional[AuthManager] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.data_source = data_source
        self.llm_provider = llm_provider
        self.thread_store = thread_store
        self.retriever = retriever or GraphRAGRetriever(
            data_source,
            max_nodes=self.settings.rag_max_nodes,
            max_depth=self.settings.rag_max_depth,
            cache_ttl_ms=self.settings.rag_cache_ttl_ms,
        )
        self.auth_manager = auth_manager

        self._seq = itertools.count(1)
        self.sessions: Dict[int, Session] = {}
        self.channel_sessions: Dict[str, Set[int]] = {}

    # ─── Session bookkeeping ─────────────────────────────────────────

    def _open_session(self, channel: Channel, request_id: RequestId, thread_id: Optional[str] = None) -> Session:
        session = Session(
            seq=next(self._seq),
            request_id=request_id,
            channel_id=channel.channel_id,
            thread_id=thread_id,
        )
        session.token.bind(asyncio.current_task())
        self.sessions[session.seq] = session
        self.channel_sessions.setdefault(channel.channel_id, set()).add(session.seq)
        return session

    def _close_session(self, session: Session) -> None:
        self.sessions.pop(session.seq, None)
        live = self.channel_sessions.get(session.channel_id)
        if live is not None:
            live.discard(session.seq)
            if not live:
                del self.channel_sessions[session.channel_id]

    def active_sessions(self, channel_id: Optional[str] = None) -> List[Session]:
        if channel_id is None:
            return list(self.sessions.values())
        return [self.sessions[seq] for seq in self.channel_sessions.get(channel_id, ()) if seq in self.sessions]

    # ─── Agents and threads ──────────────────────────────────────────

    def _build_agent(self, graph_key: str, auth: AuthContext, thread_id: str) -> GraphAgent:
        return GraphAgent(
            graph_key,
            self.data_source,
            self.llm_provider,
            workspace=auth.workspace,
            role=auth.role,
            retriever=self.retriever,
            max_tool_rounds=self.settings.max_tool_rounds,
            thread_id=thread_id,
        )

    def _agent_from_document(self, document: Dict[str, Any]) -> GraphAgent:
        return GraphAgent.from_state(
            AgentState.model_validate(document["state"]),
            self.data_source,
            self.llm_provider,
            retriever=self.retriever,
            max_tool_rounds=self.settings.max_tool_rounds,
            thread_id=document["threadId"],
        )

    async def _find_thread(self, thread_id: str) -> Optional[Thread]:
        thread = self.thread_store.get(thread_id)
        if thread is None:
            thread = await self.thread_store.load_thread(thread_id, self._agent_from_document)
        return thread

    @staticmethod
    def _check_tenant(thread: Thread, workspace: str, graph_key: Optional[str] = None) -> None:
        if thread.workspace != workspace or (graph_key is not None and thread.graph_key != graph_key):
            raise ThreadStateError("Thread does not belong to this graph/workspace")

    async def _resolve_chat_thread(self, request: ChatRequest, auth: AuthContext) -> Tuple[Thread, bool]:
        """The thread a chat runs on, and whether it was created for this request."""
        if request.thread_id:
            thread = await self._find_thread(request.thread_id)
            if thread is not None:
                self._check_tenant(thread, auth.workspace, request.graph_key)
                return thread, False

        thread_id = request.thread_id or self.thread_store.generate_thread_id()
        thread = Thread(
            thread_id=thread_id,
            graph_key=request.graph_key,
            workspace=auth.workspace,
            user_id=auth.user_id,
            agent=self._build_agent(request.graph_key, auth, thread_id),
        )
        self.thread_store.set(thread)
        logger.info("Thread created", thread_id=thread_id, graph_key=request.graph_key, workspace=auth.workspace)
        return thread, True

    async def _resolve_resume_thread(self, request: ResumeRequest, auth: AuthContext) -> Thread:
        thread = await self._find_thread(request.thread_id)
        if thread is None:
            raise ThreadStateError("Thread not found")
        self._check_tenant(thread, auth.workspace)
        if not thread.agent.has_pending_interrupt():
            raise ThreadStateError("No pending action to approve/reject")
        return thread

    # ─── Request handlers ────────────────────────────────────────────

    async def handle_chat(self, channel: Channel, request: ChatRequest) -> None:
        session = self._open_session(channel, request.id, request.thread_id)
        try:
            await self._run_turn(channel, session, request)
        finally:
            self._close_session(session)

    async def handle_resume(self, channel: Channel, request: ResumeRequest) -> None:
        session = self._open_session(channel, request.id, request.thread_id)
        try:
            await self._run_turn(channel, session, request)
        finally:
            self._close_session(session)

    def handle_interrupt(self, channel: Channel, request: InterruptRequest) -> int:
        """Cancel this channel's in-flight turns of one thread; returns how many."""
        cancelled = 0
        for session in self.active_sessions(channel.channel_id):
            if session.thread_id == request.thread_id and not session.token.cancelled:
                session.token.cancel("interrupted")
                cancelled += 1
        debug_event("ws_interrupt", thread_id=request.thread_id, cancelled=cancelled)
        return cancelled

    def on_disconnect(self, channel: Channel) -> None:
        """Cancel every in-flight turn of a channel that went away."""
        seqs = self.channel_sessions.pop(channel.channel_id, set())
        aborted = []
        for seq in seqs:
            session = self.sessions.get(seq)
            if session is not None and not session.token.cancelled:
                session.token.cancel("client_disconnected")
                aborted.append(str(session.request_id))
        if aborted:
            log_client_disconnect(channel.channel_id, aborted)

    async def _run_turn(
        self,
        channel: Channel,
        session: Session,
        request: Union[ChatRequest, ResumeRequest],
    ) -> None:
        thread: Optional[Thread] = None
        created = False
        finished = False
        try:
            if self.llm_provider is None:
                await self._send(channel, ErrorMessage(
                    id=request.id,
                    error="AI is not configured. No LLM API key found.",
                    code="not_configured",
                    retryable=False,
                ))
                return

            auth = await authenticate(request.token, channel.workspace, self.auth_manager, self.settings)
            # The caller's role applies to this turn only
            if isinstance(request, ChatRequest):
                thread, created = await self._resolve_chat_thread(request, auth)
                session.thread_id = thread.thread_id
                debug_event("ws_chat", thread_id=thread.thread_id, graph_key=request.graph_key,
                            message_length=len(request.message))
                events = thread.agent.chat_stream(request.message, session.token, role=auth.role)
            else:
                thread = await self._resolve_resume_thread(request, auth)
                session.thread_id = thread.thread_id
                debug_event("ws_resume", thread_id=thread.thread_id, approved=request.approved)
                events = thread.agent.resume_stream(request.approved, request.feedback, session.token, role=auth.role)

            try:
                async for event in events:
                    await self._send(channel, self._event_message(request.id, thread.thread_id, event))
            finally:
                await events.aclose()
            finished = True

            await self.thread_store.save(thread)

        except asyncio.CancelledError:
            if not session.token.cancelled:
                raise
            # Cancelled on purpose: the recipient asked for silence or is gone
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            debug_event("ws_turn_cancelled", request_id=session.request_id, reason=session.token.reason)
        except AuthenticationError as e:
            await self._send(channel, ErrorMessage(id=request.id, error=str(e), code="auth_error", retryable=False))
        except ThreadStateError as e:
            await self._send(channel, ErrorMessage(id=request.id, error=str(e), code="thread_state", retryable=False))
        except GraphNotFoundError as e:
            await self._send(channel, ErrorMessage(id=request.id, error=str(e), code="not_found", retryable=False))
        except Exception as e:
            await self._send_classified_error(channel, session, request.id, e, thread)
        finally:
            if created and not finished:
                # A thread whose first turn never finished is not kept
                self.thread_store.discard(thread.thread_id)

    async def _send_classified_error(
        self,
        channel: Channel,
        session: Session,
        request_id: RequestId,
        error: Exception,
        thread: Optional[Thread],
    ) -> None:
        classified = classify_error(
            error,
            provider=self.llm_provider.get_provider_name() if self.llm_provider else None,
            model=self.llm_provider.get_model() if self.llm_provider else None,
        )
        log_llm_error(
            classified,
            error,
            thread_id=thread.thread_id if thread else None,
            session_id=str(session.request_id),
        )
        await self._send(channel, ErrorMessage(id=request_id, **error_payload(classified)))

    @staticmethod
    def _event_message(request_id: RequestId, thread_id: str, event: AgentEvent) -> OutboundMessage:
        if isinstance(event, TokenEvent):
            return TokenMessage(id=request_id, token=event.token)
        if isinstance(event, ToolStartEvent):
            return ToolStartMessage(id=request_id, tool_call_id=event.tool_call_id, tool_name=event.tool_name)
        if isinstance(event, ToolResultEvent):
            return ToolResultMessage(id=request_id, tool_call_id=event.tool_call_id, result=event.result)
        if isinstance(event, CompleteEvent):
            return CompleteMessage(id=request_id, thread_id=thread_id, full_text=event.full_text)
        return CompleteMessage(id=request_id, thread_id=thread_id, full_text=interrupt_text(event))

    @staticmethod
    async def _send(channel: Channel, message: OutboundMessage) -> None:
        await channel.send(message.to_wire())
