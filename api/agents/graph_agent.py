"""
Graph agent: the LangGraph state machine behind one conversation thread.

Every turn is one LangGraph run over four nodes:

    START -> context -> model -> tools -> model ... -> END
                                   \\-> approval (interrupt) -> tools | model

- ``context`` injects the system prompt, the retrieved graph context and the
  user question
- ``model`` calls the LLM; read-tool rounds are bounded by ``max_tool_rounds``,
  after which one last answer is produced without tools
- ``tools`` answers the assistant's tool calls in order and stops at the first
  valid write proposal
- ``approval`` parks the proposal with ``interrupt()`` until ``resume`` supplies
  the human decision through ``Command(resume=...)``

Runs are checkpointed (``MemorySaver`` by default) under their own run id, so a
paused proposal is resumed on the exact run that produced it. The thread's
history is only committed when a run reaches ``END`` or the approval
interrupt: a failed, cancelled or abandoned run is deleted from the
checkpointer and leaves the thread as it was before the call.

Turn status moves ``IDLE -> STREAMING`` and ends in ``COMPLETED``,
``AWAITING_APPROVAL`` or ``FAILED``.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import structlog
from langchain_core.runnables import RunnableConfig
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import MemorySaver
from langgraph.config import get_stream_writer
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command, interrupt

from api.errors import CopilotError, ThreadStateError, ToolValidationError
from api.llm.base import CancelToken, LLMProvider
from api.llm.token_tracker import TokenTracker, get_token_tracker
from api.observability.ai_events import debug_event, log_malformed_json, log_token_usage
from api.prompts.system_prompt import build_context_summary, build_system_prompt
from api.rag.graph_rag import GraphRAGRetriever
from api.schemas.agent_state import (
    AgentEvent,
    AgentResult,
    AgentState,
    AgentTurnState,
    ChatMessage,
    CompleteEvent,
    DoneChunk,
    InterruptEvent,
    PendingInterrupt,
    Role,
    TokenChunk,
    TokenEvent,
    TokenUsage,
    ToolCall,
    ToolCallDoneChunk,
    ToolCallRecord,
    ToolCallStartChunk,
    ToolResultEvent,
    ToolStartEvent,
    UsageChunk,
    action_to_wire,
)
from api.tools.base import ToolContext, is_write_tool
from api.tools.registry import ToolRegistry, get_tool_registry
from libs.graph.datasource import GraphDataSource

logger = structlog.get_logger(__name__)

DEFAULT_MAX_TOOL_ROUNDS = 5
APPROVED_MESSAGE = "Action approved and applied."
REJECTED_MESSAGE = "Action rejected by the user."
NOT_SUBMITTED_MESSAGE = (
    "Only one proposed action can be pending at a time. "
    "Propose it again once the current one has been resolved if it is still needed."
)
READ_ONLY_MESSAGE = "Proposals are not available with read-only access."
FALLBACK_ANSWER = "I could not complete the analysis."


class AgentStatus(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    AWAITING_APPROVAL = "awaiting_approval"
    FAILED = "failed"


@dataclass(frozen=True)
class TurnOptions:
    """Per-run settings carried in the LangGraph config, never in the checkpoint."""

    role: Role
    streaming: bool
    cancel_token: Optional[CancelToken] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled


class _TurnCancelled(Exception):
    """Raised inside a node once the turn's cancel token has fired."""


def _turn_options(config: RunnableConfig) -> TurnOptions:
    return config["configurable"]["turn"]


class GraphAgent:
    """
    Conversational agent bound to one graph.

    Usage:
        agent = GraphAgent("graph-1", data_source, provider, retriever=retriever)
        async for event in agent.chat_stream("show me the fetch node", role="editor"):
            ...
        if agent.has_pending_interrupt():
            async for event in agent.resume_stream(approved=True):
                ...
    """

    def __init__(
        self,
        graph_key: str,
        data_source: GraphDataSource,
        llm_provider: LLMProvider,
        workspace: str = "root",
        role: Role = "editor",
        retriever: Optional[GraphRAGRetriever] = None,
        registry: Optional[ToolRegistry] = None,
        token_tracker: Optional[TokenTracker] = None,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        thread_id: Optional[str] = None,
        checkpointer: Optional[BaseCheckpointSaver] = None,
    ):
        self.graph_key = graph_key
        self.workspace = workspace
        # Role for turns that do not name one
        self.role: Role = role
        self.data_source = data_source
        self.llm_provider = llm_provider
        self.retriever = retriever or GraphRAGRetriever(data_source)
        self.registry = registry or get_tool_registry()
        self.token_tracker = token_tracker or get_token_tracker()
        self.max_tool_rounds = max_tool_rounds
        self.thread_id = thread_id

        self.messages: List[ChatMessage] = []
        self.pending_interrupt: Optional[PendingInterrupt] = None
        self.status = AgentStatus.IDLE

        self.checkpointer = checkpointer or MemorySaver()
        self.graph = self._build_graph()
        self._paused_run: Optional[str] = None

    def _build_graph(self):
        """Build and compile the LangGraph state machine."""
        graph = StateGraph(AgentTurnState)

        graph.add_node("context", self._context_node)
        graph.add_node("model", self._model_node)
        graph.add_node("tools", self._tools_node)
        graph.add_node("approval", self._approval_node)

        graph.add_edge(START, "context")
        graph.add_edge("context", "model")
        graph.add_conditional_edges("model", self._after_model, {"tools": "tools", END: END})
        graph.add_conditional_edges("tools", self._after_tools, {"approval": "approval", "model": "model"})
        graph.add_conditional_edges("approval", self._after_approval, {"tools": "tools", "model": "model"})

        return graph.compile(checkpointer=self.checkpointer)

    # ─── Public API ──────────────────────────────────────────────────

    def has_pending_interrupt(self) -> bool:
        return self.pending_interrupt is not None

    @property
    def checkpoint_thread_id(self) -> Optional[str]:
        """Checkpointer thread of the run parked on the approval interrupt, if any."""
        return self._paused_run

    async def chat_stream(
        self,
        message: str,
        cancel_token: Optional[CancelToken] = None,
        role: Optional[Role] = None,
    ) -> AsyncIterator[AgentEvent]:
        """
        Run one user turn, yielding events as the model streams.

        ``role`` applies to this turn only; the agent's default role is used
        when it is omitted. The last event is a ``CompleteEvent`` or an
        ``InterruptEvent``.

        Raises:
            ThreadStateError: A turn is in flight or a proposal awaits a decision
            asyncio.CancelledError: The turn was cancelled (state untouched)
        """
        self._check_can_chat()
        events = self._run_turn(
            {"messages": list(self.messages), "question": message},
            self._options(role, cancel_token, streaming=True),
        )
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    async def resume_stream(
        self,
        approved: bool,
        feedback: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
        role: Optional[Role] = None,
    ) -> AsyncIterator[AgentEvent]:
        """
        Feed the human decision back and continue the turn.

        Raises:
            ThreadStateError: Nothing is pending
        """
        self._check_can_resume()
        events = self._run_turn(
            Command(resume={"approved": approved, "feedback": feedback}),
            self._options(role, cancel_token, streaming=True),
            resuming=True,
        )
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    async def chat(self, message: str, role: Optional[Role] = None) -> AgentResult:
        """Non-streaming variant of ``chat_stream``."""
        self._check_can_chat()
        return await self._collect(self._run_turn(
            {"messages": list(self.messages), "question": message},
            self._options(role, None, streaming=False),
        ))

    async def resume(self, approved: bool, feedback: Optional[str] = None, role: Optional[Role] = None) -> AgentResult:
        """Non-streaming variant of ``resume_stream``."""
        self._check_can_resume()
        return await self._collect(self._run_turn(
            Command(resume={"approved": approved, "feedback": feedback}),
            self._options(role, None, streaming=False),
            resuming=True,
        ))

    def reset(self) -> None:
        self._forget_paused_run()
        self.messages = []
        self.pending_interrupt = None
        self.status = AgentStatus.IDLE

    def to_state(self) -> AgentState:
        return AgentState(
            graph_key=self.graph_key,
            workspace=self.workspace,
            role=self.role,
            messages=list(self.messages),
            pending_interrupt=self.pending_interrupt,
        )

    @classmethod
    def from_state(
        cls,
        state: AgentState,
        data_source: GraphDataSource,
        llm_provider: LLMProvider,
        **kwargs: Any,
    ) -> "GraphAgent":
        agent = cls(
            state.graph_key,
            data_source,
            llm_provider,
            workspace=state.workspace,
            role=state.role,
            **kwargs,
        )
        agent.load_state(state)
        return agent

    def load_state(self, state: AgentState) -> None:
        """
        Restore history and pending interrupt saved by ``to_state``.

        A restored proposal is resumed on a fresh run seeded from this state.
        """
        if state.graph_key != self.graph_key:
            raise ThreadStateError(
                f"State belongs to graph {state.graph_key}, agent is bound to {self.graph_key}"
            )
        self._forget_paused_run()
        self.messages = list(state.messages)
        self.pending_interrupt = state.pending_interrupt
        self.status = AgentStatus.AWAITING_APPROVAL if state.pending_interrupt else AgentStatus.IDLE

    # ─── State checks and runs ───────────────────────────────────────

    def _check_can_chat(self) -> None:
        if self.status is AgentStatus.STREAMING:
            raise ThreadStateError("A turn is already in progress for this thread")
        if self.pending_interrupt is not None:
            raise ThreadStateError("A proposed action is awaiting approval; resume the thread first")

    def _check_can_resume(self) -> None:
        if self.status is AgentStatus.STREAMING:
            raise ThreadStateError("A turn is already in progress for this thread")
        if self.pending_interrupt is None:
            raise ThreadStateError("No pending action to resume")

    def _options(self, role: Optional[Role], cancel_token: Optional[CancelToken], streaming: bool) -> TurnOptions:
        return TurnOptions(role=role or self.role, streaming=streaming, cancel_token=cancel_token)

    def _run_config(self, run_id: str, turn: TurnOptions) -> RunnableConfig:
        return {
            "configurable": {"thread_id": run_id, "turn": turn},
            # context, two steps per tool round, approval and the final answer
            "recursion_limit": 2 * self.max_tool_rounds + 10,
        }

    def _seed_values(self) -> Dict[str, Any]:
        """Values of a run parked right before the approval interrupt."""
        return {
            "messages": list(self.messages),
            "pending_interrupt": self.pending_interrupt.model_dump(mode="json"),
            "tool_calls": [],
        }

    async def _run_turn(
        self,
        graph_input: Any,
        turn: TurnOptions,
        resuming: bool = False,
    ) -> AsyncIterator[AgentEvent]:
        """Stream one run; commit the thread only when it reaches a terminal event."""
        # Flipped before the first await so a concurrent caller is refused
        previous_status = self.status
        self.status = AgentStatus.STREAMING

        if resuming and self._paused_run is not None:
            run_id = self._paused_run
        else:
            run_id = f"{self.thread_id or self.graph_key}:{uuid.uuid4().hex}"
        config = self._run_config(run_id, turn)

        stream = None
        committed = False
        failed = False
        try:
            if resuming and run_id != self._paused_run:
                await self.graph.aupdate_state(config, self._seed_values(), as_node="tools")

            stream = self.graph.astream(graph_input, config, stream_mode="custom")
            async for event in stream:
                yield event

            snapshot = await self.graph.aget_state(config)
            terminal = await self._commit(run_id, snapshot.values)
            committed = True
            yield terminal
        except _TurnCancelled as e:
            debug_event("agent_turn_cancelled", graph_key=self.graph_key, thread_id=self.thread_id)
            raise asyncio.CancelledError() from e
        except asyncio.CancelledError:
            debug_event("agent_turn_cancelled", graph_key=self.graph_key, thread_id=self.thread_id)
            raise
        except Exception:
            failed = True
            raise
        finally:
            if stream is not None:
                await stream.aclose()
            if not committed:
                await self._discard_run(run_id)
                if failed:
                    self.status = AgentStatus.AWAITING_APPROVAL if self.pending_interrupt else AgentStatus.FAILED
                else:
                    # Cancelled, or the consumer stopped before a terminal event
                    self.status = previous_status

    async def _commit(self, run_id: str, values: Dict[str, Any]) -> AgentEvent:
        messages = list(values.get("messages") or [])
        pending = values.get("pending_interrupt")
        final_text = values.get("final_text")

        if pending:
            parked = PendingInterrupt.model_validate(pending)
            event: AgentEvent = InterruptEvent(
                proposed_action=parked.proposed_action,
                tool_call=parked.tool_call,
                reason=parked.reason,
                message=self._last_assistant_text(messages),
            )
            status = AgentStatus.AWAITING_APPROVAL
        elif final_text is not None:
            parked = None
            event = CompleteEvent(full_text=final_text)
            status = AgentStatus.COMPLETED
        else:
            raise CopilotError("Agent turn ended without a terminal event")

        stale = {self._paused_run, run_id}
        self.messages = messages
        self.pending_interrupt = parked
        self._paused_run = run_id if parked is not None else None
        self.status = status

        for old_run in stale - {self._paused_run, None}:
            await self.checkpointer.adelete_thread(old_run)
        return event

    async def _discard_run(self, run_id: str) -> None:
        if run_id == self._paused_run:
            # The committed proposal is resumed later on a reseeded run
            self._paused_run = None
        await self.checkpointer.adelete_thread(run_id)

    def _forget_paused_run(self) -> None:
        if self._paused_run is not None:
            self.checkpointer.delete_thread(self._paused_run)
            self._paused_run = None

    @staticmethod
    def _last_assistant_text(messages: List[ChatMessage]) -> str:
        for message in reversed(messages):
            if message["role"] == "assistant":
                return message.get("content") or ""
        return ""

    async def _collect(self, events: AsyncIterator[AgentEvent]) -> AgentResult:
        log: List[ToolCallRecord] = []
        try:
            async for event in events:
                if isinstance(event, ToolResultEvent):
                    log.append(ToolCallRecord(name=event.tool_name, args=event.args, result=event.result))
                elif isinstance(event, CompleteEvent):
                    return AgentResult(type="message", message=event.full_text, tool_calls=log)
                elif isinstance(event, InterruptEvent):
                    return AgentResult(
                        type="interrupt",
                        message=event.message,
                        proposed_action=event.proposed_action,
                        tool_call=event.tool_call,
                        reason=event.reason,
                        tool_calls=log,
                    )
        finally:
            await events.aclose()
        raise CopilotError("Agent turn ended without a terminal event")

    # ─── Nodes ───────────────────────────────────────────────────────

    async def _context_node(self, state: AgentTurnState, config: RunnableConfig) -> Dict[str, Any]:
        """Retrieve graph context and open the turn with the user question."""
        turn = _turn_options(config)
        debug_event("agent_chat_start", graph_key=self.graph_key, message_length=len(state.question))

        context = await self.retriever.retrieve(self.graph_key, state.question)
        self._raise_if_cancelled(turn)

        added: List[ChatMessage] = []
        if not state.messages:
            added.append({"role": "system", "content": build_system_prompt(context, turn.role)})

        summary = build_context_summary(context)
        if summary:
            added.append({"role": "system", "content": f"[Graph context for this question]\n{summary}"})
        added.append({"role": "user", "content": state.question})

        return {"messages": added, "rounds": 0}

    async def _model_node(self, state: AgentTurnState, config: RunnableConfig) -> Dict[str, Any]:
        turn = _turn_options(config)
        self._raise_if_cancelled(turn)

        # Tool rounds exhausted: one last answer without tools
        use_tools = state.rounds < self.max_tool_rounds
        tools = self.registry.definitions(include_write=turn.role != "viewer") if use_tools else []

        if turn.streaming:
            text, tool_calls = await self._stream_model(state.messages, tools, turn)
        else:
            text, tool_calls = await self._call_model(state.messages, tools)

        if use_tools and tool_calls:
            return {
                "messages": [{
                    "role": "assistant",
                    "content": text or None,
                    "tool_calls": [call.to_message() for call in tool_calls],
                }],
                "tool_calls": [call.model_dump() for call in tool_calls],
                "rounds": state.rounds + 1,
            }

        if not use_tools:
            text = text or FALLBACK_ANSWER
        return {"messages": [{"role": "assistant", "content": text}], "final_text": text}

    async def _tools_node(self, state: AgentTurnState, config: RunnableConfig) -> Dict[str, Any]:
        """Answer the assistant's tool calls in order; stop at the first valid proposal."""
        turn = _turn_options(config)
        writer = get_stream_writer()
        calls = [ToolCall.model_validate(call) for call in state.tool_calls]
        answers: List[ChatMessage] = []

        def answer(call: ToolCall, args: Dict[str, Any], result: str) -> None:
            answers.append({"role": "tool", "tool_call_id": call.id, "content": result})
            writer(ToolResultEvent(tool_call_id=call.id, tool_name=call.name, args=args, result=result))

        for position, call in enumerate(calls):
            self._raise_if_cancelled(turn)

            if state.after_proposal and is_write_tool(call.name):
                answer(call, {}, json.dumps({"status": "not_submitted", "error": NOT_SUBMITTED_MESSAGE}))
                continue

            args = self._decode_args(call)
            if args is None:
                log_malformed_json(call.name, call.arguments, thread_id=self.thread_id)
                answer(call, {}, json.dumps({"error": "Invalid JSON in tool arguments", "raw": call.arguments}))
                continue

            if not is_write_tool(call.name):
                if not turn.streaming:
                    writer(ToolStartEvent(tool_call_id=call.id, tool_name=call.name))
                debug_event("tool_execute", tool_name=call.name, args=json.dumps(args))
                # Unknown tool names raise here and fail the turn
                result = await self.registry.execute(
                    call.name, args, ToolContext(graph_key=self.graph_key, data_source=self.data_source)
                )
                debug_event("tool_result", tool_name=call.name, result_length=len(result))
                answer(call, args, result)
                continue

            if turn.role == "viewer":
                answer(call, args, json.dumps({"error": READ_ONLY_MESSAGE}))
                continue

            try:
                action, reason = self.registry.parse_proposal(call.name, args)
            except ToolValidationError as e:
                answer(call, args, json.dumps({"error": str(e)}))
                continue

            pending = PendingInterrupt(
                proposed_action=action,
                tool_call=call,
                reason=reason,
                remaining_tool_calls=calls[position + 1:],
            )
            debug_event("hitl_interrupt", graph_key=self.graph_key, tool_name=call.name, action_type=action.type)
            if not turn.streaming:
                writer(ToolStartEvent(tool_call_id=call.id, tool_name=call.name))
            return {
                "messages": answers,
                "tool_calls": [],
                "after_proposal": False,
                "pending_interrupt": pending.model_dump(mode="json"),
            }

        return {"messages": answers, "tool_calls": [], "after_proposal": False}

    async def _approval_node(self, state: AgentTurnState) -> Dict[str, Any]:
        """Wait for the human decision, then answer the proposed call with it."""
        pending = PendingInterrupt.model_validate(state.pending_interrupt)
        # Runs again from the top on resume; nothing before this line has side effects
        decision = interrupt({
            "proposedAction": action_to_wire(pending.proposed_action),
            "toolCall": pending.tool_call.model_dump(),
            "reason": pending.reason,
        })
        approved = bool(decision.get("approved"))
        feedback = decision.get("feedback")

        # The graph may have changed once the action was applied
        if approved:
            self.retriever.clear_cache(self.graph_key)
            result: Dict[str, Any] = {
                "status": "approved",
                "message": feedback or APPROVED_MESSAGE,
                "action": action_to_wire(pending.proposed_action),
            }
        else:
            result = {"status": "rejected", "message": feedback or REJECTED_MESSAGE}

        debug_event("agent_resume", graph_key=self.graph_key, approved=approved, tool_name=pending.tool_call.name)
        content = json.dumps(result)
        get_stream_writer()(ToolResultEvent(
            tool_call_id=pending.tool_call.id,
            tool_name=pending.tool_call.name,
            args=self._safe_args(pending.tool_call),
            result=content,
        ))

        # Calls that followed the proposal in the same assistant message
        remaining = [call.model_dump() for call in pending.remaining_tool_calls]
        return {
            "messages": [{"role": "tool", "tool_call_id": pending.tool_call.id, "content": content}],
            "pending_interrupt": None,
            "tool_calls": remaining,
            "after_proposal": bool(remaining),
            "rounds": 0,
        }

    # ─── Routing ─────────────────────────────────────────────────────

    @staticmethod
    def _after_model(state: AgentTurnState) -> str:
        return "tools" if state.tool_calls else END

    @staticmethod
    def _after_tools(state: AgentTurnState) -> str:
        return "approval" if state.pending_interrupt else "model"

    @staticmethod
    def _after_approval(state: AgentTurnState) -> str:
        return "tools" if state.tool_calls else "model"

    # ─── Model calls ─────────────────────────────────────────────────

    async def _call_model(
        self,
        messages: List[ChatMessage],
        tools: List[Dict[str, Any]],
    ) -> Tuple[str, List[ToolCall]]:
        if tools:
            response = await self.llm_provider.chat_completion_with_tools(messages, tools)
        else:
            response = await self.llm_provider.chat_completion(messages)
        if response.usage is not None:
            self._record_usage(response.usage, "chat")
        return response.content, response.tool_calls

    async def _stream_model(
        self,
        messages: List[ChatMessage],
        tools: List[Dict[str, Any]],
        turn: TurnOptions,
    ) -> Tuple[str, List[ToolCall]]:
        writer = get_stream_writer()
        text = ""
        tool_calls: List[ToolCall] = []
        finished = False

        stream = self.llm_provider.stream_completion_with_tools(messages, tools, cancel_token=turn.cancel_token)
        try:
            async for chunk in stream:
                if isinstance(chunk, TokenChunk):
                    text += chunk.content
                    writer(TokenEvent(token=chunk.content))
                elif isinstance(chunk, ToolCallStartChunk):
                    writer(ToolStartEvent(tool_call_id=chunk.id, tool_name=chunk.name))
                elif isinstance(chunk, ToolCallDoneChunk):
                    tool_calls.append(chunk.tool_call)
                elif isinstance(chunk, UsageChunk):
                    self._record_usage(chunk.usage, "stream" if tools else "stream-final")
                elif isinstance(chunk, DoneChunk):
                    finished = True
        finally:
            await stream.aclose()

        if not finished:
            # Only a cancelled stream ends without ``done``
            self._raise_if_cancelled(turn)
            raise CopilotError("LLM stream ended without a done chunk")
        return text, tool_calls

    # ─── Helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _decode_args(call: ToolCall) -> Optional[Dict[str, Any]]:
        """Arguments as a dict, or None when they are not a JSON object."""
        try:
            parsed = json.loads(call.arguments) if call.arguments else {}
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    @classmethod
    def _safe_args(cls, call: ToolCall) -> Dict[str, Any]:
        return cls._decode_args(call) or {}

    @staticmethod
    def _raise_if_cancelled(turn: TurnOptions) -> None:
        if turn.cancelled:
            raise _TurnCancelled()

    def _record_usage(self, usage: TokenUsage, label: str) -> None:
        model = self.llm_provider.get_model()
        cost = self.token_tracker.record(usage, model, label)
        log_token_usage(usage, model, cost, thread_id=self.thread_id)
