"""
Tests for the graph agent state machine.

Tests verify:
- read tools run inline across rounds until the model answers
- write tools park a proposal and resume feeds the decision back without
  re-running anything
- cancelled or failed turns leave history and pending proposal untouched
- viewers never get write tools, and a per-turn role never sticks to the agent
- a parked proposal is resumed on its checkpointed run, or on a reseeded one
- state survives a to_state / from_state round through JSON
"""

import asyncio
import json

import pytest
from langgraph.checkpoint.memory import MemorySaver

from api.agents.graph_agent import (
    APPROVED_MESSAGE,
    FALLBACK_ANSWER,
    NOT_SUBMITTED_MESSAGE,
    READ_ONLY_MESSAGE,
    REJECTED_MESSAGE,
    AgentStatus,
    GraphAgent,
)
from api.errors import CopilotError, ThreadStateError, UnknownToolError
from api.llm.base import CancelToken
from api.schemas.agent_state import (
    AgentState,
    CompleteEvent,
    InterruptEvent,
    TokenChunk,
    TokenEvent,
    ToolResultEvent,
    ToolStartEvent,
)
from tests.fixtures.graph_data import GRAPH_KEY
from tests.fixtures.llm import PAUSE, ScriptedProvider, text_turn, tool_turn

SEARCH_FETCH = {"id": "call_search", "name": "search_nodes", "args": {"query": "fetch"}}
CREATE_FILTER = {
    "id": "call_create",
    "name": "propose_create_node",
    "args": {"typeKey": "filter", "sheet": "0", "posX": 500, "posY": 300, "reason": "Filter inactive players"},
}
DELETE_NOTE = {
    "id": "call_delete",
    "name": "propose_delete_node",
    "args": {"nodeKey": "disconnected-note", "reason": "Unused"},
}


@pytest.fixture
def agent(data_source, provider, retriever, registry, token_tracker):
    return GraphAgent(
        GRAPH_KEY,
        data_source,
        provider,
        retriever=retriever,
        registry=registry,
        token_tracker=token_tracker,
        thread_id="ai_1_1",
    )


async def drain(stream):
    return [event async for event in stream]


def tool_messages(agent):
    return [m for m in agent.messages if m["role"] == "tool"]


class TestReadLoop:
    """Read tools are executed and fed back to the model."""

    @pytest.mark.asyncio
    async def test_search_then_answer(self, agent, provider, token_tracker):
        provider.add(tool_turn(SEARCH_FETCH), text_turn("The fetch node| calls the stats API."))

        events = await drain(agent.chat_stream("what does the fetch node do?"))

        assert [type(e) for e in events] == [
            ToolStartEvent, ToolResultEvent, TokenEvent, TokenEvent, CompleteEvent,
        ]
        assert events[-1].full_text == "The fetch node calls the stats API."
        result = json.loads(events[1].result)
        assert result[0]["_key"] == "fetch-api"
        assert agent.status is AgentStatus.COMPLETED
        assert [m["role"] for m in agent.messages] == ["system", "system", "user", "assistant", "tool", "assistant"]
        assert token_tracker.summary().total_calls == 1

    @pytest.mark.asyncio
    async def test_context_injected_before_question(self, agent, provider):
        provider.add(text_turn("Hi"))

        await drain(agent.chat_stream("fetch"))

        messages = provider.calls[0]["messages"]
        assert "NBA Stats Pipeline" in messages[0]["content"]
        assert messages[1]["content"].startswith("[Graph context for this question]")
        assert messages[2] == {"role": "user", "content": "fetch"}

    @pytest.mark.asyncio
    async def test_system_prompt_only_on_first_turn(self, agent, provider):
        provider.add(text_turn("One"), text_turn("Two"))

        await drain(agent.chat_stream("first"))
        await drain(agent.chat_stream("second"))

        prompts = [m for m in agent.messages if m["role"] == "system" and "RULES:" in m["content"]]
        assert len(prompts) == 1

    @pytest.mark.asyncio
    async def test_malformed_arguments_reported_to_model(self, agent, provider):
        provider.add(
            tool_turn({"id": "c1", "name": "search_nodes", "args": "{bad json"}),
            text_turn("Sorry"),
        )

        events = await drain(agent.chat_stream("find it"))

        result = json.loads(next(e for e in events if isinstance(e, ToolResultEvent)).result)
        assert result == {"error": "Invalid JSON in tool arguments", "raw": "{bad json"}
        assert agent.status is AgentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_max_rounds_then_answer_without_tools(self, data_source, retriever, registry, token_tracker):
        provider = ScriptedProvider([tool_turn(SEARCH_FETCH), tool_turn(SEARCH_FETCH), text_turn("")])
        agent = GraphAgent(GRAPH_KEY, data_source, provider, retriever=retriever, registry=registry,
                           token_tracker=token_tracker, max_tool_rounds=2)

        events = await drain(agent.chat_stream("loop"))

        assert provider.calls[-1]["tools"] == []
        assert events[-1].full_text == FALLBACK_ANSWER

    @pytest.mark.asyncio
    async def test_unknown_tool_fails_turn(self, agent, provider):
        provider.add(tool_turn({"id": "c1", "name": "drop_database", "args": {}}))

        with pytest.raises(UnknownToolError):
            await drain(agent.chat_stream("hello"))

        assert agent.messages == []
        assert agent.status is AgentStatus.FAILED

    @pytest.mark.asyncio
    async def test_stream_without_done_fails(self, agent, provider):
        provider.add([TokenChunk(content="half")])

        with pytest.raises(CopilotError):
            await drain(agent.chat_stream("hello"))


class TestInterrupt:
    """Write tools become proposals awaiting a decision."""

    @pytest.mark.asyncio
    async def test_write_call_interrupts(self, agent, provider):
        provider.add(tool_turn(CREATE_FILTER, text="I'll add a filter."))

        events = await drain(agent.chat_stream("add a filter node"))
        interrupt = events[-1]

        assert isinstance(interrupt, InterruptEvent)
        assert interrupt.reason == "Filter inactive players"
        assert interrupt.message == "I'll add a filter."
        assert interrupt.proposed_action.payload.typeKey == "filter"
        assert agent.has_pending_interrupt()
        assert agent.status is AgentStatus.AWAITING_APPROVAL
        assert tool_messages(agent) == []

    @pytest.mark.asyncio
    async def test_approve_resumes_without_rerunning_tool(self, agent, provider, rag_cache):
        provider.add(tool_turn(CREATE_FILTER), text_turn("Node created."))
        await drain(agent.chat_stream("add a filter node"))
        assert len(rag_cache) == 1

        events = await drain(agent.resume_stream(approved=True))

        first = events[0]
        assert isinstance(first, ToolResultEvent)
        result = json.loads(first.result)
        assert result["status"] == "approved"
        assert result["message"] == APPROVED_MESSAGE
        assert result["action"] == {
            "type": "create_node",
            "payload": {"typeKey": "filter", "sheet": "0", "posX": 500, "posY": 300},
        }
        assert events[-1].full_text == "Node created."
        assert len(provider.calls) == 2
        assert not agent.has_pending_interrupt()
        assert len(rag_cache) == 0

    @pytest.mark.asyncio
    async def test_reject_with_feedback(self, agent, provider):
        provider.add(tool_turn(DELETE_NOTE), text_turn("Understood."))
        await drain(agent.chat_stream("remove the note"))

        events = await drain(agent.resume_stream(approved=False, feedback="Keep it for now"))

        assert json.loads(events[0].result) == {"status": "rejected", "message": "Keep it for now"}
        assert tool_messages(agent)[0]["tool_call_id"] == "call_delete"

    @pytest.mark.asyncio
    async def test_default_reject_message(self, agent, provider):
        provider.add(tool_turn(DELETE_NOTE), text_turn("OK"))
        await drain(agent.chat_stream("remove the note"))

        events = await drain(agent.resume_stream(approved=False))

        assert json.loads(events[0].result)["message"] == REJECTED_MESSAGE

    @pytest.mark.asyncio
    async def test_second_write_not_submitted(self, agent, provider):
        provider.add(tool_turn(CREATE_FILTER, DELETE_NOTE), text_turn("Done"))
        events = await drain(agent.chat_stream("add a filter and remove the note"))
        assert events[-1].tool_call.id == "call_create"

        events = await drain(agent.resume_stream(approved=True))

        results = [e for e in events if isinstance(e, ToolResultEvent)]
        assert [e.tool_call_id for e in results] == ["call_create", "call_delete"]
        assert json.loads(results[1].result) == {"status": "not_submitted", "error": NOT_SUBMITTED_MESSAGE}
        # every call of the assistant message is answered before the next model call
        answered = {m["tool_call_id"] for m in provider.calls[-1]["messages"] if m["role"] == "tool"}
        assert answered == {"call_create", "call_delete"}

    @pytest.mark.asyncio
    async def test_read_after_write_runs_on_resume(self, agent, provider):
        provider.add(tool_turn(CREATE_FILTER, SEARCH_FETCH), text_turn("Done"))
        await drain(agent.chat_stream("add a filter"))

        events = await drain(agent.resume_stream(approved=False))

        results = [e for e in events if isinstance(e, ToolResultEvent)]
        assert results[1].tool_name == "search_nodes"
        assert json.loads(results[1].result)[0]["_key"] == "fetch-api"

    @pytest.mark.asyncio
    async def test_resume_without_pending_raises(self, agent):
        with pytest.raises(ThreadStateError):
            await drain(agent.resume_stream(approved=True))

    @pytest.mark.asyncio
    async def test_chat_while_awaiting_approval_raises(self, agent, provider):
        provider.add(tool_turn(CREATE_FILTER))
        await drain(agent.chat_stream("add a filter"))

        with pytest.raises(ThreadStateError):
            await drain(agent.chat_stream("something else"))

    @pytest.mark.asyncio
    async def test_invalid_proposal_is_reported(self, agent, provider):
        bad = {"id": "c1", "name": "propose_delete_node", "args": {"nodeKey": "root"}}
        provider.add(tool_turn(bad), text_turn("Let me retry"))

        events = await drain(agent.chat_stream("delete root"))

        result = json.loads(next(e for e in events if isinstance(e, ToolResultEvent)).result)
        assert "reason" in result["error"]
        assert not agent.has_pending_interrupt()


class TestViewer:
    @pytest.mark.asyncio
    async def test_viewer_gets_read_tools_only(self, agent, provider):
        agent.role = "viewer"
        provider.add(text_turn("Read only"))

        await drain(agent.chat_stream("hi"))

        names = [tool["function"]["name"] for tool in provider.calls[0]["tools"]]
        assert names and not any(name.startswith("propose_") for name in names)
        assert "READ-ONLY" in agent.messages[0]["content"]

    @pytest.mark.asyncio
    async def test_viewer_write_call_rejected(self, agent, provider):
        agent.role = "viewer"
        provider.add(tool_turn(DELETE_NOTE), text_turn("Cannot do that"))

        events = await drain(agent.chat_stream("delete the note"))

        assert not any(isinstance(e, InterruptEvent) for e in events)
        result = json.loads(next(e for e in events if isinstance(e, ToolResultEvent)).result)
        assert result == {"error": READ_ONLY_MESSAGE}

    @pytest.mark.asyncio
    async def test_turn_role_does_not_stick(self, agent, provider):
        provider.add(tool_turn(DELETE_NOTE), text_turn("Cannot do that"), tool_turn(DELETE_NOTE))

        events = await drain(agent.chat_stream("delete the note", role="viewer"))

        assert not any(isinstance(e, InterruptEvent) for e in events)
        assert agent.role == "editor"
        assert "READ-ONLY" in agent.messages[0]["content"]

        events = await drain(agent.chat_stream("delete it anyway"))
        assert isinstance(events[-1], InterruptEvent)

    @pytest.mark.asyncio
    async def test_role_fixed_for_the_whole_turn(self, agent, provider):
        provider.add(tool_turn(SEARCH_FETCH), tool_turn(DELETE_NOTE), text_turn("Read only"))

        stream = agent.chat_stream("look around, then delete the note", role="viewer")
        first = await stream.__anext__()
        agent.role = "admin"
        events = [first] + await drain(stream)

        assert not any(isinstance(e, InterruptEvent) for e in events)
        result = json.loads([e for e in events if isinstance(e, ToolResultEvent)][-1].result)
        assert result == {"error": READ_ONLY_MESSAGE}
        for call in provider.calls:
            assert not any(tool["function"]["name"].startswith("propose_") for tool in call["tools"])


class TestRollback:
    """A turn is all-or-nothing for the thread."""

    @pytest.mark.asyncio
    async def test_cancelled_turn_restores_history(self, agent, provider):
        provider.add(text_turn("First answer"))
        await drain(agent.chat_stream("first"))
        before = list(agent.messages)

        provider.add([TokenChunk(content="partial"), PAUSE])
        token = CancelToken()
        received = []

        async def consume():
            async for event in agent.chat_stream("second", token):
                received.append(event)

        task = asyncio.create_task(consume())
        token.bind(task)
        await provider.paused.wait()
        while not received:
            await asyncio.sleep(0)
        token.cancel("user")

        with pytest.raises(asyncio.CancelledError):
            await task

        assert [e.token for e in received] == ["partial"]
        assert agent.messages == before
        assert agent.status is AgentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancelled_resume_keeps_proposal(self, agent, provider):
        provider.add(tool_turn(CREATE_FILTER), [PAUSE])
        await drain(agent.chat_stream("add a filter"))
        before = list(agent.messages)
        token = CancelToken()

        task = asyncio.create_task(drain(agent.resume_stream(approved=True, cancel_token=token)))
        token.bind(task)
        await provider.paused.wait()
        token.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert agent.has_pending_interrupt()
        assert agent.messages == before
        assert agent.status is AgentStatus.AWAITING_APPROVAL

    @pytest.mark.asyncio
    async def test_provider_failure_restores_and_marks_failed(self, agent, provider):
        provider.add([RuntimeError("HTTP 503 Service Unavailable")], text_turn("Recovered"))

        with pytest.raises(RuntimeError):
            await drain(agent.chat_stream("hello"))

        assert agent.messages == []
        assert agent.status is AgentStatus.FAILED

        events = await drain(agent.chat_stream("hello again"))
        assert events[-1].full_text == "Recovered"

    @pytest.mark.asyncio
    async def test_failed_resume_keeps_proposal(self, agent, provider):
        provider.add(tool_turn(CREATE_FILTER), [RuntimeError("connection reset")])
        await drain(agent.chat_stream("add a filter"))

        with pytest.raises(RuntimeError):
            await drain(agent.resume_stream(approved=True))

        assert agent.has_pending_interrupt()
        assert agent.status is AgentStatus.AWAITING_APPROVAL

    @pytest.mark.asyncio
    async def test_consumer_closing_early_restores(self, agent, provider):
        provider.add(text_turn("a|b|c"))

        stream = agent.chat_stream("hello")
        first = await stream.__anext__()
        await stream.aclose()

        assert isinstance(first, TokenEvent)
        assert agent.messages == []
        assert agent.status is AgentStatus.IDLE


class TestNonStreaming:
    @pytest.mark.asyncio
    async def test_chat_returns_message_and_tool_log(self, agent, provider):
        provider.add(tool_turn(SEARCH_FETCH), text_turn("Found it"))

        result = await agent.chat("find fetch")

        assert result.type == "message"
        assert result.message == "Found it"
        assert [record.name for record in result.tool_calls] == ["search_nodes"]

    @pytest.mark.asyncio
    async def test_chat_returns_interrupt_then_resume(self, agent, provider):
        provider.add(tool_turn(DELETE_NOTE), text_turn("Deleted"))

        result = await agent.chat("delete the note")
        assert result.type == "interrupt"
        assert result.proposed_action.type == "delete_node"
        assert result.reason == "Unused"

        resumed = await agent.resume(approved=True)
        assert resumed.message == "Deleted"


class TestStatePersistence:
    @pytest.mark.asyncio
    async def test_round_trip_with_pending_proposal(self, agent, provider, data_source, retriever, registry,
                                                    token_tracker):
        provider.add(tool_turn(CREATE_FILTER))
        await drain(agent.chat_stream("add a filter"))

        document = agent.to_state().model_dump(mode="json")
        state = AgentState.model_validate(json.loads(json.dumps(document)))
        other_provider = ScriptedProvider([text_turn("Applied")])
        restored = GraphAgent.from_state(state, data_source, other_provider, retriever=retriever,
                                         registry=registry, token_tracker=token_tracker)

        assert restored.status is AgentStatus.AWAITING_APPROVAL
        assert restored.checkpoint_thread_id is None
        assert restored.messages == agent.messages
        events = await drain(restored.resume_stream(approved=True))
        assert events[-1].full_text == "Applied"

    def test_state_for_other_graph_rejected(self, agent):
        with pytest.raises(ThreadStateError):
            agent.load_state(AgentState(graph_key="other", workspace="root"))

    @pytest.mark.asyncio
    async def test_reset(self, agent, provider):
        provider.add(tool_turn(CREATE_FILTER))
        await drain(agent.chat_stream("add a filter"))

        agent.reset()

        assert agent.messages == []
        assert not agent.has_pending_interrupt()
        assert agent.status is AgentStatus.IDLE


class TestCheckpoints:
    """Proposals park a LangGraph run on the approval interrupt."""

    @pytest.fixture
    def saver(self):
        return MemorySaver()

    @pytest.fixture
    def agent(self, data_source, provider, retriever, registry, token_tracker, saver):
        return GraphAgent(
            GRAPH_KEY,
            data_source,
            provider,
            retriever=retriever,
            registry=registry,
            token_tracker=token_tracker,
            thread_id="ai_1_1",
            checkpointer=saver,
        )

    @staticmethod
    def live_threads(saver):
        return {thread for thread, namespaces in saver.storage.items() if any(namespaces.values())}

    @pytest.mark.asyncio
    async def test_proposal_parks_run_on_approval(self, agent, provider, saver):
        provider.add(tool_turn(CREATE_FILTER))

        await drain(agent.chat_stream("add a filter"))

        run_id = agent.checkpoint_thread_id
        assert run_id.startswith("ai_1_1:")
        assert self.live_threads(saver) == {run_id}
        snapshot = await agent.graph.aget_state({"configurable": {"thread_id": run_id}})
        assert snapshot.next == ("approval",)
        payload = snapshot.tasks[0].interrupts[0].value
        assert payload["proposedAction"]["type"] == "create_node"
        assert payload["reason"] == "Filter inactive players"

    @pytest.mark.asyncio
    async def test_finished_turns_leave_no_runs(self, agent, provider, saver):
        provider.add(text_turn("Hi"), tool_turn(CREATE_FILTER), text_turn("Done"))

        await drain(agent.chat_stream("hello"))
        assert self.live_threads(saver) == set()

        await drain(agent.chat_stream("add a filter"))
        await drain(agent.resume_stream(approved=True))

        assert agent.checkpoint_thread_id is None
        assert self.live_threads(saver) == set()

    @pytest.mark.asyncio
    async def test_failed_turn_run_discarded(self, agent, provider, saver):
        provider.add([RuntimeError("HTTP 503 Service Unavailable")])

        with pytest.raises(RuntimeError):
            await drain(agent.chat_stream("hello"))

        assert self.live_threads(saver) == set()

    @pytest.mark.asyncio
    async def test_cancelled_resume_reseeds_next_resume(self, agent, provider, saver):
        provider.add(tool_turn(CREATE_FILTER), [PAUSE], text_turn("Applied"))
        await drain(agent.chat_stream("add a filter"))
        token = CancelToken()

        task = asyncio.create_task(drain(agent.resume_stream(approved=True, cancel_token=token)))
        token.bind(task)
        await provider.paused.wait()
        token.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert agent.checkpoint_thread_id is None
        assert self.live_threads(saver) == set()

        events = await drain(agent.resume_stream(approved=True))

        assert json.loads(events[0].result)["status"] == "approved"
        assert events[-1].full_text == "Applied"
        assert [m["role"] for m in agent.messages][-3:] == ["assistant", "tool", "assistant"]
        assert self.live_threads(saver) == set()
