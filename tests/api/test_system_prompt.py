"""
Tests for the agent prompts.

Tests verify:
- the system prompt pins the graph and lists custom node types
- the permission note follows the role
- the context summary lists nodes and edges as compact rows
"""

import pytest

from api.prompts.system_prompt import VIEWER_NOTE, build_context_summary, build_system_prompt
from api.schemas.agent_state import RAGContext, RAGGraphSummary
from tests.fixtures.graph_data import GRAPH_KEY


@pytest.fixture
async def context(retriever):
    return await retriever.retrieve(GRAPH_KEY, "fetch")


@pytest.mark.asyncio
async def test_prompt_pins_graph(context):
    prompt = build_system_prompt(context)

    assert '"NBA Stats Pipeline" (ID: testgraph001)' in prompt
    assert '"api-call" (API Call)' in prompt
    assert '"propose_*"' in prompt
    assert VIEWER_NOTE not in prompt


@pytest.mark.asyncio
async def test_viewer_prompt(context):
    prompt = build_system_prompt(context, role="viewer")

    assert VIEWER_NOTE in prompt
    assert "User permissions: viewer" in prompt


@pytest.mark.asyncio
async def test_context_summary_rows(context):
    summary = build_context_summary(context)

    assert summary.startswith("RELEVANT NODES (key | type | sheet | process):")
    assert "fetch-api | api-call (API Call) | main |" in summary
    assert "RELEVANT EDGES (from | to | label):" in summary
    assert "fetch-api:0 | filter-active:0 | success" in summary


def test_empty_context_summary():
    context = RAGContext(graph=RAGGraphSummary(key="g", name="Empty"))

    assert build_context_summary(context) == ""
    assert "(no custom types)" in build_system_prompt(context)
