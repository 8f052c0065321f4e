"""
Tests for the in-memory graph data source.

Tests verify:
- token search scoring, ordering and the short-query fallback
- vector search with numpy and the dimension-mismatch fallback
- breadth-first neighborhood expansion per direction
"""

import pytest

from libs.graph.memory import InMemoryGraphDataSource
from libs.graph.models import GraphEdge, GraphInfo, GraphNode, handle_signature, truncate
from tests.fixtures.graph_data import GRAPH_KEY


class TestTokenSearch:
    """Lexical search over node fields and type names."""

    @pytest.mark.asyncio
    async def test_fetch_query_finds_fetch_api(self, data_source):
        results = await data_source.search_nodes(GRAPH_KEY, "show me the fetch node")

        assert "fetch-api" in [node.key for node in results]

    @pytest.mark.asyncio
    async def test_short_query_returns_first_nodes(self, data_source):
        results = await data_source.search_nodes(GRAPH_KEY, "ab", max_results=3)

        assert [node.key for node in results] == ["root", "fetch-api", "filter-active"]

    @pytest.mark.asyncio
    async def test_matches_node_type_display_name(self, data_source):
        results = await data_source.search_nodes(GRAPH_KEY, "logger")

        assert {node.key for node in results} == {"error-handler", "disconnected-note"}

    @pytest.mark.asyncio
    async def test_higher_scores_first(self, data_source):
        results = await data_source.search_nodes(GRAPH_KEY, "players active filter")

        assert results[0].key == "filter-active"

    @pytest.mark.asyncio
    async def test_no_match_returns_empty(self, data_source):
        assert await data_source.search_nodes(GRAPH_KEY, "zzzqqq") == []

    @pytest.mark.asyncio
    async def test_unknown_graph_returns_empty(self, data_source):
        assert await data_source.search_nodes("missing", "fetch") == []


class TestVectorSearch:
    """Cosine ranking when node embeddings exist."""

    def _source(self):
        source = InMemoryGraphDataSource()
        source.add_graph(
            GraphInfo(key="g", name="vectors"),
            [
                GraphNode(key="a", type="t", embedding=[1.0, 0.0]),
                GraphNode(key="b", type="t", embedding=[0.7, 0.7]),
                GraphNode(key="c", type="t", embedding=[-1.0, 0.0]),
            ],
        )
        return source

    @pytest.mark.asyncio
    async def test_ranks_by_cosine_and_drops_low_scores(self):
        results = await self._source().search_nodes("g", "anything", 10, query_embedding=[1.0, 0.1])

        assert [node.key for node in results] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_dimension_mismatch_falls_back_to_tokens(self):
        results = await self._source().search_nodes("g", "zzz", 10, query_embedding=[1.0, 0.0, 0.0])

        assert results == []


class TestNeighborhood:
    """Breadth-first expansion from a node."""

    @pytest.mark.asyncio
    async def test_outbound_depth_one_excludes_upstream(self, data_source):
        result = await data_source.get_neighborhood(GRAPH_KEY, "fetch-api", max_depth=1, direction="outbound")
        keys = {node.key for node in result.nodes}

        assert keys == {"fetch-api", "filter-active", "error-handler"}
        assert "root" not in keys

    @pytest.mark.asyncio
    async def test_inbound_follows_edges_backwards(self, data_source):
        result = await data_source.get_neighborhood(GRAPH_KEY, "fetch-api", max_depth=2, direction="inbound")

        assert [node.key for node in result.nodes] == ["fetch-api", "root", "entry-form"]
        assert {edge.key for edge in result.edges} == {"e1", "e6"}

    @pytest.mark.asyncio
    async def test_any_direction_edges_are_unique(self, data_source):
        result = await data_source.get_neighborhood(GRAPH_KEY, "filter-active", max_depth=3, direction="any")
        edge_keys = [edge.key for edge in result.edges]

        assert len(edge_keys) == len(set(edge_keys))
        assert {"fetch-api", "display-html", "root", "return"} <= {node.key for node in result.nodes}

    @pytest.mark.asyncio
    async def test_isolated_node(self, data_source):
        result = await data_source.get_neighborhood(GRAPH_KEY, "disconnected-note")

        assert [node.key for node in result.nodes] == ["disconnected-note"]
        assert result.edges == []


class TestGraphModels:
    """Wire shapes and helpers."""

    def test_node_parses_wire_format(self):
        node = GraphNode.model_validate({"_key": "n1", "type": "filter", "posX": 5, "posY": 6})

        assert node.key == "n1"
        assert node.pos_x == 5
        assert node.to_wire()["_key"] == "n1"
        assert "posX" in node.to_wire()

    def test_embedding_is_not_serialized(self):
        node = GraphNode(key="n1", type="t", embedding=[0.1])

        assert "embedding" not in node.to_wire()

    def test_edge_sheet_filter(self):
        edge = GraphEdge.model_validate({"_key": "e", "source": "a", "target": "b", "sheet": "1"})

        assert edge.sheet == "1"

    @pytest.mark.asyncio
    async def test_handle_signature(self, data_source):
        configs = await data_source.get_node_configs(GRAPH_KEY)
        api_call = next(c for c in configs if c.key == "api-call")

        assert handle_signature(api_call.handles) == "L:in(any), R:out(any), R:out(any)"

    def test_truncate(self):
        assert truncate("abcdef", 3) == "abc..."
        assert truncate("abc", 3) == "abc"
        assert truncate(None, 3) == ""
