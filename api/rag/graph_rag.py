"""
GraphRAG retrieval over a live workflow graph.

Compresses a graph of any size into a bounded context for one query:
- search seed nodes (vector-assisted when an embedding backend is configured)
- expand the top seeds' neighborhoods in both directions
- keep only edges whose two ends made it into the node set
- attach the node type configs the selected nodes actually use

Results are cached per ``(graph_key, query)`` in a process-scoped ``RAGCache``.
Consistency is TTL-based only; stale reads within the TTL are accepted.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import structlog

from api.errors import GraphNotFoundError
from api.llm.embeddings import EmbeddingProvider
from api.observability.ai_events import debug_event
from api.schemas.agent_state import (
    RAGContext,
    RAGEdge,
    RAGGraphSummary,
    RAGNode,
    RAGNodeType,
)
from libs.graph.datasource import GraphDataSource
from libs.graph.models import (
    GraphEdge,
    GraphNode,
    NodeTypeConfig,
    handle_signature,
    summarize_handles,
    truncate,
)

logger = structlog.get_logger(__name__)

DEFAULT_MAX_NODES = 20
DEFAULT_MAX_DEPTH = 2
DEFAULT_CACHE_TTL_MS = 120_000
SEED_COUNT = 5
PROCESS_PREVIEW_CHARS = 500
DATA_PREVIEW_CHARS = 200


@dataclass
class _CacheEntry:
    context: RAGContext
    timestamp_ms: float


class RAGCache:
    """
    Shared map of assembled contexts keyed by ``"{graph_key}:{query}"``.

    Usage:
        cache = RAGCache()
        retriever = GraphRAGRetriever(source, cache=cache)
        cache.invalidate("graph-1")
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, _CacheEntry] = {}
        self._clock = clock

    @staticmethod
    def key(graph_key: str, query: str) -> str:
        return f"{graph_key}:{query}"

    def now_ms(self) -> float:
        return self._clock() * 1000

    def get(self, graph_key: str, query: str, ttl_ms: int) -> Optional[RAGContext]:
        if ttl_ms <= 0:
            return None
        entry = self._entries.get(self.key(graph_key, query))
        if entry is None or self.now_ms() - entry.timestamp_ms >= ttl_ms:
            return None
        return entry.context

    def put(self, graph_key: str, query: str, context: RAGContext) -> None:
        self._entries[self.key(graph_key, query)] = _CacheEntry(context=context, timestamp_ms=self.now_ms())

    def invalidate(self, graph_key: Optional[str] = None) -> int:
        """Drop entries of one graph, or everything when ``graph_key`` is None."""
        if graph_key is None:
            removed = len(self._entries)
            self._entries.clear()
            return removed

        prefix = f"{graph_key}:"
        stale = [key for key in self._entries if key.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


_process_cache: Optional[RAGCache] = None


def get_rag_cache() -> RAGCache:
    """Cache shared by every retriever of this process."""
    global _process_cache
    if _process_cache is None:
        _process_cache = RAGCache()
    return _process_cache


class GraphRAGRetriever:
    """Assembles a ``RAGContext`` for a natural-language query."""

    def __init__(
        self,
        data_source: GraphDataSource,
        embedding_provider: Optional[EmbeddingProvider] = None,
        cache: Optional[RAGCache] = None,
        max_nodes: int = DEFAULT_MAX_NODES,
        max_depth: int = DEFAULT_MAX_DEPTH,
        cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS,
    ):
        """
        Initialize the retriever.

        Args:
            data_source: Graph to read from
            embedding_provider: Optional backend for vector-assisted search
            cache: Shared cache; a private one is created when omitted
            max_nodes: Upper bound on nodes in a context
            max_depth: Neighborhood expansion depth around each seed
            cache_ttl_ms: Cache entry lifetime; 0 disables caching
        """
        self.data_source = data_source
        self.embedding_provider = embedding_provider
        self.cache = cache if cache is not None else RAGCache()
        self.max_nodes = max_nodes
        self.max_depth = max_depth
        self.cache_ttl_ms = cache_ttl_ms

    async def retrieve(self, graph_key: str, query: str) -> RAGContext:
        """
        Build (or reuse) the context for ``query`` on ``graph_key``.

        Raises:
            GraphNotFoundError: The graph does not exist
        """
        cached = self.cache.get(graph_key, query, self.cache_ttl_ms)
        if cached is not None:
            debug_event("rag_retrieve", graph_key=graph_key, query=query, cache_hit=True)
            return cached

        graph = await self.data_source.get_graph(graph_key)
        if graph is None:
            raise GraphNotFoundError(graph_key)

        query_embedding = await self._embed(query)

        matches = await self.data_source.search_nodes(graph_key, query, self.max_nodes, query_embedding)
        if not matches:
            matches = (await self.data_source.get_nodes(graph_key))[: self.max_nodes]

        # dict keeps insertion order, seeds first
        node_keys: Dict[str, None] = dict.fromkeys(node.key for node in matches)
        expanded_edges: List[GraphEdge] = []
        for seed in matches[:SEED_COUNT]:
            neighborhood = await self.data_source.get_neighborhood(graph_key, seed.key, self.max_depth, "any")
            for node in neighborhood.nodes:
                node_keys.setdefault(node.key, None)
            expanded_edges.extend(neighborhood.edges)

        nodes: List[GraphNode] = []
        for key in node_keys:
            if len(nodes) >= self.max_nodes:
                break
            node = await self.data_source.get_node_by_key(graph_key, key)
            if node is not None:
                nodes.append(node)

        selected = {node.key for node in nodes}
        edges: Dict[str, GraphEdge] = {}
        for edge in expanded_edges:
            if edge.source in selected and edge.target in selected:
                edges[edge.key] = edge

        configs = await self.data_source.get_node_configs(graph_key)
        used_types = {node.type for node in nodes}
        relevant_configs = [config for config in configs if config.key in used_types]

        context = RAGContext(
            graph=RAGGraphSummary(
                key=graph.key,
                name=graph.name,
                description=graph.description,
                sheets=graph.sheets,
                metadata=graph.metadata,
            ),
            relevant_nodes=[self._node_view(node, graph.sheets, relevant_configs) for node in nodes],
            relevant_edges=[self._edge_view(edge) for edge in edges.values()],
            node_type_configs=[self._config_view(config) for config in relevant_configs],
        )

        debug_event(
            "rag_retrieve",
            graph_key=graph_key,
            query=query,
            cache_hit=False,
            node_count=len(nodes),
            edge_count=len(edges),
            vector_search=query_embedding is not None,
        )

        if self.cache_ttl_ms > 0:
            self.cache.put(graph_key, query, context)
        return context

    async def _embed(self, query: str) -> Optional[List[float]]:
        if self.embedding_provider is None or not query.strip():
            return None
        try:
            return await self.embedding_provider.generate_embedding(query)
        except Exception as e:
            logger.warning(
                "Query embedding failed, using token search",
                model=self.embedding_provider.get_model_name(),
                error=str(e),
            )
            return None

    def clear_cache(self, graph_key: Optional[str] = None) -> None:
        self.cache.invalidate(graph_key)

    def cache_size(self) -> int:
        return len(self.cache)

    @staticmethod
    def _node_view(node: GraphNode, sheets: Dict[str, str], configs: List[NodeTypeConfig]) -> RAGNode:
        config = next((c for c in configs if c.key == node.type), None)
        return RAGNode(
            key=node.key,
            type=node.type,
            type_name=config.display_name if config else None,
            sheet=node.sheet,
            sheet_name=sheets.get(node.sheet, node.sheet),
            process=truncate(node.process, PROCESS_PREVIEW_CHARS),
            handles=summarize_handles(node.handles),
            data_summary=(
                truncate(json.dumps(node.data, default=str), DATA_PREVIEW_CHARS) if node.data else None
            ),
        )

    @staticmethod
    def _edge_view(edge: GraphEdge) -> RAGEdge:
        return RAGEdge(
            key=edge.key,
            source=edge.source,
            target=edge.target,
            source_handle=edge.source_handle,
            target_handle=edge.target_handle,
            label=edge.label,
        )

    @staticmethod
    def _config_view(config: NodeTypeConfig) -> RAGNodeType:
        return RAGNodeType(
            key=config.key,
            display_name=config.display_name,
            description=config.description,
            category=config.category,
            icon=config.icon,
            handles_summary=handle_signature(config.handles),
        )
