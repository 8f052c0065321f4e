"""
Dict-backed graph data source.

Serves a graph held in process memory:
- token search over key, type, process code, data and type names
- cosine ranking with numpy when node embeddings are available
- breadth-first neighborhood expansion filtered by edge direction
"""

from __future__ import annotations

import json
from collections import deque
from typing import Dict, Iterable, List, Optional

import numpy as np
import structlog

from libs.graph.datasource import GraphDataSource
from libs.graph.models import (
    Direction,
    GraphEdge,
    GraphInfo,
    GraphNode,
    Neighborhood,
    NodeTypeConfig,
)

logger = structlog.get_logger(__name__)

VECTOR_SCORE_THRESHOLD = 0.3


def _edge_matches(edge: GraphEdge, node_key: str, direction: Direction) -> bool:
    if direction == "outbound":
        return edge.source == node_key
    if direction == "inbound":
        return edge.target == node_key
    return edge.source == node_key or edge.target == node_key


class InMemoryGraphDataSource(GraphDataSource):
    """
    Graph data source over plain Python collections.

    Usage:
        source = InMemoryGraphDataSource()
        source.add_graph(info, nodes, edges)
        hits = await source.search_nodes("g1", "fetch api")
    """

    def __init__(self, node_configs: Optional[Iterable[NodeTypeConfig]] = None):
        self._graphs: Dict[str, GraphInfo] = {}
        self._nodes: Dict[str, Dict[str, GraphNode]] = {}
        self._edges: Dict[str, Dict[str, GraphEdge]] = {}
        self._configs: List[NodeTypeConfig] = list(node_configs or [])

    def add_graph(
        self,
        info: GraphInfo,
        nodes: Iterable[GraphNode] = (),
        edges: Iterable[GraphEdge] = (),
    ) -> None:
        self._graphs[info.key] = info
        self._nodes[info.key] = {node.key: node for node in nodes}
        self._edges[info.key] = {edge.key: edge for edge in edges}

    async def get_graph(self, graph_key: str) -> Optional[GraphInfo]:
        return self._graphs.get(graph_key)

    async def get_nodes(self, graph_key: str, sheet_id: Optional[str] = None) -> List[GraphNode]:
        nodes = self._nodes.get(graph_key, {}).values()
        return [node for node in nodes if sheet_id is None or node.sheet == sheet_id]

    async def get_edges(self, graph_key: str, sheet_id: Optional[str] = None) -> List[GraphEdge]:
        edges = self._edges.get(graph_key, {}).values()
        return [edge for edge in edges if sheet_id is None or edge.sheet == sheet_id]

    async def get_node_by_key(self, graph_key: str, node_key: str) -> Optional[GraphNode]:
        return self._nodes.get(graph_key, {}).get(node_key)

    async def get_node_configs(self, graph_key: str) -> List[NodeTypeConfig]:
        return list(self._configs)

    async def search_nodes(
        self,
        graph_key: str,
        query: str,
        max_results: int = 10,
        query_embedding: Optional[List[float]] = None,
    ) -> List[GraphNode]:
        nodes = await self.get_nodes(graph_key)

        if query_embedding:
            ranked = self._vector_search(nodes, query_embedding, max_results)
            if ranked:
                return ranked
            logger.debug("Vector search found nothing, using token search", graph_key=graph_key)

        normalized = query.lower().strip()
        if len(normalized) <= 2:
            return nodes[:max_results]

        tokens = [token for token in normalized.split() if len(token) > 2]
        config_names = {
            config.key: f"{config.display_name} {config.description}" for config in self._configs
        }

        scored = []
        for node in nodes:
            haystack = " ".join([
                node.key,
                node.type,
                node.process or "",
                json.dumps(node.data if node.data is not None else "", default=str),
                config_names.get(node.type, ""),
            ]).lower()
            score = sum(1 for token in tokens if token in haystack)
            if score > 0:
                scored.append((score, node))

        # sorted() is stable, so ties keep graph order
        scored = sorted(scored, key=lambda item: item[0], reverse=True)
        return [node for _, node in scored[:max_results]]

    def _vector_search(
        self,
        nodes: List[GraphNode],
        query_embedding: List[float],
        max_results: int,
    ) -> List[GraphNode]:
        candidates = [node for node in nodes if node.embedding]
        if not candidates:
            return []

        query_vec = np.asarray(query_embedding, dtype=float)
        matrix = np.asarray([node.embedding for node in candidates], dtype=float)
        if matrix.shape[1] != query_vec.shape[0]:
            logger.warning(
                "Embedding dimension mismatch",
                query_dim=int(query_vec.shape[0]),
                node_dim=int(matrix.shape[1]),
            )
            return []

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vec)
        norms[norms == 0] = 1.0
        scores = matrix @ query_vec / norms

        order = np.argsort(-scores, kind="stable")
        return [
            candidates[i] for i in order[:max_results] if scores[i] > VECTOR_SCORE_THRESHOLD
        ]

    async def get_neighborhood(
        self,
        graph_key: str,
        node_key: str,
        max_depth: int = 2,
        direction: Direction = "any",
    ) -> Neighborhood:
        nodes = self._nodes.get(graph_key, {})
        edges = list(self._edges.get(graph_key, {}).values())

        visited = {node_key}
        found_nodes: List[GraphNode] = []
        found_edges: Dict[str, GraphEdge] = {}
        queue = deque([(node_key, 0)])

        while queue:
            current, depth = queue.popleft()
            node = nodes.get(current)
            if node is not None:
                found_nodes.append(node)
            if depth >= max_depth:
                continue

            for edge in edges:
                if not _edge_matches(edge, current, direction):
                    continue
                found_edges.setdefault(edge.key, edge)
                next_key = edge.target if edge.source == current else edge.source
                if next_key not in visited:
                    visited.add(next_key)
                    queue.append((next_key, depth + 1))

        return Neighborhood(nodes=found_nodes, edges=list(found_edges.values()))
