"""Read-only access to a workflow graph.

The assistant never writes to the graph. Every query goes through a
``GraphDataSource`` so the backing engine decides how concurrent reads are
served.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from libs.graph.models import (
    Direction,
    GraphEdge,
    GraphInfo,
    GraphNode,
    Neighborhood,
    NodeTypeConfig,
)


class GraphDataSource(ABC):
    """Query interface the agent, its tools and the retriever consume."""

    @abstractmethod
    async def get_graph(self, graph_key: str) -> Optional[GraphInfo]:
        ...

    @abstractmethod
    async def get_nodes(self, graph_key: str, sheet_id: Optional[str] = None) -> List[GraphNode]:
        ...

    @abstractmethod
    async def get_edges(self, graph_key: str, sheet_id: Optional[str] = None) -> List[GraphEdge]:
        ...

    @abstractmethod
    async def search_nodes(
        self,
        graph_key: str,
        query: str,
        max_results: int = 10,
        query_embedding: Optional[List[float]] = None,
    ) -> List[GraphNode]:
        """Nodes matching ``query``, best first; vector-ranked when an embedding is given."""

    @abstractmethod
    async def get_neighborhood(
        self,
        graph_key: str,
        node_key: str,
        max_depth: int = 2,
        direction: Direction = "any",
    ) -> Neighborhood:
        """Nodes and edges reachable from ``node_key`` within ``max_depth`` hops."""

    @abstractmethod
    async def get_node_by_key(self, graph_key: str, node_key: str) -> Optional[GraphNode]:
        ...

    @abstractmethod
    async def get_node_configs(self, graph_key: str) -> List[NodeTypeConfig]:
        ...
