"""
Workflow graph access for the assistant.

Provides:
- Pydantic records for graphs, nodes, edges and node type configs
- The read-only ``GraphDataSource`` interface
- An in-memory implementation with token and vector search
"""

from libs.graph.datasource import GraphDataSource
from libs.graph.memory import InMemoryGraphDataSource

__all__ = ["GraphDataSource", "InMemoryGraphDataSource"]
