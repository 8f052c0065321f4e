"""Graph retrieval for prompting the agent."""

from api.rag.graph_rag import GraphRAGRetriever, RAGCache, get_rag_cache

__all__ = ["GraphRAGRetriever", "RAGCache", "get_rag_cache"]
