"""Graph Copilot API Service.

This package contains the FastAPI application and the AI layer behind the
graph editor's copilot.

Main components:
- main.py: FastAPI application, health check and lifespan wiring
- models.py: Pydantic models for the AI WebSocket channel
- routers/ai.py: WebSocket endpoint for chat, resume and interrupt requests
- orchestrators/session_controller.py: per-request sessions and cancellation
- agents/graph_agent.py: interrupt/resume agent bound to one graph
- rag/graph_rag.py: GraphRAG context retrieval
- tools/: read tools and approval-gated write tools
- llm/: provider adapters normalized to one streaming protocol
"""

# Avoid importing heavy modules (e.g., FastAPI app) at package import time to
# prevent side effects when tools import `api.*`.
# Intentionally do not re-export runtime objects here.
__all__ = []
