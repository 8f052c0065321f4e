"""Graph Copilot API service.

FastAPI application hosting the AI WebSocket channel. The graph engine, the
auth backend and the LLM backend are injected at startup; every dependency
that is not configured degrades instead of failing the boot.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from api.auth import AuthManager, create_auth_manager
from api.errors import ProviderConfigurationError
from api.llm.base import LLMProvider
from api.llm.providers import create_embedding_provider, create_llm_provider
from api.models import HealthResponse
from api.orchestrators.session_controller import SessionController
from api.rag.graph_rag import GraphRAGRetriever, get_rag_cache
from api.routers import ai as ai_router
from libs.caching.redis_client import close_redis_client
from libs.common.settings import get_settings
from libs.graph.datasource import GraphDataSource
from libs.graph.memory import InMemoryGraphDataSource
from libs.threads.store import ThreadStore, create_thread_store

SERVICE_VERSION = "0.1.0"


def configure_logging(log_level: str = "INFO") -> None:
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(get_settings().log_level)

logger = structlog.get_logger(__name__)


def create_app(
    data_source: Optional[GraphDataSource] = None,
    llm_provider: Optional[LLMProvider] = None,
    thread_store: Optional[ThreadStore] = None,
    auth_manager: Optional[AuthManager] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        data_source: Graph engine adapter; an empty in-memory source when omitted
        llm_provider: Chat backend; built from settings when omitted
        thread_store: Thread registry; Redis-backed when Redis is configured
        auth_manager: Token validator; Firebase when credentials are configured
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        provider = llm_provider
        if provider is None:
            try:
                provider = create_llm_provider(settings)
            except ProviderConfigurationError as e:
                logger.warning("AI chat disabled", reason=str(e))

        source = data_source or InMemoryGraphDataSource()
        retriever = GraphRAGRetriever(
            source,
            embedding_provider=create_embedding_provider(settings),
            cache=get_rag_cache(),
            max_nodes=settings.rag_max_nodes,
            max_depth=settings.rag_max_depth,
            cache_ttl_ms=settings.rag_cache_ttl_ms,
        )
        store = thread_store or await create_thread_store()

        app.state.thread_store = store
        app.state.session_controller = SessionController(
            source,
            provider,
            store,
            retriever=retriever,
            auth_manager=auth_manager or create_auth_manager(settings),
            settings=settings,
        )
        logger.info(
            "Graph copilot started",
            env=settings.app_env,
            llm_provider=provider.get_provider_name() if provider else None,
            persistent_threads=store.persistent,
        )
        yield
        await close_redis_client()

    app = FastAPI(
        title="Graph Copilot API",
        description="AI assistant that inspects workflow graphs and proposes approved edits",
        version=SERVICE_VERSION,
        default_response_class=ORJSONResponse,
        debug=settings.debug,
        lifespan=lifespan,
    )

    cors_origins = ["*"] if settings.is_development else settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False if settings.is_development else True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing and structured data."""
        start_time = time.time()
        request_id = f"req_{int(start_time * 1000000)}"
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                request_id=request_id,
                error=str(e),
                process_time_ms=round((time.time() - start_time) * 1000, 2),
                exc_info=True,
            )
            raise

        logger.info(
            "Request completed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time_ms=round((time.time() - start_time) * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response

    @app.get("/healthz", response_model=HealthResponse, tags=["Health"])
    async def health_check(request: Request) -> HealthResponse:
        """Liveness check with the state of optional dependencies.

        Example:
            ```bash
            curl http://localhost:8000/healthz
            ```
        """
        controller: Optional[SessionController] = getattr(request.app.state, "session_controller", None)
        details = None
        if controller is not None:
            details = {
                "llm_configured": controller.llm_provider is not None,
                "persistent_threads": controller.thread_store.persistent,
                "active_sessions": len(controller.sessions),
                "rag_cache_entries": controller.retriever.cache_size(),
            }
        return HealthResponse(status="healthy", service="graph-copilot", version=SERVICE_VERSION, details=details)

    app.include_router(ai_router.router, tags=["AI"])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # For local development only
    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
