"""
Pytest configuration and fixtures for graph copilot tests.

Provides shared fixtures for:
- Test settings (``COPILOT_APP_ENV=test``, fresh settings cache)
- Fake Redis client (fakeredis)
- The "NBA Stats Pipeline" graph in an in-memory data source
- A scripted LLM provider and isolated token tracker / RAG cache
"""

import pytest
from fakeredis import aioredis as fakeredis

from api.llm.token_tracker import TokenTracker
from api.rag.graph_rag import GraphRAGRetriever, RAGCache
from api.tools.registry import build_default_registry
from libs.common.settings import get_settings
from tests.fixtures.graph_data import GRAPH_KEY, build_data_source
from tests.fixtures.llm import ScriptedProvider


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("COPILOT_APP_ENV", "test")
    for var in ("OPENAI_API_KEY", "DEEPSEEK_API_KEY", "ANTHROPIC_API_KEY", "COPILOT_REDIS_URL"):
        monkeypatch.delenv(var, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def redis_client():
    """
    Provide fakeredis client for testing.

    This avoids requiring actual Redis server during tests.
    """
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushdb()
    await client.aclose()


@pytest.fixture
def graph_key():
    return GRAPH_KEY


@pytest.fixture
def data_source():
    return build_data_source()


@pytest.fixture
def rag_cache():
    return RAGCache()


@pytest.fixture
def retriever(data_source, rag_cache):
    return GraphRAGRetriever(data_source, cache=rag_cache)


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def token_tracker():
    return TokenTracker.for_provider("deepseek")


@pytest.fixture
def provider():
    return ScriptedProvider()
