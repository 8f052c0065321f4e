"""
Thread registry with optional Redis persistence.

Each node keeps the threads it currently owns in memory. When a Redis client is
available, threads are also written as JSON documents so another node can load
them (thread roaming):

- ``copilot:thread:{thread_id}``: the thread document, expiring after the TTL
- ``copilot:graph-threads:{graph_key}``: set of thread ids per graph

The in-memory entry stays authoritative on the node that holds it; documents
are only read on a cache miss.
"""

from __future__ import annotations

import itertools
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis
import structlog

from libs.caching.redis_client import get_redis_client
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

THREAD_KEY_PREFIX = "copilot:thread:"
GRAPH_INDEX_PREFIX = "copilot:graph-threads:"

_id_counter = itertools.count(1)


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_thread_id() -> str:
    """Ids look like ``ai_{epoch_ms}_{counter}``; unique within a process."""
    return f"ai_{now_ms()}_{next(_id_counter)}"


@dataclass
class Thread:
    """
    One conversation, bound to a graph and workspace for its whole life.

    ``agent`` is the orchestrator that owns the conversation state. It must
    provide ``to_state()`` returning a pydantic model.
    """

    thread_id: str
    graph_key: str
    workspace: str
    user_id: str
    agent: Any
    created_time: int = field(default_factory=now_ms)
    last_updated_time: int = field(default_factory=now_ms)

    def touch(self) -> None:
        self.last_updated_time = now_ms()

    def to_document(self) -> Dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "graphKey": self.graph_key,
            "workspace": self.workspace,
            "userId": self.user_id,
            "createdTime": self.created_time,
            "lastUpdatedTime": self.last_updated_time,
            "state": self.agent.to_state().model_dump(mode="json"),
        }


# Builds an agent from a stored thread document
AgentFactory = Callable[[Dict[str, Any]], Any]


class ThreadStore:
    """
    Per-node thread cache backed by Redis documents.

    Usage:
        store = ThreadStore(redis_client)
        thread = await store.load_thread(thread_id, agent_factory)
        ...
        await store.save(thread)
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None):
        self._threads: Dict[str, Thread] = {}
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else get_settings().thread_ttl_seconds

    @property
    def persistent(self) -> bool:
        return self._redis is not None

    generate_thread_id = staticmethod(generate_thread_id)

    def get(self, thread_id: str) -> Optional[Thread]:
        """Thread held in this node's memory, if any."""
        return self._threads.get(thread_id)

    def set(self, thread: Thread) -> None:
        self._threads[thread.thread_id] = thread

    def discard(self, thread_id: str) -> Optional[Thread]:
        """Forget a thread held in memory only; the stored document is left alone."""
        return self._threads.pop(thread_id, None)

    def __len__(self) -> int:
        return len(self._threads)

    async def get_document(self, thread_id: str) -> Optional[Dict[str, Any]]:
        """Stored document of a thread, or None when missing or unreadable."""
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(f"{THREAD_KEY_PREFIX}{thread_id}")
        except redis.RedisError as e:
            logger.warning("Thread lookup failed", thread_id=thread_id, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding corrupt thread document", thread_id=thread_id)
            return None

    async def load_thread(self, thread_id: str, agent_factory: AgentFactory) -> Optional[Thread]:
        """
        Resolve a thread from memory, then from Redis.

        A thread loaded from Redis is cached on this node from then on.
        """
        thread = self._threads.get(thread_id)
        if thread is not None:
            return thread

        document = await self.get_document(thread_id)
        if document is None:
            return None

        thread = Thread(
            thread_id=thread_id,
            graph_key=document["graphKey"],
            workspace=document["workspace"],
            user_id=document.get("userId", ""),
            agent=agent_factory(document),
            created_time=document.get("createdTime", now_ms()),
            last_updated_time=document.get("lastUpdatedTime", now_ms()),
        )
        self._threads[thread_id] = thread
        logger.info("Thread loaded from store", thread_id=thread_id, graph_key=thread.graph_key)
        return thread

    async def save(self, thread: Thread) -> bool:
        """
        Persist a thread document.

        Returns:
            True when written; False when persistence is off or the write failed
        """
        thread.touch()
        self._threads[thread.thread_id] = thread
        if self._redis is None:
            return False

        payload = json.dumps(thread.to_document())
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(f"{THREAD_KEY_PREFIX}{thread.thread_id}", payload, ex=self.ttl_seconds)
                pipe.sadd(f"{GRAPH_INDEX_PREFIX}{thread.graph_key}", thread.thread_id)
                pipe.expire(f"{GRAPH_INDEX_PREFIX}{thread.graph_key}", self.ttl_seconds)
                await pipe.execute()
        except redis.RedisError as e:
            logger.warning("Thread persist failed", thread_id=thread.thread_id, error=str(e))
            return False
        return True

    async def delete(self, thread_id: str) -> bool:
        thread = self._threads.pop(thread_id, None)
        if self._redis is None:
            return thread is not None

        graph_key = thread.graph_key if thread else None
        if graph_key is None:
            document = await self.get_document(thread_id)
            graph_key = document.get("graphKey") if document else None

        try:
            removed = await self._redis.delete(f"{THREAD_KEY_PREFIX}{thread_id}")
            if graph_key:
                await self._redis.srem(f"{GRAPH_INDEX_PREFIX}{graph_key}", thread_id)
        except redis.RedisError as e:
            logger.warning("Thread delete failed", thread_id=thread_id, error=str(e))
            return thread is not None
        return thread is not None or bool(removed)

    async def list_by_graph(self, graph_key: str) -> List[str]:
        """Ids of the threads of a graph, known locally or in Redis."""
        ids = {t.thread_id for t in self._threads.values() if t.graph_key == graph_key}
        if self._redis is not None:
            try:
                ids.update(await self._redis.smembers(f"{GRAPH_INDEX_PREFIX}{graph_key}"))
            except redis.RedisError as e:
                logger.warning("Thread index lookup failed", graph_key=graph_key, error=str(e))
        return sorted(ids)


async def create_thread_store() -> ThreadStore:
    """Store wired to the shared Redis client, in-memory only without one."""
    return ThreadStore(await get_redis_client())
