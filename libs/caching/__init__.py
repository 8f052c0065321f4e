"""
Caching utilities for the graph copilot.

This module provides the shared async Redis client used to persist
conversation threads across processes.
"""

from libs.caching.redis_client import (
    close_redis_client,
    get_redis_client,
    health_check,
    reset_redis_client,
    set_redis_client,
)

__all__ = [
    "close_redis_client",
    "get_redis_client",
    "health_check",
    "reset_redis_client",
    "set_redis_client",
]
