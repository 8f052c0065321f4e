"""Conversation thread registry and persistence."""

from libs.threads.store import Thread, ThreadStore, create_thread_store, generate_thread_id

__all__ = ["Thread", "ThreadStore", "create_thread_store", "generate_thread_id"]
