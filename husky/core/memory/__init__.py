# husky/core/memory/__init__.py
"""Conversation memory: persistent store, summary cache and session manager."""

from husky.core.memory.cache import InMemoryCacheClient, SummaryCache
from husky.core.memory.manager import ChatSessionManager, ThreadContext
from husky.core.memory.store import SQLiteStore

__all__ = [
    "InMemoryCacheClient",
    "SummaryCache",
    "ChatSessionManager",
    "ThreadContext",
    "SQLiteStore",
]
