"""
Database models package
"""

from agentmem.db.database import Base
from .memory import (
    MemoryFile,
    MemoryChunk,
    MemoryMeta,
    EmbeddingCacheEntry,
    SessionState,
    SessionFile,
)
from .chat import ChatRoom, ChatMessage

__all__ = [
    "Base",
    "MemoryFile",
    "MemoryChunk",
    "MemoryMeta",
    "EmbeddingCacheEntry",
    "SessionState",
    "SessionFile",
    "ChatRoom",
    "ChatMessage",
]
