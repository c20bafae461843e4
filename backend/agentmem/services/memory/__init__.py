"""
Hybrid memory search: chunking, embedding, dual (vector + FTS5) indexing and query.
"""

from agentmem.services.memory.errors import (
    BatchEmbeddingError,
    EmbeddingError,
    EmbeddingTimeoutError,
    MemorySearchError,
    MemoryUnavailableError,
)
from agentmem.services.memory.manager import MemorySearchManager
from agentmem.services.memory.registry import MemorySearchRegistry
from agentmem.services.memory.types import (
    MemorySearchStatus,
    SearchFilters,
    SearchResults,
    Tenant,
)

__all__ = [
    "BatchEmbeddingError",
    "EmbeddingError",
    "EmbeddingTimeoutError",
    "MemorySearchError",
    "MemorySearchManager",
    "MemorySearchRegistry",
    "MemorySearchStatus",
    "MemoryUnavailableError",
    "SearchFilters",
    "SearchResults",
    "Tenant",
]
