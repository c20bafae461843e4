"""
Value types shared by the memory search services.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from agentmem.core.memory_config import (  # noqa: F401
    KNOWN_SOURCES,
    SOURCE_MEMORY,
    SOURCE_SESSIONS,
    SOURCE_WORKSPACE,
)

SNIPPET_MAX_CHARS = 700


@dataclass(frozen=True)
class Tenant:
    """Scope all index data is partitioned by."""

    bridge_id: str
    login_id: str
    agent_id: str

    @property
    def key(self) -> str:
        return f"{self.bridge_id}/{self.login_id}/{self.agent_id}"

    def columns(self) -> Dict[str, str]:
        return {
            "bridge_id": self.bridge_id,
            "login_id": self.login_id,
            "agent_id": self.agent_id,
        }


@dataclass
class Chunk:
    start_line: int
    end_line: int
    text: str
    hash: str


@dataclass
class PreparedContent:
    """A content unit (file or session snapshot) ready to be written."""

    path: str
    source: str
    updated_at: int
    chunks: List[Chunk]
    embeddings: List[List[float]]


@dataclass
class SearchHit:
    id: str
    path: str
    start_line: int
    end_line: int
    source: str
    snippet: str
    score: float


@dataclass
class VectorResult(SearchHit):
    pass


@dataclass
class KeywordResult(SearchHit):
    pass


@dataclass
class SearchFilters:
    sources: Optional[List[str]] = None
    path_prefix: str = ""
    session_key: str = ""


@dataclass
class SearchResults:
    """Independent vector and keyword candidates plus the weights a caller may fuse them with."""

    vector: List[VectorResult]
    keyword: List[KeywordResult]
    vector_weight: float
    text_weight: float
    candidate_multiplier: int
    min_score: float
    max_results: int


@dataclass
class SourceCount:
    source: str
    files: int
    chunks: int


@dataclass
class MemorySearchStatus:
    files: int = 0
    chunks: int = 0
    dirty: bool = False
    provider: str = ""
    model: str = ""
    requested_provider: str = ""
    fallback_from: str = ""
    fallback_reason: str = ""
    sources: List[str] = field(default_factory=list)
    extra_paths: List[str] = field(default_factory=list)
    source_counts: List[SourceCount] = field(default_factory=list)
    index_generation: str = ""
    cache_enabled: bool = False
    cache_entries: int = 0
    cache_max_entries: int = 0
    fts_enabled: bool = False
    fts_available: bool = False
    fts_error: str = ""
    vector_enabled: bool = False
    vector_available: Optional[bool] = None
    vector_extension_path: str = ""
    vector_load_error: str = ""
    vector_dims: Optional[int] = None
    batch_enabled: bool = False
    batch_failures: int = 0
    batch_limit: int = 0
    batch_last_error: str = ""
    last_error: str = ""


def truncate_snippet(text: str, limit: int = SNIPPET_MAX_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit]
