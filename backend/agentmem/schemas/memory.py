"""
Pydantic schemas for the memory search API.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class MemorySyncRequest(BaseModel):
    """Request body for a sync pass."""

    session_key: str = Field(default="", description="Chat session that triggered the sync.")
    force: bool = Field(default=False, description="Force a full reindex into a new generation.")
    overrides: Optional[Dict[str, Any]] = Field(
        None, description="Per-agent memory search config overrides."
    )


class MemorySyncResponse(BaseModel):
    generation: str
    chunks: int
    dirty: bool
    msg: str = "Memory index synchronized"


class MemorySearchRequest(BaseModel):
    query: str = Field(..., description="Free-text query.")
    query_vector: Optional[List[float]] = Field(
        None, description="Precomputed query embedding; the query is embedded when omitted."
    )
    max_results: Optional[int] = Field(None, ge=1, le=200)
    sources: Optional[List[str]] = None
    path_prefix: str = ""
    session_key: str = ""
    overrides: Optional[Dict[str, Any]] = None


class MemorySearchHit(BaseModel):
    id: str
    path: str
    start_line: int
    end_line: int
    source: str
    snippet: str
    score: float

    class Config:
        from_attributes = True


class MemorySearchResponse(BaseModel):
    """Vector and keyword candidates; fusing them is up to the caller."""

    vector: List[MemorySearchHit]
    keyword: List[MemorySearchHit]
    vector_weight: float
    text_weight: float
    candidate_multiplier: int
    min_score: float
    max_results: int


class MemorySourceCount(BaseModel):
    source: str
    files: int
    chunks: int

    class Config:
        from_attributes = True


class MemoryStatusResponse(BaseModel):
    files: int
    chunks: int
    dirty: bool
    provider: str
    model: str
    requested_provider: str
    fallback_from: str = ""
    fallback_reason: str = ""
    sources: List[str]
    extra_paths: List[str]
    source_counts: List[MemorySourceCount]
    index_generation: str
    cache_enabled: bool
    cache_entries: int
    cache_max_entries: int
    fts_enabled: bool
    fts_available: bool
    fts_error: str = ""
    vector_enabled: bool
    vector_available: Optional[bool] = None
    vector_extension_path: str = ""
    vector_load_error: str = ""
    vector_dims: Optional[int] = None
    batch_enabled: bool
    batch_failures: int
    batch_limit: int
    batch_last_error: str = ""
    last_error: str = ""

    class Config:
        from_attributes = True


class MemoryFileWrite(BaseModel):
    path: str = Field(..., min_length=1, description="Relative markdown path, e.g. memory/notes.md")
    content: str = ""
    source: Optional[str] = Field(None, description="memory or workspace; derived from the path when omitted.")


class MemoryFileResponse(BaseModel):
    path: str
    source: str
    hash: str
    updated_at: int
    msg: str = "Memory file saved"


class MemoryFileRead(BaseModel):
    path: str
    text: str
