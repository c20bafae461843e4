"""
记忆检索配置模型（每个 agent 解析后的配置）
"""

import hashlib
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

SOURCE_MEMORY = "memory"
SOURCE_WORKSPACE = "workspace"
SOURCE_SESSIONS = "sessions"
KNOWN_SOURCES = (SOURCE_MEMORY, SOURCE_WORKSPACE, SOURCE_SESSIONS)

DEFAULT_CHUNK_TOKENS = 400
DEFAULT_CHUNK_OVERLAP = 80
DEFAULT_VECTOR_WEIGHT = 0.7
DEFAULT_TEXT_WEIGHT = 0.3
MAX_CANDIDATES = 200


class BatchConfig(BaseModel):
    """异步批量 Embedding 任务配置"""

    enabled: bool = False
    wait: bool = True
    concurrency: int = Field(default=2, ge=1)
    poll_interval_ms: int = Field(default=2000, ge=0)
    timeout_minutes: int = Field(default=60, ge=1)


class RemoteConfig(BaseModel):
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    batch: BatchConfig = Field(default_factory=BatchConfig)


class LocalConfig(BaseModel):
    base_url: Optional[str] = None
    api_key: Optional[str] = None


class VectorStoreConfig(BaseModel):
    enabled: bool = True
    # 为空时使用 sqlite-vec 包自带的扩展
    extension_path: Optional[str] = None


class StoreConfig(BaseModel):
    vector: VectorStoreConfig = Field(default_factory=VectorStoreConfig)


class ChunkingConfig(BaseModel):
    tokens: int = DEFAULT_CHUNK_TOKENS
    overlap: int = DEFAULT_CHUNK_OVERLAP

    @model_validator(mode="after")
    def _normalize(self) -> "ChunkingConfig":
        if self.tokens <= 0:
            self.tokens = DEFAULT_CHUNK_TOKENS
        # overlap 必须小于 tokens，否则分块无法前进
        self.overlap = max(0, min(self.overlap, self.tokens - 1))
        return self


class SessionSyncConfig(BaseModel):
    delta_bytes: int = Field(default=100000, ge=0)
    delta_messages: int = Field(default=50, ge=0)


class SyncConfig(BaseModel):
    on_session_start: bool = True
    on_search: bool = True
    watch: bool = True
    watch_debounce_ms: int = Field(default=1500, ge=0)
    interval_minutes: int = Field(default=0, ge=0)
    sessions: SessionSyncConfig = Field(default_factory=SessionSyncConfig)


class HybridConfig(BaseModel):
    enabled: bool = True
    vector_weight: float = DEFAULT_VECTOR_WEIGHT
    text_weight: float = DEFAULT_TEXT_WEIGHT
    candidate_multiplier: int = 4

    @model_validator(mode="after")
    def _normalize(self) -> "HybridConfig":
        vector_weight = max(0.0, self.vector_weight)
        text_weight = max(0.0, self.text_weight)
        total = vector_weight + text_weight
        if total <= 0:
            vector_weight, text_weight, total = DEFAULT_VECTOR_WEIGHT, DEFAULT_TEXT_WEIGHT, 1.0
        self.vector_weight = vector_weight / total
        self.text_weight = text_weight / total
        self.candidate_multiplier = max(1, self.candidate_multiplier)
        return self


class QueryConfig(BaseModel):
    max_results: int = Field(default=6, ge=1)
    min_score: float = Field(default=0.35, ge=0.0, le=1.0)
    hybrid: HybridConfig = Field(default_factory=HybridConfig)


class CacheConfig(BaseModel):
    enabled: bool = True
    # <= 0 表示不限容量
    max_entries: int = 50000


class ExperimentalConfig(BaseModel):
    session_memory: bool = False


class MemorySearchConfig(BaseModel):
    """单个 agent 的记忆检索配置"""

    enabled: bool = True
    sources: List[str] = Field(default_factory=lambda: [SOURCE_MEMORY])
    extra_paths: List[str] = Field(default_factory=list)
    provider: str = "auto"
    fallback: str = "none"
    model: str = ""
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    local: LocalConfig = Field(default_factory=LocalConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    experimental: ExperimentalConfig = Field(default_factory=ExperimentalConfig)

    @field_validator("provider", "fallback")
    @classmethod
    def _lower(cls, value: str) -> str:
        return (value or "").strip().lower()

    @field_validator("extra_paths")
    @classmethod
    def _normalize_extra_paths(cls, value: List[str]) -> List[str]:
        seen: List[str] = []
        for raw in value or []:
            path = normalize_rel_path(raw)
            if path and path not in seen:
                seen.append(path)
        return seen

    @model_validator(mode="after")
    def _normalize_sources(self) -> "MemorySearchConfig":
        sources: List[str] = []
        for raw in self.sources or []:
            source = (raw or "").strip().lower()
            if source not in KNOWN_SOURCES or source in sources:
                continue
            if source == SOURCE_SESSIONS and not self.experimental.session_memory:
                continue
            sources.append(source)
        self.sources = sources or [SOURCE_MEMORY]
        return self

    def source_enabled(self, source: str) -> bool:
        return source in self.sources

    def candidate_limit(self, max_results: int) -> int:
        """每一路检索的候选数量，限制在 1..200"""
        limit = max(1, max_results) * self.query.hybrid.candidate_multiplier
        return max(1, min(MAX_CANDIDATES, limit))

    def fingerprint(self) -> str:
        return hashlib.sha256(self.model_dump_json().encode("utf-8")).hexdigest()


def normalize_rel_path(raw: Optional[str]) -> str:
    """统一相对路径：反斜杠转正斜杠，去掉首尾斜杠和 ./ 前缀"""
    path = (raw or "").strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.strip("/")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        elif value is not None:
            merged[key] = value
    return merged


def resolve_memory_search_config(
    defaults: MemorySearchConfig, overrides: Optional[Dict[str, Any]] = None
) -> MemorySearchConfig:
    """将 agent 级别的覆盖配置合并到默认配置上"""
    if not overrides:
        return defaults
    merged = _deep_merge(defaults.model_dump(), overrides)
    return MemorySearchConfig.model_validate(merged)
