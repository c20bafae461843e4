"""
应用配置管理（Pydantic v2）
 - 统一处理环境变量与 .env 文件加载（多候选路径）
 - MEMORY_* 配置项作为每个 agent 记忆检索配置的默认值
"""

from typing import Optional, List
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentmem.core.memory_config import MemorySearchConfig


class Settings(BaseSettings):
    """应用配置类"""

    # Pydantic v2 配置
    model_config = SettingsConfigDict(case_sensitive=True)

    # 基础配置
    PROJECT_NAME: str = "Agent Memory Search"
    API_V1_STR: str = "/api/v1"
    DEBUG: bool = False

    # CORS 白名单（逗号分隔）
    ALLOWED_ORIGINS: Optional[str] = None

    # 数据库配置（记忆索引只支持 SQLite）
    DATABASE_URL: str = "sqlite:///./agentmem.db"
    SQLITE_BUSY_TIMEOUT_MS: int = 30000

    # Embedding 服务配置
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    LOCAL_EMBEDDING_BASE_URL: Optional[str] = None
    LOCAL_EMBEDDING_API_KEY: Optional[str] = None

    # 记忆检索默认配置
    MEMORY_SEARCH_ENABLED: bool = True
    MEMORY_EMBEDDING_PROVIDER: str = "auto"  # auto, openai, gemini, local
    MEMORY_EMBEDDING_FALLBACK: str = "none"
    MEMORY_EMBEDDING_MODEL: str = ""
    MEMORY_SOURCES: str = "memory"  # memory,workspace,sessions
    MEMORY_EXTRA_PATHS: str = ""
    MEMORY_CHUNK_TOKENS: int = 400
    MEMORY_CHUNK_OVERLAP: int = 80

    # 向量扩展（sqlite-vec）
    MEMORY_VECTOR_ENABLED: bool = True
    MEMORY_VECTOR_EXTENSION_PATH: Optional[str] = None

    # Embedding 缓存
    MEMORY_CACHE_ENABLED: bool = True
    MEMORY_CACHE_MAX_ENTRIES: int = 50000

    # 批量 Embedding 任务
    MEMORY_BATCH_ENABLED: bool = False
    MEMORY_BATCH_WAIT: bool = True
    MEMORY_BATCH_CONCURRENCY: int = 2
    MEMORY_BATCH_POLL_INTERVAL_MS: int = 2000
    MEMORY_BATCH_TIMEOUT_MINUTES: int = 60

    # 同步触发
    MEMORY_SYNC_ON_SESSION_START: bool = True
    MEMORY_SYNC_ON_SEARCH: bool = True
    MEMORY_SYNC_WATCH: bool = True
    MEMORY_SYNC_WATCH_DEBOUNCE_MS: int = 1500
    MEMORY_SYNC_INTERVAL_MINUTES: int = 0
    MEMORY_SESSION_DELTA_BYTES: int = 100000
    MEMORY_SESSION_DELTA_MESSAGES: int = 50
    MEMORY_SESSION_MEMORY: bool = False

    # 查询
    MEMORY_MAX_RESULTS: int = 6
    MEMORY_MIN_SCORE: float = 0.35
    MEMORY_HYBRID_ENABLED: bool = True
    MEMORY_VECTOR_WEIGHT: float = 0.7
    MEMORY_TEXT_WEIGHT: float = 0.3
    MEMORY_CANDIDATE_MULTIPLIER: int = 4

    # 日志配置
    LOG_LEVEL: str = "INFO"

    def get_allowed_origins(self) -> List[str]:
        """解析 CORS 允许的来源列表（支持逗号分隔或空）"""
        return _split_csv(self.ALLOWED_ORIGINS)

    def get_memory_search_defaults(self) -> MemorySearchConfig:
        """由 MEMORY_* 环境变量构建记忆检索的默认配置"""
        return MemorySearchConfig.model_validate(
            {
                "enabled": self.MEMORY_SEARCH_ENABLED,
                "sources": _split_csv(self.MEMORY_SOURCES),
                "extra_paths": _split_csv(self.MEMORY_EXTRA_PATHS),
                "provider": self.MEMORY_EMBEDDING_PROVIDER,
                "fallback": self.MEMORY_EMBEDDING_FALLBACK,
                "model": self.MEMORY_EMBEDDING_MODEL,
                "remote": {
                    "batch": {
                        "enabled": self.MEMORY_BATCH_ENABLED,
                        "wait": self.MEMORY_BATCH_WAIT,
                        "concurrency": self.MEMORY_BATCH_CONCURRENCY,
                        "poll_interval_ms": self.MEMORY_BATCH_POLL_INTERVAL_MS,
                        "timeout_minutes": self.MEMORY_BATCH_TIMEOUT_MINUTES,
                    },
                },
                "store": {
                    "vector": {
                        "enabled": self.MEMORY_VECTOR_ENABLED,
                        "extension_path": self.MEMORY_VECTOR_EXTENSION_PATH,
                    },
                },
                "chunking": {
                    "tokens": self.MEMORY_CHUNK_TOKENS,
                    "overlap": self.MEMORY_CHUNK_OVERLAP,
                },
                "sync": {
                    "on_session_start": self.MEMORY_SYNC_ON_SESSION_START,
                    "on_search": self.MEMORY_SYNC_ON_SEARCH,
                    "watch": self.MEMORY_SYNC_WATCH,
                    "watch_debounce_ms": self.MEMORY_SYNC_WATCH_DEBOUNCE_MS,
                    "interval_minutes": self.MEMORY_SYNC_INTERVAL_MINUTES,
                    "sessions": {
                        "delta_bytes": self.MEMORY_SESSION_DELTA_BYTES,
                        "delta_messages": self.MEMORY_SESSION_DELTA_MESSAGES,
                    },
                },
                "query": {
                    "max_results": self.MEMORY_MAX_RESULTS,
                    "min_score": self.MEMORY_MIN_SCORE,
                    "hybrid": {
                        "enabled": self.MEMORY_HYBRID_ENABLED,
                        "vector_weight": self.MEMORY_VECTOR_WEIGHT,
                        "text_weight": self.MEMORY_TEXT_WEIGHT,
                        "candidate_multiplier": self.MEMORY_CANDIDATE_MULTIPLIER,
                    },
                },
                "cache": {
                    "enabled": self.MEMORY_CACHE_ENABLED,
                    "max_entries": self.MEMORY_CACHE_MAX_ENTRIES,
                },
                "experimental": {"session_memory": self.MEMORY_SESSION_MEMORY},
            }
        )


def _split_csv(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    parts = [p.strip() for p in raw.split(",")]
    return [p for p in parts if p]


def _detect_env_files() -> List[Path]:
    """按优先级寻找可能的 .env 文件路径。

    优先级：
    1. backend/.env
    2. 项目根目录 /.env
    """
    here = Path(__file__).resolve()
    backend_dir = here.parents[2]  # backend/
    project_root = here.parents[3]  # 仓库根目录

    candidates = [
        backend_dir / ".env",
        project_root / ".env",
    ]
    return [p for p in candidates if p.exists()]


# 全局配置实例（支持多候选 .env）
_env_files = _detect_env_files()
settings = Settings(_env_file=_env_files or None)
