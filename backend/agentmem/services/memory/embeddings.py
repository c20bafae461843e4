"""
Embedding providers for the memory index.

Every provider talks HTTP through httpx.AsyncClient. OpenAI and Gemini also expose
an asynchronous batch client (see ``batches``); the local provider is any
OpenAI-compatible embeddings server.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import httpx
import structlog

from agentmem.core.memory_config import MemorySearchConfig
from agentmem.services.memory.errors import (
    EmbeddingError,
    EmbeddingTimeoutError,
    MemoryUnavailableError,
)

if TYPE_CHECKING:
    from agentmem.core.config import Settings
    from agentmem.services.memory.batches import EmbeddingBatchClient

logger = structlog.get_logger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_MODEL = "text-embedding-3-small"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_GEMINI_MODEL = "gemini-embedding-001"
DEFAULT_LOCAL_MODEL = "nomic-embed-text"

REMOTE_BATCH_TIMEOUT = 120.0
LOCAL_BATCH_TIMEOUT = 600.0
REMOTE_QUERY_TIMEOUT = 60.0
LOCAL_QUERY_TIMEOUT = 300.0

# header names whose values never enter the provider fingerprint
_SECRET_HEADERS = {"authorization", "x-goog-api-key", "api-key", "x-api-key"}


def normalize_base_url(raw: str) -> str:
    return (raw or "").rstrip("/")


def compute_provider_key(
    provider_id: str, model: str, base_url: str, headers: Optional[Dict[str, str]] = None
) -> str:
    """Fingerprint of everything that changes the vectors a provider returns."""
    safe_headers = sorted(
        (name.lower(), value)
        for name, value in (headers or {}).items()
        if name.lower() not in _SECRET_HEADERS
    )
    payload = json.dumps(
        {
            "provider": provider_id,
            "model": model,
            "base_url": normalize_base_url(base_url),
            "headers": safe_headers,
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class EmbeddingProvider(ABC):
    """Base class of embedding providers."""

    id: str = ""
    is_local: bool = False

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model
        self.base_url = normalize_base_url(base_url)
        self.api_key = api_key
        self.headers = dict(headers or {})
        self._transport = transport

    @property
    def provider_key(self) -> str:
        return compute_provider_key(self.id, self.model, self.base_url, self.headers)

    @property
    def batch_timeout(self) -> float:
        return LOCAL_BATCH_TIMEOUT if self.is_local else REMOTE_BATCH_TIMEOUT

    @property
    def query_timeout(self) -> float:
        return LOCAL_QUERY_TIMEOUT if self.is_local else REMOTE_QUERY_TIMEOUT

    def client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=timeout)

    def request_headers(self) -> Dict[str, str]:
        out = {k: v for k, v in self.headers.items() if v and v.strip()}
        if not any(k.lower() == "content-type" for k in out):
            out["Content-Type"] = "application/json"
        return out

    async def post_json(self, url: str, body: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        try:
            async with self.client(timeout) as client:
                response = await client.post(url, headers=self.request_headers(), json=body)
        except httpx.TimeoutException as e:
            raise EmbeddingTimeoutError(f"{self.id} embeddings timed out: {e}") from e
        except httpx.HTTPError as e:
            raise EmbeddingError(f"{self.id} embeddings request failed: {e}") from e

        if response.status_code != 200:
            logger.error(
                "Embedding API error",
                provider=self.id,
                status=response.status_code,
                detail=response.text[:500],
            )
            raise EmbeddingError(
                f"{self.id} embeddings failed: {response.status_code} {response.text[:500]}",
                status_code=response.status_code,
            )
        return response.json()

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed document texts, preserving order."""

    async def embed_query(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0] if vectors else []

    def batch_client(self) -> Optional["EmbeddingBatchClient"]:
        return None


class OpenAICompatibleEmbeddingProvider(EmbeddingProvider):
    def request_headers(self) -> Dict[str, str]:
        out = super().request_headers()
        if self.api_key and not any(k.lower() == "authorization" for k in out):
            out["Authorization"] = f"Bearer {self.api_key}"
        return out

    async def _embed(self, texts: List[str], timeout: float) -> List[List[float]]:
        if not texts:
            return []
        result = await self.post_json(
            f"{self.base_url}/embeddings",
            {"model": self.model, "input": texts},
            timeout,
        )
        data = sorted(result.get("data") or [], key=lambda item: item.get("index", 0))
        embeddings = [item.get("embedding") or [] for item in data]
        if len(embeddings) != len(texts):
            raise EmbeddingError(
                f"{self.id} embeddings returned {len(embeddings)} vectors for {len(texts)} inputs"
            )
        return embeddings

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return await self._embed(texts, self.batch_timeout)

    async def embed_query(self, text: str) -> List[float]:
        vectors = await self._embed([text], self.query_timeout)
        return vectors[0] if vectors else []


class OpenAIEmbeddingProvider(OpenAICompatibleEmbeddingProvider):
    id = "openai"

    def batch_client(self):
        from agentmem.services.memory.batches import OpenAIBatchClient

        return OpenAIBatchClient(self)


class LocalEmbeddingProvider(OpenAICompatibleEmbeddingProvider):
    id = "local"
    is_local = True


class GeminiEmbeddingProvider(EmbeddingProvider):
    id = "gemini"

    @property
    def model_path(self) -> str:
        model = self.model.strip()
        return model if model.startswith("models/") else f"models/{model}"

    def request_headers(self) -> Dict[str, str]:
        out = super().request_headers()
        if self.api_key and not any(k.lower() == "x-goog-api-key" for k in out):
            out["x-goog-api-key"] = self.api_key
        return out

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        result = await self.post_json(
            f"{self.base_url}/{self.model_path}:batchEmbedContents",
            {
                "requests": [
                    {
                        "model": self.model_path,
                        "content": {"parts": [{"text": text}]},
                        "taskType": "RETRIEVAL_DOCUMENT",
                    }
                    for text in texts
                ]
            },
            self.batch_timeout,
        )
        embeddings = [item.get("values") or [] for item in result.get("embeddings") or []]
        if len(embeddings) != len(texts):
            raise EmbeddingError(
                f"gemini embeddings returned {len(embeddings)} vectors for {len(texts)} inputs"
            )
        return embeddings

    async def embed_query(self, text: str) -> List[float]:
        result = await self.post_json(
            f"{self.base_url}/{self.model_path}:embedContent",
            {
                "content": {"parts": [{"text": text}]},
                "taskType": "RETRIEVAL_QUERY",
            },
            self.query_timeout,
        )
        return (result.get("embedding") or {}).get("values") or []

    def batch_client(self):
        from agentmem.services.memory.batches import GeminiBatchClient

        return GeminiBatchClient(self)


@dataclass
class ProviderSelection:
    provider: EmbeddingProvider
    requested: str
    fallback_from: str = ""
    fallback_reason: str = ""


def _build_provider(
    name: str,
    config: MemorySearchConfig,
    settings: "Settings",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> EmbeddingProvider:
    remote = config.remote
    if name == "openai":
        api_key = remote.api_key or settings.OPENAI_API_KEY
        if not api_key:
            raise MemoryUnavailableError("OPENAI_API_KEY not configured")
        return OpenAIEmbeddingProvider(
            model=config.model or DEFAULT_OPENAI_MODEL,
            base_url=remote.base_url or settings.OPENAI_BASE_URL or DEFAULT_OPENAI_BASE_URL,
            api_key=api_key,
            headers=remote.headers,
            transport=transport,
        )
    if name == "gemini":
        api_key = remote.api_key or settings.GEMINI_API_KEY
        if not api_key:
            raise MemoryUnavailableError("GEMINI_API_KEY not configured")
        return GeminiEmbeddingProvider(
            model=config.model or DEFAULT_GEMINI_MODEL,
            base_url=remote.base_url or settings.GEMINI_BASE_URL or DEFAULT_GEMINI_BASE_URL,
            api_key=api_key,
            headers=remote.headers,
            transport=transport,
        )
    if name == "local":
        base_url = config.local.base_url or settings.LOCAL_EMBEDDING_BASE_URL
        if not base_url:
            raise MemoryUnavailableError("LOCAL_EMBEDDING_BASE_URL not configured")
        return LocalEmbeddingProvider(
            model=config.model or DEFAULT_LOCAL_MODEL,
            base_url=base_url,
            api_key=config.local.api_key or settings.LOCAL_EMBEDDING_API_KEY,
            transport=transport,
        )
    raise MemoryUnavailableError(f"Unsupported embedding provider: {name}")


def create_embedding_provider(
    config: MemorySearchConfig,
    settings: "Settings",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderSelection:
    """Resolve the configured provider, honoring ``auto`` and the fallback provider."""
    requested = config.provider or "auto"
    if requested == "auto":
        for candidate in ("openai", "gemini", "local"):
            try:
                provider = _build_provider(candidate, config, settings, transport)
            except MemoryUnavailableError:
                continue
            return ProviderSelection(provider=provider, requested=requested)
        raise MemoryUnavailableError("No embedding provider configured")

    try:
        provider = _build_provider(requested, config, settings, transport)
        return ProviderSelection(provider=provider, requested=requested)
    except MemoryUnavailableError as e:
        fallback = config.fallback
        if not fallback or fallback in ("none", requested):
            raise
        logger.warning(
            "Embedding provider unavailable, using fallback",
            requested=requested,
            fallback=fallback,
            error=str(e),
        )
        provider = _build_provider(fallback, config, settings, transport)
        return ProviderSelection(
            provider=provider,
            requested=requested,
            fallback_from=requested,
            fallback_reason=str(e),
        )
