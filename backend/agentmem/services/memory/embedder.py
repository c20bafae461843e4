"""
Embedding resolution for the indexer: cache first, then an asynchronous batch job
when the provider supports one, then synchronous sub-batches with bounded retry.
"""

import asyncio
import random
import re
import threading
from contextlib import AbstractContextManager
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from agentmem.core.memory_config import BatchConfig
from agentmem.services.memory.batches import BatchOptions, BatchRequest, build_custom_id
from agentmem.services.memory.embedding_cache import EmbeddingCache
from agentmem.services.memory.embeddings import EmbeddingProvider
from agentmem.services.memory.errors import (
    BatchEmbeddingError,
    EmbeddingError,
    EmbeddingTimeoutError,
)
from agentmem.services.memory.types import Chunk

logger = structlog.get_logger(__name__)

SUB_BATCH_SIZE = 64
MAX_ATTEMPTS = 3
RETRY_BASE_DELAY = 0.5
RETRY_MAX_DELAY = 8.0
BATCH_FAILURE_LIMIT = 2
BATCH_PROVIDERS = ("openai", "gemini")

_RETRYABLE = re.compile(
    r"(rate[_ ]limit|too many requests|429|resource has been exhausted|5\d\d|cloudflare)",
    re.IGNORECASE,
)
_UNSUPPORTED = "asyncbatchembedcontent not available"


def is_retryable_embedding_error(error: Exception) -> bool:
    if isinstance(error, EmbeddingTimeoutError):
        return True
    status_code = getattr(error, "status_code", None)
    if status_code is not None and (status_code == 429 or status_code >= 500):
        return True
    return bool(_RETRYABLE.search(str(error)))


class BatchCircuitBreaker:
    """Per-provider failure counter that turns batch mode off for the process lifetime."""

    def __init__(self, provider: str, limit: int = BATCH_FAILURE_LIMIT):
        self.provider = provider
        self.limit = limit
        self.failures = 0
        self.last_error = ""
        self._enabled = True
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def record_failure(self, error: BatchEmbeddingError) -> bool:
        """Count a failed job; returns True when batch mode is now disabled."""
        force_disable = error.unsupported or _UNSUPPORTED in str(error).lower()
        with self._lock:
            self.failures += self.limit if force_disable else error.attempts
            self.last_error = str(error)
            if force_disable or self.failures >= self.limit:
                self._enabled = False
            return not self._enabled

    def record_success(self) -> None:
        with self._lock:
            if self.failures:
                logger.debug("Embedding batch recovered, resetting failures", provider=self.provider)
            self.failures = 0
            self.last_error = ""


class Embedder:
    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: Optional[EmbeddingCache],
        session_scope: Callable[[], AbstractContextManager],
        batch_config: Optional[BatchConfig] = None,
        breaker: Optional[BatchCircuitBreaker] = None,
        agent_id: str = "",
        sub_batch_size: int = SUB_BATCH_SIZE,
        max_attempts: int = MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.cache = cache
        self.session_scope = session_scope
        self.batch_config = batch_config or BatchConfig()
        self.breaker = breaker or BatchCircuitBreaker(provider.id)
        self.agent_id = agent_id
        self.sub_batch_size = max(1, sub_batch_size)
        self.max_attempts = max(1, max_attempts)
        self._sleep = sleep

    def batch_enabled(self) -> bool:
        return (
            self.batch_config.enabled
            and self.provider.id in BATCH_PROVIDERS
            and self.breaker.enabled
        )

    async def embed_query(self, text: str) -> List[float]:
        try:
            return await asyncio.wait_for(
                self.provider.embed_query(text), timeout=self.provider.query_timeout
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingTimeoutError(f"{self.provider.id} query embedding timed out") from e

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """Embed ``texts`` synchronously in sub-batches, retrying transient failures."""
        vectors: List[List[float]] = []
        for start in range(0, len(texts), self.sub_batch_size):
            batch = texts[start:start + self.sub_batch_size]
            result = await self._embed_with_retry(batch)
            if len(result) != len(batch) or any(not vector for vector in result):
                raise EmbeddingError(f"{self.provider.id} returned empty embeddings")
            vectors.extend(result)
        return vectors

    async def _embed_with_retry(self, texts: List[str]) -> List[List[float]]:
        delay = RETRY_BASE_DELAY
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.provider.embed_batch(texts)
            except EmbeddingError as e:
                if attempt >= self.max_attempts or not is_retryable_embedding_error(e):
                    raise
                wait = min(RETRY_MAX_DELAY, delay * (1 + random.random() * 0.2))
                logger.warning(
                    "Embedding request failed, retrying",
                    provider=self.provider.id,
                    attempt=attempt,
                    delay=round(wait, 2),
                    error=str(e),
                )
                await self._sleep(wait)
                delay = min(delay * 2, RETRY_MAX_DELAY)

    async def embed_chunks(self, chunks: List[Chunk], source: str, path: str) -> List[List[float]]:
        """Vectors for ``chunks`` in order; each distinct hash is embedded at most once."""
        if not chunks:
            return []
        known = self._load_cached([chunk.hash for chunk in chunks])

        missing: Dict[str, Chunk] = {}
        for chunk in chunks:
            if chunk.hash not in known and chunk.hash not in missing:
                missing[chunk.hash] = chunk

        if missing:
            pending = list(missing.values())
            fresh: Optional[Dict[str, List[float]]] = None
            if self.batch_enabled():
                fresh = await self._embed_with_batch(pending, source, path)
            if fresh is None:
                vectors = await self.embed_texts([chunk.text for chunk in pending])
                fresh = {chunk.hash: vector for chunk, vector in zip(pending, vectors)}
            self._store_cached(fresh)
            known.update(fresh)

        return [known[chunk.hash] for chunk in chunks]

    async def _embed_with_batch(
        self, pending: List[Chunk], source: str, path: str
    ) -> Optional[Dict[str, List[float]]]:
        client = self.provider.batch_client()
        if client is None:
            return None

        requests: List[BatchRequest] = []
        by_custom_id: Dict[str, Chunk] = {}
        for index, chunk in enumerate(pending):
            custom_id = build_custom_id(
                source, path, chunk.start_line, chunk.end_line, chunk.hash, index
            )
            requests.append(BatchRequest(custom_id=custom_id, text=chunk.text))
            by_custom_id[custom_id] = chunk

        options = BatchOptions(
            wait=self.batch_config.wait,
            poll_interval_ms=self.batch_config.poll_interval_ms,
            timeout_minutes=self.batch_config.timeout_minutes,
            concurrency=self.batch_config.concurrency,
            agent_id=self.agent_id,
        )
        try:
            try:
                results = await client.run(requests, options)
            except BatchEmbeddingError as e:
                if not e.timed_out:
                    raise
                logger.warning("Embedding batch timed out, retrying once", provider=self.provider.id)
                try:
                    results = await client.run(requests, options)
                except BatchEmbeddingError as retry_error:
                    retry_error.attempts = 2
                    raise
        except BatchEmbeddingError as e:
            disabled = self.breaker.record_failure(e)
            logger.warning(
                "Embedding batch failed, falling back to synchronous embeddings",
                provider=self.provider.id,
                path=path,
                failures=self.breaker.failures,
                disabled=disabled,
                error=str(e),
            )
            return None

        self.breaker.record_success()
        return {
            by_custom_id[custom_id].hash: vector
            for custom_id, vector in results.items()
            if custom_id in by_custom_id
        }

    def _load_cached(self, hashes: List[str]) -> Dict[str, List[float]]:
        if self.cache is None or not self.cache.enabled:
            return {}
        with self.session_scope() as db:
            return self.cache.get_many(db, hashes)

    def _store_cached(self, vectors: Dict[str, List[float]]) -> None:
        if self.cache is None or not self.cache.enabled or not vectors:
            return
        with self.session_scope() as db:
            self.cache.put_many(db, vectors)
