import pytest

from agentmem.core.memory_config import BatchConfig
from agentmem.services.memory.chunking import hash_text
from agentmem.services.memory.embedder import (
    BatchCircuitBreaker,
    Embedder,
    is_retryable_embedding_error,
)
from agentmem.services.memory.embedding_cache import EmbeddingCache
from agentmem.services.memory.errors import (
    BatchEmbeddingError,
    EmbeddingError,
    EmbeddingTimeoutError,
)
from agentmem.services.memory.types import Chunk
from tests.fakes import TENANT, FakeEmbeddingProvider, fake_vector, session_scope_for


def _chunk(text: str, line: int = 1) -> Chunk:
    return Chunk(start_line=line, end_line=line, text=text, hash=hash_text(text))


class _NoSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _BatchCapableProvider(FakeEmbeddingProvider):
    id = "openai"

    def __init__(self, batch_errors=None, **kwargs):
        super().__init__(**kwargs)
        self.batch_errors = list(batch_errors or [])
        self.batch_runs = 0

    def batch_client(self):
        return _FakeBatchClient(self)


class _FakeBatchClient:
    def __init__(self, provider: _BatchCapableProvider):
        self.provider = provider

    async def run(self, requests, options):
        self.provider.batch_runs += 1
        if self.provider.batch_errors:
            raise self.provider.batch_errors.pop(0)
        return {request.custom_id: fake_vector(request.text) for request in requests}


def _embedder(provider, engine=None, cache=True, **kwargs) -> Embedder:
    embedding_cache = None
    scope = None
    if engine is not None:
        scope = session_scope_for(engine)
        embedding_cache = EmbeddingCache(
            TENANT, provider.id, provider.model, provider.provider_key, enabled=cache
        )
    return Embedder(provider, embedding_cache, scope, **kwargs)


async def test_identical_chunks_are_embedded_once(engine):
    provider = FakeEmbeddingProvider()
    embedder = _embedder(provider, engine)
    chunks = [_chunk("same text", 1), _chunk("other text", 2), _chunk("same text", 3)]

    vectors = await embedder.embed_chunks(chunks, "memory", "MEMORY.md")

    assert provider.calls == [["same text", "other text"]]
    assert vectors[0] == vectors[2] == fake_vector("same text")


async def test_cached_hashes_skip_the_provider(engine):
    provider = FakeEmbeddingProvider()
    embedder = _embedder(provider, engine)
    chunks = [_chunk("remember the milk")]

    await embedder.embed_chunks(chunks, "memory", "a.md")
    await embedder.embed_chunks(chunks, "memory", "b.md")

    assert provider.embedded_texts == ["remember the milk"]


async def test_disabled_cache_embeds_every_time(engine):
    provider = FakeEmbeddingProvider()
    embedder = _embedder(provider, engine, cache=False)
    chunks = [_chunk("remember the milk")]

    await embedder.embed_chunks(chunks, "memory", "a.md")
    await embedder.embed_chunks(chunks, "memory", "a.md")

    assert len(provider.calls) == 2


async def test_sub_batches_preserve_order():
    provider = FakeEmbeddingProvider()
    embedder = _embedder(provider, sub_batch_size=2)

    vectors = await embedder.embed_texts(["a", "b", "c", "d", "e"])

    assert [len(call) for call in provider.calls] == [2, 2, 1]
    assert vectors == [fake_vector(text) for text in "abcde"]


async def test_transient_errors_are_retried():
    provider = FakeEmbeddingProvider(
        errors=[EmbeddingError("fake embeddings failed: 429 rate limit", status_code=429)]
    )
    sleep = _NoSleep()
    embedder = _embedder(provider, sleep=sleep)

    vectors = await embedder.embed_texts(["hello"])

    assert vectors == [fake_vector("hello")]
    assert len(provider.calls) == 2
    assert len(sleep.delays) == 1


async def test_retries_stop_after_max_attempts():
    errors = [EmbeddingError("503 unavailable", status_code=503) for _ in range(5)]
    provider = FakeEmbeddingProvider(errors=errors)
    embedder = _embedder(provider, sleep=_NoSleep(), max_attempts=3)

    with pytest.raises(EmbeddingError):
        await embedder.embed_texts(["hello"])
    assert len(provider.calls) == 3


async def test_client_errors_are_not_retried():
    provider = FakeEmbeddingProvider(fail_marker="bad")
    sleep = _NoSleep()
    embedder = _embedder(provider, sleep=sleep)

    with pytest.raises(EmbeddingError):
        await embedder.embed_texts(["bad input"])
    assert len(provider.calls) == 1
    assert sleep.delays == []


def test_retryable_error_classification():
    assert is_retryable_embedding_error(EmbeddingTimeoutError("timed out"))
    assert is_retryable_embedding_error(EmbeddingError("x", status_code=500))
    assert is_retryable_embedding_error(EmbeddingError("Resource has been exhausted"))
    assert not is_retryable_embedding_error(EmbeddingError("invalid api key", status_code=401))


def test_breaker_opens_after_consecutive_failures():
    breaker = BatchCircuitBreaker("openai", limit=2)

    assert breaker.record_failure(BatchEmbeddingError("boom")) is False
    assert breaker.enabled
    assert breaker.record_failure(BatchEmbeddingError("boom again")) is True
    assert not breaker.enabled
    assert breaker.last_error == "boom again"


def test_breaker_success_resets_failures():
    breaker = BatchCircuitBreaker("openai", limit=2)
    breaker.record_failure(BatchEmbeddingError("boom"))
    breaker.record_success()

    assert breaker.failures == 0
    assert breaker.record_failure(BatchEmbeddingError("boom")) is False


def test_unsupported_batch_disables_immediately():
    breaker = BatchCircuitBreaker("gemini", limit=2)

    assert breaker.record_failure(BatchEmbeddingError("404", unsupported=True)) is True
    assert breaker.failures == 2


async def test_batch_results_are_used_when_available(engine):
    provider = _BatchCapableProvider()
    embedder = _embedder(provider, engine, batch_config=BatchConfig(enabled=True))

    vectors = await embedder.embed_chunks([_chunk("alpha"), _chunk("beta", 2)], "memory", "n.md")

    assert provider.batch_runs == 1
    assert provider.calls == []
    assert vectors == [fake_vector("alpha"), fake_vector("beta")]


async def test_batch_failure_falls_back_and_trips_the_breaker(engine):
    provider = _BatchCapableProvider(
        batch_errors=[BatchEmbeddingError("job failed"), BatchEmbeddingError("job failed")]
    )
    embedder = _embedder(provider, engine, cache=False, batch_config=BatchConfig(enabled=True))
    chunks = [_chunk("alpha")]

    assert await embedder.embed_chunks(chunks, "memory", "n.md") == [fake_vector("alpha")]
    assert embedder.batch_enabled()
    await embedder.embed_chunks(chunks, "memory", "n.md")

    assert provider.batch_runs == 2
    assert len(provider.calls) == 2
    assert not embedder.batch_enabled()


async def test_timed_out_batch_is_retried_once_and_counts_twice(engine):
    provider = _BatchCapableProvider(
        batch_errors=[
            BatchEmbeddingError("openai batch b1 timed out"),
            BatchEmbeddingError("openai batch b2 timed out"),
        ]
    )
    embedder = _embedder(provider, engine, batch_config=BatchConfig(enabled=True))

    await embedder.embed_chunks([_chunk("alpha")], "memory", "n.md")

    assert provider.batch_runs == 2
    assert embedder.breaker.failures == 2
    assert not embedder.batch_enabled()


def test_batch_mode_requires_a_batch_provider():
    embedder = _embedder(FakeEmbeddingProvider(), batch_config=BatchConfig(enabled=True))
    assert not embedder.batch_enabled()
