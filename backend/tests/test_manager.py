import pytest
from sqlalchemy import text
from sqlalchemy.exc import DatabaseError, OperationalError

from agentmem.db.models.memory import MemoryChunk, SessionFile, SessionState
from agentmem.services.memory import vector as vector_module
from agentmem.services.memory.embeddings import ProviderSelection
from agentmem.services.memory.errors import (
    EmbeddingError,
    InvalidMemoryPathError,
    MemoryFileNotFoundError,
)
from agentmem.services.memory.manager import MemorySearchManager
from agentmem.services.memory.sources import DatabaseContentLister
from agentmem.services.memory.types import SearchFilters
from tests.fakes import DIMS, TENANT, FakeEmbeddingProvider, make_config

SMALL_CHUNKS = {"chunking": {"tokens": 50, "overlap": 0}}
SESSIONS = {"sources": ["memory", "sessions"], "experimental": {"session_memory": True}}


def _chunks(manager):
    with manager.session_scope() as db:
        return {row.id: row.path for row in db.query(MemoryChunk.id, MemoryChunk.path)}


def _hit_ids(results):
    return {hit.id for hit in results.vector} | {hit.id for hit in results.keyword}


def _vector_ids(manager):
    with manager.session_scope() as db:
        return {row.id for row in db.execute(text(f"SELECT id FROM {vector_module.VECTOR_TABLE}"))}


class _QueryEmbeddingDown(FakeEmbeddingProvider):
    async def embed_query(self, text):
        raise EmbeddingError("fake query embeddings failed: 503", status_code=503)


async def test_three_line_note_lifecycle(make_manager, lister, provider):
    lister.put("MEMORY.md", "# Deploy\nrun the migrations\nrestart the workers")
    manager = make_manager(SMALL_CHUNKS)
    labels = []

    await manager.sync(progress=lambda done, total, label: labels.append(label))

    first = _chunks(manager)
    assert list(first.values()) == ["MEMORY.md"]
    results = await manager.search("migrations")
    assert [(hit.start_line, hit.end_line) for hit in results.keyword] == [(1, 3)]
    first_id = results.keyword[0].id
    assert first_id.startswith(manager.generation + ":")
    assert "cleanup" in labels
    assert not manager.dirty

    calls = len(provider.calls)
    await manager.sync()
    assert len(provider.calls) == calls
    assert _chunks(manager) == first

    lister.put("MEMORY.md", "# Deploy\nrun the migrations twice\nrestart the workers")
    await manager.sync()

    second = _chunks(manager)
    assert len(second) == 1
    assert first_id not in second
    assert provider.embedded_texts[-1] == "# Deploy\nrun the migrations twice\nrestart the workers"
    results = await manager.search("migrations")
    assert first_id not in _hit_ids(results)
    assert set(second) <= _hit_ids(results)


async def test_forced_reindex_moves_to_a_new_generation(make_manager, lister, provider):
    lister.put("MEMORY.md", "deploy window is friday afternoon")
    lister.put("memory/ops.md", "deploy rollback needs the previous image tag")
    manager = make_manager()
    await manager.sync()
    old_generation = manager.generation
    old_ids = set(_chunks(manager))
    calls = len(provider.calls)

    await manager.sync(force=True)

    assert manager.generation != old_generation
    ids = set(_chunks(manager))
    assert ids.isdisjoint(old_ids)
    assert all(chunk_id.startswith(manager.generation + ":") for chunk_id in ids)
    # every vector came from the cache
    assert len(provider.calls) == calls

    results = await manager.search("deploy")
    assert results.keyword and results.vector
    assert all(chunk_id.startswith(manager.generation + ":") for chunk_id in _hit_ids(results))
    assert manager.status().chunks == len(ids)


async def test_fingerprint_change_requires_full_reindex(make_manager, lister):
    lister.put("MEMORY.md", "the office wifi password rotates monthly")
    manager = make_manager(SMALL_CHUNKS)
    await manager.sync()
    assert not manager.needs_full_reindex()

    overlap_changed = make_manager({"chunking": {"tokens": 50, "overlap": 5}})
    assert overlap_changed.needs_full_reindex()

    model_changed = make_manager(
        SMALL_CHUNKS, provider_override=FakeEmbeddingProvider(model="fake-embed-v2")
    )
    assert model_changed.needs_full_reindex()

    await overlap_changed.sync()
    assert overlap_changed.generation != manager.generation
    assert not overlap_changed.needs_full_reindex()


async def test_identical_content_is_embedded_once(make_manager, lister, provider):
    lister.put("memory/a.md", "same paragraph about the deploy")
    lister.put("memory/b.md", "same paragraph about the deploy")
    manager = make_manager()

    await manager.sync()

    assert provider.embedded_texts == ["same paragraph about the deploy"]
    assert sorted(_chunks(manager).values()) == ["memory/a.md", "memory/b.md"]


async def test_search_without_vector_extension_scans_embeddings(make_manager, lister):
    lister.put("memory/moon.md", "apollo eleven landed on the moon")
    lister.put("memory/garden.md", "tomatoes need water and sun")
    manager = make_manager({"store": {"vector": {"extension_path": "/nonexistent/vec0"}}})

    await manager.sync()
    status = manager.status()
    assert status.vector_available is False
    assert status.vector_load_error

    results = await manager.search("apollo moon")

    assert [hit.path for hit in results.keyword] == ["memory/moon.md"]
    assert [hit.path for hit in results.vector][0] == "memory/moon.md"
    assert len(results.vector) == 2
    scores = [hit.score for hit in results.vector]
    assert scores == sorted(scores, reverse=True)
    assert results.vector_weight == pytest.approx(0.7)
    assert results.text_weight == pytest.approx(0.3)


async def test_sqlite_vec_table_serves_vector_search(make_manager, lister, monkeypatch):
    manager = make_manager()
    if not manager.probe_vector_availability():
        pytest.skip(f"sqlite-vec cannot be loaded here: {manager.vector.status.error}")
    lister.put("memory/moon.md", "apollo eleven landed on the moon")
    lister.put("memory/garden.md", "tomatoes need water and sun")

    await manager.sync()

    assert manager.vector.dims == DIMS
    assert manager.status().vector_available is True
    assert _vector_ids(manager) == set(_chunks(manager))

    def no_scan(*args, **kwargs):
        raise AssertionError("vector search scanned chunk embeddings")

    monkeypatch.setattr(vector_module, "scan_search", no_scan)
    results = await manager.search("apollo moon")
    assert results.vector[0].path == "memory/moon.md"
    scores = [hit.score for hit in results.vector]
    assert scores == sorted(scores, reverse=True)

    scoped = await manager.search("apollo", filters=SearchFilters(path_prefix="memory/garden.md"))
    assert {hit.path for hit in scoped.vector} == {"memory/garden.md"}

    await manager.sync(force=True)
    assert _vector_ids(manager) == set(_chunks(manager))


def test_vector_cleanup_errors_do_not_escape(make_manager, monkeypatch):
    manager = make_manager()
    manager.vector.dims = DIMS
    monkeypatch.setattr(manager.vector.status, "available", True)
    attempted = []

    def broken(connection, ids):
        attempted.extend(ids)
        raise DatabaseError("DELETE FROM ai_memory_chunks_vec", {}, Exception("database disk image is malformed"))

    monkeypatch.setattr(manager.vector, "delete_ids", broken)

    manager._cleanup_vectors(["gen:1", "gen:2"])

    assert attempted == ["gen:1", "gen:2"]


async def test_failed_embeddings_skip_only_that_file(make_manager, lister):
    lister.put("memory/ok.md", "good content about backups")
    lister.put("memory/bad.md", "POISON pill")
    manager = make_manager(provider_override=FakeEmbeddingProvider(fail_marker="POISON"))

    await manager.sync()

    assert set(_chunks(manager).values()) == {"memory/ok.md"}
    assert manager.dirty
    assert "400" in manager.last_error


async def test_removed_and_emptied_files_lose_their_chunks(make_manager, lister):
    lister.put("memory/a.md", "alpha notes")
    lister.put("memory/b.md", "bravo notes")
    lister.put("memory/c.md", "charlie notes")
    manager = make_manager()
    await manager.sync()

    lister.remove("memory/b.md")
    lister.put("memory/c.md", "   ")
    await manager.sync()

    assert set(_chunks(manager).values()) == {"memory/a.md"}


async def test_write_failure_keeps_the_previous_generation(make_manager, lister, monkeypatch):
    lister.put("MEMORY.md", "first version")
    manager = make_manager()

    def fail(*args, **kwargs):
        raise OperationalError("UPDATE ai_memory_meta", {}, Exception("disk I/O error"))

    monkeypatch.setattr(manager.index, "save_meta", fail)
    with pytest.raises(OperationalError):
        await manager.sync()

    assert manager.generation == ""
    assert _chunks(manager) == {}
    assert "disk I/O error" in manager.last_error


async def test_search_filters(make_manager, lister):
    lister.put("memory/ops/deploy.md", "deploy checklist for the api")
    lister.put("notes/deploy.md", "deploy diary from last week")
    manager = make_manager({"sources": ["memory", "workspace"]})
    await manager.sync()

    scoped = await manager.search("deploy", filters=SearchFilters(path_prefix="memory/ops"))
    assert {hit.path for hit in scoped.keyword} == {"memory/ops/deploy.md"}
    assert {hit.path for hit in scoped.vector} == {"memory/ops/deploy.md"}

    workspace = await manager.search("deploy", filters=SearchFilters(sources=["workspace"]))
    assert {hit.path for hit in workspace.keyword} == {"notes/deploy.md"}
    assert {hit.source for hit in workspace.vector} == {"workspace"}


async def test_search_degrades_to_keyword_results(make_manager, lister, provider):
    lister.put("MEMORY.md", "the deploy key lives in the vault")
    manager = make_manager()
    await manager.sync()

    zero = await manager.search("deploy", query_vector=[0.0] * DIMS)
    assert zero.keyword and zero.vector == []
    assert provider.queries == []

    degraded = make_manager(provider_override=_QueryEmbeddingDown())
    results = await degraded.search("deploy")
    assert results.keyword and results.vector == []


async def test_empty_query_has_no_results(make_manager, lister, provider):
    lister.put("MEMORY.md", "anything")
    manager = make_manager()
    await manager.sync()

    results = await manager.search("   ")

    assert results.keyword == [] and results.vector == []
    assert results.max_results == 6


async def test_read_file_windows(make_manager, lister):
    lister.put("memory/log.md", "one\ntwo\nthree\nfour")
    manager = make_manager()

    assert manager.read_file("memory/log.md")["text"] == "one\ntwo\nthree\nfour"
    assert manager.read_file("memory/log.md", from_line=2, lines=2)["text"] == "two\nthree"
    assert manager.read_file("./memory/log.md", from_line=9) == {"path": "memory/log.md", "text": ""}
    with pytest.raises(InvalidMemoryPathError):
        manager.read_file("notes.txt")
    with pytest.raises(MemoryFileNotFoundError):
        manager.read_file("memory/missing.md")


async def test_recent_files_and_status(make_manager, lister):
    lister.put("memory/older.md", "older note")
    lister.put("MEMORY.md", "newest note")
    manager = make_manager()
    await manager.sync()

    assert [hit.path for hit in manager.list_recent_files()] == ["MEMORY.md", "memory/older.md"]

    status = manager.status()
    assert status.files == 2
    assert status.chunks == 2
    assert not status.dirty
    assert status.index_generation == manager.generation
    assert [(count.source, count.files, count.chunks) for count in status.source_counts] == [
        ("memory", 2, 2)
    ]
    assert status.cache_entries == 2
    assert status.provider == "fake"


async def test_session_transcripts_are_indexed_and_purged(make_manager, lister, history):
    history.open("room-a")
    history.add("room-a", "user", "we picked postgres for billing")
    history.add("room-a", "assistant", "noted, postgres it is")
    manager = make_manager(SESSIONS)
    assert manager.sessions_enabled

    await manager.sync()

    results = await manager.search("postgres", filters=SearchFilters(sources=["sessions"]))
    assert {hit.path for hit in results.keyword} == {"sessions/room-a.jsonl"}
    assert not manager.sessions_dirty

    history.close("room-a")
    manager.notify_session_changed()
    assert manager.sessions_dirty
    await manager.sync()

    assert "sessions/room-a.jsonl" not in _chunks(manager).values()


async def test_closed_sessions_drop_their_state(make_manager, history):
    history.open("room-a")
    history.add("room-a", "user", "ship the release on friday")
    history.open("room-b")
    history.add("room-b", "system", "room created")
    manager = make_manager(SESSIONS)
    await manager.sync()

    with manager.session_scope() as db:
        assert sorted(key for (key,) in db.query(SessionState.session_key)) == ["room-a", "room-b"]

    history.close("room-a")
    history.close("room-b")
    manager.notify_session_changed()
    await manager.sync()

    with manager.session_scope() as db:
        assert db.query(SessionState).count() == 0
        assert db.query(SessionFile).count() == 0


async def test_path_prefix_is_not_a_pattern(make_manager, lister):
    lister.put("memory/a_b/x.md", "release notes for the mobile app")
    lister.put("memory/axb/y.md", "release notes for the web app")
    lister.put("memory/A_b/z.md", "release notes for the desktop app")
    manager = make_manager()
    await manager.sync()

    results = await manager.search("release notes", filters=SearchFilters(path_prefix="memory/a_b"))

    assert {hit.path for hit in results.keyword} == {"memory/a_b/x.md"}
    assert {hit.path for hit in results.vector} == {"memory/a_b/x.md"}


def test_sessions_need_the_experimental_flag(make_manager):
    manager = make_manager({"sources": ["memory", "sessions"]})

    assert not manager.sessions_enabled
    assert manager.config.sources == ["memory"]


async def test_default_memory_file_is_created(engine, provider):
    manager = MemorySearchManager(
        TENANT, make_config(), ProviderSelection(provider=provider, requested="fake"), engine
    )
    manager.initialize()
    manager.ensure_default_files()
    manager.ensure_default_files()

    assert manager.read_file("MEMORY.md") == {"path": "MEMORY.md", "text": ""}
    with manager.session_scope() as db:
        DatabaseContentLister().write(db, TENANT, "memory/todo.md", "renew the domain")
    manager.notify_file_changed("memory/todo.md")
    await manager.sync()

    assert set(_chunks(manager).values()) == {"memory/todo.md"}


async def test_search_trigger_syncs_in_background(make_manager, lister):
    lister.put("MEMORY.md", "the standup moved to ten")
    manager = make_manager({"sync": {"on_search": True}})

    await manager.search("standup")
    await manager.wait_idle()

    assert not manager.dirty
    assert set(_chunks(manager).values()) == {"MEMORY.md"}
    await manager.close()


async def test_watch_trigger_debounces_changes(make_manager, lister):
    manager = make_manager({"sync": {"watch": True, "watch_debounce_ms": 10}})
    lister.put("MEMORY.md", "first draft")
    manager.notify_file_changed("MEMORY.md")
    lister.put("MEMORY.md", "second draft")
    manager.notify_file_changed("MEMORY.md")
    manager.notify_file_changed("notes.txt")

    await manager.wait_idle()

    assert not manager.dirty
    results = await manager.search("second")
    assert [hit.snippet for hit in results.keyword] == ["second draft"]
    await manager.close()
