"""
Memory search manager.

One manager serves one tenant (bridge, login, agent) under one resolved config.
A sync pass runs in two phases: *prepare* lists content, chunks it and resolves
embeddings without holding the database, then *write* applies everything in a
single transaction whose last statement moves the meta row to the new
generation. Full and incremental passes share that routine and differ only in
the ``SyncPlan`` they run with.
"""

import asyncio
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from agentmem.core.memory_config import MemorySearchConfig, normalize_rel_path
from agentmem.db.models.memory import SessionFile
from agentmem.services.memory.chunking import chunk_markdown, drop_blank_chunks, normalize_newlines
from agentmem.services.memory.embedder import BatchCircuitBreaker, Embedder
from agentmem.services.memory.embedding_cache import EmbeddingCache
from agentmem.services.memory.embeddings import ProviderSelection
from agentmem.services.memory.errors import (
    EmbeddingError,
    InvalidMemoryPathError,
    MemoryFileNotFoundError,
)
from agentmem.services.memory.index import ChunkIndex, new_generation
from agentmem.services.memory.keyword import KeywordIndex, query_tokens, scan_keyword_search
from agentmem.services.memory.sessions import (
    ChatHistoryReader,
    DatabaseChatHistory,
    SessionDeltaTracker,
    SessionPlan,
)
from agentmem.services.memory.sources import (
    FILE_SOURCES,
    ContentEntry,
    ContentLister,
    DatabaseContentLister,
    is_allowed_memory_path,
    is_markdown,
    select_eligible,
)
from agentmem.services.memory.types import (
    KNOWN_SOURCES,
    SOURCE_MEMORY,
    SOURCE_SESSIONS,
    SOURCE_WORKSPACE,
    KeywordResult,
    MemorySearchStatus,
    PreparedContent,
    SearchFilters,
    SearchHit,
    SearchResults,
    Tenant,
    VectorResult,
    truncate_snippet,
)
from agentmem.services.memory.vector import VectorIndex

logger = structlog.get_logger(__name__)

DEFAULT_WATCH_DEBOUNCE_MS = 1500
DEFAULT_MEMORY_FILE = "MEMORY.md"

ProgressCallback = Callable[[int, int, str], None]


@dataclass
class SyncPlan:
    full: bool
    generation: str


@dataclass
class TenantLocks:
    """Locks shared by every manager that serves one tenant, including replacements."""

    db: threading.RLock = field(default_factory=threading.RLock)
    sync: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass
class PreparedSync:
    """Everything the write phase needs, computed without a transaction."""

    active_by_source: Dict[str, Dict[str, ContentEntry]] = field(default_factory=dict)
    contents: List[PreparedContent] = field(default_factory=list)
    sessions_enabled: bool = False
    session_plans: List[SessionPlan] = field(default_factory=list)
    session_contents: Dict[str, PreparedContent] = field(default_factory=dict)
    skipped_sessions: Set[str] = field(default_factory=set)
    failures: int = 0


class MemorySearchManager:
    def __init__(
        self,
        tenant: Tenant,
        config: MemorySearchConfig,
        selection: ProviderSelection,
        engine: Engine,
        lister: Optional[ContentLister] = None,
        history: Optional[ChatHistoryReader] = None,
        breaker: Optional[BatchCircuitBreaker] = None,
        locks: Optional[TenantLocks] = None,
    ):
        self.tenant = tenant
        self.config = config
        self.selection = selection
        self.provider = selection.provider
        self.model = self.provider.model
        self.provider_key = self.provider.provider_key
        self.engine = engine
        self.lister = lister or DatabaseContentLister()
        self.history = history or DatabaseChatHistory()

        self._session_factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
        locks = locks or TenantLocks()
        self._db_lock = locks.db
        self._sync_lock = locks.sync

        self.keyword = KeywordIndex(enabled=config.query.hybrid.enabled)
        self.vector = VectorIndex(
            enabled=config.store.vector.enabled,
            extension_path=config.store.vector.extension_path or None,
        )
        self.index = ChunkIndex(tenant, self.model, self.keyword, self.vector)
        self.cache = EmbeddingCache(
            tenant,
            self.provider.id,
            self.model,
            self.provider_key,
            enabled=config.cache.enabled,
            max_entries=config.cache.max_entries,
        )
        self.embedder = Embedder(
            self.provider,
            self.cache,
            self.session_scope,
            batch_config=config.remote.batch,
            breaker=breaker,
            agent_id=tenant.agent_id,
        )
        self.sessions = SessionDeltaTracker(
            tenant,
            self.history,
            delta_bytes=config.sync.sessions.delta_bytes,
            delta_messages=config.sync.sessions.delta_messages,
        )

        self.generation = ""
        self.dirty = any(config.source_enabled(source) for source in FILE_SOURCES)
        self.sessions_dirty = self.sessions_enabled
        self.last_error = ""

        self._progress: Optional[ProgressCallback] = None
        self._warm_sessions: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._watch_task: Optional[asyncio.Task] = None
        self._interval_task: Optional[asyncio.Task] = None
        self._closed = False
        self._log = logger.bind(tenant=tenant.key, provider=self.provider.id, model=self.model)

    @property
    def sessions_enabled(self) -> bool:
        return self.config.experimental.session_memory and self.config.source_enabled(SOURCE_SESSIONS)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Hold the tenant database lock around one committed unit of work."""
        with self._db_lock:
            db = self._session_factory()
            try:
                yield db
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def initialize(self) -> None:
        """Create the FTS table and restore the committed generation."""
        with self._db_lock, self.engine.begin() as connection:
            self.keyword.ensure(connection)
        with self.session_scope() as db:
            meta = self.index.load_meta(db)
            if meta is None:
                return
            self.generation = (meta.index_generation or "").strip() or self.index.derive_generation(db)
            if meta.vector_dims and self.index.vector_table_exists(db):
                self.vector.dims = meta.vector_dims

    def ensure_default_files(self) -> None:
        if not self.config.source_enabled(SOURCE_MEMORY):
            return
        if not isinstance(self.lister, DatabaseContentLister):
            return
        with self.session_scope() as db:
            if self.lister.write_if_missing(db, self.tenant, DEFAULT_MEMORY_FILE, ""):
                self._log.info("Created default memory file", path=DEFAULT_MEMORY_FILE)

    # ------------------------------------------------------------------ sync

    def needs_full_reindex(self, force: bool = False) -> bool:
        if force:
            return True
        with self.session_scope() as db:
            meta = self.index.load_meta(db)
            if meta is None:
                return True
            if (
                meta.provider != self.provider.id
                or meta.model != self.model
                or meta.provider_key != self.provider_key
                or meta.chunk_tokens != self.config.chunking.tokens
                or meta.chunk_overlap != self.config.chunking.overlap
            ):
                return True
            generation = (meta.index_generation or "").strip() or self.index.derive_generation(db)
            if not generation:
                return True
            self.generation = generation
            return False

    async def sync(
        self,
        session_key: str = "",
        force: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Bring the index up to date; database errors propagate and leave the old generation current."""
        async with self._sync_lock:
            self._progress = progress
            try:
                full = self.needs_full_reindex(force)
                generation = self.generation
                if full or not generation:
                    generation = new_generation()
                await self._run_sync(SyncPlan(full=full, generation=generation), (session_key or "").strip())
            except SQLAlchemyError as e:
                self.last_error = str(e)
                self._log.error("Memory sync failed", error=str(e))
                raise
            finally:
                self._progress = None

    async def _run_sync(self, plan: SyncPlan, session_key: str) -> None:
        log = self._log.bind(generation=plan.generation, full=plan.full)
        started = time.monotonic()
        prepared = await self._prepare(plan, session_key)

        superseded: List[str] = []
        with self.session_scope() as db:
            written = 0
            for content in prepared.contents:
                written += len(self.index.write_content(db, content, plan.generation))
            for source, active in prepared.active_by_source.items():
                self.index.remove_stale_paths(db, source, active.keys(), plan.generation)
            total = sum(len(active) for active in prepared.active_by_source.values())
            self._report(total, total, "cleanup")

            if prepared.sessions_enabled:
                written += self._write_sessions(db, plan, prepared)
            if plan.full:
                superseded = self.index.delete_old_generations(db, plan.generation)
            self.index.save_meta(
                db,
                provider=self.provider.id,
                provider_key=self.provider_key,
                chunk_tokens=self.config.chunking.tokens,
                chunk_overlap=self.config.chunking.overlap,
                vector_dims=self.vector.dims,
                generation=plan.generation,
            )

        self.generation = plan.generation
        if prepared.failures == 0:
            self.dirty = False
            if prepared.sessions_enabled:
                self.sessions_dirty = False
        if superseded:
            self._cleanup_vectors(superseded)
        log.info(
            "Memory sync finished",
            contents=len(prepared.contents),
            chunks_written=written,
            superseded=len(superseded),
            failures=prepared.failures,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    async def _prepare(self, plan: SyncPlan, session_key: str) -> PreparedSync:
        with self.session_scope() as db:
            entries = self.lister.list_entries(db, self.tenant)
        prepared = PreparedSync(active_by_source=select_eligible(entries, self.config))

        total = sum(len(active) for active in prepared.active_by_source.values())
        completed = 0
        for source in FILE_SOURCES:
            for entry in prepared.active_by_source.get(source, {}).values():
                if not plan.full:
                    with self.session_scope() as db:
                        needs = self.index.needs_file_index(db, entry, source, plan.generation)
                    if not needs:
                        completed += 1
                        continue
                self._report(completed, total, entry.path)
                content = await self._prepare_unit(entry.path, source, entry.content, entry.updated_at)
                if content is None:
                    prepared.failures += 1
                else:
                    prepared.contents.append(content)
                completed += 1

        if self.sessions_enabled:
            prepared.sessions_enabled = True
            with self.session_scope() as db:
                prepared.session_plans = self.sessions.plan(db, force=plan.full, session_key=session_key)
            now = int(time.time() * 1000)
            for session_plan in prepared.session_plans:
                if not session_plan.reindex:
                    continue
                content = await self._prepare_unit(
                    session_plan.path, SOURCE_SESSIONS, session_plan.content, now
                )
                if content is None:
                    prepared.failures += 1
                    prepared.skipped_sessions.add(session_plan.session_key)
                else:
                    prepared.session_contents[session_plan.session_key] = content
        return prepared

    async def _prepare_unit(
        self, path: str, source: str, content: str, updated_at: int
    ) -> Optional[PreparedContent]:
        """Chunk and embed one content unit; None when its embeddings could not be computed."""
        chunks = drop_blank_chunks(
            chunk_markdown(
                normalize_newlines(content), self.config.chunking.tokens, self.config.chunking.overlap
            )
        )
        embeddings: List[List[float]] = [[] for _ in chunks]
        if chunks and self.config.store.vector.enabled:
            try:
                embeddings = await self.embedder.embed_chunks(chunks, source, path)
            except EmbeddingError as e:
                self.last_error = str(e)
                self._log.warning("Skipping memory content, embeddings failed", path=path, source=source, error=str(e))
                return None
        return PreparedContent(
            path=path, source=source, updated_at=updated_at, chunks=chunks, embeddings=embeddings
        )

    def _write_sessions(self, db: Session, plan: SyncPlan, prepared: PreparedSync) -> int:
        written = 0
        for session_plan in prepared.session_plans:
            if session_plan.session_key in prepared.skipped_sessions:
                continue
            if session_plan.delete_snapshot:
                self.index.purge_path(db, session_plan.path, SOURCE_SESSIONS)
            previous_path = self.sessions.apply(db, session_plan)
            if previous_path:
                self.index.purge_path(db, previous_path, SOURCE_SESSIONS)
            content = prepared.session_contents.get(session_plan.session_key)
            if content is not None:
                written += len(self.index.write_content(db, content, plan.generation))

        active_keys = [session_plan.session_key for session_plan in prepared.session_plans]
        for session_key, path in self.sessions.stale_sessions(db, active_keys).items():
            self._log.debug("Removing stale session", session=session_key, path=path)
            self.index.purge_path(db, path, SOURCE_SESSIONS)
            self.sessions.forget(db, session_key)
        return written

    def _cleanup_vectors(self, ids: Sequence[str]) -> None:
        if not self.vector.available or self.vector.dims is None:
            return
        try:
            with self._db_lock, self.engine.begin() as connection:
                self.vector.delete_ids(connection, ids)
        except SQLAlchemyError as e:
            self._log.warning("Superseded vector cleanup failed", count=len(ids), error=str(e))

    def _report(self, completed: int, total: int, label: str) -> None:
        if self._progress is not None:
            self._progress(completed, total, label)

    # ---------------------------------------------------------------- search

    def search_vector(
        self,
        query_vector: Sequence[float],
        limit: int,
        sources: Optional[Sequence[str]] = None,
        path_prefix: str = "",
    ) -> List[VectorResult]:
        if not self.config.store.vector.enabled or not query_vector or limit <= 0:
            return []
        with self.session_scope() as db:
            return self.vector.search(
                db.connection(),
                self.tenant,
                self.model,
                self.generation,
                query_vector,
                limit,
                sources,
                path_prefix,
            )

    def search_keyword(
        self,
        query: str,
        limit: int,
        sources: Optional[Sequence[str]] = None,
        path_prefix: str = "",
    ) -> List[KeywordResult]:
        if not self.keyword.available or limit <= 0:
            return []
        with self.session_scope() as db:
            return self.keyword.search(
                db.connection(),
                self.tenant,
                self.model,
                self.generation,
                query,
                limit,
                sources,
                path_prefix,
            )

    def _keyword_candidates(
        self, query: str, limit: int, sources: Sequence[str], path_prefix: str
    ) -> List[KeywordResult]:
        if not self.config.query.hybrid.enabled or not query_tokens(query):
            return []
        if self.keyword.available:
            try:
                return self.search_keyword(query, limit, sources, path_prefix)
            except OperationalError as e:
                self._log.warning("FTS query failed, scanning chunks", error=str(e))
        with self.session_scope() as db:
            return scan_keyword_search(
                db.connection(),
                self.tenant,
                self.model,
                self.generation,
                query,
                limit,
                sources,
                path_prefix,
            )

    def search_sources(self, requested: Optional[Sequence[str]] = None) -> List[str]:
        out: List[str] = []
        for raw in requested or []:
            source = (raw or "").strip().lower()
            if source in KNOWN_SOURCES and source not in out:
                out.append(source)
        if out:
            return out
        out = list(self.config.sources)
        if self.config.extra_paths:
            for source in FILE_SOURCES:
                if source not in out:
                    out.append(source)
        return out

    async def search(
        self,
        query: str,
        query_vector: Optional[Sequence[float]] = None,
        limit: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
    ) -> SearchResults:
        """Independent vector and keyword candidate lists for ``query``.

        Combining them is left to the caller, using the weights returned alongside.
        """
        filters = filters or SearchFilters()
        self.warm_session(filters.session_key)
        if self.config.sync.on_search and (self.dirty or self.sessions_dirty):
            self._spawn(self.sync(session_key=filters.session_key), "search")

        hybrid = self.config.query.hybrid
        max_results = limit if limit and limit > 0 else self.config.query.max_results
        candidates = self.config.candidate_limit(max_results)
        sources = self.search_sources(filters.sources)
        path_prefix = normalize_rel_path(filters.path_prefix)
        cleaned = (query or "").strip()

        keyword = self._keyword_candidates(cleaned, candidates, sources, path_prefix) if cleaned else []

        vector: List[VectorResult] = []
        if self.config.store.vector.enabled:
            if query_vector is None and cleaned:
                try:
                    query_vector = await self.embedder.embed_query(cleaned)
                except EmbeddingError as e:
                    self._log.warning("Query embedding failed, keyword results only", error=str(e))
                    query_vector = None
            if query_vector and any(value != 0 for value in query_vector):
                vector = self.search_vector(query_vector, candidates, sources, path_prefix)

        return SearchResults(
            vector=vector,
            keyword=keyword,
            vector_weight=hybrid.vector_weight,
            text_weight=hybrid.text_weight,
            candidate_multiplier=hybrid.candidate_multiplier,
            min_score=self.config.query.min_score,
            max_results=max_results,
        )

    def list_recent_files(
        self,
        sources: Optional[Sequence[str]] = None,
        path_prefix: str = "",
        limit: Optional[int] = None,
    ) -> List[SearchHit]:
        """Most recently updated eligible notes, newest first."""
        limit = max(1, min(200, limit or self.config.query.max_results))
        wanted = set(self.search_sources(sources))
        prefix = normalize_rel_path(path_prefix)
        with self.session_scope() as db:
            entries = self.lister.list_entries(db, self.tenant)
        active = select_eligible(entries, self.config)
        candidates = [
            entry
            for source, by_path in active.items()
            if source in wanted
            for entry in by_path.values()
            if not prefix or entry.path == prefix or entry.path.startswith(prefix + "/")
        ]
        candidates.sort(key=lambda entry: entry.updated_at, reverse=True)
        return [
            SearchHit(
                id="",
                path=entry.path,
                start_line=1,
                end_line=1,
                source=entry.source,
                snippet=truncate_snippet(entry.content),
                score=1.0,
            )
            for entry in candidates[:limit]
        ]

    def read_file(
        self, path: str, from_line: Optional[int] = None, lines: Optional[int] = None
    ) -> Dict[str, str]:
        """Read a note, optionally a ``lines`` long window starting at 1-based ``from_line``."""
        normalized = normalize_rel_path(path)
        if not normalized or not is_markdown(normalized) or not is_allowed_memory_path(
            normalized, self.config.extra_paths
        ):
            raise InvalidMemoryPathError("path required")
        with self.session_scope() as db:
            entries = self.lister.list_entries(db, self.tenant)
        entry = next((e for e in entries if normalize_rel_path(e.path) == normalized), None)
        if entry is None:
            raise MemoryFileNotFoundError(f"file not found: {normalized}")

        content = normalize_newlines(entry.content or "")
        if from_line is None and lines is None:
            return {"path": normalized, "text": content}
        all_lines = content.split("\n")
        start = from_line if from_line and from_line > 1 else 1
        count = len(all_lines) if lines is None else (lines if lines > 0 else 1)
        if start > len(all_lines):
            return {"path": normalized, "text": ""}
        end = min(len(all_lines), start - 1 + count)
        return {"path": normalized, "text": "\n".join(all_lines[start - 1:end])}

    # ---------------------------------------------------------------- status

    def status(self) -> MemorySearchStatus:
        sources = list(self.config.sources)
        with self.session_scope() as db:
            chunks = self.index.count_chunks(db, self.generation, sources)
            source_counts = self.index.source_counts(db, self.generation, sources)
            active = select_eligible(self.lister.list_entries(db, self.tenant), self.config)
            session_files = (
                db.query(SessionFile)
                .filter(
                    SessionFile.bridge_id == self.tenant.bridge_id,
                    SessionFile.login_id == self.tenant.login_id,
                    SessionFile.agent_id == self.tenant.agent_id,
                )
                .count()
            )
            cache_entries = self.cache.count(db) if self.cache.enabled else 0

        file_counts = {source: len(active.get(source, {})) for source in FILE_SOURCES}
        file_counts[SOURCE_SESSIONS] = session_files
        for count in source_counts:
            count.files = file_counts.get(count.source, 0)

        breaker = self.embedder.breaker
        return MemorySearchStatus(
            files=sum(file_counts[source] for source in sources),
            chunks=chunks,
            dirty=self.dirty or self.sessions_dirty,
            provider=self.provider.id,
            model=self.model,
            requested_provider=self.selection.requested,
            fallback_from=self.selection.fallback_from,
            fallback_reason=self.selection.fallback_reason,
            sources=sources,
            extra_paths=list(self.config.extra_paths),
            source_counts=source_counts,
            index_generation=self.generation,
            cache_enabled=self.cache.enabled,
            cache_entries=cache_entries,
            cache_max_entries=self.cache.max_entries,
            fts_enabled=self.keyword.status.enabled,
            fts_available=self.keyword.available,
            fts_error=self.keyword.status.error,
            vector_enabled=self.vector.enabled,
            vector_available=self.vector.status.available if self.vector.enabled else False,
            vector_extension_path=self.vector.status.extension_path,
            vector_load_error=self.vector.status.error,
            vector_dims=self.vector.dims,
            batch_enabled=self.embedder.batch_enabled(),
            batch_failures=breaker.failures,
            batch_limit=breaker.limit,
            batch_last_error=breaker.last_error,
            last_error=self.last_error,
        )

    async def probe_embedding_availability(self) -> Tuple[bool, str]:
        try:
            await self.embedder.embed_texts(["ping"])
        except EmbeddingError as e:
            return False, str(e)
        return True, ""

    def probe_vector_availability(self) -> bool:
        if not self.vector.enabled:
            return False
        with self._db_lock:
            return self.vector.probe(self.engine)

    # -------------------------------------------------------------- triggers

    def warm_session(self, session_key: str) -> None:
        """Sync once per session key when sessions start."""
        if not self.config.sync.on_session_start:
            return
        key = (session_key or "").strip()
        if not key or key in self._warm_sessions:
            return
        self._warm_sessions.add(key)
        self._spawn(self.sync(session_key=key), "session-start")

    def notify_file_changed(self, path: str) -> None:
        normalized = normalize_rel_path(path)
        if not normalized or not is_allowed_memory_path(normalized, self.config.extra_paths):
            return
        self.dirty = True
        self._schedule_watch_sync()

    def notify_session_changed(self) -> None:
        if self.sessions_enabled:
            self.sessions_dirty = True

    def _schedule_watch_sync(self) -> None:
        if not self.config.sync.watch or self._closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._watch_task is not None and not self._watch_task.done():
            self._watch_task.cancel()
        delay_ms = self.config.sync.watch_debounce_ms
        if delay_ms <= 0:
            delay_ms = DEFAULT_WATCH_DEBOUNCE_MS
        self._watch_task = loop.create_task(self._debounced_sync(delay_ms / 1000))
        self._track(self._watch_task)

    async def _debounced_sync(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._run_background(self.sync(), "watch")

    def ensure_interval_sync(self) -> None:
        minutes = self.config.sync.interval_minutes
        if minutes <= 0 or self._closed or self._interval_task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._interval_task = loop.create_task(self._interval_loop(minutes * 60))
        self._track(self._interval_task)

    async def _interval_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self._run_background(self.sync(), "interval")

    def _spawn(self, coro, trigger: str) -> None:
        if self._closed:
            coro.close()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return
        self._track(loop.create_task(self._run_background(coro, trigger)))

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_background(self, coro, trigger: str) -> None:
        try:
            await coro
        except Exception as e:
            self.last_error = str(e)
            self._log.warning("Background memory sync failed", trigger=trigger, error=str(e))

    async def wait_idle(self) -> None:
        """Wait for background syncs started so far."""
        pending = [task for task in self._tasks if task is not self._interval_task]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def stop(self) -> List[asyncio.Task]:
        """Refuse new background work and cancel what is scheduled."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        return tasks

    async def close(self) -> None:
        tasks = self.stop()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watch_task = None
        self._interval_task = None
