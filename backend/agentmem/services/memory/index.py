"""
Chunk storage for one tenant: the chunk table plus its FTS5 and vector mirrors,
generation bookkeeping and the meta row.

Every method takes the caller's Session and performs no commit; the manager
groups calls into its write transaction.
"""

import json
import time
import uuid
from typing import Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import func, insert, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from agentmem.db.models.memory import MemoryChunk, MemoryMeta
from agentmem.services.memory.keyword import KeywordIndex
from agentmem.services.memory.sources import ContentEntry
from agentmem.services.memory.sql import generation_prefix_pattern
from agentmem.services.memory.types import PreparedContent, SourceCount, Tenant
from agentmem.services.memory.vector import VECTOR_TABLE, VectorIndex

logger = structlog.get_logger(__name__)

DELETE_BATCH_SIZE = 500


def new_generation() -> str:
    return str(uuid.uuid4())


def build_chunk_id(generation: str) -> str:
    generation = (generation or "").strip()
    if not generation:
        return str(uuid.uuid4())
    return f"{generation}:{uuid.uuid4()}"


def generation_of(chunk_id: str) -> str:
    head, sep, _ = (chunk_id or "").partition(":")
    return head if sep else ""


class ChunkIndex:
    def __init__(self, tenant: Tenant, model: str, keyword: KeywordIndex, vector: VectorIndex):
        self.tenant = tenant
        self.model = model
        self.keyword = keyword
        self.vector = vector

    def _chunks(self, db: Session, generation: str = ""):
        query = db.query(MemoryChunk).filter(
            MemoryChunk.bridge_id == self.tenant.bridge_id,
            MemoryChunk.login_id == self.tenant.login_id,
            MemoryChunk.agent_id == self.tenant.agent_id,
        )
        if generation:
            query = query.filter(MemoryChunk.id.like(generation_prefix_pattern(generation)))
        return query

    def needs_file_index(self, db: Session, entry: ContentEntry, source: str, generation: str) -> bool:
        """True when ``entry`` changed after its newest chunk in ``generation`` was written."""
        latest = (
            self._chunks(db, generation)
            .filter(
                MemoryChunk.path == entry.path,
                MemoryChunk.source == source,
                MemoryChunk.model == self.model,
            )
            .with_entities(func.max(MemoryChunk.updated_at))
            .scalar()
        )
        if latest is None:
            return True
        return entry.updated_at > latest

    def write_content(self, db: Session, prepared: PreparedContent, generation: str) -> List[str]:
        """Insert the prepared chunks and drop the path's previous chunks in ``generation``."""
        connection = db.connection()
        vector_ready = False
        new_ids: List[str] = []
        rows = []
        for chunk, embedding in zip(prepared.chunks, prepared.embeddings):
            chunk_id = build_chunk_id(generation)
            new_ids.append(chunk_id)
            rows.append(
                {
                    "id": chunk_id,
                    "path": prepared.path,
                    "source": prepared.source,
                    "start_line": chunk.start_line,
                    "end_line": chunk.end_line,
                    "hash": chunk.hash,
                    "model": self.model,
                    "text": chunk.text,
                    "embedding": json.dumps(embedding or []),
                    "updated_at": prepared.updated_at,
                    **self.tenant.columns(),
                }
            )
            if embedding and self.vector.enabled and not vector_ready:
                vector_ready = self.vector.ensure_table(connection, len(embedding))
            if vector_ready and embedding:
                self.vector.upsert(connection, chunk_id, embedding)
            self.keyword.insert(
                connection,
                self.tenant,
                chunk_id,
                prepared.path,
                prepared.source,
                self.model,
                chunk.start_line,
                chunk.end_line,
                chunk.text,
            )
        if rows:
            db.execute(insert(MemoryChunk), rows)
        self.delete_path_chunks(db, prepared.path, prepared.source, generation, keep_ids=new_ids)
        return new_ids

    def delete_path_chunks(
        self,
        db: Session,
        path: str,
        source: str,
        generation: str = "",
        keep_ids: Sequence[str] = (),
    ) -> List[str]:
        query = self._chunks(db, generation).filter(
            MemoryChunk.path == path, MemoryChunk.source == source
        )
        if keep_ids:
            query = query.filter(MemoryChunk.id.notin_(list(keep_ids)))
        ids = [row.id for row in query.with_entities(MemoryChunk.id)]
        self.delete_ids(db, ids)
        return ids

    def purge_path(self, db: Session, path: str, source: str) -> List[str]:
        """Drop every chunk of ``path`` regardless of generation."""
        return self.delete_path_chunks(db, path, source)

    def remove_stale_paths(
        self, db: Session, source: str, active_paths: Iterable[str], generation: str
    ) -> List[str]:
        """Delete chunks of ``source`` whose path is no longer listed."""
        active = set(active_paths)
        paths = [
            row.path
            for row in self._chunks(db, generation)
            .filter(MemoryChunk.source == source)
            .with_entities(MemoryChunk.path)
            .distinct()
        ]
        removed: List[str] = []
        for path in paths:
            if path in active:
                continue
            logger.debug("Removing stale memory path", tenant=self.tenant.key, path=path, source=source)
            removed.extend(self.delete_path_chunks(db, path, source, generation))
        return removed

    def delete_ids(self, db: Session, ids: Sequence[str], include_vectors: bool = True) -> None:
        if not ids:
            return
        connection = db.connection()
        if include_vectors:
            self._delete_vector_ids(connection, ids)
        self.keyword.delete_ids(connection, ids)
        items = list(ids)
        for start in range(0, len(items), DELETE_BATCH_SIZE):
            self._chunks(db).filter(
                MemoryChunk.id.in_(items[start:start + DELETE_BATCH_SIZE])
            ).delete(synchronize_session=False)

    def _delete_vector_ids(self, connection, ids: Sequence[str]) -> None:
        try:
            self.vector.delete_ids(connection, ids)
        except OperationalError as e:
            logger.warning("Vector row cleanup failed", tenant=self.tenant.key, error=str(e))

    def old_generation_ids(self, db: Session, generation: str) -> List[str]:
        if not generation:
            return []
        return [
            row.id
            for row in self._chunks(db)
            .filter(~MemoryChunk.id.like(generation_prefix_pattern(generation)))
            .with_entities(MemoryChunk.id)
        ]

    def delete_old_generations(self, db: Session, generation: str) -> List[str]:
        """Remove chunk and FTS rows outside ``generation``; vector rows are left to the caller."""
        ids = self.old_generation_ids(db, generation)
        self.delete_ids(db, ids, include_vectors=False)
        return ids

    def derive_generation(self, db: Session) -> str:
        """Generation prefix of the most recently written chunk."""
        row = (
            self._chunks(db)
            .with_entities(MemoryChunk.id)
            .order_by(MemoryChunk.updated_at.desc())
            .first()
        )
        return generation_of(row.id) if row else ""

    def load_meta(self, db: Session) -> Optional[MemoryMeta]:
        return db.get(MemoryMeta, (self.tenant.bridge_id, self.tenant.login_id, self.tenant.agent_id))

    def save_meta(
        self,
        db: Session,
        provider: str,
        provider_key: str,
        chunk_tokens: int,
        chunk_overlap: int,
        vector_dims: Optional[int],
        generation: str,
    ) -> MemoryMeta:
        meta = self.load_meta(db)
        if meta is None:
            meta = MemoryMeta(**self.tenant.columns())
            db.add(meta)
        meta.provider = provider
        meta.model = self.model
        meta.provider_key = provider_key
        meta.chunk_tokens = chunk_tokens
        meta.chunk_overlap = chunk_overlap
        meta.vector_dims = vector_dims if vector_dims and vector_dims > 0 else None
        meta.index_generation = generation
        meta.updated_at = int(time.time() * 1000)
        db.flush()
        return meta

    def vector_table_exists(self, db: Session) -> bool:
        row = db.execute(
            text("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = :name"),
            {"name": VECTOR_TABLE},
        ).first()
        return row is not None

    def count_chunks(
        self, db: Session, generation: str, sources: Optional[Sequence[str]] = None
    ) -> int:
        query = self._chunks(db, generation)
        if sources is not None:
            query = query.filter(MemoryChunk.source.in_(list(sources)))
        return query.count()

    def source_counts(self, db: Session, generation: str, sources: Sequence[str]) -> List[SourceCount]:
        """Chunk and distinct path counts per source in ``generation``."""
        counts = []
        for source in sources:
            query = self._chunks(db, generation).filter(MemoryChunk.source == source)
            counts.append(
                SourceCount(
                    source=source,
                    files=query.with_entities(func.count(func.distinct(MemoryChunk.path))).scalar() or 0,
                    chunks=query.count(),
                )
            )
        return counts
