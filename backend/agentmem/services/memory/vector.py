"""
Vector search over memory chunks.

With the sqlite-vec extension loaded, embeddings are mirrored into a vec0 virtual
table and ranked by ``vec_distance_cosine``. Without it, chunk embeddings are
scanned and ranked in-process. Extension loading is connection scoped; the probe
outcome is cached so a failed load is never retried.
"""

import math
import sqlite3
import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import sqlite_vec
import structlog
from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from agentmem.services.memory.embedding_cache import parse_embedding
from agentmem.services.memory.sql import SQLBuilder, apply_chunk_scope
from agentmem.services.memory.types import Tenant, VectorResult, truncate_snippet

logger = structlog.get_logger(__name__)

VECTOR_TABLE = "ai_memory_chunks_vec"
DELETE_BATCH_SIZE = 500
_LOADED_KEY = "agentmem_sqlite_vec_loaded"


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity over the shared prefix; 0 when either side has no magnitude."""
    n = min(len(a), len(b))
    if n == 0:
        return 0.0
    dot = norm_a = norm_b = 0.0
    for i in range(n):
        x, y = a[i], b[i]
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def serialize_vector(vector: Sequence[float]) -> bytes:
    return sqlite_vec.serialize_float32(list(vector))


@dataclass
class VectorExtensionStatus:
    """Outcome of loading the extension; ``available`` is None until the first attempt."""

    available: Optional[bool] = None
    error: str = ""
    extension_path: str = ""


class VectorIndex:
    def __init__(self, enabled: bool = True, extension_path: Optional[str] = None):
        self.enabled = enabled
        self.status = VectorExtensionStatus(extension_path=extension_path or "")
        self.dims: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def available(self) -> bool:
        # optimistic until the first load attempt
        return self.enabled and self.status.available is not False

    def load(self, connection: Connection) -> bool:
        """Load the extension on ``connection``'s DBAPI connection."""
        if not self.enabled:
            return False
        with self._lock:
            if self.status.available is False:
                return False
            if connection.info.get(_LOADED_KEY):
                return True
            raw = connection.connection.driver_connection
            try:
                raw.enable_load_extension(True)
                try:
                    if self.status.extension_path:
                        raw.load_extension(self.status.extension_path)
                    else:
                        sqlite_vec.load(raw)
                finally:
                    raw.enable_load_extension(False)
            except (AttributeError, sqlite3.Error) as e:
                self.status.available = False
                self.status.error = str(e)
                logger.warning(
                    "sqlite-vec unavailable, using in-process vector search",
                    extension_path=self.status.extension_path or sqlite_vec.loadable_path(),
                    error=str(e),
                )
                return False
            connection.info[_LOADED_KEY] = True
            self.status.available = True
            return True

    def probe(self, engine: Engine) -> bool:
        """Lease a connection, try to load the extension, release it."""
        if not self.enabled:
            return False
        with engine.connect() as connection:
            return self.load(connection)

    def ensure_table(self, connection: Connection, dims: int, reset: bool = False) -> bool:
        if dims <= 0 or not self.load(connection):
            return False
        if reset or (self.dims is not None and self.dims != dims):
            connection.execute(text(f"DROP TABLE IF EXISTS {VECTOR_TABLE}"))
        connection.execute(
            text(
                f"CREATE VIRTUAL TABLE IF NOT EXISTS {VECTOR_TABLE} "
                f"USING vec0(id TEXT PRIMARY KEY, embedding FLOAT[{int(dims)}])"
            )
        )
        self.dims = dims
        return True

    def upsert(self, connection: Connection, chunk_id: str, embedding: Sequence[float]) -> None:
        connection.execute(text(f"DELETE FROM {VECTOR_TABLE} WHERE id = :id"), {"id": chunk_id})
        connection.execute(
            text(f"INSERT INTO {VECTOR_TABLE} (id, embedding) VALUES (:id, :embedding)"),
            {"id": chunk_id, "embedding": serialize_vector(embedding)},
        )

    def delete_ids(self, connection: Connection, ids: Iterable[str]) -> int:
        """Remove ids from the vec table; a missing extension or table is a no-op."""
        items = list(ids)
        if not items or self.dims is None or not self.load(connection):
            return 0
        for start in range(0, len(items), DELETE_BATCH_SIZE):
            builder = SQLBuilder(f"DELETE FROM {VECTOR_TABLE}")
            builder.where_in("id", items[start:start + DELETE_BATCH_SIZE])
            connection.execute(builder.statement(), builder.params)
        return len(items)

    def search(
        self,
        connection: Connection,
        tenant: Tenant,
        model: str,
        generation: str,
        query_vector: Sequence[float],
        limit: int,
        sources: Optional[Sequence[str]] = None,
        path_prefix: str = "",
    ) -> List[VectorResult]:
        if not query_vector or limit <= 0:
            return []
        if self.dims is not None and self.load(connection):
            try:
                return self._search_extension(
                    connection, tenant, model, generation, query_vector, limit, sources, path_prefix
                )
            except OperationalError as e:
                logger.debug("Vector table query failed, scanning chunks", error=str(e))
        return scan_search(
            connection, tenant, model, generation, query_vector, limit, sources, path_prefix
        )

    def _search_extension(
        self, connection, tenant, model, generation, query_vector, limit, sources, path_prefix
    ) -> List[VectorResult]:
        builder = SQLBuilder(
            "SELECT c.id, c.path, c.start_line, c.end_line, c.text, c.source, "
            "vec_distance_cosine(v.embedding, ?) AS dist "
            f"FROM {VECTOR_TABLE} v JOIN ai_memory_chunks c ON c.id = v.id",
            serialize_vector(query_vector),
        )
        apply_chunk_scope(builder, "c", tenant, model, generation, sources, path_prefix)
        builder.tail("ORDER BY dist ASC LIMIT ?", limit)
        rows = connection.execute(builder.statement(), builder.params).all()
        return [
            VectorResult(
                id=row.id,
                path=row.path,
                start_line=row.start_line,
                end_line=row.end_line,
                source=row.source,
                snippet=truncate_snippet(row.text),
                score=1 - float(row.dist),
            )
            for row in rows
        ]


def scan_search(
    connection: Connection,
    tenant: Tenant,
    model: str,
    generation: str,
    query_vector: Sequence[float],
    limit: int,
    sources: Optional[Sequence[str]] = None,
    path_prefix: str = "",
) -> List[VectorResult]:
    """Rank every candidate chunk by in-process cosine similarity."""
    builder = SQLBuilder(
        "SELECT c.id, c.path, c.start_line, c.end_line, c.text, c.source, c.embedding "
        "FROM ai_memory_chunks c"
    )
    apply_chunk_scope(builder, "c", tenant, model, generation, sources, path_prefix)
    results = []
    for row in connection.execute(builder.statement(), builder.params):
        embedding = parse_embedding(row.embedding)
        if not embedding:
            continue
        results.append(
            VectorResult(
                id=row.id,
                path=row.path,
                start_line=row.start_line,
                end_line=row.end_line,
                source=row.source,
                snippet=truncate_snippet(row.text),
                score=cosine_similarity(query_vector, embedding),
            )
        )
    results.sort(key=lambda r: r.score, reverse=True)
    return results[:limit]
