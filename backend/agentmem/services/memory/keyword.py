"""
Keyword search over memory chunks backed by an SQLite FTS5 table.
"""

import math
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import OperationalError

from agentmem.services.memory.sql import SQLBuilder, apply_chunk_scope, escape_like
from agentmem.services.memory.types import KeywordResult, Tenant, truncate_snippet

logger = structlog.get_logger(__name__)

FTS_TABLE = "ai_memory_chunks_fts"
DELETE_BATCH_SIZE = 500

_TOKEN = re.compile(r"[A-Za-z0-9_]+")


def query_tokens(raw: str) -> List[str]:
    return _TOKEN.findall(raw or "")


def build_fts_query(raw: str) -> str:
    """Quote every alphanumeric token and require all of them; empty when nothing is left."""
    tokens = query_tokens(raw)
    if not tokens:
        return ""
    return " AND ".join(f'"{token}"' for token in tokens)


def bm25_rank_to_score(rank: float) -> float:
    """Map an FTS5 bm25 rank (lower is better) onto (0, 1]."""
    if rank is None or not math.isfinite(rank):
        return 1 / (1 + 999)
    return 1 / (1 + max(0.0, rank))


@dataclass
class FtsStatus:
    enabled: bool = False
    available: bool = False
    error: str = ""


class KeywordIndex:
    def __init__(self, enabled: bool = True):
        self.status = FtsStatus(enabled=enabled)

    @property
    def available(self) -> bool:
        return self.status.enabled and self.status.available

    def ensure(self, connection: Connection) -> bool:
        """Create the FTS5 table; SQLite builds without FTS5 leave keyword search disabled."""
        if not self.status.enabled:
            return False
        try:
            connection.execute(
                text(
                    f"CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} USING fts5("
                    "text, "
                    "id UNINDEXED, "
                    "path UNINDEXED, "
                    "source UNINDEXED, "
                    "model UNINDEXED, "
                    "start_line UNINDEXED, "
                    "end_line UNINDEXED, "
                    "bridge_id UNINDEXED, "
                    "login_id UNINDEXED, "
                    "agent_id UNINDEXED"
                    ")"
                )
            )
        except OperationalError as e:
            self.status.available = False
            self.status.error = str(e)
            logger.warning("FTS5 unavailable, keyword search disabled", error=str(e))
            return False
        self.status.available = True
        self.status.error = ""
        return True

    def insert(
        self,
        connection: Connection,
        tenant: Tenant,
        chunk_id: str,
        path: str,
        source: str,
        model: str,
        start_line: int,
        end_line: int,
        body: str,
    ) -> None:
        if not self.available:
            return
        connection.execute(
            text(
                f"INSERT INTO {FTS_TABLE} "
                "(text, id, path, source, model, start_line, end_line, bridge_id, login_id, agent_id) "
                "VALUES (:text, :id, :path, :source, :model, :start_line, :end_line, "
                ":bridge_id, :login_id, :agent_id)"
            ),
            {
                "text": body,
                "id": chunk_id,
                "path": path,
                "source": source,
                "model": model,
                "start_line": start_line,
                "end_line": end_line,
                **tenant.columns(),
            },
        )

    def delete_ids(self, connection: Connection, ids: Iterable[str]) -> None:
        if not self.available:
            return
        items = list(ids)
        for start in range(0, len(items), DELETE_BATCH_SIZE):
            builder = SQLBuilder(f"DELETE FROM {FTS_TABLE}")
            builder.where_in("id", items[start:start + DELETE_BATCH_SIZE])
            connection.execute(builder.statement(), builder.params)

    def search(
        self,
        connection: Connection,
        tenant: Tenant,
        model: str,
        generation: str,
        query: str,
        limit: int,
        sources: Optional[Sequence[str]] = None,
        path_prefix: str = "",
    ) -> List[KeywordResult]:
        if not self.available or limit <= 0:
            return []
        match = build_fts_query(query)
        if not match:
            return []
        builder = SQLBuilder(
            f"SELECT id, path, source, start_line, end_line, text, "
            f"bm25({FTS_TABLE}) AS bm25_rank FROM {FTS_TABLE}"
        )
        builder.where(f"{FTS_TABLE} MATCH ?", match)
        apply_chunk_scope(builder, FTS_TABLE, tenant, model, generation, sources, path_prefix)
        builder.tail("ORDER BY bm25_rank ASC LIMIT ?", limit)
        rows = connection.execute(builder.statement(), builder.params).all()
        return [
            KeywordResult(
                id=row.id,
                path=row.path,
                start_line=int(row.start_line),
                end_line=int(row.end_line),
                source=row.source,
                snippet=truncate_snippet(row.text),
                score=bm25_rank_to_score(row.bm25_rank),
            )
            for row in rows
        ]


def scan_keyword_search(
    connection: Connection,
    tenant: Tenant,
    model: str,
    generation: str,
    query: str,
    limit: int,
    sources: Optional[Sequence[str]] = None,
    path_prefix: str = "",
) -> List[KeywordResult]:
    """LIKE-prefiltered scan scoring each chunk by the share of query tokens it contains."""
    tokens = list(dict.fromkeys(token.lower() for token in query_tokens(query)))
    if not tokens or limit <= 0:
        return []
    builder = SQLBuilder(
        "SELECT c.id, c.path, c.source, c.start_line, c.end_line, c.text FROM ai_memory_chunks c"
    )
    apply_chunk_scope(builder, "c", tenant, model, generation, sources, path_prefix)
    builder.where(
        "(" + " OR ".join("c.text LIKE ? ESCAPE '\\'" for _ in tokens) + ")",
        *[f"%{escape_like(token)}%" for token in tokens],
    )
    results = []
    for row in connection.execute(builder.statement(), builder.params):
        lowered = row.text.lower()
        hits = sum(1 for token in tokens if token in lowered)
        if hits == 0:
            continue
        results.append(
            KeywordResult(
                id=row.id,
                path=row.path,
                start_line=row.start_line,
                end_line=row.end_line,
                source=row.source,
                snippet=truncate_snippet(row.text),
                score=hits / len(tokens),
            )
        )
    results.sort(key=lambda r: r.score, reverse=True)
    return results[:limit]
