"""
Embedding cache keyed by tenant, provider fingerprint and chunk content hash.

Entries expire only by capacity: once a tenant+fingerprint holds more than
``max_entries`` rows the oldest by ``updated_at`` are evicted.
"""

import json
import time
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import func, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from agentmem.db.models.memory import EmbeddingCacheEntry
from agentmem.services.memory.types import Tenant

logger = structlog.get_logger(__name__)

LOOKUP_BATCH_SIZE = 400


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_embedding(raw: Optional[str]) -> List[float]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(value, list):
        return []
    return [float(v) for v in value]


class EmbeddingCache:
    def __init__(
        self,
        tenant: Tenant,
        provider: str,
        model: str,
        provider_key: str,
        enabled: bool = True,
        max_entries: int = 0,
    ):
        self.tenant = tenant
        self.provider = provider
        self.model = model
        self.provider_key = provider_key
        self.enabled = enabled
        self.max_entries = max_entries

    def _scope(self, query):
        return query.filter(
            EmbeddingCacheEntry.bridge_id == self.tenant.bridge_id,
            EmbeddingCacheEntry.login_id == self.tenant.login_id,
            EmbeddingCacheEntry.agent_id == self.tenant.agent_id,
            EmbeddingCacheEntry.provider == self.provider,
            EmbeddingCacheEntry.model == self.model,
            EmbeddingCacheEntry.provider_key == self.provider_key,
        )

    def get(self, db: Session, content_hash: str) -> Optional[List[float]]:
        return self.get_many(db, [content_hash]).get(content_hash)

    def get_many(self, db: Session, hashes: Iterable[str]) -> Dict[str, List[float]]:
        if not self.enabled:
            return {}
        unique = list(dict.fromkeys(h for h in hashes if h))
        found: Dict[str, List[float]] = {}
        for start in range(0, len(unique), LOOKUP_BATCH_SIZE):
            batch = unique[start:start + LOOKUP_BATCH_SIZE]
            rows = (
                self._scope(db.query(EmbeddingCacheEntry.hash, EmbeddingCacheEntry.embedding))
                .filter(EmbeddingCacheEntry.hash.in_(batch))
                .all()
            )
            for content_hash, raw in rows:
                vector = parse_embedding(raw)
                if vector:
                    found[content_hash] = vector
        return found

    def put(self, db: Session, content_hash: str, embedding: List[float]) -> None:
        self.put_many(db, {content_hash: embedding})

    def put_many(self, db: Session, items: Dict[str, List[float]]) -> None:
        if not self.enabled or not items:
            return
        updated_at = now_ms()
        for content_hash, embedding in items.items():
            if not content_hash or not embedding:
                continue
            stmt = sqlite_insert(EmbeddingCacheEntry).values(
                **self.tenant.columns(),
                provider=self.provider,
                model=self.model,
                provider_key=self.provider_key,
                hash=content_hash,
                embedding=json.dumps(embedding),
                dims=len(embedding),
                updated_at=updated_at,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[
                    "bridge_id",
                    "login_id",
                    "agent_id",
                    "provider",
                    "model",
                    "provider_key",
                    "hash",
                ],
                set_={
                    "embedding": stmt.excluded.embedding,
                    "dims": stmt.excluded.dims,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            db.execute(stmt)
        self.prune(db)

    def count(self, db: Session) -> int:
        return self._scope(db.query(func.count(EmbeddingCacheEntry.hash))).scalar() or 0

    def prune(self, db: Session) -> int:
        """Evict the oldest entries beyond ``max_entries``; returns how many were removed."""
        if self.max_entries <= 0:
            return 0
        excess = self.count(db) - self.max_entries
        if excess <= 0:
            return 0
        # rowid breaks updated_at ties so newer inserts always outlive older rows
        db.execute(
            text(
                "DELETE FROM ai_memory_embedding_cache WHERE rowid IN ("
                " SELECT rowid FROM ai_memory_embedding_cache"
                " WHERE bridge_id = :bridge_id AND login_id = :login_id AND agent_id = :agent_id"
                " AND provider = :provider AND model = :model AND provider_key = :provider_key"
                " ORDER BY updated_at ASC, rowid ASC LIMIT :excess)"
            ),
            {
                **self.tenant.columns(),
                "provider": self.provider,
                "model": self.model,
                "provider_key": self.provider_key,
                "excess": excess,
            },
        )
        logger.debug("Pruned embedding cache", tenant=self.tenant.key, removed=excess)
        return excess
