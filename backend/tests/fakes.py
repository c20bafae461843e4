"""
In-process stand-ins for the embedding provider, the content lister and the
chat history, shared by the memory search tests.
"""

import re
import zlib
from contextlib import contextmanager
from typing import Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from agentmem.core.memory_config import MemorySearchConfig, resolve_memory_search_config
from agentmem.services.memory.embeddings import EmbeddingProvider
from agentmem.services.memory.errors import EmbeddingError
from agentmem.services.memory.sessions import ChatRow, ChatSession
from agentmem.services.memory.sources import ContentEntry
from agentmem.services.memory.types import Tenant

TENANT = Tenant(bridge_id="bridge", login_id="login", agent_id="main")
DIMS = 256

# triggers are driven explicitly by the tests
QUIET_SYNC = {"sync": {"on_session_start": False, "on_search": False, "watch": False}}


def fake_vector(text: str) -> List[float]:
    """Bag-of-tokens vector; texts sharing words point in similar directions."""
    vector = [0.0] * DIMS
    vector[0] = 0.1
    for token in re.findall(r"[a-z0-9]+", text.lower()):
        vector[1 + zlib.crc32(token.encode("utf-8")) % (DIMS - 1)] += 1.0
    return vector


def make_config(overrides: Optional[Dict] = None) -> MemorySearchConfig:
    base = MemorySearchConfig.model_validate(QUIET_SYNC)
    return resolve_memory_search_config(base, overrides)


class FakeEmbeddingProvider(EmbeddingProvider):
    id = "fake"

    def __init__(self, model: str = "fake-embed", fail_marker: str = "", errors=None):
        super().__init__(model=model, base_url="http://embeddings.test")
        self.calls: List[List[str]] = []
        self.queries: List[str] = []
        self.fail_marker = fail_marker
        self.errors = list(errors or [])

    @property
    def embedded_texts(self) -> List[str]:
        return [text for call in self.calls for text in call]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.errors:
            raise self.errors.pop(0)
        if self.fail_marker and any(self.fail_marker in text for text in texts):
            raise EmbeddingError("fake embeddings failed: 400 invalid input", status_code=400)
        return [fake_vector(text) for text in texts]

    async def embed_query(self, text: str) -> List[float]:
        self.queries.append(text)
        return fake_vector(text)


class InMemoryLister:
    """Content lister over a dict; every write gets a later timestamp."""

    def __init__(self):
        self.entries: Dict[str, ContentEntry] = {}
        self._clock = 1_700_000_000_000

    def put(self, path: str, content: str, source: str = "") -> ContentEntry:
        self._clock += 1000
        entry = ContentEntry(path=path, content=content, updated_at=self._clock, source=source)
        self.entries[path] = entry
        return entry

    def remove(self, path: str) -> None:
        self.entries.pop(path, None)

    def list_entries(self, db, tenant: Tenant) -> List[ContentEntry]:
        return list(self.entries.values())


class InMemoryChatHistory:
    def __init__(self):
        self.sessions: Dict[str, ChatSession] = {}
        self.rows: Dict[str, List[ChatRow]] = {}
        self._next_id = 0

    def open(self, session_key: str, agent_id: str = "", is_cron: bool = False) -> None:
        self.sessions[session_key] = ChatSession(session_key=session_key, agent_id=agent_id, is_cron=is_cron)
        self.rows.setdefault(session_key, [])

    def close(self, session_key: str) -> None:
        self.sessions.pop(session_key, None)

    def add(self, session_key: str, role: str, body: str, **kwargs) -> ChatRow:
        self._next_id += 1
        row = ChatRow(row_id=self._next_id, role=role, body=body, **kwargs)
        self.rows.setdefault(session_key, []).append(row)
        return row

    def list_sessions(self, db, tenant):
        return list(self.sessions.values())

    def max_row_id(self, db, tenant, session_key):
        rows = self.rows.get(session_key) or []
        return max((row.row_id for row in rows), default=0)

    def read_messages(self, db, tenant, session_key, after_row_id=0):
        return [row for row in self.rows.get(session_key) or [] if row.row_id > after_row_id]


def session_scope_for(engine):
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    @contextmanager
    def scope():
        db = factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    return scope
