"""
Memory index models.

All rows are partitioned by tenant (bridge_id, login_id, agent_id). Timestamps are
epoch milliseconds so they can be compared directly with content modification times.
"""

from sqlalchemy import BigInteger, Column, Index, Integer, String, Text

from agentmem.db.database import Base


class MemoryFile(Base):
    """Markdown notes owned by an agent (backing store of the default content lister)."""

    __tablename__ = "ai_memory_files"

    bridge_id = Column(String(255), primary_key=True)
    login_id = Column(String(255), primary_key=True)
    agent_id = Column(String(255), primary_key=True)
    path = Column(Text, primary_key=True)

    source = Column(String(32), nullable=False, default="memory")
    content = Column(Text, nullable=False, default="")
    hash = Column(String(64), nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class MemoryChunk(Base):
    __tablename__ = "ai_memory_chunks"

    # "<generation>:<uuid>"
    id = Column(Text, primary_key=True)

    bridge_id = Column(String(255), nullable=False)
    login_id = Column(String(255), nullable=False)
    agent_id = Column(String(255), nullable=False)

    path = Column(Text, nullable=False)
    source = Column(String(32), nullable=False, default="memory")
    start_line = Column(Integer, nullable=False)
    end_line = Column(Integer, nullable=False)
    hash = Column(String(64), nullable=False)
    model = Column(Text, nullable=False)
    text = Column(Text, nullable=False)
    # JSON list of floats; "[]" when vector indexing is disabled
    embedding = Column(Text, nullable=False, default="[]")
    updated_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index("ix_ai_memory_chunks_lookup", "bridge_id", "login_id", "agent_id", "model", "source"),
        Index("ix_ai_memory_chunks_path", "bridge_id", "login_id", "agent_id", "path"),
    )


class MemoryMeta(Base):
    __tablename__ = "ai_memory_meta"

    bridge_id = Column(String(255), primary_key=True)
    login_id = Column(String(255), primary_key=True)
    agent_id = Column(String(255), primary_key=True)

    provider = Column(String(64), nullable=False)
    model = Column(Text, nullable=False)
    provider_key = Column(String(64), nullable=False)
    chunk_tokens = Column(Integer, nullable=False)
    chunk_overlap = Column(Integer, nullable=False)
    vector_dims = Column(Integer, nullable=True)
    index_generation = Column(String(64), nullable=False, default="")
    updated_at = Column(BigInteger, nullable=False)


class EmbeddingCacheEntry(Base):
    __tablename__ = "ai_memory_embedding_cache"

    bridge_id = Column(String(255), primary_key=True)
    login_id = Column(String(255), primary_key=True)
    agent_id = Column(String(255), primary_key=True)
    provider = Column(String(64), primary_key=True)
    model = Column(Text, primary_key=True)
    provider_key = Column(String(64), primary_key=True)
    hash = Column(String(64), primary_key=True)

    embedding = Column(Text, nullable=False)
    dims = Column(Integer, nullable=True)
    updated_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index("ix_ai_memory_embedding_cache_updated_at", "updated_at"),
    )


class SessionState(Base):
    """Watermark and pending counters of one chat session."""

    __tablename__ = "ai_memory_session_state"

    bridge_id = Column(String(255), primary_key=True)
    login_id = Column(String(255), primary_key=True)
    agent_id = Column(String(255), primary_key=True)
    session_key = Column(Text, primary_key=True)

    last_rowid = Column(BigInteger, nullable=False, default=0)
    pending_bytes = Column(BigInteger, nullable=False, default=0)
    pending_messages = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(BigInteger, nullable=False)


class SessionFile(Base):
    """Rendered transcript snapshot of one chat session."""

    __tablename__ = "ai_memory_session_files"

    bridge_id = Column(String(255), primary_key=True)
    login_id = Column(String(255), primary_key=True)
    agent_id = Column(String(255), primary_key=True)
    session_key = Column(Text, primary_key=True)

    path = Column(Text, nullable=False)
    content = Column(Text, nullable=False, default="")
    hash = Column(String(64), nullable=False)
    size = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(BigInteger, nullable=False)
