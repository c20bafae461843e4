"""
Chat rooms and messages read by the session delta tracker.

Messages are append-only; the autoincrement id doubles as the log row id that the
tracker uses as its watermark.
"""

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func

from agentmem.db.database import Base


class ChatRoom(Base):
    __tablename__ = "chat_rooms"

    id = Column(Integer, primary_key=True, autoincrement=True)

    bridge_id = Column(String(255), nullable=False)
    login_id = Column(String(255), nullable=False)
    session_key = Column(Text, nullable=False)
    # agent the room is bound to; empty means the default agent
    agent_id = Column(String(255), nullable=False, default="")
    is_cron = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_chat_rooms_tenant", "bridge_id", "login_id", "session_key", unique=True),
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)

    bridge_id = Column(String(255), nullable=False)
    login_id = Column(String(255), nullable=False)
    session_key = Column(Text, nullable=False)

    role = Column(String(32), nullable=False)
    body = Column(Text, nullable=False, default="")
    # agent that produced an assistant message
    agent_id = Column(String(255), nullable=False, default="")
    exclude_from_history = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_chat_messages_session", "bridge_id", "login_id", "session_key", "id"),
    )
