"""
Session delta tracking.

Every chat session keeps a watermark (the last message row id seen) and pending
byte/message counters. A sync pass scans only rows past the watermark and decides
whether the transcript snapshot must be re-rendered and re-indexed; planning never
writes, the resulting plans are applied in the sync write transaction.
"""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from agentmem.db.models.chat import ChatMessage, ChatRoom
from agentmem.db.models.memory import SessionFile, SessionState
from agentmem.services.memory.chunking import hash_text
from agentmem.services.memory.types import Tenant

DEFAULT_SESSION_KEY = "main"
DEFAULT_AGENT_ID = "main"


@dataclass
class ChatSession:
    session_key: str
    agent_id: str = ""
    is_cron: bool = False


@dataclass
class ChatRow:
    row_id: int
    role: str
    body: str
    agent_id: str = ""
    exclude_from_history: bool = False


class ChatHistoryReader(Protocol):
    def list_sessions(self, db: Session, tenant: Tenant) -> List[ChatSession]:
        ...

    def max_row_id(self, db: Session, tenant: Tenant, session_key: str) -> int:
        ...

    def read_messages(
        self, db: Session, tenant: Tenant, session_key: str, after_row_id: int = 0
    ) -> List[ChatRow]:
        ...


class DatabaseChatHistory:
    """Chat history stored in the ``chat_rooms`` / ``chat_messages`` tables."""

    def list_sessions(self, db: Session, tenant: Tenant) -> List[ChatSession]:
        rooms = (
            db.query(ChatRoom)
            .filter(
                ChatRoom.bridge_id == tenant.bridge_id,
                ChatRoom.login_id == tenant.login_id,
                ChatRoom.active.is_(True),
            )
            .order_by(ChatRoom.id)
            .all()
        )
        return [
            ChatSession(session_key=room.session_key, agent_id=room.agent_id, is_cron=room.is_cron)
            for room in rooms
        ]

    def _messages(self, db: Session, tenant: Tenant, session_key: str):
        return db.query(ChatMessage).filter(
            ChatMessage.bridge_id == tenant.bridge_id,
            ChatMessage.login_id == tenant.login_id,
            ChatMessage.session_key == session_key,
        )

    def max_row_id(self, db: Session, tenant: Tenant, session_key: str) -> int:
        value = (
            db.query(func.max(ChatMessage.id))
            .filter(
                ChatMessage.bridge_id == tenant.bridge_id,
                ChatMessage.login_id == tenant.login_id,
                ChatMessage.session_key == session_key,
            )
            .scalar()
        )
        return int(value or 0)

    def read_messages(
        self, db: Session, tenant: Tenant, session_key: str, after_row_id: int = 0
    ) -> List[ChatRow]:
        rows = (
            self._messages(db, tenant, session_key)
            .filter(ChatMessage.id > after_row_id)
            .order_by(ChatMessage.id)
            .all()
        )
        return [
            ChatRow(
                row_id=row.id,
                role=row.role,
                body=row.body,
                agent_id=row.agent_id,
                exclude_from_history=row.exclude_from_history,
            )
            for row in rows
        ]


def session_path(session_key: str) -> str:
    cleaned = (session_key or "").strip() or DEFAULT_SESSION_KEY
    cleaned = cleaned.replace("/", "_").replace("\\", "_")
    return f"sessions/{cleaned}.jsonl"


def normalize_session_text(body: str) -> str:
    return " ".join((body or "").split())


def render_line(row: ChatRow, agent_id: str) -> Optional[str]:
    """Transcript line for ``row``, or None when the row is not part of the history."""
    if row.exclude_from_history:
        return None
    role = (row.role or "").strip().lower()
    if role not in ("user", "assistant"):
        return None
    if role == "assistant" and row.agent_id and row.agent_id != agent_id:
        return None
    body = normalize_session_text(row.body)
    if not body:
        return None
    label = "User" if role == "user" else "Assistant"
    return f"{label}: {body}"


def threshold_hit(pending: int, threshold: int) -> bool:
    if threshold <= 0:
        return pending > 0
    return pending >= threshold


@dataclass
class SessionPlan:
    """What the write phase does for one session."""

    session_key: str
    path: str
    last_rowid: int
    pending_bytes: int
    pending_messages: int
    snapshot: bool = False
    # set when a snapshot was rendered
    content: str = ""
    hash: str = ""
    reindex: bool = False

    @property
    def delete_snapshot(self) -> bool:
        return self.snapshot and not self.content


class SessionDeltaTracker:
    def __init__(
        self,
        tenant: Tenant,
        reader: ChatHistoryReader,
        delta_bytes: int = 100000,
        delta_messages: int = 50,
    ):
        self.tenant = tenant
        self.reader = reader
        self.delta_bytes = delta_bytes
        self.delta_messages = delta_messages

    def _state_query(self, db: Session):
        return db.query(SessionState).filter(
            SessionState.bridge_id == self.tenant.bridge_id,
            SessionState.login_id == self.tenant.login_id,
            SessionState.agent_id == self.tenant.agent_id,
        )

    def _file_query(self, db: Session):
        return db.query(SessionFile).filter(
            SessionFile.bridge_id == self.tenant.bridge_id,
            SessionFile.login_id == self.tenant.login_id,
            SessionFile.agent_id == self.tenant.agent_id,
        )

    def active_sessions(self, db: Session) -> Dict[str, ChatSession]:
        """Non-cron sessions bound to this tenant's agent, keyed by session key."""
        active: Dict[str, ChatSession] = {}
        for session in self.reader.list_sessions(db, self.tenant):
            if session.is_cron or not session.session_key:
                continue
            if (session.agent_id or DEFAULT_AGENT_ID) != self.tenant.agent_id:
                continue
            active[session.session_key] = session
        return active

    def load_state(self, db: Session, session_key: str) -> Optional[SessionState]:
        return self._state_query(db).filter(SessionState.session_key == session_key).first()

    def compute_delta(self, db: Session, session_key: str, last_rowid: int):
        """Return (max_rowid, delta_bytes, delta_messages) for rows past ``last_rowid``."""
        max_rowid = self.reader.max_row_id(db, self.tenant, session_key)
        if max_rowid <= last_rowid:
            return max_rowid, 0, 0
        delta_bytes = 0
        delta_messages = 0
        for row in self.reader.read_messages(db, self.tenant, session_key, last_rowid):
            max_rowid = max(max_rowid, row.row_id)
            line = render_line(row, self.tenant.agent_id)
            if line is None:
                continue
            delta_messages += 1
            delta_bytes += len(line.encode("utf-8")) + 1
        return max_rowid, delta_bytes, delta_messages

    def render_transcript(self, db: Session, session_key: str):
        """Return (content, latest_rowid) for the whole session."""
        lines: List[str] = []
        latest = 0
        for row in self.reader.read_messages(db, self.tenant, session_key, 0):
            latest = max(latest, row.row_id)
            line = render_line(row, self.tenant.agent_id)
            if line is not None:
                lines.append(line)
        return "\n".join(lines), latest

    def plan(self, db: Session, force: bool = False, session_key: str = "") -> List[SessionPlan]:
        active = self.active_sessions(db)
        index_all = force or self._state_query(db).count() == 0
        existing_hashes = {row.session_key: row.hash for row in self._file_query(db).all()}

        plans: List[SessionPlan] = []
        for key in active:
            state = self.load_state(db, key)
            last_rowid = state.last_rowid if state else 0
            pending_bytes = state.pending_bytes if state else 0
            pending_messages = state.pending_messages if state else 0

            max_rowid, delta_bytes, delta_messages = self.compute_delta(db, key, last_rowid)
            # the log shrank below the watermark: start over from scratch
            reset = max_rowid < last_rowid
            if reset:
                pending_bytes = pending_messages = 0

            plan = SessionPlan(
                session_key=key,
                path=session_path(key),
                last_rowid=max_rowid,
                pending_bytes=pending_bytes + delta_bytes,
                pending_messages=pending_messages + delta_messages,
            )
            should_index = (
                index_all
                or reset
                or (bool(session_key) and session_key == key and last_rowid == 0)
                or threshold_hit(plan.pending_bytes, self.delta_bytes)
                or threshold_hit(plan.pending_messages, self.delta_messages)
            )
            if should_index:
                content, latest = self.render_transcript(db, key)
                plan.snapshot = True
                plan.content = content
                if content:
                    plan.hash = hash_text(content)
                    previous = existing_hashes.get(key, "")
                    plan.reindex = reset or index_all or not previous or previous != plan.hash
                if latest > 0:
                    plan.last_rowid = latest
                plan.pending_bytes = 0
                plan.pending_messages = 0
            plans.append(plan)
        return plans

    def stale_sessions(self, db: Session, active_keys: Sequence[str]) -> Dict[str, str]:
        """Map every tracked but inactive session key to its snapshot path.

        Sessions that only ever had a watermark (no snapshot) are included so their
        state rows are dropped too.
        """
        keep = set(active_keys)
        stale = {
            key: session_path(key)
            for (key,) in self._state_query(db).with_entities(SessionState.session_key)
            if key not in keep
        }
        for row in self._file_query(db).all():
            if row.session_key not in keep:
                stale[row.session_key] = row.path or session_path(row.session_key)
        return stale

    def apply(self, db: Session, plan: SessionPlan) -> Optional[str]:
        """Persist the session file (when snapshotted) and the new watermark.

        Returns the previous snapshot path when it differs from the planned one.
        """
        now = int(time.time() * 1000)
        previous_path = None
        if plan.snapshot and plan.content and plan.reindex:
            row = self._file_query(db).filter(SessionFile.session_key == plan.session_key).first()
            if row is None:
                row = SessionFile(session_key=plan.session_key, **self.tenant.columns())
                db.add(row)
            elif row.path and row.path != plan.path:
                previous_path = row.path
            row.path = plan.path
            row.content = plan.content
            row.hash = plan.hash
            row.size = len(plan.content.encode("utf-8"))
            row.updated_at = now
        elif plan.delete_snapshot:
            self._file_query(db).filter(SessionFile.session_key == plan.session_key).delete(
                synchronize_session=False
            )

        state = self.load_state(db, plan.session_key)
        if state is None:
            state = SessionState(session_key=plan.session_key, **self.tenant.columns())
            db.add(state)
        state.last_rowid = plan.last_rowid
        state.pending_bytes = plan.pending_bytes
        state.pending_messages = plan.pending_messages
        state.updated_at = now
        db.flush()
        return previous_path

    def forget(self, db: Session, session_key: str) -> None:
        self._file_query(db).filter(SessionFile.session_key == session_key).delete(
            synchronize_session=False
        )
        self._state_query(db).filter(SessionState.session_key == session_key).delete(
            synchronize_session=False
        )
