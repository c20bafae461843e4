"""
Content sources for the memory index.

The content lister returns every note an agent owns; this module decides which of
them are eligible (markdown only, an enabled source or an extra path) and keeps
the default lister backed by the ``ai_memory_files`` table.
"""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from sqlalchemy.orm import Session

from agentmem.core.memory_config import MemorySearchConfig, normalize_rel_path
from agentmem.db.models.memory import MemoryFile
from agentmem.services.memory.chunking import hash_text, normalize_newlines
from agentmem.services.memory.types import SOURCE_MEMORY, SOURCE_WORKSPACE, Tenant

FILE_SOURCES = (SOURCE_MEMORY, SOURCE_WORKSPACE)


@dataclass
class ContentEntry:
    path: str
    content: str
    updated_at: int
    source: str = ""


class ContentLister(Protocol):
    def list_entries(self, db: Session, tenant: Tenant) -> List[ContentEntry]:
        ...


def is_markdown(path: str) -> bool:
    return path.strip().lower().endswith(".md")


def classify_source(path: str) -> str:
    normalized = normalize_rel_path(path)
    if normalized in ("MEMORY.md", "memory.md") or normalized.startswith("memory/"):
        return SOURCE_MEMORY
    return SOURCE_WORKSPACE


def matches_extra_path(path: str, extra_paths: Sequence[str]) -> bool:
    for extra in extra_paths:
        if is_markdown(extra):
            if path.lower() == extra.lower():
                return True
            continue
        if path == extra or path.startswith(extra + "/"):
            return True
    return False


def is_allowed_memory_path(path: str, extra_paths: Sequence[str]) -> bool:
    return is_markdown(path) or matches_extra_path(normalize_rel_path(path), extra_paths)


def select_eligible(
    entries: Sequence[ContentEntry], config: MemorySearchConfig
) -> Dict[str, Dict[str, ContentEntry]]:
    """Group eligible entries by source, then by path.

    Every enabled file source gets an entry (possibly empty) so that stale chunk
    cleanup still runs for it.
    """
    active: Dict[str, Dict[str, ContentEntry]] = {}
    for entry in entries:
        path = normalize_rel_path(entry.path)
        if not path or not is_markdown(path):
            continue
        source = (entry.source or "").strip().lower() or classify_source(path)
        if source not in FILE_SOURCES:
            continue
        if not config.source_enabled(source) and not matches_extra_path(path, config.extra_paths):
            continue
        active.setdefault(source, {})[path] = ContentEntry(
            path=path,
            content=normalize_newlines(entry.content or ""),
            updated_at=int(entry.updated_at or 0),
            source=source,
        )
    for source in FILE_SOURCES:
        if config.source_enabled(source):
            active.setdefault(source, {})
    return active


class DatabaseContentLister:
    """Notes stored in ``ai_memory_files``."""

    def list_entries(self, db: Session, tenant: Tenant) -> List[ContentEntry]:
        rows = (
            db.query(MemoryFile)
            .filter(
                MemoryFile.bridge_id == tenant.bridge_id,
                MemoryFile.login_id == tenant.login_id,
                MemoryFile.agent_id == tenant.agent_id,
            )
            .order_by(MemoryFile.path)
            .all()
        )
        return [
            ContentEntry(path=row.path, content=row.content, updated_at=row.updated_at, source=row.source)
            for row in rows
        ]

    def read(self, db: Session, tenant: Tenant, path: str) -> Optional[MemoryFile]:
        return db.get(MemoryFile, (tenant.bridge_id, tenant.login_id, tenant.agent_id, path))

    def write(
        self,
        db: Session,
        tenant: Tenant,
        path: str,
        content: str,
        source: Optional[str] = None,
        updated_at: Optional[int] = None,
    ) -> MemoryFile:
        path = normalize_rel_path(path)
        content = normalize_newlines(content)
        row = self.read(db, tenant, path)
        if row is None:
            row = MemoryFile(
                bridge_id=tenant.bridge_id,
                login_id=tenant.login_id,
                agent_id=tenant.agent_id,
                path=path,
            )
            db.add(row)
        row.source = source or classify_source(path)
        row.content = content
        row.hash = hash_text(content)
        row.updated_at = updated_at if updated_at is not None else int(time.time() * 1000)
        db.flush()
        return row

    def write_if_missing(self, db: Session, tenant: Tenant, path: str, content: str = "") -> bool:
        if self.read(db, tenant, normalize_rel_path(path)) is not None:
            return False
        self.write(db, tenant, path, content)
        return True
