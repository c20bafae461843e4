"""
Parameterized SQL builder for the raw queries the ORM cannot express
(FTS5 MATCH, sqlite-vec distance functions, generation prefix filters).

Fragments are written with ``?`` placeholders; each one is rewritten to a
uniquely named bind parameter so callers never count placeholders by hand.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.sql.elements import TextClause

from agentmem.services.memory.types import Tenant


class SQLBuilder:
    def __init__(self, select: str, *values: Any):
        self.params: Dict[str, Any] = {}
        self._head = self._bind_fragment(select, values)
        self._conditions: List[str] = []
        self._tail: List[str] = []

    def bind(self, value: Any) -> str:
        name = f"p{len(self.params)}"
        self.params[name] = value
        return f":{name}"

    def _bind_fragment(self, fragment: str, values: Sequence[Any]) -> str:
        pieces = fragment.split("?")
        if len(pieces) - 1 != len(values):
            raise ValueError(
                f"placeholder count mismatch: {len(pieces) - 1} placeholders, {len(values)} values"
            )
        out = [pieces[0]]
        for value, piece in zip(values, pieces[1:]):
            out.append(self.bind(value))
            out.append(piece)
        return "".join(out)

    def where(self, clause: str, *values: Any) -> "SQLBuilder":
        self._conditions.append(self._bind_fragment(clause, values))
        return self

    def where_in(self, column: str, values: Iterable[Any]) -> "SQLBuilder":
        items = list(values)
        if not items:
            self._conditions.append("1 = 0")
            return self
        placeholders = ", ".join(self.bind(value) for value in items)
        self._conditions.append(f"{column} IN ({placeholders})")
        return self

    def tail(self, fragment: str, *values: Any) -> "SQLBuilder":
        self._tail.append(self._bind_fragment(fragment, values))
        return self

    @property
    def sql(self) -> str:
        parts = [self._head]
        if self._conditions:
            parts.append("WHERE " + " AND ".join(self._conditions))
        parts.extend(self._tail)
        return " ".join(parts)

    def statement(self) -> TextClause:
        return text(self.sql)


def apply_chunk_scope(
    builder: SQLBuilder,
    alias: str,
    tenant: Tenant,
    model: str,
    generation: str = "",
    sources: Optional[Sequence[str]] = None,
    path_prefix: str = "",
) -> SQLBuilder:
    """Restrict ``alias`` (a chunk or FTS table) to one tenant, model and generation."""
    builder.where(f"{alias}.bridge_id = ?", tenant.bridge_id)
    builder.where(f"{alias}.login_id = ?", tenant.login_id)
    builder.where(f"{alias}.agent_id = ?", tenant.agent_id)
    builder.where(f"{alias}.model = ?", model)
    if generation:
        builder.where(f"{alias}.id LIKE ?", generation_prefix_pattern(generation))
    if sources is not None:
        builder.where_in(f"{alias}.source", sources)
    if path_prefix:
        # exact, case-sensitive prefix match
        builder.where(
            f"({alias}.path = ? OR substr({alias}.path, 1, ?) = ?)",
            path_prefix,
            len(path_prefix) + 1,
            path_prefix + "/",
        )
    return builder


def generation_prefix_pattern(generation: str) -> str:
    return f"{generation}:%"


def escape_like(value: str) -> str:
    """Escape LIKE wildcards; pair with ``ESCAPE '\\'``."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
