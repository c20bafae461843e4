import math

import pytest

from agentmem.services.memory.keyword import bm25_rank_to_score, build_fts_query, query_tokens
from agentmem.services.memory.sql import SQLBuilder, apply_chunk_scope
from agentmem.services.memory.vector import cosine_similarity
from tests.fakes import TENANT


def test_builder_binds_named_parameters():
    builder = SQLBuilder("SELECT id FROM ai_memory_chunks c")
    builder.where("c.path = ?", "MEMORY.md").where_in("c.source", ["memory", "workspace"])
    builder.tail("LIMIT ?", 5)

    assert builder.sql == (
        "SELECT id FROM ai_memory_chunks c WHERE c.path = :p0 AND c.source IN (:p1, :p2) LIMIT :p3"
    )
    assert builder.params == {"p0": "MEMORY.md", "p1": "memory", "p2": "workspace", "p3": 5}


def test_builder_rejects_placeholder_mismatch():
    with pytest.raises(ValueError):
        SQLBuilder("SELECT 1").where("a = ? AND b = ?", 1)


def test_empty_in_list_matches_nothing():
    builder = SQLBuilder("SELECT 1 FROM t").where_in("source", [])
    assert builder.sql == "SELECT 1 FROM t WHERE 1 = 0"


def test_chunk_scope_filters_tenant_model_and_generation():
    builder = apply_chunk_scope(
        SQLBuilder("SELECT c.id FROM ai_memory_chunks c"),
        "c",
        TENANT,
        "fake-embed",
        generation="gen1",
        sources=["memory"],
        path_prefix="memory",
    )

    assert "c.id LIKE" in builder.sql
    assert "gen1:%" in builder.params.values()
    assert "memory/%" in builder.params.values()
    assert builder.params["p0"] == TENANT.bridge_id


def test_fts_query_quotes_every_token():
    assert build_fts_query("deploy, the API!") == '"deploy" AND "the" AND "API"'
    assert build_fts_query("  ?! ") == ""
    assert query_tokens("foo-bar_baz 42") == ["foo", "bar_baz", "42"]


def test_bm25_rank_maps_to_unit_interval():
    assert bm25_rank_to_score(0.0) == 1.0
    assert bm25_rank_to_score(-4.2) == 1.0
    assert bm25_rank_to_score(1.0) == 0.5
    assert bm25_rank_to_score(3.0) < bm25_rank_to_score(1.0)
    assert bm25_rank_to_score(float("nan")) == pytest.approx(0.001)


def test_cosine_similarity_of_zero_vectors_is_zero():
    assert cosine_similarity([0.0, 0.0], [0.0, 0.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0
    assert cosine_similarity([], [1.0]) == 0.0


def test_cosine_similarity():
    assert cosine_similarity([1.0, 2.0], [2.0, 4.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 1.0], [1.0, 0.0]) == pytest.approx(1 / math.sqrt(2))
