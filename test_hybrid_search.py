import pytest

from conftest import unit, vec
from hybrid_search import (
    HybridRetrieval,
    fuse_results,
    normalize_bm25,
    sanitize_fts_query,
)
from memory_config import HybridSettings
from memory_store import MESSAGES


def _index(store, message_id, conversation_id, role, text, vector):
    store.add_message(conversation_id, role, text, message_id=message_id)
    store.add_vector(MESSAGES, message_id, conversation_id, text, vector, role=role)


def test_sanitize_fts_query_quotes_and_or_joins_tokens() -> None:
    assert sanitize_fts_query("what's my GPU?") == '"what" OR "s" OR "my" OR "GPU"'
    assert sanitize_fts_query('"; DROP TABLE x --') == '"DROP" OR "TABLE" OR "x"'


def test_sanitize_fts_query_never_returns_empty() -> None:
    assert sanitize_fts_query("") == '"memory"'
    assert sanitize_fts_query("?!*") == '"memory"'


def test_normalize_bm25_scales_by_largest_magnitude() -> None:
    rows = [{"owner_id": "a", "score": -4.0}, {"owner_id": "b", "score": -1.0}]
    assert normalize_bm25(rows) == {"a": 1.0, "b": 0.25}
    assert normalize_bm25([{"owner_id": "z", "score": 0.0}]) == {"z": 0.0}
    assert normalize_bm25([]) == {}


def test_fuse_results_is_weighted_sum_sorted_descending() -> None:
    vector_rows = [
        {"owner_id": "a", "similarity": 0.9, "text": "A", "role": "user", "group_id": "c1"},
        {"owner_id": "b", "similarity": 0.5, "text": "B", "role": "user", "group_id": "c1"},
    ]
    keyword_rows = [
        {"owner_id": "b", "score": -4.0, "text": "B", "role": "user", "group_id": "c1"},
        {"owner_id": "c", "score": -2.0, "text": "C", "role": "assistant", "group_id": "c2"},
    ]

    hits = fuse_results(vector_rows, keyword_rows, limit=10)

    assert [h.id for h in hits] == ["b", "a", "c"]
    assert [h.source for h in hits] == ["hybrid", "vector", "bm25"]
    for hit in hits:
        assert hit.score == pytest.approx(0.6 * hit.vector_score + 0.4 * hit.bm25_score)
    assert hits[0].score == pytest.approx(0.7)
    assert hits[2].role == "assistant"
    assert [h.score for h in hits] == sorted((h.score for h in hits), reverse=True)


def test_fuse_results_honours_limit_and_weights() -> None:
    vector_rows = [{"owner_id": "a", "similarity": 1.0}]
    keyword_rows = [{"owner_id": "b", "score": -3.0}]

    hits = fuse_results(vector_rows, keyword_rows, limit=1, vector_weight=0.2, bm25_weight=0.8)

    assert [h.id for h in hits] == ["b"]
    assert hits[0].score == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_rare_keyword_surfaces_through_bm25_only(store, embedder) -> None:
    _index(store, "m1", "conv-1", "user", "the zephyrine codename opens the vault", unit(5))
    _index(store, "m2", "conv-1", "assistant", "dinner is at eight", unit(6))
    embedder.add("zephyrine", unit(0))
    retrieval = HybridRetrieval(store, embedder)

    hits = await retrieval.hybrid_search("zephyrine")

    assert [h.id for h in hits] == ["m1"]
    assert hits[0].source == "bm25"
    assert hits[0].vector_score == 0.0
    assert hits[0].score == pytest.approx(0.4)


@pytest.mark.asyncio
async def test_vector_match_without_shared_words(store, embedder) -> None:
    _index(store, "m1", "conv-1", "user", "my canine companion loves the beach", unit(0))
    embedder.add("dog", unit(0))
    retrieval = HybridRetrieval(store, embedder)

    hits = await retrieval.hybrid_search("dog")

    assert [h.id for h in hits] == ["m1"]
    assert hits[0].source == "vector"
    assert hits[0].score == pytest.approx(0.6, abs=1e-5)


@pytest.mark.asyncio
async def test_hits_from_both_sides_are_tagged_hybrid(store, embedder) -> None:
    _index(store, "m1", "conv-1", "user", "my dog loves the beach", unit(0))
    _index(store, "m2", "conv-1", "user", "the weather was cold", unit(3))
    embedder.add("dog", vec(0.8, 0.6))
    retrieval = HybridRetrieval(store, embedder)

    hits = await retrieval.hybrid_search("dog")

    assert hits[0].id == "m1"
    assert hits[0].source == "hybrid"
    assert hits[0].score == pytest.approx(0.6 * 0.8 + 0.4 * 1.0, abs=1e-5)


@pytest.mark.asyncio
async def test_current_conversation_is_excluded(store, embedder) -> None:
    _index(store, "m1", "current", "user", "my dog loves the beach", unit(0))
    _index(store, "m2", "older", "user", "my dog hates the rain", unit(0))
    embedder.add("dog", unit(0))
    retrieval = HybridRetrieval(store, embedder)

    hits = await retrieval.hybrid_search("dog", exclude_group_id="current")

    assert [h.id for h in hits] == ["m2"]
    assert hits[0].group_id == "older"


@pytest.mark.asyncio
async def test_embedding_outage_degrades_to_keyword_ranking(store, embedder) -> None:
    _index(store, "m1", "conv-1", "user", "dog dog dog at the park", unit(0))
    _index(store, "m2", "conv-1", "user", "a dog at home", unit(0))
    embedder.available = False
    retrieval = HybridRetrieval(store, embedder)

    hits = await retrieval.hybrid_search("dog")

    assert {h.id for h in hits} == {"m1", "m2"}
    assert all(h.source == "bm25" for h in hits)
    assert hits[0].id == "m1"


@pytest.mark.asyncio
async def test_vector_threshold_filters_weak_matches(store, embedder) -> None:
    _index(store, "m1", "conv-1", "user", "completely unrelated text", vec(0.3, 0.954))
    embedder.add("query", unit(0))
    retrieval = HybridRetrieval(store, embedder, HybridSettings(vector_threshold=0.4))

    assert await retrieval.hybrid_search("query") == []
    loose = await retrieval.hybrid_search("query", vector_threshold=0.2)
    assert [h.id for h in loose] == ["m1"]


@pytest.mark.asyncio
async def test_empty_query_does_not_raise(store, embedder) -> None:
    _index(store, "m1", "conv-1", "user", "notes about memory systems", unit(0))
    retrieval = HybridRetrieval(store, embedder)

    hits = await retrieval.hybrid_search("")

    assert [h.id for h in hits] == ["m1"]
    assert hits[0].source == "bm25"
