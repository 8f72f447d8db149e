"""Tests for cosine similarity and the linear scan index."""
import pytest

from supportdesk.errors import DimensionMismatchError
from supportdesk.rag.similarity import LinearScanIndex, cosine_similarity
from tests.conftest import BASE_VECTOR, vector_at


def test_identical_vectors_score_one():
    """Test that a vector is perfectly similar to itself."""
    assert cosine_similarity([0.3, 0.4, 0.5], [0.3, 0.4, 0.5]) == pytest.approx(1.0)


def test_similarity_is_symmetric():
    """Test that argument order doesn't matter."""
    a, b = [1.0, 2.0, 3.0], [-2.0, 0.5, 4.0]
    assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))


def test_opposite_vectors_score_minus_one():
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)


def test_zero_vector_scores_zero():
    """Test that a zero-magnitude vector is not similar to anything."""
    assert cosine_similarity([0.0, 0.0, 0.0], [1.0, 2.0, 3.0]) == 0.0


def test_dimension_mismatch_raises():
    """Test that vectors of different length are rejected."""
    with pytest.raises(DimensionMismatchError):
        cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])


def _add_entry(database, filename, vectors):
    texts = [f"{filename} chunk {i}" for i in range(len(vectors))]
    entry_id = database.create_entry(filename=filename, content=" ".join(texts), chunks=texts)
    for index, (text, vector) in enumerate(zip(texts, vectors)):
        embedding_id = database.insert_embedding(entry_id, index, text, vector)
        database.link_chunk_embedding(entry_id, index, embedding_id)
    return entry_id


async def test_results_ranked_by_similarity(database):
    """Test that the scan returns the closest chunks first."""
    _add_entry(database, "low.md", [vector_at(0.3)])
    _add_entry(database, "high.md", [vector_at(0.9)])
    _add_entry(database, "mid.md", [vector_at(0.6)])

    results = await LinearScanIndex(database).query(BASE_VECTOR, top_k=5, min_similarity=0.0)

    assert [r.filename for r in results] == ["high.md", "mid.md", "low.md"]
    assert results[0].similarity == pytest.approx(0.9)


async def test_top_k_and_min_similarity_applied(database):
    _add_entry(database, "a.md", [vector_at(0.9), vector_at(0.8), vector_at(0.7), vector_at(0.1)])

    results = await LinearScanIndex(database).query(BASE_VECTOR, top_k=2, min_similarity=0.5)
    assert [round(r.similarity, 2) for r in results] == [0.9, 0.8]

    results = await LinearScanIndex(database).query(BASE_VECTOR, top_k=10, min_similarity=0.5)
    assert len(results) == 3


async def test_equal_scores_keep_insertion_order(database):
    """Test that ties are returned in storage order."""
    _add_entry(database, "first.md", [vector_at(0.5)])
    _add_entry(database, "second.md", [vector_at(0.5)])

    results = await LinearScanIndex(database).query(BASE_VECTOR, top_k=2, min_similarity=0.0)
    assert [r.filename for r in results] == ["first.md", "second.md"]


async def test_inactive_entries_excluded(database):
    """Test that deleted entries never show up in search results."""
    kept = _add_entry(database, "kept.md", [vector_at(0.6)])
    deleted = _add_entry(database, "deleted.md", [vector_at(0.99)])
    database.deactivate_entry(deleted)

    results = await LinearScanIndex(database).query(BASE_VECTOR, top_k=5, min_similarity=0.0)

    assert [r.knowledge_entry_id for r in results] == [kept]


async def test_empty_knowledge_base_returns_nothing(database):
    assert await LinearScanIndex(database).query(BASE_VECTOR, top_k=5, min_similarity=0.0) == []
