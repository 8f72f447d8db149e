"""Tests for the semantic response cache."""
from datetime import timedelta

import pytest

from supportdesk.db import utcnow
from supportdesk.rag.embedder import EmbeddingGenerator
from supportdesk.rag.response_cache import ResponseCache
from tests.conftest import BASE_VECTOR, vector_at

STORED_QUESTION = "What are your business hours?"


@pytest.fixture
def cache(database, backend):
    backend.vectors[STORED_QUESTION] = BASE_VECTOR
    return ResponseCache(EmbeddingGenerator(backend, database), database)


async def test_similar_question_hits_cache(cache, database, backend):
    """Test that a question at 0.80 similarity returns the cached answer."""
    cache_id = await cache.store(STORED_QUESTION, "9am to 5pm.", 0.9, sources=["hours.md"])
    backend.vectors["What time are you open?"] = vector_at(0.80)

    assert database.get_cached_response(cache_id)["hit_count"] == 0

    hit = await cache.lookup("What time are you open?")

    assert hit is not None
    assert hit.response == "9am to 5pm."
    assert hit.confidence == 0.9
    assert hit.sources == ["hours.md"]
    assert hit.similarity == pytest.approx(0.80)
    assert database.get_cached_response(cache_id)["hit_count"] == 1


async def test_dissimilar_question_misses(cache, database, backend):
    """Test that a question below 0.75 similarity is a miss."""
    cache_id = await cache.store(STORED_QUESTION, "9am to 5pm.", 0.9)
    backend.vectors["How do I reset my password?"] = vector_at(0.70)

    assert await cache.lookup("How do I reset my password?") is None
    assert database.get_cached_response(cache_id)["hit_count"] == 0


async def test_hit_at_exact_threshold(database, backend):
    """Test that a similarity of exactly 0.75 counts as a hit."""
    # cos([1, 0, 0, 0, 0], [3, 2, 1, 1, 1]) == 3 / (1 * 4) with no rounding
    backend.vectors[STORED_QUESTION] = [1.0, 0.0, 0.0, 0.0, 0.0]
    backend.vectors["When do you open?"] = [3.0, 2.0, 1.0, 1.0, 1.0]
    cache = ResponseCache(EmbeddingGenerator(backend, database), database)
    await cache.store(STORED_QUESTION, "9am to 5pm.", 0.9)

    hit = await cache.lookup("When do you open?")

    assert hit is not None
    assert hit.similarity == 0.75


async def test_best_match_wins(cache, backend):
    backend.vectors["close"] = vector_at(0.95)
    await cache.store(STORED_QUESTION, "base answer", 0.9)
    await cache.store("close", "close answer", 0.9)
    backend.vectors["query"] = vector_at(0.96)

    hit = await cache.lookup("query")
    assert hit.response == "close answer"


async def test_low_confidence_answers_not_stored(cache, database):
    assert await cache.store(STORED_QUESTION, "Maybe?", 0.5) is None
    assert database.get_recent_cached_responses(limit=10, since=utcnow() - timedelta(days=1)) == []


async def test_expired_entries_invisible_and_purged(database, backend):
    """Test that entries older than the TTL are ignored and removable."""
    backend.vectors[STORED_QUESTION] = BASE_VECTOR
    now = [utcnow()]
    cache = ResponseCache(
        EmbeddingGenerator(backend, database),
        database,
        ttl=timedelta(days=7),
        clock=lambda: now[0],
    )
    await cache.store(STORED_QUESTION, "9am to 5pm.", 0.9)

    now[0] += timedelta(days=8)

    assert await cache.lookup(STORED_QUESTION) is None
    assert cache.purge_expired() == 1


async def test_lookup_failure_is_a_miss(cache, backend):
    """Test that backend errors during lookup are swallowed."""
    await cache.store(STORED_QUESTION, "9am to 5pm.", 0.9)
    backend.failing_texts.add("anything")
    assert await cache.lookup("anything") is None


async def test_store_failure_returns_none(cache, backend):
    backend.failing_texts.add(STORED_QUESTION)
    assert await cache.store(STORED_QUESTION, "9am to 5pm.", 0.9) is None


async def test_empty_cache_misses(cache):
    assert await cache.lookup(STORED_QUESTION) is None
