"""Tests for the answering pipeline and confidence scoring."""
import pytest

from supportdesk.errors import (
    ConfigurationError,
    ConversationNotFoundError,
    EmbeddingError,
    GenerationError,
)
from supportdesk.engine import build_prompt, score_confidence
from supportdesk.rag.similarity import SearchResult
from tests.conftest import BASE_VECTOR, vector_at

QUESTION = "How long do refunds take?"


def _result(similarity, filename="refunds.md"):
    return SearchResult(
        text="Refunds take 5 days.",
        similarity=similarity,
        filename=filename,
        knowledge_entry_id=1,
        chunk_index=0,
        embedding_id=1,
    )


def _seed_chunk(database, text, vector, filename="refunds.md"):
    entry_id = database.create_entry(filename=filename, content=text, chunks=[text])
    embedding_id = database.insert_embedding(entry_id, 0, text, vector)
    database.link_chunk_embedding(entry_id, 0, embedding_id)
    return entry_id


@pytest.fixture
def conversation(services):
    conversation_id = services.conversations.create_conversation()
    services.conversations.add_message(conversation_id, "user", QUESTION)
    return conversation_id


@pytest.fixture
def routing_calls(services, monkeypatch):
    """Record calls to the agent router."""
    calls = []
    original = services.router.assign

    def assign(conversation_id, category=None):
        calls.append(conversation_id)
        return original(conversation_id, category)

    monkeypatch.setattr(services.router, "assign", assign)
    return calls


async def test_strong_match_answers_without_escalation(
    services, database, backend, conversation, routing_calls
):
    """Test that a 0.82 retrieval match gives 0.9 confidence and no escalation."""
    backend.vectors[QUESTION] = BASE_VECTOR
    _seed_chunk(database, "Refunds are processed within 5 business days.", vector_at(0.82))

    result = await services.engine.query(conversation, QUESTION)

    assert result.confidence == pytest.approx(0.9)
    assert result.needs_human is False
    assert result.cached is False
    assert result.language == "en"
    assert result.sources[0]["filename"] == "refunds.md"
    assert result.sources[0]["similarity"] == pytest.approx(0.82)
    assert routing_calls == []

    conversation_row = database.get_conversation(conversation)
    assert conversation_row["mode"] == "ai"

    # Confident answers are cached in the background
    await services.tasks.drain()
    hit = await services.cache.lookup(QUESTION)
    assert hit is not None
    assert hit.response == backend.answer


async def test_uncertain_answer_without_context_escalates_once(
    services, database, backend, conversation, routing_calls
):
    """Test that no results plus "I don't know" scores 0.3 and escalates once."""
    backend.answer = "I don't know the answer to that."
    database.upsert_agent("agent-1", "Alex", status="online")

    result = await services.engine.query(conversation, QUESTION)

    assert result.confidence == pytest.approx(0.3)
    assert result.needs_human is True
    assert routing_calls == [conversation]

    conversation_row = database.get_conversation(conversation)
    assert conversation_row["mode"] == "human"
    assert conversation_row["status"] == "waiting"
    assert conversation_row["assigned_agent"] == "agent-1"

    # Low-confidence answers are never cached
    await services.tasks.drain()
    assert await services.cache.lookup(QUESTION) is None

    # A second low-confidence answer doesn't escalate again
    await services.engine.query(conversation, QUESTION)
    assert routing_calls == [conversation]


async def test_escalation_survives_routing_failure(
    services, database, backend, conversation, monkeypatch
):
    backend.answer = "I'm not sure."

    def broken_assign(conversation_id, category=None):
        raise RuntimeError("router down")

    monkeypatch.setattr(services.router, "assign", broken_assign)

    result = await services.engine.query(conversation, QUESTION)

    assert result.needs_human is True
    assert database.get_conversation(conversation)["mode"] == "human"


async def test_cache_hit_skips_generation(services, backend, conversation):
    """Test that a cached answer is returned without calling the model."""
    backend.vectors[QUESTION] = BASE_VECTOR
    await services.cache.store(QUESTION, "Cached answer.", 0.9, sources=["refunds.md"])

    result = await services.engine.query(conversation, QUESTION)

    assert result.cached is True
    assert result.answer == "Cached answer."
    assert result.needs_human is False
    assert result.sources == [{"filename": "refunds.md"}]
    assert backend.generate_calls == []


async def test_category_prompt_and_cache_key(services, database, backend):
    """Test that a category prefixes the prompt and namespaces the cache."""
    category_id = database.create_category("Billing", "You handle billing questions only.")
    conversation_id = services.conversations.create_conversation(category_id=category_id)
    category = services.conversations.get_category(conversation_id)

    result = await services.engine.query(conversation_id, QUESTION, category=category)

    assert result.confidence == pytest.approx(0.85)
    assert result.needs_human is False
    assert backend.generate_calls[0]["prompt"].startswith("You handle billing questions only.\n\n")

    await services.tasks.drain()
    assert f"[Billing] {QUESTION}" in backend.embed_calls


async def test_prompt_includes_sources_language_and_page(services, database, backend, conversation):
    backend.vectors["¿Cómo está el reembolso?"] = BASE_VECTOR
    _seed_chunk(database, "Refunds take 5 days.", vector_at(0.5), filename="faq.md")

    result = await services.engine.query(
        conversation, "¿Cómo está el reembolso?", page_context="/orders"
    )

    prompt = backend.generate_calls[0]["prompt"]
    assert result.language == "es"
    assert "Respond in Spanish" in prompt
    assert "Knowledge base:" in prompt
    assert "[Source 1: faq.md]" in prompt
    assert "The customer is currently on page: /orders" in prompt


async def test_history_appends_current_question_once(services, backend, conversation):
    """Test that the question already stored as the last message isn't duplicated."""
    services.conversations.add_message(conversation, "user", "[Sent 2 file(s)]")
    services.conversations.add_message(conversation, "user", QUESTION)

    await services.engine.query(conversation, QUESTION)

    messages = backend.generate_calls[0]["messages"]
    assert messages == [
        {"role": "user", "content": QUESTION},
        {"role": "user", "content": QUESTION},
    ]


async def test_history_adds_question_when_missing(services, backend):
    conversation_id = services.conversations.create_conversation()
    services.conversations.add_message(conversation_id, "user", "Hi")
    services.conversations.add_message(conversation_id, "agent", "Hello!")

    await services.engine.query(conversation_id, QUESTION)

    assert backend.generate_calls[0]["messages"] == [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello!"},
        {"role": "user", "content": QUESTION},
    ]


async def test_answer_is_recorded_in_conversation(services, database, conversation):
    await services.engine.query(conversation, QUESTION)

    messages = database.get_recent_messages(conversation, 10)
    assert messages[-1]["sender"] == "ai"
    assert "confidence" in messages[-1]["metadata"]


async def test_generation_failure_raises_generation_error(services, backend, conversation):
    backend.generate_error = RuntimeError("connection reset")
    with pytest.raises(GenerationError):
        await services.engine.query(conversation, QUESTION)


async def test_embedding_failure_propagates_without_escalating(
    services, database, backend, conversation, routing_calls
):
    """Test that an embedding outage fails the query instead of escalating it."""
    backend.failing_texts.add(QUESTION)
    _seed_chunk(database, "Refunds are processed within 5 business days.", vector_at(0.82))

    with pytest.raises(EmbeddingError):
        await services.engine.query(conversation, QUESTION)

    conversation_row = database.get_conversation(conversation)
    assert conversation_row["mode"] == "ai"
    assert conversation_row["status"] == "active"
    assert routing_calls == []
    assert backend.generate_calls == []


async def test_empty_answer_raises_generation_error(services, backend, conversation):
    backend.answer = "   "
    with pytest.raises(GenerationError):
        await services.engine.query(conversation, QUESTION)


async def test_unconfigured_backend_raises_configuration_error(services, backend, conversation):
    backend.configured = False
    with pytest.raises(ConfigurationError):
        await services.engine.query(conversation, QUESTION)


async def test_unknown_conversation_rejected(services):
    with pytest.raises(ConversationNotFoundError):
        await services.engine.query("missing", QUESTION)


@pytest.mark.parametrize(
    "similarities,answer,has_category,expected",
    [
        ([], "Refunds take 5 days.", False, 0.5),
        ([], "Refunds take 5 days.", True, 0.85),
        ([0.82], "Refunds take 5 days.", False, 0.9),
        ([0.71, 0.3], "Refunds take 5 days.", True, 0.9),
        ([0.5], "Refunds take 5 days.", False, 0.8),
        ([0.5], "Refunds take 5 days.", True, 0.85),
        ([0.3, 0.25, 0.22], "Refunds take 5 days.", False, 0.7),
        ([0.3, 0.25], "Refunds take 5 days.", False, 0.5),
        ([], "I don't know.", False, 0.3),
        ([0.82], "I'm not sure, but no information was found.", False, 0.7),
        ([], "I don't have that information in our knowledge base.", True, 0.65),
    ],
)
def test_score_confidence(similarities, answer, has_category, expected):
    results = [_result(s) for s in similarities]
    assert score_confidence(results, answer, has_category) == pytest.approx(expected)


@pytest.mark.parametrize("similarity", [-1.0, 0.0, 0.39, 0.4, 0.7, 0.71, 1.0])
@pytest.mark.parametrize("answer", ["Sure.", "I don't know"])
@pytest.mark.parametrize("has_category", [True, False])
def test_confidence_stays_in_bounds(similarity, answer, has_category):
    confidence = score_confidence([_result(similarity)], answer, has_category)
    assert 0.3 <= confidence <= 1.0


def test_build_prompt_without_context():
    prompt = build_prompt("en", [])
    assert "Respond in English" in prompt
    assert "Knowledge base:" not in prompt
