"""Answering pipeline with confidence scoring and human escalation.

A question goes through the semantic cache, then retrieval, prompt assembly
and generation. The answer is scored; low-confidence answers hand the
conversation to the human queue and high-confidence ones are cached.
"""
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import structlog

from supportdesk import config
from supportdesk.errors import ConfigurationError, GenerationError
from supportdesk.language import detect_language, language_name
from supportdesk.llm_client import ModelBackend
from supportdesk.memory import ConversationManager
from supportdesk.rag.response_cache import ResponseCache
from supportdesk.rag.retriever import Retriever, format_context
from supportdesk.rag.similarity import SearchResult
from supportdesk.routing import AgentRouter
from supportdesk.tasks import BackgroundTasks

logger = structlog.get_logger()

BASELINE_CONFIDENCE = 0.5
CATEGORY_CONFIDENCE = 0.85
STRONG_MATCH_CONFIDENCE = 0.9
MODERATE_MATCH_CONFIDENCE = 0.8
WEAK_MATCHES_CONFIDENCE = 0.7
UNCERTAINTY_PENALTY = 0.2
MIN_CONFIDENCE = 0.3

UNCERTAINTY_PATTERNS = [
    re.compile(r"i don't know", re.IGNORECASE),
    re.compile(r"not sure", re.IGNORECASE),
    re.compile(r"uncertain", re.IGNORECASE),
    re.compile(r"can't find", re.IGNORECASE),
    re.compile(r"no information", re.IGNORECASE),
    re.compile(r"don't have that information", re.IGNORECASE),
]

SYSTEM_PREAMBLE = """You are a helpful customer support assistant. Answer questions ONLY based on the provided knowledge base context. If the knowledge base doesn't contain the answer, say "I don't have that information in our knowledge base. Let me connect you with a team member who can help." Do NOT make up product names, features, or details that are not in the knowledge base. Respond in {language}.

Rules:
- Only use facts from the knowledge base context below
- If no context is provided or it doesn't answer the question, say you don't have that information
- Never repeat the customer's personal information (name, phone, email)
- Keep answers short: 2-3 sentences unless the customer asks for detail
- Use bullet points only when listing 3 or more items"""


@dataclass
class QueryResult:
    """Answer returned to the customer along with how it was produced."""

    answer: str
    confidence: float
    needs_human: bool
    sources: List[Dict[str, Any]] = field(default_factory=list)
    cached: bool = False
    language: Optional[str] = None


def score_confidence(results: List[SearchResult], answer: str, has_category: bool) -> float:
    """Estimate how trustworthy a generated answer is.

    Args:
        results: Retrieved chunks the answer was grounded on
        answer: Generated answer text
        has_category: Whether an operator-curated category prompt was used

    Returns:
        Confidence in [0.3, 1.0]
    """
    confidence = CATEGORY_CONFIDENCE if has_category else BASELINE_CONFIDENCE

    if results:
        best = max(r.similarity for r in results)
        if best > 0.7:
            confidence = STRONG_MATCH_CONFIDENCE
        elif best >= 0.4:
            confidence = max(confidence, MODERATE_MATCH_CONFIDENCE)
        elif len(results) >= 3:
            confidence = max(confidence, WEAK_MATCHES_CONFIDENCE)

    if any(pattern.search(answer) for pattern in UNCERTAINTY_PATTERNS):
        confidence = max(MIN_CONFIDENCE, confidence - UNCERTAINTY_PENALTY)

    return confidence


def build_prompt(
    language: str,
    results: List[SearchResult],
    category_prompt: Optional[str] = None,
    page_context: Optional[str] = None,
) -> str:
    """Assemble the system prompt for a customer question."""
    prompt = SYSTEM_PREAMBLE.format(language=language_name(language))

    context = format_context(results)
    if context:
        prompt += f"\n\n{context}"

    if page_context:
        prompt += f"\n\nThe customer is currently on page: {page_context}"

    if category_prompt:
        prompt = f"{category_prompt}\n\n{prompt}"

    return prompt


class ConfidenceEngine:
    """Answers customer questions and decides when a human must step in."""

    def __init__(
        self,
        retriever: Retriever,
        cache: ResponseCache,
        backend: ModelBackend,
        conversations: ConversationManager,
        router: AgentRouter,
        tasks: BackgroundTasks,
        escalation_threshold: float = None,
        top_k: int = None,
        min_similarity: float = None,
    ):
        self.retriever = retriever
        self.cache = cache
        self.backend = backend
        self.conversations = conversations
        self.router = router
        self.tasks = tasks
        self.escalation_threshold = (
            config.ESCALATION_THRESHOLD if escalation_threshold is None else escalation_threshold
        )
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.min_similarity = (
            config.RETRIEVAL_MIN_SIMILARITY if min_similarity is None else min_similarity
        )

    async def _retrieve(self, question: str) -> List[SearchResult]:
        try:
            return await self.retriever.search(
                question, top_k=self.top_k, min_similarity=self.min_similarity
            )
        except Exception as e:
            logger.error("rag_retrieval_failed", error=str(e), error_type=type(e).__name__)
            raise

    def _history(self, conversation_id: str, question: str) -> List[Dict[str, str]]:
        messages = self.conversations.format_history(conversation_id)
        if not messages or messages[-1] != {"role": "user", "content": question}:
            messages.append({"role": "user", "content": question})
        return messages

    async def _generate(self, prompt: str, messages: List[Dict[str, str]]) -> str:
        try:
            answer = await self.backend.generate(prompt, messages)
        except (ConfigurationError, GenerationError):
            raise
        except Exception as e:
            raise GenerationError(f"Generation failed: {e}") from e

        if not answer or not answer.strip():
            raise GenerationError("Empty response from model backend")
        return answer

    def _escalate(self, conversation_id: str, category_name: Optional[str]) -> None:
        transition = self.conversations.escalate(conversation_id)
        if not transition.changed:
            return

        try:
            assignment = self.router.assign(conversation_id, category_name)
        except Exception as e:
            logger.error(
                "agent_routing_failed",
                conversation_id=conversation_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        if assignment is None:
            logger.info("escalated_without_agent", conversation_id=conversation_id)

    async def query(
        self,
        conversation_id: str,
        question: str,
        category: Optional[Dict[str, Any]] = None,
        page_context: Optional[str] = None,
    ) -> QueryResult:
        """Answer a customer question within a conversation.

        Args:
            conversation_id: Conversation the question belongs to
            question: Customer question
            category: Workflow category ({"name", "prompt"}) attached to the conversation
            page_context: Page the customer is currently viewing

        Returns:
            QueryResult with the answer and escalation decision

        Raises:
            ConfigurationError: If the model backend is not configured
            ConversationNotFoundError: If the conversation doesn't exist
            EmbeddingError: If the question cannot be embedded for retrieval
            GenerationError: If the model backend fails to produce an answer
        """
        started = time.monotonic()
        self.conversations.get_conversation(conversation_id)
        category_name = category.get("name") if category else None
        cache_key = f"[{category_name}] {question}" if category_name else question

        hit = await self.cache.lookup(cache_key)
        if hit is not None:
            self.conversations.add_message(
                conversation_id,
                "ai",
                hit.response,
                metadata={
                    "confidence": hit.confidence,
                    "sources": hit.sources,
                    "cached": True,
                    "cache_similarity": hit.similarity,
                },
            )
            logger.info(
                "query_answered_from_cache",
                conversation_id=conversation_id,
                similarity=round(hit.similarity, 3),
            )
            return QueryResult(
                answer=hit.response,
                confidence=hit.confidence,
                needs_human=False,
                sources=[{"filename": source} for source in hit.sources],
                cached=True,
            )

        language = detect_language(question)
        results = await self._retrieve(question)

        category_prompt = category.get("prompt") if category else None
        prompt = build_prompt(language, results, category_prompt, page_context)
        messages = self._history(conversation_id, question)

        answer = await self._generate(prompt, messages)

        confidence = score_confidence(results, answer, has_category=bool(category_prompt))
        needs_human = confidence < self.escalation_threshold
        filenames = [r.filename for r in results]

        self.conversations.add_message(
            conversation_id,
            "ai",
            answer,
            metadata={"confidence": confidence, "sources": filenames, "language": language},
        )

        if needs_human:
            logger.info(
                "low_confidence_escalation",
                conversation_id=conversation_id,
                confidence=round(confidence, 2),
            )
            self._escalate(conversation_id, category_name)

        if confidence >= self.cache.min_confidence:
            self.tasks.spawn(
                self.cache.store(cache_key, answer, confidence, sources=filenames),
                name="cache_store",
            )

        logger.info(
            "query_answered",
            conversation_id=conversation_id,
            confidence=round(confidence, 2),
            needs_human=needs_human,
            sources=len(results),
            language=language,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

        return QueryResult(
            answer=answer,
            confidence=confidence,
            needs_human=needs_human,
            sources=[{"filename": r.filename, "similarity": r.similarity} for r in results],
            cached=False,
            language=language,
        )
