"""Semantic response cache.

Previously generated answers are looked up by similarity between question
embeddings. The cache only saves work: every failure is logged and treated
as a miss or a no-op so the answering path never depends on it.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence
import structlog

from supportdesk import config
from supportdesk.db import Database, utcnow
from supportdesk.rag.embedder import EmbeddingGenerator
from supportdesk.rag.similarity import cosine_similarity

logger = structlog.get_logger()


@dataclass
class CacheHit:
    """A cached answer returned for a similar question."""

    response: str
    confidence: float
    similarity: float
    sources: List[str] = field(default_factory=list)
    cache_id: Optional[int] = None


class ResponseCache:
    """Stores answers keyed by question vectors, with a fixed time-to-live."""

    def __init__(
        self,
        embedder: EmbeddingGenerator,
        database: Database,
        similarity_threshold: float = None,
        window: int = None,
        ttl: timedelta = None,
        min_confidence: float = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.embedder = embedder
        self.database = database
        self.similarity_threshold = (
            config.CACHE_SIMILARITY_THRESHOLD
            if similarity_threshold is None
            else similarity_threshold
        )
        self.window = window or config.CACHE_WINDOW
        self.ttl = ttl or timedelta(seconds=config.CACHE_TTL_SECONDS)
        self.min_confidence = (
            config.CACHE_MIN_CONFIDENCE if min_confidence is None else min_confidence
        )
        self.clock = clock

    async def lookup(self, question: str) -> Optional[CacheHit]:
        """Find a cached answer for a semantically similar question.

        Returns:
            CacheHit if the best match reaches the similarity threshold, else None
        """
        try:
            question_vector = await self.embedder.embed_one(question)

            entries = self.database.get_recent_cached_responses(
                limit=self.window,
                since=self.clock() - self.ttl,
            )
            if not entries:
                return None

            best_match = None
            best_similarity = 0.0
            for entry in entries:
                similarity = cosine_similarity(question_vector, entry["question_vector"])
                if similarity > best_similarity:
                    best_similarity = similarity
                    best_match = entry

            if best_match is not None and best_similarity >= self.similarity_threshold:
                self.database.increment_cache_hit(best_match["id"])
                logger.info(
                    "cache_hit",
                    similarity=round(best_similarity, 3),
                    cache_id=best_match["id"],
                    question_preview=question[:50],
                )
                return CacheHit(
                    response=best_match["response"],
                    confidence=best_match["confidence"],
                    similarity=best_similarity,
                    sources=best_match["sources"],
                    cache_id=best_match["id"],
                )

            logger.info(
                "cache_miss",
                best_similarity=round(best_similarity, 3),
                question_preview=question[:50],
            )
            return None

        except Exception as e:
            logger.error("cache_lookup_failed", error=str(e), error_type=type(e).__name__)
            return None

    async def store(
        self,
        question: str,
        response: str,
        confidence: float,
        sources: Optional[List[str]] = None,
        question_vector: Optional[Sequence[float]] = None,
    ) -> Optional[int]:
        """Cache an answer.

        Answers below the minimum confidence are not cached.

        Returns:
            ID of the cache entry, or None if nothing was stored
        """
        if confidence < self.min_confidence:
            logger.debug("cache_store_skipped_low_confidence", confidence=confidence)
            return None

        try:
            if question_vector is None:
                question_vector = await self.embedder.embed_one(question)
            cache_id = self.database.insert_cached_response(
                question=question,
                question_vector=question_vector,
                response=response,
                confidence=confidence,
                sources=sources or [],
                created_at=self.clock(),
            )
            logger.info("cache_stored", cache_id=cache_id, question_preview=question[:50])
            return cache_id

        except Exception as e:
            logger.error("cache_store_failed", error=str(e), error_type=type(e).__name__)
            return None

    def purge_expired(self) -> int:
        """Delete entries past their time-to-live."""
        try:
            deleted = self.database.delete_cached_responses_before(self.clock() - self.ttl)
            logger.info("cache_purged", deleted=deleted)
            return deleted
        except Exception as e:
            logger.error("cache_purge_failed", error=str(e))
            return 0
