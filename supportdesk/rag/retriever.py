"""Semantic retrieval over the knowledge base.

Handles:
- Query embedding generation
- Ranking through a VectorIndex
- Formatting retrieved chunks as prompt context
"""
from typing import List, Optional
import structlog

from supportdesk.rag.embedder import EmbeddingGenerator
from supportdesk.rag.similarity import SearchResult, VectorIndex

logger = structlog.get_logger()

DEFAULT_TOP_K = 5
DEFAULT_MIN_SIMILARITY = 0.3


class Retriever:
    """Semantic retriever for the answering pipeline."""

    def __init__(self, embedder: EmbeddingGenerator, index: VectorIndex):
        """Initialize the retriever.

        Args:
            embedder: Generator used to embed queries
            index: Index that ranks stored vectors
        """
        self.embedder = embedder
        self.index = index

    async def search(
        self,
        query: str,
        top_k: int = DEFAULT_TOP_K,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ) -> List[SearchResult]:
        """Retrieve the chunks most similar to a query.

        Args:
            query: User query text
            top_k: Maximum number of results
            min_similarity: Results below this cosine similarity are dropped

        Returns:
            SearchResult objects, best first

        Raises:
            ValueError: If the query is empty
            ConfigurationError: If the embedding backend is not configured
            EmbeddingError: If the query cannot be embedded
        """
        if not query or not query.strip():
            raise ValueError("Query must be a non-empty string")

        logger.info("retrieval_started", query_length=len(query), top_k=top_k)

        query_vector = await self.embedder.embed_one(query)
        results = await self.index.query(query_vector, top_k, min_similarity)

        logger.info(
            "retrieval_completed",
            results_returned=len(results),
            top_similarity=round(results[0].similarity, 3) if results else None,
        )

        return results


def format_context(results: List[SearchResult], max_chars: Optional[int] = None) -> str:
    """Render retrieved chunks as a knowledge base block for the prompt."""
    if not results:
        return ""

    parts = ["Knowledge base:\n"]
    total_chars = len(parts[0])

    for i, result in enumerate(results, 1):
        block = f"[Source {i}: {result.filename}]\n{result.text.strip()}\n"
        if max_chars is not None and total_chars + len(block) > max_chars:
            break
        parts.append(block)
        total_chars += len(block)

    return "\n".join(parts)
