"""Vector similarity and the index interface used by retrieval.

``LinearScanIndex`` compares the query against every searchable embedding.
An approximate nearest-neighbour index can replace it by implementing
``VectorIndex.query`` with the same result ordering.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence
import numpy as np
import structlog

from supportdesk.db import Database
from supportdesk.errors import DimensionMismatchError

logger = structlog.get_logger()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors, in [-1, 1].

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        DimensionMismatchError: If the vectors differ in length
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))

    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)

    magnitude_a = np.linalg.norm(vec_a)
    magnitude_b = np.linalg.norm(vec_b)
    if magnitude_a == 0 or magnitude_b == 0:
        return 0.0

    return float(np.dot(vec_a, vec_b) / (magnitude_a * magnitude_b))


@dataclass
class SearchResult:
    """A retrieved chunk and how close it is to the query."""

    text: str
    similarity: float
    filename: str
    knowledge_entry_id: int
    chunk_index: int
    embedding_id: int
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorIndex:
    """Ranks stored chunk vectors against a query vector."""

    async def query(
        self, vector: Sequence[float], top_k: int, min_similarity: float
    ) -> List[SearchResult]:
        raise NotImplementedError


class LinearScanIndex(VectorIndex):
    """Exhaustive cosine scan over every embedding of an active entry."""

    def __init__(self, database: Database):
        self.database = database

    async def query(
        self, vector: Sequence[float], top_k: int, min_similarity: float
    ) -> List[SearchResult]:
        records = self.database.get_searchable_embeddings()

        if not records:
            logger.warning("knowledge_base_empty")
            return []

        scored = [
            SearchResult(
                text=record["text"],
                similarity=cosine_similarity(vector, record["vector"]),
                filename=record["filename"] or "Unknown",
                knowledge_entry_id=record["knowledge_entry_id"],
                chunk_index=record["chunk_index"],
                embedding_id=record["id"],
                metadata=record["metadata"],
            )
            for record in records
        ]

        # list.sort is stable, so equal scores keep scan order
        scored.sort(key=lambda result: result.similarity, reverse=True)
        filtered = [result for result in scored if result.similarity >= min_similarity]

        logger.debug(
            "linear_scan_completed",
            scanned=len(records),
            above_threshold=len(filtered),
            min_similarity=min_similarity,
        )

        return filtered[:top_k]
