"""Embedding generation for knowledge base chunks.

Chunks are embedded in fixed-size batches. Requests inside a batch run
concurrently; batches are separated by a short delay to stay under the
backend's rate limits.
"""
import asyncio
from typing import Any, Dict, List, Optional, Sequence
import structlog

from supportdesk import config
from supportdesk.db import Database
from supportdesk.errors import ConfigurationError, EmbeddingError
from supportdesk.llm_client import ModelBackend

logger = structlog.get_logger()


class EmbeddingGenerator:
    """Turns text into vectors and persists chunk embeddings."""

    def __init__(
        self,
        backend: ModelBackend,
        database: Database,
        batch_size: int = None,
        batch_delay: float = None,
    ):
        """Initialize the generator.

        Args:
            backend: Model backend used for embedding calls
            database: Store for embedding records
            batch_size: Chunks embedded concurrently per batch (default from config)
            batch_delay: Seconds to wait between batches (default from config)
        """
        self.backend = backend
        self.database = database
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE
        self.batch_delay = config.EMBEDDING_BATCH_DELAY if batch_delay is None else batch_delay

    async def embed_one(self, text: str) -> List[float]:
        """Embed a single text.

        Raises:
            ValueError: If text is empty
            ConfigurationError: If the backend is not configured
            EmbeddingError: If the backend call fails or returns no vector
        """
        if not text or not text.strip():
            raise ValueError("Invalid text input: must be a non-empty string")

        try:
            vector = await self.backend.embed(text)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(
                "embedding_generation_failed",
                text_preview=text[:100],
                error=str(e),
                error_type=type(e).__name__,
            )
            raise EmbeddingError(f"Failed to generate embedding: {e}") from e

        if not vector:
            raise EmbeddingError("Empty embedding returned for text")

        return list(vector)

    async def _embed_and_store(
        self,
        entry_id: int,
        chunk_index: int,
        text: str,
        metadata: Optional[Dict[str, Any]],
    ) -> int:
        vector = await self.embed_one(text)
        embedding_id = self.database.insert_embedding(
            entry_id=entry_id,
            chunk_index=chunk_index,
            text=text,
            vector=vector,
            metadata=metadata,
        )
        self.database.link_chunk_embedding(entry_id, chunk_index, embedding_id)
        return embedding_id

    async def embed_chunks(
        self,
        entry_id: int,
        chunks: Sequence[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Embed every chunk of an entry and link the records back to it.

        Args:
            entry_id: Owning knowledge entry
            chunks: Chunk texts in order; list position is the chunk index
            metadata: Provenance stored on every record

        Returns:
            Number of embeddings created

        Raises:
            ConfigurationError: If the backend is not configured
            EmbeddingError: If any chunk in a batch fails; ``embedded_count``
                holds the records persisted before the error surfaced
        """
        if not chunks:
            logger.warning("no_chunks_to_embed", entry_id=entry_id)
            return 0

        logger.info("embedding_chunks", entry_id=entry_id, chunk_count=len(chunks))

        created = 0
        for start in range(0, len(chunks), self.batch_size):
            batch = chunks[start : start + self.batch_size]

            results = await asyncio.gather(
                *(
                    self._embed_and_store(entry_id, start + offset, text, metadata)
                    for offset, text in enumerate(batch)
                ),
                return_exceptions=True,
            )

            failures = [r for r in results if isinstance(r, BaseException)]
            created += len(results) - len(failures)

            if failures:
                error = failures[0]
                logger.error(
                    "embedding_batch_failed",
                    entry_id=entry_id,
                    batch_start=start,
                    failed=len(failures),
                    embedded_count=created,
                    error=str(error),
                )
                if isinstance(error, ConfigurationError):
                    raise error
                raise EmbeddingError(
                    f"Batch starting at chunk {start} failed: {error}",
                    embedded_count=created,
                ) from error

            logger.debug(
                "embedding_batch_completed",
                entry_id=entry_id,
                batch_number=start // self.batch_size + 1,
                batch_size=len(batch),
            )

            if start + self.batch_size < len(chunks):
                await asyncio.sleep(self.batch_delay)

        logger.info("chunks_embedded", entry_id=entry_id, embedding_count=created)
        return created
