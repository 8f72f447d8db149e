"""Ingest pipeline for the knowledge base.

Orchestrates:
- Text extraction from uploaded files and fetched web pages
- Text chunking
- Knowledge entry storage
- Embedding generation
"""
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
import httpx
import structlog

from supportdesk import config
from supportdesk.db import Database
from supportdesk.errors import (
    ConfigurationError,
    EmbeddingError,
    ExtractionError,
    IngestionError,
)
from supportdesk.rag.chunker import TextChunker
from supportdesk.rag.embedder import EmbeddingGenerator
from supportdesk.rag.extract import SUPPORTED_EXTENSIONS, extract_text, parse_html
from supportdesk.rag.learner import format_qa

logger = structlog.get_logger()


@dataclass
class IngestResult:
    """Outcome of ingesting or re-embedding one knowledge entry."""

    entry_id: int
    chunk_count: int
    embedding_count: int


class IngestPipeline:
    """Pipeline for adding documents to the knowledge base."""

    def __init__(
        self,
        chunker: TextChunker,
        embedder: EmbeddingGenerator,
        database: Database,
        fetch_timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the pipeline.

        Args:
            chunker: Splits documents into chunks
            embedder: Embeds and stores chunks
            database: Knowledge entry store
            fetch_timeout: Timeout in seconds for URL imports
            transport: Optional httpx transport for URL imports (used by tests)
        """
        self.chunker = chunker
        self.embedder = embedder
        self.database = database
        self.fetch_timeout = fetch_timeout or config.URL_IMPORT_TIMEOUT
        self._transport = transport

    def _chunk(self, text: str, entry_id: Optional[int] = None) -> List[str]:
        if not text or not text.strip():
            raise IngestionError("extraction", "No text content found", entry_id=entry_id)

        try:
            chunks = self.chunker.chunk_text(text)
        except Exception as e:
            logger.error("chunking_failed", error=str(e), entry_id=entry_id)
            raise IngestionError("chunking", str(e), entry_id=entry_id) from e

        if not chunks:
            raise IngestionError("chunking", "No valid chunks created", entry_id=entry_id)

        return [chunk.text for chunk in chunks]

    async def _embed(
        self, entry_id: int, chunks: List[str], metadata: Optional[Dict[str, Any]]
    ) -> int:
        try:
            return await self.embedder.embed_chunks(entry_id, chunks, metadata=metadata)
        except ConfigurationError:
            raise
        except EmbeddingError as e:
            logger.error(
                "document_not_fully_searchable",
                entry_id=entry_id,
                chunk_count=len(chunks),
                embedded_count=e.embedded_count,
                error=str(e),
            )
            raise IngestionError(
                "embedding",
                str(e),
                entry_id=entry_id,
                chunk_count=len(chunks),
                embedded_count=e.embedded_count,
            ) from e

    async def ingest(
        self,
        text: str,
        filename: str,
        original_name: Optional[str] = None,
        file_type: Optional[str] = None,
        file_size: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IngestResult:
        """Chunk, store and embed a document.

        Raises:
            IngestionError: With ``step`` set to the stage that failed. When
                embedding fails the entry already exists and ``embedded_count``
                tells how much of it is searchable; call ``reembed`` to retry.
            ConfigurationError: If the embedding backend is not configured
        """
        logger.info("ingesting_document", filename=filename, content_length=len(text or ""))

        chunks = self._chunk(text)
        entry_id = self.database.create_entry(
            filename=filename,
            original_name=original_name,
            file_type=file_type,
            file_size=file_size,
            content=text,
            chunks=chunks,
        )

        embedding_count = await self._embed(
            entry_id, chunks, metadata or {"source": "upload", "filename": filename}
        )

        logger.info(
            "document_ingested",
            entry_id=entry_id,
            filename=filename,
            chunk_count=len(chunks),
            embedding_count=embedding_count,
        )

        return IngestResult(entry_id=entry_id, chunk_count=len(chunks), embedding_count=embedding_count)

    async def ingest_file(self, path: Path, filename: Optional[str] = None) -> IngestResult:
        """Extract text from a file and ingest it."""
        path = Path(path)
        filename = filename or path.name

        try:
            document = extract_text(path, filename=filename)
        except ExtractionError as e:
            raise IngestionError("extraction", str(e)) from e

        return await self.ingest(
            document.text,
            filename=filename,
            original_name=filename,
            file_type=document.file_type,
            file_size=path.stat().st_size,
            metadata={"source": "upload", "filename": filename, **document.metadata},
        )

    async def _fetch_page(self, url: str) -> str:
        try:
            async with httpx.AsyncClient(
                timeout=self.fetch_timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.text
        except httpx.HTTPError as e:
            logger.warning("url_fetch_failed", url=url, error=str(e), error_type=type(e).__name__)
            raise IngestionError("extraction", f"Failed to fetch URL: {e}") from e

    async def ingest_url(self, url: str) -> IngestResult:
        """Fetch a web page and ingest its readable text as a 'web-page' entry.

        The page title (or the URL when there is none) becomes the entry's
        original name.

        Raises:
            IngestionError: With ``step="extraction"`` if the page can't be
                fetched or has less than ``MIN_PAGE_TEXT`` characters of text
        """
        html = await self._fetch_page(url)
        title, text = parse_html(html)

        if len(text) < config.MIN_PAGE_TEXT:
            raise IngestionError("extraction", "Could not extract meaningful content from this URL")

        return await self.ingest(
            text,
            filename=f"url-import-{int(time.time() * 1000)}",
            original_name=(title or url)[:100],
            file_type="web-page",
            file_size=len(html.encode("utf-8")),
            metadata={"source": "url-import", "url": url},
        )

    def _require_active(self, entry_id: int) -> Dict[str, Any]:
        entry = self.database.get_entry(entry_id)
        if entry is None or not entry["active"]:
            raise KeyError(entry_id)
        return entry

    async def update(self, entry_id: int, content: str) -> IngestResult:
        """Replace an entry's content, then re-chunk and re-embed it.

        Raises:
            KeyError: If the entry doesn't exist or was deleted
        """
        self._require_active(entry_id)
        chunks = self._chunk(content, entry_id=entry_id)

        self.database.delete_embeddings_for_entry(entry_id)
        self.database.replace_entry_content(entry_id, content, chunks)

        embedding_count = await self._embed(entry_id, chunks, {"source": "edit"})
        logger.info(
            "document_updated",
            entry_id=entry_id,
            chunk_count=len(chunks),
            embedding_count=embedding_count,
        )
        return IngestResult(entry_id=entry_id, chunk_count=len(chunks), embedding_count=embedding_count)

    async def reembed(self, entry_id: int) -> IngestResult:
        """Drop and regenerate every embedding of an entry.

        Used to retry documents whose embedding step failed.
        """
        entry = self._require_active(entry_id)
        chunks = [chunk["text"] for chunk in entry["chunks"]]

        self.database.delete_embeddings_for_entry(entry_id)
        embedding_count = await self._embed(entry_id, chunks, {"source": "reembed"})
        return IngestResult(entry_id=entry_id, chunk_count=len(chunks), embedding_count=embedding_count)

    def delete(self, entry_id: int) -> bool:
        """Soft-delete an entry and purge its embeddings.

        Returns:
            False if the entry was missing or already deleted
        """
        entry = self.database.get_entry(entry_id)
        if entry is None or not entry["active"]:
            return False

        self.database.delete_embeddings_for_entry(entry_id)
        self.database.deactivate_entry(entry_id)
        logger.info("document_deleted", entry_id=entry_id)
        return True

    async def push(
        self,
        question: Optional[str] = None,
        answer: Optional[str] = None,
        source: Optional[str] = None,
    ) -> IngestResult:
        """Add a conversation snippet to the knowledge base as a single chunk."""
        if question and answer:
            text = format_qa(question, answer)
        else:
            text = question or answer
        if not text or not text.strip():
            raise ValueError("At least question or answer is required")

        entry_id = self.database.create_entry(
            filename=f"chat-learning-{int(time.time() * 1000)}",
            original_name=source or "Chat Conversation",
            file_type="text/plain",
            content=text,
            chunks=[text],
        )
        embedding_count = await self._embed(entry_id, [text], {"source": "chat-push"})

        logger.info("conversation_snippet_pushed", entry_id=entry_id, text_length=len(text))
        return IngestResult(entry_id=entry_id, chunk_count=1, embedding_count=embedding_count)

    async def ingest_directory(self, docs_dir: Path, progress_callback=None) -> Dict[str, Any]:
        """Ingest every supported file under a directory.

        Args:
            docs_dir: Directory to scan recursively
            progress_callback: Optional callback function(current, total, file_path)

        Returns:
            Dictionary with ingestion statistics

        Raises:
            FileNotFoundError: If the directory doesn't exist
        """
        docs_dir = Path(docs_dir)
        if not docs_dir.exists():
            raise FileNotFoundError(f"Documents directory not found: {docs_dir}")

        files = sorted(
            p for p in docs_dir.rglob("*") if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS
        )
        stats = {
            "files_processed": 0,
            "files_failed": 0,
            "chunks_created": 0,
            "embeddings_generated": 0,
        }

        logger.info("documents_discovered", count=len(files), docs_dir=str(docs_dir))

        for idx, file_path in enumerate(files, 1):
            if progress_callback:
                progress_callback(idx, len(files), file_path)
            try:
                result = await self.ingest_file(file_path, filename=str(file_path.relative_to(docs_dir)))
            except IngestionError as e:
                logger.error(
                    "file_ingestion_failed",
                    path=str(file_path),
                    step=e.step,
                    embedded_count=e.embedded_count,
                    error=str(e),
                )
                stats["files_failed"] += 1
                stats["chunks_created"] += e.chunk_count
                stats["embeddings_generated"] += e.embedded_count
                continue

            stats["files_processed"] += 1
            stats["chunks_created"] += result.chunk_count
            stats["embeddings_generated"] += result.embedding_count

        logger.info("ingest_directory_completed", stats=stats)
        return stats
