"""Text chunking with overlap for the knowledge base.

Text is packed paragraph by paragraph. Paragraphs that are too large on their
own are packed sentence by sentence, sentences word by word, and a single word
longer than the chunk size is truncated to fit.
"""
import re
from dataclasses import dataclass
from typing import List, Tuple
import structlog

from supportdesk import config

logger = structlog.get_logger()

PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n\s*")
SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")
WHITESPACE = re.compile(r"\s+")

PARAGRAPH_SEPARATOR = "\n\n"
INLINE_SEPARATOR = " "


@dataclass
class TextChunk:
    """A chunk of text and its position in the document.

    ``overlap_chars`` is the length of the prefix repeated from the previous
    chunk (including the separator that follows it); ``text[overlap_chars:]``
    is the new material this chunk contributes.
    """

    text: str
    index: int
    overlap_chars: int = 0

    @property
    def new_text(self) -> str:
        return self.text[self.overlap_chars :]


def normalize_whitespace(text: str) -> str:
    """Collapse whitespace runs to single spaces."""
    return WHITESPACE.sub(" ", text).strip()


def overlap_tail(text: str, overlap: int) -> str:
    """Trailing ``overlap`` characters of ``text`` starting on a word boundary."""
    if overlap <= 0 or not text:
        return ""

    start = max(len(text) - overlap, 0)
    if start > 0 and not text[start - 1].isspace() and not text[start].isspace():
        # Cut landed inside a word; move to the next whitespace
        match = WHITESPACE.search(text, start)
        if match is None:
            return ""
        start = match.end()

    return text[start:].strip()


class TextChunker:
    """Paragraph-first text chunker with overlap support."""

    def __init__(self, max_size: int = None, overlap: int = None):
        """Initialize the text chunker.

        Args:
            max_size: Maximum chunk size in characters (default from config)
            overlap: Characters carried from one chunk into the next (default from config)
        """
        self.max_size = max_size if max_size is not None else config.CHUNK_SIZE
        self.overlap = overlap if overlap is not None else config.CHUNK_OVERLAP

        if self.max_size <= 0:
            raise ValueError(f"Chunk size must be positive (got {self.max_size})")
        if self.overlap < 0 or self.overlap >= self.max_size:
            raise ValueError(
                f"Overlap ({self.overlap}) must be non-negative and less than "
                f"chunk size ({self.max_size})"
            )

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split text into ordered, overlapping chunks.

        Args:
            text: Text to chunk

        Returns:
            List of TextChunk objects indexed from 0
        """
        if not text or not text.strip():
            return []

        self._closed: List[Tuple[str, int]] = []
        self._current = ""
        self._prefix = 0

        paragraphs = [p.strip() for p in PARAGRAPH_BREAK.split(text)]
        for paragraph in paragraphs:
            if paragraph:
                self._add_paragraph(paragraph)

        if self._current.strip():
            self._closed.append((self._current, self._prefix))

        chunks = [
            TextChunk(text=chunk, index=index, overlap_chars=prefix)
            for index, (chunk, prefix) in enumerate(self._closed)
        ]

        logger.debug(
            "text_chunked",
            text_length=len(text),
            chunk_count=len(chunks),
            max_size=self.max_size,
        )

        return chunks

    def _add_paragraph(self, paragraph: str) -> None:
        if len(paragraph) <= self.max_size:
            self._append(paragraph, PARAGRAPH_SEPARATOR)
            return

        sentences = [s for s in SENTENCE_BREAK.split(paragraph) if s]
        for position, sentence in enumerate(sentences):
            separator = PARAGRAPH_SEPARATOR if position == 0 else INLINE_SEPARATOR
            self._add_sentence(sentence, separator)

    def _add_sentence(self, sentence: str, separator: str) -> None:
        if len(sentence) <= self.max_size:
            self._append(sentence, separator)
            return

        for position, word in enumerate(sentence.split()):
            if len(word) > self.max_size:
                logger.warning(
                    "oversized_word_truncated",
                    word_length=len(word),
                    max_size=self.max_size,
                )
                word = word[: self.max_size]
            self._append(word, separator if position == 0 else INLINE_SEPARATOR)

    def _append(self, unit: str, separator: str) -> None:
        if not self._current:
            self._current, self._prefix = unit, 0
            return

        if len(self._current) + len(separator) + len(unit) <= self.max_size:
            self._current += separator + unit
            return

        closed = self._current
        self._closed.append((closed, self._prefix))

        seed = overlap_tail(closed, self.overlap)
        if seed and len(seed) + len(separator) + len(unit) <= self.max_size:
            self._current = seed + separator + unit
            self._prefix = len(seed) + len(separator)
        else:
            self._current, self._prefix = unit, 0

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Summary statistics for a set of chunks."""
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.text) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.overlap,
        }


def chunk_text(text: str, max_size: int = None, overlap: int = None) -> List[TextChunk]:
    """Chunk text with a throwaway chunker (convenience function)."""
    return TextChunker(max_size=max_size, overlap=overlap).chunk_text(text)
