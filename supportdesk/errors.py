"""Exception hierarchy for the knowledge and answering pipeline."""
from typing import Optional


class SupportDeskError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(SupportDeskError):
    """The model backend is missing its connection settings or credentials."""


class DimensionMismatchError(SupportDeskError):
    """Two vectors of different length were compared."""

    def __init__(self, left: int, right: int):
        super().__init__(f"Vectors must be of equal length (got {left} and {right})")
        self.left = left
        self.right = right


class EmbeddingError(SupportDeskError):
    """The embedding backend failed.

    ``embedded_count`` is the number of embedding records persisted before the
    failure when raised from a batch run.
    """

    def __init__(self, message: str, embedded_count: int = 0):
        super().__init__(message)
        self.embedded_count = embedded_count


class GenerationError(SupportDeskError):
    """The text generation backend failed."""


class ExtractionError(SupportDeskError):
    """Text could not be extracted from an uploaded file."""


class IngestionError(SupportDeskError):
    """A document could not be fully ingested.

    Attributes:
        step: "extraction", "chunking" or "embedding"
        entry_id: Knowledge entry created before the failure, if any
        chunk_count: Number of chunks produced
        embedded_count: Number of chunks embedded before the failure
    """

    def __init__(
        self,
        step: str,
        message: str,
        entry_id: Optional[int] = None,
        chunk_count: int = 0,
        embedded_count: int = 0,
    ):
        super().__init__(f"Ingestion failed during {step}: {message}")
        self.step = step
        self.entry_id = entry_id
        self.chunk_count = chunk_count
        self.embedded_count = embedded_count


class ConversationNotFoundError(SupportDeskError, KeyError):
    """No conversation exists with the given id."""
