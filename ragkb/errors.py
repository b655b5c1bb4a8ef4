"""Exception types raised by the knowledge base."""
from typing import Optional


class RagError(Exception):
    """Base class for knowledge base errors."""


class EmbeddingError(RagError):
    """The embedding provider failed or returned an unusable response."""


class StoreError(RagError):
    """A store operation failed.

    Attributes:
        operation: Store operation that failed (e.g. "insert_chunks").
        source_key: Source document involved, when known.
    """

    def __init__(self, operation: str, message: str, source_key: Optional[str] = None):
        self.operation = operation
        self.detail = message
        self.source_key = source_key
        where = f" [{source_key}]" if source_key else ""
        super().__init__(f"{operation}{where}: {message}")
