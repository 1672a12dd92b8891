"""Error types raised by the indexing and retrieval pipeline."""

from typing import Optional


class IndexerError(Exception):
    """Base class for all indexing and search errors."""


class SegmentationError(IndexerError):
    """Raised when text cannot be segmented into sentences.

    Non-fatal: callers may treat the entire text as one sentence.
    """


class EmbeddingUnavailable(IndexerError):
    """Raised when the embedding backend is not ready or a call fails.

    ``field`` and ``record_id`` are set when the failure happened while
    embedding a specific part of a record.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        record_id: Optional[str] = None,
    ):
        self.field = field
        self.record_id = record_id
        if field:
            message = f"{message} (field={field})"
        super().__init__(message)


class InvalidEmbedding(IndexerError):
    """Raised when a backend returns a vector of the wrong dimension."""


class ChunkSizeViolation(IndexerError, AssertionError):
    """A multi-sentence chunk exceeded the token limit.

    Signals a logic bug in the chunker and is never caught by the orchestrator.
    """


class StoreError(IndexerError):
    """Base class for vector store, keyword index and manifest I/O failures."""


class StoreWriteFailure(StoreError):
    """A write to a backing store failed."""


class StoreReadFailure(StoreError):
    """A read from a backing store failed."""


class SearchDegraded(IndexerError):
    """One of the two ranking paths failed during a search.

    Not raised; attached to the result set so callers can observe it.
    """

    def __init__(self, path: str, cause: BaseException):
        self.path = path
        self.cause = cause
        super().__init__(f"{path} search unavailable: {cause}")


class SearchUnavailable(IndexerError):
    """Both the vector and keyword paths failed for a query."""

    def __init__(self, vector_error: BaseException, keyword_error: BaseException):
        self.vector_error = vector_error
        self.keyword_error = keyword_error
        super().__init__(
            f"Search failed on both paths: vector={vector_error}; keyword={keyword_error}"
        )
