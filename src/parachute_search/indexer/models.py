"""Shared data types for the indexing and retrieval pipeline."""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from .errors import SearchDegraded


class ChunkField(str, Enum):
    """Part of a record a chunk was produced from."""

    TRANSCRIPT = "transcript"
    TITLE = "title"
    SUMMARY = "summary"
    CONTEXT = "context"


def make_chunk_id(record_id: str, chunk_field: ChunkField | str, chunk_index: int) -> str:
    """Generate a stable chunk ID from record_id, field, and chunk index."""
    field_value = ChunkField(chunk_field).value
    raw = f"{record_id}:{field_value}:{chunk_index}"
    return hashlib.sha1(raw.encode()).hexdigest()


@dataclass
class IndexedChunk:
    """The atomic retrieval unit submitted to the vector store and keyword index."""

    record_id: str
    field: ChunkField
    chunk_index: int
    text: str
    embedding: list[float]
    token_count: int
    id: str = ""

    def __post_init__(self):
        self.field = ChunkField(self.field)
        if not self.id:
            self.id = make_chunk_id(self.record_id, self.field, self.chunk_index)

    def metadata(self) -> dict[str, Any]:
        """Metadata dict stored next to the vector."""
        return {
            "record_id": self.record_id,
            "field": self.field.value,
            "chunk_index": self.chunk_index,
            "text": self.text,
            "token_count": self.token_count,
        }


@dataclass
class StoredChunk:
    """A chunk as read back from the vector store (no vector)."""

    chunk_id: str
    record_id: str
    field: ChunkField
    chunk_index: int
    text: str
    token_count: int = 0

    def __post_init__(self):
        self.field = ChunkField(self.field)


@dataclass
class ScoredChunk:
    """One hit from the vector store or keyword index.

    ``score`` is higher-is-better for both sources.
    """

    chunk_id: str
    score: float
    record_id: str = ""
    field: Optional[ChunkField] = None
    text: str = ""

    def __post_init__(self):
        if self.field is not None:
            self.field = ChunkField(self.field)

    def __iter__(self) -> Iterator[Any]:
        # Unpacks as the (chunk_id, score) pair.
        return iter((self.chunk_id, self.score))


@dataclass
class SearchResult:
    """A single fused search hit. Produced per query, never persisted."""

    record_id: str
    field: ChunkField
    chunk_id: str
    score: float
    snippet: str
    vector_score: Optional[float] = None
    keyword_score: Optional[float] = None
    vector_rank: Optional[int] = None
    keyword_rank: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "field": self.field.value,
            "chunk_id": self.chunk_id,
            "score": self.score,
            "snippet": self.snippet,
            "vector_score": self.vector_score,
            "keyword_score": self.keyword_score,
            "vector_rank": self.vector_rank,
            "keyword_rank": self.keyword_rank,
        }


@dataclass
class SearchResults:
    """Ordered result set of a query, with the degraded flag for diagnostics."""

    query: str
    results: list[SearchResult] = field(default_factory=list)
    degraded: Optional[SearchDegraded] = None

    @property
    def is_degraded(self) -> bool:
        return self.degraded is not None

    def __iter__(self) -> Iterator[SearchResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, index: int) -> SearchResult:
        return self.results[index]

    def __bool__(self) -> bool:
        return bool(self.results)


class IndexingStatus(Enum):
    """Lifecycle status of the index orchestrator."""

    IDLE = "idle"
    INDEXING = "indexing"
    ERROR = "error"


@dataclass(frozen=True)
class IndexingState:
    """Immutable snapshot of indexing progress.

    A new snapshot replaces the previous one on every change, so observers
    never see a partially updated state.
    """

    status: IndexingStatus = IndexingStatus.IDLE
    current: int = 0
    total: int = 0
    last_error: Optional[str] = None

    @classmethod
    def idle(cls, current: int = 0, total: int = 0) -> "IndexingState":
        """Create an idle state."""
        return cls(status=IndexingStatus.IDLE, current=current, total=total)

    @classmethod
    def indexing(
        cls, current: int, total: int, last_error: Optional[str] = None
    ) -> "IndexingState":
        """Create an in-progress state."""
        return cls(
            status=IndexingStatus.INDEXING,
            current=current,
            total=total,
            last_error=last_error,
        )

    @classmethod
    def error(cls, message: str, current: int = 0, total: int = 0) -> "IndexingState":
        """Create a sticky error state."""
        return cls(
            status=IndexingStatus.ERROR,
            current=current,
            total=total,
            last_error=message,
        )

    @property
    def is_busy(self) -> bool:
        return self.status is IndexingStatus.INDEXING

    @property
    def progress(self) -> float:
        """Fraction of records processed, between 0.0 and 1.0."""
        if self.total <= 0:
            return 1.0 if self.status is IndexingStatus.IDLE else 0.0
        return min(1.0, self.current / self.total)
